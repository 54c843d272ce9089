"""One upstream call, with timeout, demo mode and workspace-hint handling.

Provider and transport exceptions never leave this module: every failure is
converted to a :class:`ProviderError` carrying a StructuredError.
"""
import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Dict, List, Optional, Tuple

from synexa_gateway import demo
from synexa_gateway.errors import (
    ErrorKind,
    ProviderError,
    build_error,
    classify_exception,
    hint_for,
    sanitize_error_data,
)
from synexa_gateway.ledger import Feature
from synexa_gateway.llm.base import LLMClient
from synexa_gateway.model_resolver import ResolvedCall
from synexa_gateway.prompts import (
    build_chat_messages,
    build_image_prompt,
    build_video_script_messages,
    image_size,
)
from synexa_gateway.repository import AccountRepository, WorkspaceInfo

logger = logging.getLogger(__name__)

DEFAULT_WORKSPACE_NAME = "Synexa"
VIDEO_SCRIPT_TEMPERATURE = 0.8


@dataclass
class Output:
    feature: Feature
    content: Dict[str, Any]
    is_demo: bool = False
    fallback_reason: Optional[str] = None
    workspace_id: Optional[str] = None


@dataclass(frozen=True)
class WorkspaceResolution:
    workspace: Optional[WorkspaceInfo]
    strategy: str  # requested, fallback_existing, no_workspace


class ProviderGateway:
    def __init__(self, client: Optional[LLMClient], settings, repository: Optional[AccountRepository] = None):
        self.client = client
        self.settings = settings
        self.repository = repository
        self.available_models: Optional[List[str]] = None
        self.timeouts = {
            Feature.CHAT: settings.ai_chat_timeout_seconds,
            Feature.IMAGE: settings.ai_image_timeout_seconds,
            Feature.VIDEO: settings.ai_video_timeout_seconds,
        }

    @property
    def demo_mode(self) -> bool:
        return self.client is None

    async def refresh_models(self) -> Optional[List[str]]:
        """Fetch the upstream model list. On failure availability stays unknown."""
        if self.demo_mode:
            return None
        try:
            models = await asyncio.wait_for(
                self.client.list_models(), timeout=self.settings.ai_models_timeout_seconds
            )
        except Exception as exc:
            error = classify_exception(exc, "startup")
            logger.warning(
                "Could not list upstream models (%s: %s); model availability unknown",
                error.kind.value, error.message,
            )
            return self.available_models
        self.available_models = sorted(models)
        logger.info("Upstream reports %d models", len(self.available_models))
        return self.available_models

    def resolve_workspace(self, account_id: Optional[str], requested_id: Optional[str]) -> WorkspaceResolution:
        """Pick the workspace a chat call belongs to. A miss is never an error."""
        if self.repository is None or account_id is None:
            return WorkspaceResolution(None, "no_workspace")
        workspaces = self.repository.list_workspaces(account_id)
        if requested_id:
            for workspace in workspaces:
                if workspace.id == requested_id:
                    return WorkspaceResolution(workspace, "requested")
        if not workspaces:
            if requested_id:
                logger.info("Account %s has no workspaces; ignoring workspace %s", account_id, requested_id)
            return WorkspaceResolution(None, "no_workspace")
        preferred = next((w for w in workspaces if w.name == DEFAULT_WORKSPACE_NAME), workspaces[0])
        if requested_id:
            logger.info(
                "Workspace %s not found for account %s, using %s", requested_id, account_id, preferred.id
            )
        return WorkspaceResolution(preferred, "fallback_existing")

    def demo_output(self, feature: Feature, payload, reason: Optional[str] = None) -> Output:
        if feature == Feature.CHAT:
            content = {"text": demo.demo_chat_text(payload.messages, payload.translation_mode)}
        elif feature == Feature.IMAGE:
            content = demo.demo_image(payload.prompt)
        else:
            script = demo.demo_video_script(payload.prompt, payload.length, payload.format)
            content = demo.video_output(script, payload.prompt)
        return Output(feature=feature, content=content, is_demo=True, fallback_reason=reason)

    def _empty_response(self, request_id: str) -> ProviderError:
        return ProviderError(build_error(ErrorKind.SERVER, request_id, "Empty response from AI provider"))

    async def _invoke(
        self,
        feature: Feature,
        resolved: ResolvedCall,
        payload,
        workspace: Optional[WorkspaceInfo],
    ) -> Dict[str, Any]:
        model = resolved.resolved_model
        if feature == Feature.CHAT:
            messages = build_chat_messages(
                payload.messages,
                payload.language_preference,
                payload.translation_mode,
                workspace.name if workspace else None,
            )
            text = await self.client.chat(
                messages, model, self.settings.openai_temperature, max_tokens=self.settings.ai_max_tokens
            )
            if not text or not text.strip():
                raise self._empty_response(resolved.request_id)
            return {"text": text}

        if feature == Feature.IMAGE:
            url = await self.client.generate_image(
                build_image_prompt(payload.prompt, payload.style), model, image_size(payload.size)
            )
            if not url:
                raise self._empty_response(resolved.request_id)
            return {"url": url, "thumbnailUrl": url}

        messages = build_video_script_messages(payload.prompt, payload.length, payload.format)
        script = await self.client.chat(
            messages, model, VIDEO_SCRIPT_TEMPERATURE, max_tokens=self.settings.ai_max_tokens
        )
        if not script or not script.strip():
            raise self._empty_response(resolved.request_id)
        return demo.video_output(script, payload.prompt)

    def _handle_failure(self, exc: Exception, feature: Feature, resolved: ResolvedCall, payload) -> Output:
        """Soft demo fallback when enabled, otherwise raise the classified error."""
        error = classify_exception(exc, resolved.request_id)
        logger.error(
            "Upstream %s call failed: kind=%s status=%s code=%s model=%s detail=%s",
            feature.value, error.kind.value, error.http_status, error.provider_code,
            resolved.resolved_model, sanitize_error_data(str(exc)),
        )
        logger.info("Hint: %s", hint_for(error.kind))
        if self.settings.allow_demo_fallback:
            logger.warning("Serving demo %s output after upstream failure", feature.value)
            return self.demo_output(feature, payload, reason=f"{error.kind.value}: {error.message}")
        raise ProviderError(error) from exc

    async def call(
        self,
        feature: Feature,
        resolved: ResolvedCall,
        payload,
        account_id: Optional[str] = None,
    ) -> Output:
        """Perform one upstream call bounded by the feature's timeout."""
        workspace = None
        if feature == Feature.CHAT:
            workspace = self.resolve_workspace(account_id, payload.workspace_id).workspace

        if self.demo_mode:
            output = self.demo_output(feature, payload)
        else:
            try:
                content = await asyncio.wait_for(
                    self._invoke(feature, resolved, payload, workspace),
                    timeout=self.timeouts[feature],
                )
                output = Output(feature=feature, content=content)
            except Exception as exc:
                output = self._handle_failure(exc, feature, resolved, payload)
        output.workspace_id = workspace.id if workspace else None
        return output

    def stream_chat(self, resolved: ResolvedCall, payload, account_id: Optional[str] = None) -> "ChatStream":
        workspace = self.resolve_workspace(account_id, payload.workspace_id).workspace
        return ChatStream(self, resolved, payload, workspace)


@dataclass
class ChatStream:
    """Async iterator of text chunks. ``output`` is set once the stream is exhausted."""

    gateway: ProviderGateway
    resolved: ResolvedCall
    payload: Any
    workspace: Optional[WorkspaceInfo] = None
    output: Optional[Output] = None
    _parts: List[str] = field(default_factory=list)

    def __aiter__(self) -> AsyncIterator[str]:
        return self._run()

    def _finish(self, output: Output) -> None:
        output.workspace_id = self.workspace.id if self.workspace else None
        self.output = output

    async def _next_chunk(self, iterator, deadline: float) -> Tuple[bool, Optional[str]]:
        remaining = deadline - asyncio.get_running_loop().time()
        if remaining <= 0:
            raise asyncio.TimeoutError()
        try:
            return True, await asyncio.wait_for(iterator.__anext__(), timeout=remaining)
        except StopAsyncIteration:
            return False, None

    async def _run(self) -> AsyncIterator[str]:
        gateway = self.gateway
        if gateway.demo_mode:
            output = gateway.demo_output(Feature.CHAT, self.payload)
            yield output.content["text"]
            self._finish(output)
            return

        loop = asyncio.get_running_loop()
        deadline = loop.time() + gateway.timeouts[Feature.CHAT]
        messages = build_chat_messages(
            self.payload.messages,
            self.payload.language_preference,
            self.payload.translation_mode,
            self.workspace.name if self.workspace else None,
        )
        iterator = None
        try:
            stream = await asyncio.wait_for(
                gateway.client.chat(
                    messages,
                    self.resolved.resolved_model,
                    gateway.settings.openai_temperature,
                    stream=True,
                    max_tokens=gateway.settings.ai_max_tokens,
                ),
                timeout=gateway.timeouts[Feature.CHAT],
            )
            iterator = stream.__aiter__()
            while True:
                more, chunk = await self._next_chunk(iterator, deadline)
                if not more:
                    break
                if chunk:
                    self._parts.append(chunk)
                    yield chunk
            if not "".join(self._parts).strip():
                raise gateway._empty_response(self.resolved.request_id)
        except Exception as exc:
            if self._parts:
                # Part of the answer already reached the client; demo text would corrupt it
                error = classify_exception(exc, self.resolved.request_id)
                logger.error("Chat stream failed mid-way: kind=%s", error.kind.value)
                raise ProviderError(error) from exc
            output = gateway._handle_failure(exc, Feature.CHAT, self.resolved, self.payload)
            yield output.content["text"]
            self._finish(output)
            return
        finally:
            aclose = getattr(iterator, "aclose", None)
            if aclose is not None:
                await aclose()

        self._finish(Output(feature=Feature.CHAT, content={"text": "".join(self._parts)}))
