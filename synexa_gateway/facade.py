"""Per-request orchestration of admission, resolution, the upstream call and sync.

Each request walks the state machine::

    RECEIVED -> ADMITTED -> RESOLVING -> CALLING -> SUCCEEDED
        |           |           |           |
        v           +-----------+-----------+--> FAILED
      DENIED

Admission always happens before any network call. The ledger reservation is
committed only on SUCCEEDED and released on every other exit, including
cancellation.
"""
import asyncio
import dataclasses
import json
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, AsyncIterator, Dict, List, Optional

from synexa_gateway.errors import ErrorKind, ProviderError, build_error, classify_exception
from synexa_gateway.gateway import ChatStream, Output, ProviderGateway
from synexa_gateway.ledger import AdmissionDenied, Feature, LedgerError, Reservation, UsageLedger
from synexa_gateway.model_resolver import (
    ModelConfigurationError,
    ModelResolver,
    ResolvedCall,
    WrongProviderError,
)
from synexa_gateway.sync import SyncBroadcaster, make_event

logger = logging.getLogger(__name__)


class CallState(str, Enum):
    RECEIVED = "RECEIVED"
    DENIED = "DENIED"
    ADMITTED = "ADMITTED"
    RESOLVING = "RESOLVING"
    CALLING = "CALLING"
    SUCCEEDED = "SUCCEEDED"
    FAILED = "FAILED"


_TRANSITIONS = {
    CallState.RECEIVED: {CallState.ADMITTED, CallState.DENIED},
    CallState.ADMITTED: {CallState.RESOLVING, CallState.FAILED},
    CallState.RESOLVING: {CallState.CALLING, CallState.FAILED},
    CallState.CALLING: {CallState.SUCCEEDED, CallState.FAILED},
}

TERMINAL_STATES = frozenset({CallState.DENIED, CallState.SUCCEEDED, CallState.FAILED})


class IllegalTransition(RuntimeError):
    pass


@dataclass
class FeatureCall:
    request_id: str
    account_id: str
    feature: Feature
    model_id: str
    state: CallState = CallState.RECEIVED
    history: List[CallState] = field(default_factory=lambda: [CallState.RECEIVED])

    def advance(self, state: CallState) -> None:
        if state not in _TRANSITIONS.get(self.state, ()):
            raise IllegalTransition(f"{self.state.value} -> {state.value}")
        self.state = state
        self.history.append(state)

    def fail(self) -> None:
        if self.state not in TERMINAL_STATES:
            self.advance(CallState.FAILED)


@dataclass
class FeatureResult:
    request_id: str
    output: Output
    resolved: ResolvedCall

    def to_response(self) -> Dict[str, Any]:
        body = {
            "requestId": self.request_id,
            "output": self.output.content,
            "resolvedModel": self.resolved.resolved_model,
            "usedFallback": self.resolved.used_fallback,
            "isDemo": self.output.is_demo,
        }
        reason = self.output.fallback_reason or self.resolved.fallback_reason
        if reason:
            body["fallbackReason"] = reason
        if self.output.feature == Feature.CHAT:
            body["resolvedWorkspaceId"] = self.output.workspace_id
        return body


def sse(data: Any) -> str:
    payload = data if isinstance(data, str) else json.dumps(data, ensure_ascii=False)
    return f"data: {payload}\n\n"


class ChatStreamHandle:
    """SSE frames of one admitted chat stream.

    The frames settle the reservation themselves when they run to the end.
    ``close`` covers the rest: a body that was never started or was abandoned
    part way. Calling it after a normal finish is a no-op.
    """

    def __init__(self, frames: AsyncIterator[str], ledger: UsageLedger, reservation: Reservation, request_id: str):
        self.frames = frames
        self.ledger = ledger
        self.reservation = reservation
        self.request_id = request_id

    def __aiter__(self):
        return self.frames.__aiter__()

    async def close(self) -> None:
        await self.frames.aclose()
        if self.ledger.release(self.reservation):
            logger.info("[%s] chat stream closed before completion, reservation released", self.request_id)


class GatewayFacade:
    def __init__(
        self,
        ledger: UsageLedger,
        resolver: ModelResolver,
        gateway: ProviderGateway,
        broadcaster: SyncBroadcaster,
        settings,
    ):
        self.ledger = ledger
        self.resolver = resolver
        self.gateway = gateway
        self.broadcaster = broadcaster
        self.settings = settings
        self.default_resolution: Optional[ResolvedCall] = None
        self.configuration_error: Optional[str] = None

    async def refresh_models(self) -> Optional[ResolvedCall]:
        """List upstream models and resolve the default chat model against them.

        A default that no available model can serve is a configuration error.
        It is logged once here and kept in ``configuration_error``.
        """
        models = await self.gateway.refresh_models()
        if models is None:
            return self.default_resolution
        logical = self.settings.ai_default_logical_model
        try:
            resolved = self.resolver.resolve(logical, models, "startup")
        except (ModelConfigurationError, WrongProviderError) as exc:
            self.default_resolution = None
            self.configuration_error = str(exc)
            logger.error("Default chat model \"%s\" cannot be served: %s", logical, exc)
            return None
        self.default_resolution = resolved
        self.configuration_error = None
        if resolved.used_fallback:
            logger.warning("Default chat model resolved to fallback %s: %s",
                           resolved.resolved_model, resolved.fallback_reason)
        else:
            logger.info("Default chat model resolved to %s", resolved.resolved_model)
        return resolved

    def _admit(self, call: FeatureCall) -> Reservation:
        try:
            reservation = self.ledger.check_and_reserve(call.account_id, call.feature)
        except AdmissionDenied:
            call.advance(CallState.DENIED)
            raise
        call.advance(CallState.ADMITTED)
        return reservation

    def _resolve_chat_model(self, call: FeatureCall) -> ResolvedCall:
        available = self.gateway.available_models
        try:
            return self.resolver.resolve(call.model_id, available, call.request_id)
        except WrongProviderError as exc:
            default_id = self.settings.ai_default_logical_model
            resolved = self.resolver.resolve(default_id, available, call.request_id)
            reason = f'{exc} Redirected to "{default_id}" ({resolved.resolved_model}).'
            logger.info("[%s] %s", call.request_id, reason)
            return dataclasses.replace(
                resolved,
                requested_model=call.model_id,
                used_fallback=True,
                fallback_reason=resolved.fallback_reason or reason,
            )

    def _resolve(self, call: FeatureCall) -> ResolvedCall:
        if call.feature == Feature.IMAGE:
            image_model = self.settings.ai_image_model
            return ResolvedCall(
                request_id=call.request_id,
                requested_model=call.model_id,
                mapped_model=image_model,
                resolved_model=image_model,
            )
        try:
            return self._resolve_chat_model(call)
        except ModelConfigurationError as exc:
            logger.error("[%s] Model configuration error: %s", call.request_id, exc)
            raise ProviderError(build_error(ErrorKind.SERVER, call.request_id, str(exc))) from exc

    def _commit(self, call: FeatureCall, reservation: Reservation) -> None:
        try:
            self.ledger.commit(reservation)
        except LedgerError as exc:
            # The output was produced; the client still gets it
            logger.error("[%s] Usage commit failed for %s: %s", call.request_id, call.account_id, exc)

    def _success_event(self, call: FeatureCall, result: FeatureResult) -> Dict[str, Any]:
        if call.feature == Feature.CHAT:
            data = {
                "requestId": call.request_id,
                "message": {"role": "assistant", "content": result.output.content.get("text", "")},
                "workspaceId": result.output.workspace_id,
                "model": result.resolved.resolved_model,
                "isDemo": result.output.is_demo,
            }
            return make_event("chat_message", data, call.account_id)
        data = {
            "requestId": call.request_id,
            "feature": call.feature.value,
            "output": result.output.content,
            "model": result.resolved.resolved_model,
            "isDemo": result.output.is_demo,
        }
        return make_event("generation_complete", data, call.account_id)

    async def _finish(self, call: FeatureCall, reservation: Reservation, result: FeatureResult) -> None:
        call.advance(CallState.SUCCEEDED)
        if result.output.is_demo and result.output.fallback_reason:
            # Soft fallback after an upstream failure is not charged
            self.ledger.release(reservation)
        else:
            self._commit(call, reservation)
        await self.broadcaster.broadcast(call.account_id, self._success_event(call, result))
        logger.info(
            "[%s] %s succeeded for %s model=%s fallback=%s demo=%s",
            call.request_id, call.feature.value, call.account_id,
            result.resolved.resolved_model, result.resolved.used_fallback, result.output.is_demo,
        )

    async def execute(self, account_id: str, feature: Feature, payload, request_id: str) -> FeatureResult:
        """Run one feature request to completion.

        Raises AdmissionDenied before anything else happens, or ProviderError
        if the upstream call failed.
        """
        call = FeatureCall(request_id, account_id, Feature(feature), payload.model_id)
        reservation = self._admit(call)
        committed = False
        try:
            call.advance(CallState.RESOLVING)
            resolved = self._resolve(call)
            call.advance(CallState.CALLING)
            output = await self.gateway.call(call.feature, resolved, payload, account_id=account_id)
            result = FeatureResult(request_id, output, resolved)
            committed = True
            await self._finish(call, reservation, result)
            return result
        except (Exception, asyncio.CancelledError):
            call.fail()
            raise
        finally:
            if not committed:
                self.ledger.release(reservation)
                logger.info("[%s] %s reservation released (%s)", request_id, call.feature.value, call.state.value)

    def open_chat_stream(self, account_id: str, payload, request_id: str) -> ChatStreamHandle:
        """Admit and resolve eagerly, then return the SSE frames.

        Denials and resolution failures raise here, before any byte is sent.
        The caller must ``close`` the handle once the response is over.
        """
        call = FeatureCall(request_id, account_id, Feature.CHAT, payload.model_id)
        reservation = self._admit(call)
        try:
            call.advance(CallState.RESOLVING)
            resolved = self._resolve(call)
            call.advance(CallState.CALLING)
            stream = self.gateway.stream_chat(resolved, payload, account_id=account_id)
        except Exception:
            call.fail()
            self.ledger.release(reservation)
            raise
        frames = self._stream_frames(call, reservation, resolved, stream)
        return ChatStreamHandle(frames, self.ledger, reservation, request_id)

    async def _stream_frames(
        self,
        call: FeatureCall,
        reservation: Reservation,
        resolved: ResolvedCall,
        stream: ChatStream,
    ) -> AsyncIterator[str]:
        committed = False
        try:
            async for chunk in stream:
                yield sse({"content": chunk})
            result = FeatureResult(call.request_id, stream.output, resolved)
            committed = True
            await self._finish(call, reservation, result)
            final = result.to_response()
            final.pop("output")
            final["done"] = True
            yield sse(final)
            yield sse("[DONE]")
        except Exception as exc:
            call.fail()
            error = classify_exception(exc, call.request_id)
            logger.error("[%s] Chat stream failed: %s", call.request_id, error.kind.value)
            yield sse(error.to_response())
            yield sse("[DONE]")
        finally:
            if not committed:
                call.fail()
                self.ledger.release(reservation)
                logger.info("[%s] chat stream reservation released (%s)", call.request_id, call.state.value)
