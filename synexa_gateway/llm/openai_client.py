"""OpenAI client implementation."""
from typing import AsyncIterator, List, Optional, Union
from openai import AsyncOpenAI
from synexa_gateway.schemas import ChatMessage
from synexa_gateway.llm.base import LLMClient
import logging
import json

# Configure logging
logger = logging.getLogger(__name__)

_BOX_WIDTH = 78


def _log_box(title: str, lines: List[str]) -> None:
    """Pretty print a block of debug lines inside a box."""
    if not logger.isEnabledFor(logging.DEBUG):
        return
    logger.debug("\n" + "╔" + "═" * _BOX_WIDTH + "╗")
    logger.debug("║ " + title.center(_BOX_WIDTH - 1) + "║")
    logger.debug("╠" + "═" * _BOX_WIDTH + "╣")
    for line in lines:
        # Truncate very long lines
        if len(line) > _BOX_WIDTH - 4:
            line = line[:_BOX_WIDTH - 7] + "..."
        logger.debug("║ " + line.ljust(_BOX_WIDTH - 1) + "║")
    logger.debug("╚" + "═" * _BOX_WIDTH + "╝\n")


class OpenAIClient(LLMClient):
    """OpenAI (or OpenAI-compatible) API client implementation."""

    def __init__(self, api_key: str, base_url: Optional[str] = None, project: Optional[str] = None):
        # Retries are decided by the caller, never by the SDK
        self.client = AsyncOpenAI(api_key=api_key, base_url=base_url, project=project, max_retries=0)

    async def chat(
        self,
        messages: List[ChatMessage],
        model: str,
        temperature: float,
        stream: bool = False,
        max_tokens: Optional[int] = None,
    ) -> Union[AsyncIterator[str], str]:
        """
        Send chat request to OpenAI API.

        Args:
            messages: List of chat messages
            model: Model name (e.g., "gpt-4o-mini")
            temperature: Temperature setting
            stream: Whether to stream the response
            max_tokens: Upper bound on generated tokens

        Returns:
            If stream=True: AsyncIterator of response chunks
            If stream=False: Complete response string
        """
        # Convert Pydantic models to OpenAI format
        openai_messages = [
            {"role": msg.role, "content": msg.content}
            for msg in messages
        ]

        if logger.isEnabledFor(logging.DEBUG):
            json_lines = json.dumps(openai_messages, indent=2, ensure_ascii=False).split("\n")
            _log_box(
                "RAW API CALL",
                [
                    "Endpoint: chat.completions.create",
                    f"Model: {model}",
                    f"Temperature: {temperature}",
                    f"Stream: {stream}",
                    "Messages:",
                ] + [f"   │ {line}" for line in json_lines],
            )

        if stream:
            return self._stream_chat(openai_messages, model, temperature, max_tokens)
        else:
            return await self._non_stream_chat(openai_messages, model, temperature, max_tokens)

    async def _stream_chat(
        self,
        messages: List[dict],
        model: str,
        temperature: float,
        max_tokens: Optional[int],
    ) -> AsyncIterator[str]:
        """Handle streaming chat responses."""
        stream = await self.client.chat.completions.create(
            model=model,
            messages=messages,
            temperature=temperature,
            max_tokens=max_tokens,
            stream=True
        )

        async for chunk in stream:
            if chunk.choices and chunk.choices[0].delta.content is not None:
                yield chunk.choices[0].delta.content

    async def _non_stream_chat(
        self,
        messages: List[dict],
        model: str,
        temperature: float,
        max_tokens: Optional[int],
    ) -> str:
        """Handle non-streaming chat responses."""
        response = await self.client.chat.completions.create(
            model=model,
            messages=messages,
            temperature=temperature,
            max_tokens=max_tokens,
            stream=False
        )

        content = (response.choices[0].message.content or "") if response.choices else ""

        lines = [
            f"Response ID: {response.id}",
            f"Model: {response.model}",
        ]
        if getattr(response, "usage", None):
            lines.append(
                f"Tokens: prompt={response.usage.prompt_tokens:,} "
                f"completion={response.usage.completion_tokens:,} total={response.usage.total_tokens:,}"
            )
        lines.append(f"Content length: {len(content)} chars")
        _log_box("RAW API RESPONSE", lines)

        return content

    async def generate_image(self, prompt: str, model: str, size: str) -> str:
        _log_box("RAW IMAGE CALL", [f"Model: {model}", f"Size: {size}", f"Prompt: {prompt}"])
        response = await self.client.images.generate(
            model=model,
            prompt=prompt,
            n=1,
            size=size,
            quality="standard",
            response_format="url",
        )
        if not response.data:
            return ""
        return response.data[0].url or ""

    async def list_models(self) -> List[str]:
        page = await self.client.models.list()
        return [m.id for m in page.data]
