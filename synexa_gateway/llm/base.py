"""Base abstract interface for LLM clients."""
from abc import ABC, abstractmethod
from typing import AsyncIterator, List, Optional, Union
from synexa_gateway.schemas import ChatMessage


class LLMClient(ABC):
    """Abstract base class for LLM clients."""

    @abstractmethod
    async def chat(
        self,
        messages: List[ChatMessage],
        model: str,
        temperature: float,
        stream: bool = False,
        max_tokens: Optional[int] = None,
    ) -> Union[AsyncIterator[str], str]:
        """
        Send a chat request to the LLM.

        Args:
            messages: List of chat messages
            model: Model name to use
            temperature: Temperature setting
            stream: Whether to stream the response
            max_tokens: Upper bound on generated tokens

        Returns:
            If stream=True: AsyncIterator of response chunks (strings)
            If stream=False: Complete response string
        """
        pass

    @abstractmethod
    async def generate_image(self, prompt: str, model: str, size: str) -> str:
        """Generate one image and return its URL."""
        pass

    @abstractmethod
    async def list_models(self) -> List[str]:
        """Ids of the models the credential can use."""
        pass
