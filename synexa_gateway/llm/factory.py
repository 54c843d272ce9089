"""Factory to create LLM client instances based on configuration."""
import logging
from typing import Optional

from synexa_gateway.config import Settings
from synexa_gateway.llm.base import LLMClient
from synexa_gateway.llm.openai_client import OpenAIClient

logger = logging.getLogger(__name__)


def create_llm_client(settings: Settings) -> Optional[LLMClient]:
    """
    Create the LLM client for the configured provider.

    Returns:
        LLMClient instance based on AI_PROVIDER, or None when no provider is
        configured (demo mode)
    """
    if not settings.provider_configured:
        logger.warning("AI provider not configured (AI_PROVIDER=%s); running in demo mode", settings.ai_provider)
        return None

    provider = settings.ai_provider.lower()
    if provider == "openai":
        return OpenAIClient(api_key=settings.openai_api_key, project=settings.openai_project_id)
    elif provider == "custom":
        if not settings.ai_base_url:
            raise ValueError("AI_PROVIDER=custom requires AI_BASE_URL")
        return OpenAIClient(api_key=settings.openai_api_key, base_url=settings.ai_base_url)
    else:
        raise ValueError(f"Unknown AI provider: {provider}")
