"""Configuration management using environment variables."""
from pathlib import Path
from typing import List, Optional
from pydantic_settings import BaseSettings

from synexa_gateway.errors import mask_api_key, mask_project_id


# Get the directory where this config file is located
_CONFIG_DIR = Path(__file__).parent.parent
_ENV_FILE = _CONFIG_DIR / ".env"

# Values shipped in .env.example that mean "not configured"
PLACEHOLDER_API_KEYS = {"", "your_openai_api_key_here", "sk-your-key-here"}


def split_csv(value: Optional[str]) -> List[str]:
    """Split a comma-separated setting into a list of trimmed, non-empty items."""
    return [item.strip() for item in (value or "").split(",") if item and item.strip()]


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # AI Provider Configuration
    ai_provider: str = "openai"  # "none", "openai" or "custom" (OpenAI-compatible)
    ai_base_url: Optional[str] = None
    openai_api_key: Optional[str] = None
    openai_project_id: Optional[str] = None
    allow_demo_fallback: bool = False  # Opt-in: serve demo output when a configured provider fails

    # Models
    openai_model_chat: str = "gpt-4o-mini"  # Used when listing models is not possible
    ai_default_chat_model: str = "gpt-4o"  # Canonical target of the model families
    ai_default_logical_model: str = "synexa-gpt-5.1"  # Used when a client sends a foreign model id
    ai_image_model: str = "dall-e-3"
    model_family_prefixes: str = "synexa-gpt,family-gpt"
    openai_temperature: float = 0.7
    ai_max_tokens: int = 2048

    # Timeouts (seconds)
    ai_chat_timeout_seconds: float = 30.0
    ai_image_timeout_seconds: float = 60.0
    ai_video_timeout_seconds: float = 60.0
    ai_models_timeout_seconds: float = 10.0

    # Credits & limits
    initial_credits: int = 100
    credit_cost_chat: int = 1
    credit_cost_image: int = 10
    credit_cost_video: int = 50
    free_daily_chat_limit: int = 50
    free_daily_image_limit: int = 10
    free_daily_video_limit: int = 5
    low_credits_threshold: int = 20
    near_limit_ratio: float = 0.8
    ledger_hold_ttl_seconds: float = 300.0  # Unsettled holds are dropped after this

    # JWT Configuration
    jwt_secret: str = "change-me-in-production"
    jwt_algorithm: str = "HS256"
    jwt_access_token_expire_minutes: int = 60 * 24  # 24 hours

    # Rate Limiting
    rate_limit_requests_per_minute: int = 60

    # Sync
    sync_heartbeat_seconds: float = 30.0

    # Database
    database_url: str = "sqlite:///./synexa.db"

    # Server Configuration
    host: str = "0.0.0.0"
    port: int = 4000
    cors_allow_origins: str = "*"
    cors_allow_credentials: bool = False

    class Config:
        env_file = str(_ENV_FILE)
        env_file_encoding = "utf-8"
        case_sensitive = False

    @property
    def provider_configured(self) -> bool:
        """True when an upstream provider can actually be called."""
        if self.ai_provider.lower() == "none":
            return False
        key = (self.openai_api_key or "").strip()
        return key not in PLACEHOLDER_API_KEYS

    @property
    def provider_display_name(self) -> str:
        return "Synexa Cloud" if self.provider_configured else "Demo Mode"

    def runtime_summary(self) -> dict:
        """Masked view of the provider configuration, safe to log and serve."""
        return {
            "apiKeyMasked": mask_api_key(self.openai_api_key),
            "projectIdMasked": mask_project_id(self.openai_project_id),
            "baseUrl": self.ai_base_url or "https://api.openai.com/v1",
            "defaultModel": self.ai_default_chat_model,
            "defaultLogicalModel": self.ai_default_logical_model,
            "imageModel": self.ai_image_model,
        }

    @property
    def family_prefixes(self) -> List[str]:
        return split_csv(self.model_family_prefixes)

    @property
    def cors_origins(self) -> List[str]:
        return split_csv(self.cors_allow_origins)


settings = Settings()
