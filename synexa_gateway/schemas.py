"""Pydantic models for request validation."""
from typing import List, Literal, Optional
from pydantic import BaseModel, ConfigDict, Field, field_validator


class _CamelModel(BaseModel):
    """Accepts both camelCase (wire) and snake_case (Python) field names."""

    model_config = ConfigDict(populate_by_name=True)


# AI Chat Models
class ChatMessage(BaseModel):
    """Chat message model."""
    role: Literal["user", "system", "assistant"]
    content: str = Field(min_length=1)


class ChatRequest(_CamelModel):
    """Chat request model."""
    messages: List[ChatMessage] = Field(min_length=1)
    model_id: str = Field("synexa-gpt-5.1", alias="modelId")
    workspace_id: Optional[str] = Field(None, alias="workspaceId")
    language_preference: Literal["auto", "tr", "en"] = Field("auto", alias="languagePreference")
    translation_mode: Literal["none", "to-tr", "to-en", "fix-en"] = Field("none", alias="translationMode")
    stream: bool = False


# Image Models
class ImageRequest(_CamelModel):
    """Image generation request model."""
    prompt: str = Field(min_length=1, max_length=4000)
    style: Literal["realistic", "anime", "3d", "illustration"] = "realistic"
    size: Literal["square", "portrait", "landscape"] = "square"
    model_id: str = Field("dall-e-3", alias="modelId")


# Video Models
class VideoRequest(_CamelModel):
    """Video script request model."""
    prompt: str = Field(min_length=1, max_length=1000)
    length: Literal["15s", "30s"] = "15s"
    format: Literal["portrait", "square"] = "portrait"
    model_id: str = Field("synexa-gpt-5.1", alias="modelId")

    @field_validator("prompt")
    @classmethod
    def prompt_not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("prompt must not be blank")
        return value
