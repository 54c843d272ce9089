"""Prompt construction for chat, image and video-script calls."""
from typing import List, Optional

from synexa_gateway.schemas import ChatMessage

BASE_SYSTEM_PROMPT = """You are Synexa, a helpful bilingual AI assistant. You support Turkish and English.

Rules:
- If the user writes in Turkish, always answer in natural Turkish.
- If the user writes in English, answer in natural English.
- If the user mixes both languages, answer in the language that makes the most sense, and keep their intent clear.
- If the user explicitly asks for translation (e.g. 'çevir', 'translate', 'Türkçeye çevir', 'translate this to English'), then perform a high-quality translation instead of a normal answer.
- When translating, do NOT add explanations unless the user asks. Just give the translated text.
- If the user asks 'fix my English' or 'düzelt', rewrite and improve the text instead of answering the content."""

_LANGUAGE_HINTS = {
    "tr": "User preferred language: Turkish. When you answer normal questions, answer in Turkish.",
    "en": "User preferred language: English. When you answer normal questions, answer in English.",
}

_TRANSLATION_PROMPTS = {
    "to-tr": "Translate the following text to Turkish. Do not add explanations. Just return the translated text.\n\nText to translate: {text}",
    "to-en": "Translate the following text to English. Do not add explanations. Just return the translated text.\n\nText to translate: {text}",
    "fix-en": "Improve and correct the following English text. Return only the improved text without explanations.\n\nText to improve: {text}",
}

IMAGE_STYLES = {
    "realistic": "photorealistic, high quality, detailed",
    "anime": "anime style, vibrant colors, Japanese animation style",
    "3d": "3D rendered, modern 3D graphics, high detail",
    "illustration": "digital illustration, artistic, stylized",
}

IMAGE_SIZES = {
    "square": "1024x1024",
    "portrait": "1024x1792",
    "landscape": "1792x1024",
}


def last_user_text(messages: List[ChatMessage]) -> str:
    for message in reversed(messages):
        if message.role == "user":
            return message.content
    return ""


def build_chat_messages(
    messages: List[ChatMessage],
    language_preference: str = "auto",
    translation_mode: str = "none",
    workspace_name: Optional[str] = None,
) -> List[ChatMessage]:
    """Prepend the system prompt; client-supplied system messages are dropped."""
    if translation_mode in _TRANSLATION_PROMPTS:
        system_prompt = _TRANSLATION_PROMPTS[translation_mode].format(text=last_user_text(messages))
    else:
        system_prompt = BASE_SYSTEM_PROMPT
        if language_preference in _LANGUAGE_HINTS:
            system_prompt += "\n\n" + _LANGUAGE_HINTS[language_preference]
        if workspace_name:
            system_prompt += f"\n\nThe user is working in the workspace \"{workspace_name}\"."
    return [ChatMessage(role="system", content=system_prompt)] + [m for m in messages if m.role != "system"]


def build_image_prompt(prompt: str, style: str) -> str:
    return f"{prompt}, {IMAGE_STYLES.get(style, style)}"


def image_size(size: str) -> str:
    return IMAGE_SIZES.get(size, IMAGE_SIZES["square"])


def build_video_script_messages(prompt: str, length: str, video_format: str) -> List[ChatMessage]:
    shape = "Vertical (9:16)" if video_format == "portrait" else "Square (1:1)"
    system_prompt = f"""You are a professional video script writer. Generate a detailed script for a {length} {video_format} format video.

Requirements:
- Duration: {length}
- Format: {shape}
- Structure: Clear scenes with visual descriptions and text overlays
- Engaging and concise
- Include timing suggestions for each scene

Generate the script in a structured format with:
1. Title
2. Scene breakdowns
3. Visual descriptions
4. Text overlays
5. Transitions
6. Call to action"""
    return [
        ChatMessage(role="system", content=system_prompt),
        ChatMessage(role="user", content=f"Create a video script for: {prompt}"),
    ]
