"""Synthetic outputs served in demo mode.

Every payload here is flagged ``is_demo`` by the gateway; none of it comes
from a model.
"""
from typing import Dict, List
from urllib.parse import quote

from synexa_gateway.prompts import last_user_text
from synexa_gateway.schemas import ChatMessage

SAMPLE_VIDEO_URL = "https://commondatastorage.googleapis.com/gtv-videos-bucket/sample/BigBuckBunny.mp4"

_DEMO_CHAT_TEXT = (
    "Bu, sunucu DEMO modunda olduğu için dönen geçici bir Synexa cevabıdır. "
    "Gerçek AI entegrasyonu için AI_PROVIDER ve ilgili API anahtarları yapılandırılmalıdır."
)

_DEMO_TRANSLATIONS = {
    "to-tr": (
        "[DEMO - Türkçe Çeviri]\n\n{text}\n\n→ Bu metin Türkçeye çevrilmiş halidir. "
        "Gerçek API entegrasyonu yapıldığında doğru çeviri gösterilecektir."
    ),
    "to-en": (
        "[DEMO - English Translation]\n\n{text}\n\n→ This is the English translation of the text. "
        "The actual translation will be shown when the API is integrated."
    ),
    "fix-en": (
        "[DEMO - Improved English]\n\n{text}\n\n→ This is an improved version of your English text. "
        "The actual improvement will be shown when the API is integrated."
    ),
}

_DEMO_SCRIPT = """[DEMO VIDEO SCRIPT]

Title: {prompt}

Duration: {length}
Format: {format}

Scene 1:
- Opening shot: [Describe based on prompt]
- Visual: [Key visual elements]
- Text overlay: [Main message]

Scene 2:
- Transition: [Transition type]
- Visual: [Secondary elements]
- Text overlay: [Supporting message]

Closing:
- Call to action: [CTA based on prompt]

Note: This is a demo script. Real AI-generated scripts will be available when the provider is configured."""


def placeholder_image_url(text: str, color: str = "22C55E") -> str:
    return f"https://placehold.co/512x512/{color}/FFFFFF?text={quote(text[:20], safe='')}"


def demo_chat_text(messages: List[ChatMessage], translation_mode: str = "none") -> str:
    template = _DEMO_TRANSLATIONS.get(translation_mode)
    if template:
        return template.format(text=last_user_text(messages))
    return _DEMO_CHAT_TEXT


def demo_image(prompt: str) -> Dict[str, str]:
    url = placeholder_image_url(prompt)
    return {"url": url, "thumbnailUrl": url}


def demo_video_script(prompt: str, length: str, video_format: str) -> str:
    return _DEMO_SCRIPT.format(prompt=prompt, length=length, format=video_format)


def video_output(script: str, prompt: str) -> Dict[str, str]:
    """Video payload; the video itself is always the sample clip."""
    return {
        "script": script,
        "videoUrl": SAMPLE_VIDEO_URL,
        "thumbnailUrl": placeholder_image_url(prompt, color="8B5CF6"),
    }
