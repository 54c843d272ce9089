"""Logical model id -> concrete upstream model."""
import logging
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Sequence

logger = logging.getLogger(__name__)

# Explicit aliases for ids clients are known to send
MODEL_ALIASES: Dict[str, str] = {
    "gpt-5.1": "gpt-4o",
    "gpt-5.1-mini": "gpt-4o-mini",
    "gpt-5": "gpt-4o",
    "gpt-5-mini": "gpt-4o-mini",
    "gpt-4o": "gpt-4o",
    "gpt-4o-mini": "gpt-4o-mini",
}

# Tried in order when the mapped model is not available upstream
FALLBACK_PRIORITY: Sequence[str] = (
    "gpt-4o-mini",
    "gpt-4o",
    "gpt-4-turbo",
    "gpt-4",
    "gpt-3.5-turbo",
    "gpt-4o-2024-08-06",
    "gpt-4o-mini-2024-07-18",
)

_EXCLUDED_VARIANTS = ("instruct", "embedding", "vision")


class WrongProviderError(ValueError):
    """The logical id does not belong to the configured provider's family."""


class ModelConfigurationError(RuntimeError):
    """No usable chat model is available upstream."""


@dataclass(frozen=True)
class ResolvedCall:
    request_id: str
    requested_model: str
    mapped_model: str
    resolved_model: str
    used_fallback: bool = False
    fallback_reason: Optional[str] = None


class ModelResolver:
    """Deterministic two-step resolution: family mapping, then availability fallback."""

    def __init__(self, default_model: str = "gpt-4o", family_prefixes: Iterable[str] = ("synexa-gpt", "family-gpt")):
        self.default_model = default_model
        self.family_prefixes = tuple(p.lower() for p in family_prefixes if p)

    def map_model(self, logical_model_id: str) -> str:
        """Map a logical id to the canonical configured model, without looking at availability."""
        model_id = (logical_model_id or "").strip().lower()
        if not model_id:
            raise WrongProviderError("Model id is empty")
        if any(model_id.startswith(prefix) for prefix in self.family_prefixes):
            return self.default_model
        if model_id in MODEL_ALIASES:
            return MODEL_ALIASES[model_id]
        if model_id.startswith("gpt-"):
            return model_id
        raise WrongProviderError(
            f'Model "{logical_model_id}" is not an OpenAI model. Use appropriate provider.'
        )

    @staticmethod
    def pick_fallback(available: Sequence[str]) -> str:
        available_set = set(available)
        for candidate in FALLBACK_PRIORITY:
            if candidate in available_set:
                return candidate
        usable: List[str] = [
            m for m in available_set
            if m.startswith("gpt-") and not any(v in m for v in _EXCLUDED_VARIANTS)
        ]
        if not usable:
            raise ModelConfigurationError(
                "No suitable chat model found in available models. Check the upstream account's model access."
            )
        # Longer names are usually more specific; ties broken alphabetically
        usable.sort(key=lambda m: (-len(m), m))
        return usable[0]

    def resolve(
        self,
        logical_model_id: str,
        available: Optional[Sequence[str]],
        request_id: str = "",
    ) -> ResolvedCall:
        """Resolve ``logical_model_id`` against ``available`` upstream models.

        ``available=None`` means availability is unknown (listing never
        succeeded, or demo mode); the mapped model is then used as-is.
        """
        mapped = self.map_model(logical_model_id)
        if available is None or mapped in available:
            return ResolvedCall(
                request_id=request_id,
                requested_model=logical_model_id,
                mapped_model=mapped,
                resolved_model=mapped,
            )
        fallback = self.pick_fallback(available)
        reason = f'Requested model "{mapped}" not found in available models. Using fallback: "{fallback}"'
        logger.warning("[%s] %s (requested %s)", request_id, reason, logical_model_id)
        return ResolvedCall(
            request_id=request_id,
            requested_model=logical_model_id,
            mapped_model=mapped,
            resolved_model=fallback,
            used_fallback=True,
            fallback_reason=reason,
        )
