"""Upstream error classification.

Every failure that reaches a client is expressed with the small vocabulary
defined here: an ``ErrorKind`` (what went wrong), an ``ErrorCategory`` (how the
UI should present it) and a ``StructuredError`` that carries both together with
the request id. Provider-specific exceptions are converted exactly once, at the
provider boundary, through :func:`classify` / :func:`classify_exception`.
"""
import asyncio
import re
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, FrozenSet, Optional, Tuple

import httpx
import openai
from pydantic import BaseModel, ConfigDict


class ErrorKind(str, Enum):
    AUTH = "AUTH"
    ACCOUNT = "ACCOUNT"
    MODEL = "MODEL"
    QUOTA = "QUOTA"
    RATE_LIMIT = "RATE_LIMIT"
    BAD_REQUEST = "BAD_REQUEST"
    SERVER = "SERVER"
    TIMEOUT = "TIMEOUT"
    UNKNOWN = "UNKNOWN"


class ErrorCategory(str, Enum):
    AUTH_ERROR = "AUTH_ERROR"
    ACCOUNT_ERROR = "ACCOUNT_ERROR"
    MODEL_ERROR = "MODEL_ERROR"
    LIMIT_ERROR = "LIMIT_ERROR"
    SERVER_ERROR = "SERVER_ERROR"
    UNKNOWN_ERROR = "UNKNOWN_ERROR"


KIND_CATEGORY: Dict[ErrorKind, ErrorCategory] = {
    ErrorKind.AUTH: ErrorCategory.AUTH_ERROR,
    ErrorKind.ACCOUNT: ErrorCategory.ACCOUNT_ERROR,
    ErrorKind.MODEL: ErrorCategory.MODEL_ERROR,
    ErrorKind.QUOTA: ErrorCategory.LIMIT_ERROR,
    ErrorKind.RATE_LIMIT: ErrorCategory.LIMIT_ERROR,
    ErrorKind.SERVER: ErrorCategory.SERVER_ERROR,
    ErrorKind.TIMEOUT: ErrorCategory.SERVER_ERROR,
    ErrorKind.BAD_REQUEST: ErrorCategory.UNKNOWN_ERROR,
    ErrorKind.UNKNOWN: ErrorCategory.UNKNOWN_ERROR,
}

# HTTP status returned to our own clients for each kind
KIND_RESPONSE_STATUS: Dict[ErrorKind, int] = {
    ErrorKind.AUTH: 401,
    ErrorKind.ACCOUNT: 403,
    ErrorKind.MODEL: 403,
    ErrorKind.QUOTA: 429,
    ErrorKind.RATE_LIMIT: 429,
    ErrorKind.TIMEOUT: 504,
    ErrorKind.BAD_REQUEST: 400,
    ErrorKind.SERVER: 500,
    ErrorKind.UNKNOWN: 500,
}

RETRYABLE_KINDS = frozenset({ErrorKind.RATE_LIMIT, ErrorKind.SERVER, ErrorKind.TIMEOUT})

# Fixed user-facing copy. Kinds listed in _USE_PROVIDER_MESSAGE prefer the
# (redacted) provider message when one is available.
_DEFAULT_MESSAGES: Dict[ErrorKind, str] = {
    ErrorKind.AUTH: (
        "The AI provider rejected the request due to authentication failure. "
        "Please check API key and project configuration."
    ),
    ErrorKind.ACCOUNT: (
        "Your AI provider account has been deactivated or has billing issues. "
        "Please check your account status and payment method."
    ),
    ErrorKind.MODEL: (
        "Model access denied or model not found. "
        "Please check if the model is available and you have access to it."
    ),
    ErrorKind.QUOTA: "Insufficient quota or credits with the AI provider. Please check your account balance.",
    ErrorKind.RATE_LIMIT: "Rate limit exceeded. Please try again in a few moments.",
    ErrorKind.BAD_REQUEST: "Invalid request to AI provider. Please check your input.",
    ErrorKind.SERVER: "The AI provider is experiencing issues. Please try again later.",
    ErrorKind.TIMEOUT: "The AI provider did not respond in time. Please try again.",
    ErrorKind.UNKNOWN: "An unknown error occurred with the AI provider.",
}
_USE_PROVIDER_MESSAGE = frozenset({ErrorKind.ACCOUNT, ErrorKind.MODEL, ErrorKind.BAD_REQUEST, ErrorKind.UNKNOWN})


class StructuredError(BaseModel):
    """Provider-agnostic description of a failed upstream call."""

    model_config = ConfigDict(frozen=True)

    kind: ErrorKind
    message: str
    request_id: str
    category: ErrorCategory
    http_status: Optional[int] = None  # upstream status, when there was one
    provider_code: Optional[str] = None
    provider_type: Optional[str] = None

    @property
    def retryable(self) -> bool:
        return self.kind in RETRYABLE_KINDS

    @property
    def response_status(self) -> int:
        return KIND_RESPONSE_STATUS[self.kind]

    def to_response(self) -> Dict[str, Any]:
        return {
            "error": {
                "type": self.kind.value,
                "message": self.message,
                "requestId": self.request_id,
                "category": self.category.value,
            }
        }


class ProviderError(Exception):
    """Raised by the provider gateway; always carries a StructuredError."""

    def __init__(self, error: StructuredError):
        super().__init__(error.message)
        self.error = error


# ---------------------------------------------------------------------------
# Secret redaction
# ---------------------------------------------------------------------------

SENSITIVE_KEYS = frozenset({"api_key", "apikey", "key", "secret", "token", "authorization", "password"})
REDACTED = "[REDACTED]"

_SECRET_PATTERNS = [
    re.compile(r"sk-[A-Za-z0-9_\-*]{6,}"),
    re.compile(r"(?i)bearer\s+[A-Za-z0-9._\-]+"),
    re.compile(r"(?i)\b(api[_-]?key|key|secret|token|authorization|password)\b(\s*[:=]\s*)([^\s,;&]+)"),
]


def redact_secrets(text: Optional[str]) -> Optional[str]:
    """Mask anything that looks like a credential inside free text."""
    if not text:
        return text
    text = _SECRET_PATTERNS[0].sub(REDACTED, text)
    text = _SECRET_PATTERNS[1].sub("Bearer " + REDACTED, text)
    return _SECRET_PATTERNS[2].sub(lambda m: f"{m.group(1)}{m.group(2)}{REDACTED}", text)


def mask_api_key(api_key: Optional[str]) -> str:
    if not api_key:
        return "[NOT SET]"
    if len(api_key) < 10:
        return "[INVALID]"
    return f"{api_key[:7]}...{api_key[-4:]}"


def mask_project_id(project_id: Optional[str]) -> str:
    if not project_id:
        return "[NOT SET]"
    if len(project_id) < 15:
        return project_id
    return f"{project_id[:10]}...{project_id[-4:]}"


def sanitize_error_data(data: Any) -> Any:
    """Return a copy of ``data`` with sensitive keys redacted, for logging."""
    if isinstance(data, dict):
        return {
            k: (REDACTED if str(k).lower() in SENSITIVE_KEYS and v else sanitize_error_data(v))
            for k, v in data.items()
        }
    if isinstance(data, list):
        return [sanitize_error_data(item) for item in data]
    if isinstance(data, str):
        return redact_secrets(data)
    return data


# ---------------------------------------------------------------------------
# Classification rules
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Rule:
    """One row of the decision table.

    A rule applies when the status is in ``statuses`` and, if ``codes`` or
    ``keywords`` are given, the provider code/type is one of ``codes`` or the
    lower-cased message contains one of ``keywords``.
    """

    statuses: FrozenSet[int]
    kind: ErrorKind
    codes: FrozenSet[str] = frozenset()
    keywords: Tuple[str, ...] = ()

    def matches(self, status: int, code: str, type_: str, message: str) -> bool:
        if status not in self.statuses:
            return False
        if not self.codes and not self.keywords:
            return True
        if code in self.codes or type_ in self.codes:
            return True
        return any(word in message for word in self.keywords)


_ACCOUNT_CODES = frozenset({"account_deactivated", "billing_not_active", "access_terminated"})
_MODEL_CODES = frozenset({"model_not_found", "permission_denied"})
_SERVER_STATUSES = frozenset(range(500, 600))

RULES: Tuple[Rule, ...] = (
    Rule(frozenset({401}), ErrorKind.ACCOUNT, _ACCOUNT_CODES, ("account", "billing", "deactivated", "payment")),
    Rule(frozenset({401}), ErrorKind.MODEL, _MODEL_CODES, ("model", "access")),
    Rule(frozenset({401}), ErrorKind.AUTH),
    Rule(frozenset({403}), ErrorKind.MODEL, _MODEL_CODES, ("model", "permission")),
    Rule(frozenset({403}), ErrorKind.AUTH),
    Rule(frozenset({404}), ErrorKind.MODEL, frozenset({"model_not_found"}), ("model", "not found")),
    Rule(frozenset({404}), ErrorKind.BAD_REQUEST),
    Rule(frozenset({429}), ErrorKind.QUOTA, frozenset({"insufficient_quota"}), ("quota", "insufficient")),
    Rule(frozenset({429}), ErrorKind.RATE_LIMIT),
    Rule(frozenset({400}), ErrorKind.BAD_REQUEST),
    Rule(_SERVER_STATUSES, ErrorKind.SERVER),
)


def classify_kind(
    http_status: Optional[int],
    provider_code: Optional[str] = None,
    provider_type: Optional[str] = None,
    message: Optional[str] = None,
    timed_out: bool = False,
) -> ErrorKind:
    if timed_out:
        return ErrorKind.TIMEOUT
    try:
        status = int(http_status) if http_status is not None else None
    except (TypeError, ValueError):
        status = None
    if status is None:
        return ErrorKind.UNKNOWN
    code = (provider_code or "").lower()
    type_ = (provider_type or "").lower()
    text = (message or "").lower()
    for rule in RULES:
        if rule.matches(status, code, type_, text):
            return rule.kind
    return ErrorKind.UNKNOWN


def build_error(
    kind: ErrorKind,
    request_id: str,
    message: Optional[str] = None,
    http_status: Optional[int] = None,
    provider_code: Optional[str] = None,
    provider_type: Optional[str] = None,
) -> StructuredError:
    """Assemble a StructuredError, choosing the user-facing message for ``kind``."""
    provider_message = redact_secrets(message)
    if kind in _USE_PROVIDER_MESSAGE and provider_message:
        text = provider_message
    else:
        text = _DEFAULT_MESSAGES[kind]
    return StructuredError(
        kind=kind,
        message=text,
        request_id=request_id,
        category=KIND_CATEGORY[kind],
        http_status=http_status,
        provider_code=provider_code,
        provider_type=provider_type,
    )


def classify(
    http_status: Optional[int],
    provider_code: Optional[str] = None,
    provider_type: Optional[str] = None,
    message: Optional[str] = None,
    request_id: str = "",
    timed_out: bool = False,
) -> StructuredError:
    """Map an upstream failure to a StructuredError. Never raises."""
    kind = classify_kind(http_status, provider_code, provider_type, message, timed_out)
    status = http_status if isinstance(http_status, int) else None
    return build_error(kind, request_id, message, status, provider_code, provider_type)


def _error_body_fields(body: Any) -> Tuple[Optional[str], Optional[str], Optional[str]]:
    """Extract (code, type, message) from an OpenAI-style error body."""
    if not isinstance(body, dict):
        return None, None, None
    inner = body.get("error") if isinstance(body.get("error"), dict) else body
    code = inner.get("code")
    return (
        str(code) if code is not None else None,
        inner.get("type"),
        inner.get("message"),
    )


def classify_exception(exc: BaseException, request_id: str) -> StructuredError:
    """Classify an exception raised by the OpenAI SDK, httpx or asyncio."""
    if isinstance(exc, ProviderError):
        return exc.error
    if isinstance(exc, (asyncio.TimeoutError, openai.APITimeoutError, httpx.TimeoutException)):
        return classify(None, request_id=request_id, timed_out=True)
    if isinstance(exc, openai.APIStatusError):
        code, type_, message = _error_body_fields(exc.body)
        return classify(
            exc.status_code,
            provider_code=code or getattr(exc, "code", None),
            provider_type=type_ or getattr(exc, "type", None),
            message=message or exc.message,
            request_id=request_id,
        )
    if isinstance(exc, httpx.HTTPStatusError):
        try:
            body = exc.response.json()
        except ValueError:
            body = None
        code, type_, message = _error_body_fields(body)
        return classify(
            exc.response.status_code,
            provider_code=code,
            provider_type=type_,
            message=message or exc.response.text,
            request_id=request_id,
        )
    # Connection errors and anything unexpected carry no status
    return classify(None, message=str(exc) or None, request_id=request_id)


# Operator-facing hints, logged next to upstream failures
ERROR_HINTS: Dict[ErrorKind, str] = {
    ErrorKind.AUTH: "Check OPENAI_API_KEY and OPENAI_PROJECT_ID; the key must belong to the configured project.",
    ErrorKind.ACCOUNT: "The provider account is deactivated or has billing issues; check the provider dashboard.",
    ErrorKind.MODEL: "The key has no access to this model; adjust AI_DEFAULT_CHAT_MODEL or the project's model permissions.",
    ErrorKind.QUOTA: "The provider quota is exhausted; add credits or raise the usage limit.",
    ErrorKind.RATE_LIMIT: "The provider is rate limiting; lower traffic or request higher limits.",
    ErrorKind.BAD_REQUEST: "The provider rejected the request parameters; check model name and max tokens.",
    ErrorKind.SERVER: "The provider had an internal error; retry later.",
    ErrorKind.TIMEOUT: "The provider did not answer in time; retry or raise the AI_*_TIMEOUT_SECONDS setting.",
    ErrorKind.UNKNOWN: "Unrecognised provider failure; see the logged detail.",
}


def hint_for(kind: ErrorKind) -> str:
    return ERROR_HINTS[kind]
