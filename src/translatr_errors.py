"""Error taxonomy for the Translatr service and the classifier for failed responses."""
import json
import re
from typing import Any, Dict, Optional


class TranslatrApiError(Exception):
    """
    A failure talking to the translation service.

    ``user_message`` is short and safe to display unconditionally.
    ``debug_message`` may contain raw response content and is only meant for
    debug-level logging.
    """
    default_user_message = "Translation failed: request was rejected. Please check your configuration and retry."

    def __init__(self, user_message: Optional[str] = None, debug_message: Optional[str] = None):
        self.user_message = user_message or self.default_user_message
        self.debug_message = debug_message
        super().__init__(self.user_message)


class InvalidCredential(TranslatrApiError):
    default_user_message = "Translation failed: invalid API key. Check TRANSLATR_API_KEY and retry."


class InsufficientCredits(TranslatrApiError):
    default_user_message = ("Translation failed: your Translatr credits are exhausted. "
                            "Add credits in the dashboard and retry.")


class ResourceNotFound(TranslatrApiError):
    default_user_message = "Translation failed: project not found. Verify the API key and project configuration."


class RateLimited(TranslatrApiError):
    default_user_message = "Translation failed: rate limit exceeded. Please retry in a moment."


class ServerError(TranslatrApiError):
    default_user_message = "Translation failed: server error. Please retry in a moment."


class RequestRejected(TranslatrApiError):
    pass


class ActivityTimeout(TranslatrApiError):
    default_user_message = "Translation job timed out (no progress from the server)."


class MalformedResponse(TranslatrApiError):
    default_user_message = "Translation failed: the server returned an unexpected response. Please retry in a moment."


class TransientNetworkFailure(TranslatrApiError):
    default_user_message = "Translation failed: could not reach the translation service."


_CREDIT_MARKERS = ("credit balance is too low", "insufficient credit", "insufficient funds")
_RATE_LIMIT_MARKERS = ("rate_limit", "rate limit")

# Provider errors are sometimes forwarded as "<status> {json}".
_STATUS_PREFIXED_JSON = re.compile(r'^\s*\d{3}\s+(\{.*\})\s*$', re.DOTALL)


def _parse_api_error(body: Optional[str]) -> Optional[Dict[str, Any]]:
    if not body or not body.strip():
        return None
    try:
        parsed = json.loads(body)
    except json.JSONDecodeError:
        return None
    return parsed if isinstance(parsed, dict) else None


def extract_provider_error_message(message: Optional[str]) -> Optional[str]:
    """
    Pull the nested message out of a provider error envelope.

    ``{"type": "error", "error": {"type": "...", "message": "..."}}`` either on
    its own or prefixed by an HTTP status code.
    """
    trimmed = (message or "").strip()
    if not trimmed:
        return None

    if trimmed.startswith("{"):
        payload = trimmed
    else:
        match = _STATUS_PREFIXED_JSON.match(trimmed)
        if not match:
            return None
        payload = match.group(1)

    try:
        envelope = json.loads(payload)
    except json.JSONDecodeError:
        return None
    if not isinstance(envelope, dict) or not isinstance(envelope.get("error"), dict):
        return None
    nested = envelope["error"].get("message")
    return nested if isinstance(nested, str) else None


def build_debug_message(status_code: int, reason: str, body: Optional[str]) -> str:
    debug_message = f"HTTP {status_code} {reason}".rstrip()
    if body and body.strip():
        debug_message += f" | {body.strip()}"
    return debug_message


def classify_message(combined_message: str) -> Optional[type]:
    """Classify by message alone. Returns None when the message is not conclusive."""
    if any(marker in combined_message for marker in _CREDIT_MARKERS):
        return InsufficientCredits
    if "api key" in combined_message:
        return InvalidCredential
    if any(marker in combined_message for marker in _RATE_LIMIT_MARKERS):
        return RateLimited
    return None


def classify_error_response(status_code: int, reason: str, body: Optional[str]) -> TranslatrApiError:
    """
    Turn a non-2xx response into one of the taxonomy errors.

    Precedence: insufficient credits, invalid credential, not found, rate
    limited, server error, then a generic rejection.

    Args:
        status_code (int): The HTTP status code.
        reason (str): The HTTP reason phrase.
        body (Optional[str]): The raw response body.

    Returns:
        TranslatrApiError: The classified error, with the raw status and body
        kept only in its debug message.
    """
    api_error = _parse_api_error(body)
    api_message = api_error.get("message") if api_error else None
    if not isinstance(api_message, str):
        api_message = None
    provider_message = extract_provider_error_message(api_message)

    combined_message = " ".join(m for m in (api_message, provider_message) if m).lower()

    if any(marker in combined_message for marker in _CREDIT_MARKERS):
        error_class = InsufficientCredits
    elif status_code in (401, 403) or "api key" in combined_message:
        error_class = InvalidCredential
    elif status_code == 404:
        error_class = ResourceNotFound
    elif status_code == 429 or any(marker in combined_message for marker in _RATE_LIMIT_MARKERS):
        error_class = RateLimited
    elif status_code >= 500:
        error_class = ServerError
    else:
        error_class = RequestRejected

    return error_class(debug_message=build_debug_message(status_code, reason, body))
