"""Error taxonomy for the Perplexity SSE client.

All errors carry a machine-readable code and serialize with to_dict() so the
CLI (and any wrapping service) can emit them as JSON. Nothing in this layer
retries; callers decide what to do with a failure.
"""

from typing import List, Optional


class PplxError(Exception):
    """Structured error with code and optional upstream status code."""

    def __init__(self, code: str, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.code = code
        self.status_code = status_code

    def to_dict(self) -> dict:
        return {
            "error": type(self).__name__,
            "code": self.code,
            "message": str(self),
            "status_code": self.status_code,
        }


class InvalidModelError(PplxError):
    """Requested model is not available for the chosen mode."""

    def __init__(self, mode: str, model: str, allowed: List[str]):
        listed = ", ".join(allowed) or "<none>"
        super().__init__(
            "invalid_model",
            f"Invalid model '{model}' for mode '{mode}'. Allowed: {listed}",
        )
        self.mode = mode
        self.model = model
        self.allowed = allowed


class UnknownModeError(PplxError):
    def __init__(self, mode: str, known: List[str]):
        super().__init__(
            "unknown_mode",
            f"Unknown mode '{mode}'. Known modes: {', '.join(known)}",
        )
        self.mode = mode
        self.known = known


class UnsupportedFeatureError(PplxError):
    def __init__(self, feature: str):
        super().__init__("unsupported_feature", f"{feature} is not supported by this client")
        self.feature = feature


class TransportStatusError(PplxError):
    """Backend answered with status >= 400. Body excerpt capped at 200 chars."""

    def __init__(self, status_code: int, body: str):
        excerpt = body[:200] if body else ""
        super().__init__(
            "transport_status",
            f"Request failed {status_code} - {excerpt or '(empty body)'}",
            status_code=status_code,
        )
        self.body_excerpt = excerpt


class CookieFormatError(PplxError):
    def __init__(self, message: str):
        super().__init__("cookie_format", message)


class ConfigError(PplxError):
    """Config value has the wrong key, type or shape."""

    def __init__(self, message: str):
        super().__init__("invalid_config", message)
