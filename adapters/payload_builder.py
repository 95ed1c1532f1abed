"""Request payload builder for the perplexity_ask endpoint.

Provides:
- Mode → model → model_preference compatibility table (immutable)
- Mode → backend mode tag mapping
- SearchConfig / FollowUp value types
- Payload construction with model validation before any network I/O
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence

from pplx_errors import InvalidModelError, UnknownModeError

logger = logging.getLogger("pplx.payload_builder")

DEFAULT_VERSION = "2.18"
DEFAULT_LANGUAGE = "en-US"
DEFAULT_SOURCES = ("web",)
REQUEST_SOURCE = "default"

# Mode → {model (None = mode default) → backend model_preference}
MODEL_PREFERENCES: Mapping[str, Mapping[Optional[str], str]] = MappingProxyType({
    "auto": MappingProxyType({
        None: "turbo",
    }),
    "pro": MappingProxyType({
        None: "pplx_pro",
        "sonar": "experimental",
        "gpt-4.5": "gpt45",
        "gpt-4o": "gpt4o",
        "claude 3.7 sonnet": "claude2",
        "gemini 2.0 flash": "gemini2flash",
        "grok-2": "grok",
    }),
    "reasoning": MappingProxyType({
        None: "pplx_reasoning",
        "r1": "r1",
        "o3-mini": "o3mini",
        "claude 3.7 sonnet": "claude37sonnetthinking",
        "gpt5": "gpt5",
        "gpt5_thinking": "gpt5thinking",
    }),
    "deep research": MappingProxyType({
        None: "pplx_alpha",
    }),
})

# Mode → backend mode tag; anything not listed is "copilot"
BACKEND_MODES: Mapping[str, str] = MappingProxyType({"auto": "concise"})
DEFAULT_BACKEND_MODE = "copilot"


@dataclass(frozen=True)
class FollowUp:
    """Link to a previous turn via its backend-issued uuid."""

    backend_uuid: Optional[str]
    attachments: Sequence[Any] = ()

    @classmethod
    def from_response(cls, message: Mapping[str, Any]) -> "FollowUp":
        """Build a follow-up from a decoded final message."""
        return cls(
            backend_uuid=message.get("backend_uuid"),
            attachments=tuple(message.get("attachments") or ()),
        )


@dataclass(frozen=True)
class SearchConfig:
    """Per-interaction configuration. Defaults match the web client."""

    mode: str = "auto"
    model: Optional[str] = None
    sources: Sequence[str] = DEFAULT_SOURCES
    attachments: Sequence[Any] = ()
    files: Mapping[str, Any] = field(default_factory=dict)
    language: str = DEFAULT_LANGUAGE
    follow_up: Optional[FollowUp] = None
    incognito: bool = False


def get_modes() -> List[str]:
    return list(MODEL_PREFERENCES.keys())


def _preferences_for(mode: str) -> Mapping[Optional[str], str]:
    try:
        return MODEL_PREFERENCES[mode]
    except KeyError:
        raise UnknownModeError(mode, get_modes()) from None


def get_available_models(mode: str = "auto") -> List[Optional[str]]:
    """Models accepted for a mode; None (the mode default) comes first."""
    return list(_preferences_for(mode).keys())


def resolve_model_preference(mode: str, model: Optional[str]) -> str:
    """Map a human-readable (mode, model) choice to the backend code.

    Raises UnknownModeError for an unrecognized mode and InvalidModelError
    when the model is not offered for the mode.
    """
    preferences = _preferences_for(mode)
    if model not in preferences:
        allowed = [m for m in preferences if m is not None]
        raise InvalidModelError(mode, model, allowed)
    return preferences[model]


def resolve_backend_mode(mode: str) -> str:
    _preferences_for(mode)
    return BACKEND_MODES.get(mode, DEFAULT_BACKEND_MODE)


def build_payload(
    query: str,
    config: Optional[SearchConfig] = None,
    version: str = DEFAULT_VERSION,
    uuid_factory: Callable[[], Any] = uuid.uuid4,
) -> Dict[str, Any]:
    """Build the JSON body for one ask request.

    Frontend uuids are fresh per call, follow-up or not.
    """
    config = config or SearchConfig()
    model_preference = resolve_model_preference(config.mode, config.model)

    follow_up = config.follow_up
    attachments = list(config.attachments)
    if follow_up is not None:
        attachments.extend(follow_up.attachments)

    params = {
        "attachments": attachments,
        "frontend_context_uuid": str(uuid_factory()),
        "frontend_uuid": str(uuid_factory()),
        "is_incognito": config.incognito,
        "language": config.language,
        "last_backend_uuid": follow_up.backend_uuid if follow_up is not None else None,
        "mode": resolve_backend_mode(config.mode),
        "model_preference": model_preference,
        "source": REQUEST_SOURCE,
        "sources": list(config.sources),
        "version": version,
    }

    logger.debug(
        "Built payload: mode=%s model_preference=%s follow_up=%s attachments=%d",
        params["mode"], model_preference, params["last_backend_uuid"], len(attachments),
    )

    return {"query_str": query, "params": params}
