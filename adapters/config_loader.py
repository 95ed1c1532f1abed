"""Client configuration — YAML loading, env interpolation, deep merge, redaction.

Provides:
- DEFAULT_CONFIG layered under the user's .pplx.config.yaml
- {env:VAR} secret interpolation with allowlist enforcement (PPLX_* only)
- Deep merge for layered config
- Redaction for safe logging (never leak session cookies)
"""

from __future__ import annotations

import copy
import logging
import os
import re
from pathlib import Path
from typing import Any, Dict, Optional, Union

import yaml

logger = logging.getLogger("pplx.config_loader")

DEFAULT_CONFIG_PATH = ".pplx.config.yaml"
CONFIG_PATH_ENV = "PPLX_CONFIG"

# Redaction sentinel
REDACTED = "***REDACTED***"

DEFAULT_CONFIG: Dict[str, Any] = {
    "base_url": "https://www.perplexity.ai",
    "version": "2.18",
    "user_agent": "pplx-stream/0.1",
    "cookies": None,
    "cookies_file": None,
    "connect_timeout_ms": 5000,
    # None = no read timeout; a hung stream blocks until the server gives up
    "read_timeout_ms": None,
    "search": {
        "mode": "auto",
        "model": None,
        "sources": ["web"],
        "language": "en-US",
        "incognito": False,
    },
}

_ENV_ALLOWLIST = re.compile(r"^PPLX_")

_INTERP_RE = re.compile(r"\{env:([^}]+)\}")

_SENSITIVE_KEY_RE = re.compile(
    r"(cookie|auth|key|secret|token|password|credential|session)",
    re.IGNORECASE,
)


# ── Interpolation ─────────────────────────────────────────────────────


def interpolate_value(value: str) -> str:
    """Resolve {env:VAR_NAME} tokens in a string value."""

    def _replace(match: re.Match) -> str:
        var_name = match.group(1)
        if not _ENV_ALLOWLIST.search(var_name):
            raise ValueError(
                f"Environment variable '{var_name}' is not in the allowlist. Allowed: ^PPLX_.*"
            )
        val = os.environ.get(var_name)
        if val is None:
            raise ValueError(f"Environment variable '{var_name}' is not set")
        return val

    return _INTERP_RE.sub(_replace, value)


def interpolate_config(config: Dict[str, Any]) -> Dict[str, Any]:
    """Recursively interpolate string values. Returns a new dict."""
    result: Dict[str, Any] = {}
    for key, value in config.items():
        if isinstance(value, str):
            result[key] = interpolate_value(value)
        elif isinstance(value, dict):
            result[key] = interpolate_config(value)
        elif isinstance(value, list):
            result[key] = [
                interpolate_value(item) if isinstance(item, str) else item
                for item in value
            ]
        else:
            result[key] = value
    return result


# ── Deep merge ────────────────────────────────────────────────────────


def deep_merge(base: Dict[str, Any], overlay: Dict[str, Any]) -> Dict[str, Any]:
    """Deep merge overlay into base. Overlay values win.

    Returns a new dict (base and overlay are not modified).
    """
    result = copy.deepcopy(base)
    for key, value in overlay.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = deep_merge(result[key], value)
        else:
            result[key] = copy.deepcopy(value)
    return result


# ── Loading ───────────────────────────────────────────────────────────


def resolve_config_path(path: Optional[Union[str, Path]] = None) -> Path:
    return Path(path or os.environ.get(CONFIG_PATH_ENV) or DEFAULT_CONFIG_PATH)


def load_config(path: Optional[Union[str, Path]] = None) -> Dict[str, Any]:
    """Load layered config: DEFAULT_CONFIG ← YAML file, then interpolate.

    A missing file yields the defaults. A file that is not a YAML mapping
    raises ValueError.
    """
    config_path = resolve_config_path(path)
    overlay: Dict[str, Any] = {}

    if config_path.exists():
        with open(config_path) as f:
            loaded = yaml.safe_load(f)
        if loaded is None:
            loaded = {}
        if not isinstance(loaded, dict):
            raise ValueError(f"Config file {config_path} must contain a mapping")
        overlay = loaded
        logger.debug("Loaded config from %s", config_path)
    else:
        logger.debug("No config at %s, using defaults", config_path)

    config = interpolate_config(deep_merge(DEFAULT_CONFIG, overlay))
    logger.debug("Effective config: %s", redact_config(config))
    return config


# ── Redaction ─────────────────────────────────────────────────────────


def redact_config(config: Dict[str, Any]) -> Dict[str, Any]:
    """Create a redacted copy of config for display/logging."""
    result: Dict[str, Any] = {}
    for key, value in config.items():
        if _SENSITIVE_KEY_RE.search(key) and value is not None and not key.endswith("_file"):
            result[key] = REDACTED
        elif isinstance(value, dict):
            result[key] = redact_config(value)
        else:
            result[key] = value
    return result


def redact_headers(headers: Dict[str, str]) -> Dict[str, str]:
    """Return a copy of headers with sensitive values redacted."""
    return {
        key: REDACTED if _SENSITIVE_KEY_RE.search(key) else value
        for key, value in headers.items()
    }
