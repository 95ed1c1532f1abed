"""Session cookie handling — the credential boundary of the client.

The client never acquires or refreshes credentials. It accepts a ready-made
cookie header string or a name → value mapping. This module turns the
cookie files people export from a browser into that mapping.

Accepted file shapes:
- [{"name": ..., "value": ...}, ...]
- {"cookies": {name: value, ...}}
- {"headers": {"Cookie": "a=1; b=2"}}
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Union

from pplx_errors import CookieFormatError

logger = logging.getLogger("pplx.cookie_store")

COOKIE_DOMAIN = "www.perplexity.ai"
DEFAULT_COOKIES_FILE = "perplexity_cookies.json"

Cookies = Union[str, Mapping[str, str]]


def format_cookie_header(cookies: Optional[Cookies]) -> Optional[str]:
    """Render cookies as a Cookie header value, or None when there are none."""
    if not cookies:
        return None
    if isinstance(cookies, str):
        return cookies
    return "; ".join(f"{name}={value}" for name, value in cookies.items())


def parse_cookie_header(header: str) -> List[Dict[str, str]]:
    cookies = []
    for pair in header.split(";"):
        pair = pair.strip()
        if not pair:
            continue
        name, sep, value = pair.partition("=")
        cookies.append({"name": name, "value": value if sep else "", "domain": COOKIE_DOMAIN})
    return cookies


def _is_cookie_list(data: Any) -> bool:
    return isinstance(data, list) and all(
        isinstance(c, dict) and isinstance(c.get("name"), str) and isinstance(c.get("value"), str)
        for c in data
    )


def normalize_cookies(data: Any) -> List[Dict[str, str]]:
    """Convert any accepted cookie file shape to a list of {name, value} dicts."""
    if _is_cookie_list(data):
        return data

    if isinstance(data, dict):
        mapping = data.get("cookies")
        if isinstance(mapping, dict):
            return [
                {"name": name, "value": str(value), "domain": COOKIE_DOMAIN}
                for name, value in mapping.items()
            ]

        headers = data.get("headers")
        if isinstance(headers, dict) and isinstance(headers.get("Cookie"), str):
            return parse_cookie_header(headers["Cookie"])

    raise CookieFormatError(
        "Unrecognized cookie file structure. Expected an array of {name, value}, "
        "an object with a `cookies` map, or headers.Cookie string."
    )


def load_cookies(path: Union[str, Path]) -> Dict[str, str]:
    """Read a cookie file and return a name → value mapping."""
    try:
        data = json.loads(Path(path).read_text(encoding="utf-8"))
    except FileNotFoundError:
        raise CookieFormatError(f"Cookie file not found: {path}") from None
    except json.JSONDecodeError as e:
        raise CookieFormatError(f"Invalid JSON in cookie file {path}: {e}") from None

    cookies: Dict[str, str] = {}
    for entry in normalize_cookies(data):
        if not entry["name"]:
            logger.warning("Skipping cookie without a name in %s", path)
            continue
        cookies[entry["name"]] = entry["value"]
    logger.debug("Loaded %d cookies from %s", len(cookies), path)
    return cookies


def write_cookies(path: Union[str, Path], cookies: List[Dict[str, str]]) -> None:
    Path(path).write_text(json.dumps(cookies, indent=2) + "\n", encoding="utf-8")
