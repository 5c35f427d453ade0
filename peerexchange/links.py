"""Connect links carried in URL fragments and QR codes."""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any, Optional
from urllib.parse import urlsplit, urlunsplit

from .secret import normalize_connect_key


MODES = ("connect", "room")
_FRAGMENT = re.compile(r"(?:^|[#&])(connect|room)=([0-9a-fA-F]+)(?:&|$)")


@dataclass(frozen=True)
class Link:
    mode: str
    value: str


def connect_url(base_url: str, value: str, mode: str = "connect") -> str:
    if mode not in MODES:
        raise ValueError(f"unknown link mode {mode!r}")
    parts = urlsplit(base_url)
    return urlunsplit(parts._replace(fragment=f"{mode}={value}"))


def parse_fragment(url: str) -> Optional[Link]:
    """Return the ``#connect=``/``#room=`` value of ``url``, if any."""
    fragment = urlsplit(url).fragment if "#" in url else url
    match = _FRAGMENT.search(f"#{fragment}")
    if match is None:
        return None
    return Link(mode=match.group(1), value=match.group(2).lower())


def scanned_text(message: Any) -> Optional[str]:
    """Extract the scan result from a scanner window message (``{"text": ...}``)."""
    if not isinstance(message, dict):
        return None
    text = message.get("text")
    if isinstance(text, str) and text:
        return text
    return None


def key_from_scan(text: str) -> str:
    """Accept either a full connect URL or a bare key; return the validated key.

    Raises ``InvalidConnectKey`` when neither form holds a usable key.
    """
    link = parse_fragment(text.strip())
    if link is not None and link.mode == "connect":
        return normalize_connect_key(link.value)
    return normalize_connect_key(text)
