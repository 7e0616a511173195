from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Iterable
from urllib.parse import urlsplit, urlunsplit


@dataclass(frozen=True)
class Endpoint:
    url: str


def parse_endpoint_list(text: str) -> list[Endpoint]:
    """
    Newline-delimited list. Blank lines and `#` comment lines are ignored,
    duplicates keep their first position.
    """
    return endpoints_from_lines((text or "").splitlines())


def endpoints_from_lines(lines: Iterable[Any]) -> list[Endpoint]:
    out: list[Endpoint] = []
    seen: set[str] = set()
    for raw in lines:
        line = str(raw or "").strip()
        if not line or line.startswith("#"):
            continue
        if line in seen:
            continue
        seen.add(line)
        out.append(Endpoint(url=line))
    return out


def safe_url(url: str) -> str:
    """
    Drop query strings and fragments so tokens never end up in log lines.
    """
    s = (url or "").strip()
    if not s:
        return s
    try:
        parts = urlsplit(s)
        return urlunsplit((parts.scheme, parts.netloc, parts.path, "", ""))
    except Exception:
        return s[:500]
