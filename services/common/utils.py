from __future__ import annotations

import re
from pathlib import Path
from typing import Iterable, Optional


def safe_path_basename(value: str, *, fallback: str) -> str:
    """Drop any path components (path traversal hardening)."""
    name = Path(str(value)).name
    return name or fallback


def safe_suffix(filename: Optional[str], *, allowed: Iterable[str], fallback: str) -> str:
    """Return the lower-cased extension of an uploaded filename if it is allowed."""
    name = safe_path_basename(filename or "", fallback="")
    suffix = Path(name).suffix.lower()
    if not re.fullmatch(r"\.[a-z0-9]{1,8}", suffix):
        return fallback
    return suffix if suffix in set(allowed) else fallback


def tail_text(text: str, max_chars: int) -> str:
    if max_chars <= 0:
        return ""
    return text[-max_chars:] if len(text) > max_chars else text
