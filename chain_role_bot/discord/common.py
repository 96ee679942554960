from __future__ import annotations

import re
from datetime import datetime

EMBED_SAFE_LIMIT = 1900


def truncate(text: str, limit: int) -> str:
    if len(text) <= limit:
        return text
    if limit <= 3:
        return text[:limit]

    window = text[:limit]
    cut = window.rfind(" ")
    if cut >= int(limit * 0.7):
        return window[:cut].strip() + "..."

    return (window[: limit - 3].rstrip() + "...").strip()


def chunk_text(text: str, limit: int = EMBED_SAFE_LIMIT) -> list[str]:
    if len(text) <= limit:
        return [text]
    parts: list[str] = []
    current = ""
    for line in text.splitlines(keepends=True):
        if len(current) + len(line) <= limit:
            current += line
            continue
        if current:
            parts.append(current)
            current = ""
        if len(line) <= limit:
            current = line
        else:
            for i in range(0, len(line), limit):
                parts.append(line[i : i + limit])
    if current:
        parts.append(current)
    return parts


def progress_bar(done: int, total: int, width: int = 10) -> str:
    if total <= 0:
        return "░" * width
    filled = max(0, min(width, round(width * done / total)))
    return "█" * filled + "░" * (width - filled)


def format_timestamp(value: datetime | None) -> str:
    if value is None:
        return "never"
    return f"<t:{int(value.timestamp())}:R>"


def parse_user_id(raw: str) -> int | None:
    """Accept a bare snowflake or a ``<@id>`` / ``<@!id>`` mention."""
    match = re.fullmatch(r"<@!?(\d+)>|(\d+)", (raw or "").strip())
    if match is None:
        return None
    return int(match.group(1) or match.group(2))
