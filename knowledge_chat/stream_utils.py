import re
from typing import Optional, Tuple

THINK_OPEN = "<think>"
THINK_CLOSE = "</think>"

# First well-formed pair only; unmatched markers stay in the visible text.
THINKING_PATTERN = re.compile(re.escape(THINK_OPEN) + r"(.*?)" + re.escape(THINK_CLOSE), re.DOTALL)


def truncate_text(value: str, limit: int = 500, marker: str = "...") -> str:
    if len(value) <= limit:
        return value
    return f"{value[:limit]}{marker}"


def split_reasoning(text: str) -> Tuple[Optional[str], str]:
    """Split ``<think>...</think>`` out of a completion.

    Returns ``(reasoning, content)``. Without a marker pair the reasoning is
    None and the content is the whole text, trimmed.
    """
    match = THINKING_PATTERN.search(text)
    if match is None:
        return None, text.strip()
    reasoning = match.group(1).strip()
    content = (text[:match.start()] + text[match.end():]).strip()
    return reasoning, content
