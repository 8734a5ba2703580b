import re
from typing import List

NAMED_ENTITIES = {
    "&amp;": "&",
    "&lt;": "<",
    "&gt;": ">",
    "&quot;": '"',
    "&#39;": "'",
    "&apos;": "'",
    "&nbsp;": " ",
    "&mdash;": "—",
    "&ndash;": "–",
    "&hellip;": "…",
    "&copy;": "©",
    "&reg;": "®",
    "&trade;": "™",
}

_NUMERIC_ENTITY = re.compile(r"&#(\d+);")
_HEX_ENTITY = re.compile(r"&#x([0-9a-fA-F]+);")


def _safe_chr(code: int) -> str:
    try:
        return chr(code)
    except (ValueError, OverflowError):
        return ""


def decode_entities(s: str) -> str:
    """Decode the fixed named-entity table plus decimal and hex references."""
    for entity, char in NAMED_ENTITIES.items():
        s = s.replace(entity, char)
    s = _NUMERIC_ENTITY.sub(lambda m: _safe_chr(int(m.group(1))), s)
    s = _HEX_ENTITY.sub(lambda m: _safe_chr(int(m.group(1), 16)), s)
    return s


def collapse_lines(s: str) -> str:
    """Collapse runs of whitespace inside each line and drop blank lines."""
    lines: List[str] = []
    for line in s.split("\n"):
        line = re.sub(r"\s+", " ", line).strip()
        if line:
            lines.append(line)
    return "\n".join(lines)


def strip_markdown_inline(s: str) -> str:
    s = re.sub(r"\*\*(.+?)\*\*", r"\1", s)
    s = re.sub(r"\*(.+?)\*", r"\1", s)
    s = re.sub(r"`(.+?)`", r"\1", s)
    s = re.sub(r"\[([^\]]+)\]\([^)]+\)", r"\1", s)
    return s


def word_count(s: str) -> int:
    return len(s.split())
