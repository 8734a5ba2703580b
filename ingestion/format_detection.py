from __future__ import annotations

from typing import Optional

SNIFF_BYTES = 1024
BINARY_RATIO_LIMIT = 0.15


def normalize_mime_type(mime_type: Optional[str]) -> str:
    """'Text/HTML; charset=UTF-8' -> 'text/html'."""
    if not mime_type:
        return ""
    return mime_type.split(";")[0].strip().lower()


def _is_text_byte(b: int) -> bool:
    return 0x20 <= b <= 0x7E or b in (0x09, 0x0A, 0x0D) or b >= 0xC0


def is_likely_text(data: bytes) -> bool:
    """
    Printable-character heuristic over the first 1KB: fewer than 15 binary
    bytes per 100 text bytes. Bytes >= 0xC0 count as text so UTF-8 lead
    bytes do not trip the check; NUL bytes are ignored.
    """
    sample = data[:SNIFF_BYTES]
    text_chars = 0
    binary_chars = 0
    for b in sample:
        if _is_text_byte(b):
            text_chars += 1
        elif b != 0:
            binary_chars += 1
    if text_chars == 0:
        return False
    return binary_chars / text_chars < BINARY_RATIO_LIMIT


def detect_format(data: bytes) -> Optional[str]:
    """Sniff a MIME type from magic bytes and content; None when unknown."""
    if not data:
        return None
    if data[:4] == b"%PDF":
        return "application/pdf"

    head = data[:SNIFF_BYTES].decode("utf-8", errors="ignore").strip().lower()
    if head.startswith("<!doctype html") or head.startswith("<html"):
        return "text/html"
    if head.startswith("<?xml") or head.startswith("<xml"):
        return "application/xml"
    if data[:4] == b"PK\x03\x04":
        return "application/zip"
    if is_likely_text(data):
        return "text/plain"
    return None
