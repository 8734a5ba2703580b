from __future__ import annotations

import asyncio
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, List

import requests
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from common.config import yaml_config
from common.logger import get_logger
from ingestion.format_detection import normalize_mime_type

log = get_logger(__name__)

EXTENSION_MIME_TYPES = {
    ".pdf": "application/pdf",
    ".html": "text/html",
    ".htm": "text/html",
    ".md": "text/markdown",
    ".markdown": "text/markdown",
    ".txt": "text/plain",
}


@dataclass(frozen=True)
class FetchedDocument:
    source: str  # path or URL
    data: bytes
    mime_type: str


def mime_type_for_path(path: Path) -> str | None:
    return EXTENSION_MIME_TYPES.get(path.suffix.lower())


def discover_files(root: Path) -> List[Path]:
    """Recursively find files with a known document extension."""
    paths: List[Path] = []
    for p in root.rglob("*"):
        if p.is_file() and p.suffix.lower() in EXTENSION_MIME_TYPES:
            paths.append(p)
    return sorted(paths)


def load_from_path(path: Path) -> FetchedDocument:
    return FetchedDocument(
        source=str(path),
        data=path.read_bytes(),
        mime_type=mime_type_for_path(path) or "application/octet-stream",
    )


def load_folder(root: Path) -> Iterable[FetchedDocument]:
    for p in discover_files(root):
        yield load_from_path(p)


@retry(
    retry=retry_if_exception_type(requests.RequestException),
    stop=stop_after_attempt(3),
    wait=wait_exponential(multiplier=1, min=2, max=10),
    reraise=True,
)
def _fetch(url: str) -> requests.Response:
    """Download URL with retry logic."""
    resp = requests.get(
        url,
        timeout=yaml_config.app.timeout,
        headers={"User-Agent": yaml_config.app.user_agent},
    )
    resp.raise_for_status()
    return resp


def fetch_url(url: str) -> FetchedDocument:
    resp = _fetch(url)
    mime = normalize_mime_type(resp.headers.get("Content-Type"))
    if not mime and url.lower().endswith(".pdf"):
        mime = "application/pdf"
    log.info("Fetched %s (%d bytes, %s)", url, len(resp.content), mime or "unknown type")
    return FetchedDocument(source=url, data=resp.content, mime_type=mime or "text/html")


async def fetch_url_async(url: str) -> FetchedDocument:
    return await asyncio.to_thread(fetch_url, url)
