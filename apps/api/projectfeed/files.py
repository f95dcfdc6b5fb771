from __future__ import annotations

from typing import Protocol
from urllib.parse import quote

from projectfeed.core.config import get_settings


class FileResolver(Protocol):
    def resolve_file_url(self, path: str) -> str: ...


class StaticFileResolver:
    """Builds viewable links under a fixed base URL; no signing."""

    def __init__(self, base_url: str) -> None:
        self.base_url = base_url.rstrip("/")

    def resolve_file_url(self, path: str) -> str:
        if path.startswith(("http://", "https://")):
            return path
        return f"{self.base_url}/{quote(path.lstrip('/'))}"


def get_file_resolver() -> FileResolver:
    return StaticFileResolver(get_settings().files_base_url)
