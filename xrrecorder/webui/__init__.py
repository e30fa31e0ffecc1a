from __future__ import annotations

import logging
import mimetypes
from dataclasses import dataclass
from functools import lru_cache
from importlib import resources
from pathlib import Path, PurePosixPath
from typing import Any

from jinja2 import Environment, PackageLoader, select_autoescape

__all__ = [
    "FRONTEND_PAGE",
    "StaticAsset",
    "StaticAssetCache",
    "render_template",
]

FRONTEND_PAGE = "frontend.html"
_INDEX_ALIASES = {"", "index.html", "index.htm"}

log = logging.getLogger("web_server")


@lru_cache(maxsize=1)
def _environment() -> Environment:
    return Environment(
        loader=PackageLoader("xrrecorder.webui", "templates"),
        autoescape=select_autoescape(["html", "xml"]),
    )


def render_template(name: str, **context: Any) -> str:
    template = _environment().get_template(name)
    return template.render(**context)


@dataclass(frozen=True)
class StaticAsset:
    body: bytes
    content_type: str
    charset: str | None = None


def _asset_for(name: str, body: bytes) -> StaticAsset:
    content_type, _ = mimetypes.guess_type(name)
    content_type = content_type or "application/octet-stream"
    charset = "utf-8" if content_type.startswith("text/") or content_type.endswith("javascript") else None
    return StaticAsset(body=body, content_type=content_type, charset=charset)


class StaticAssetCache:
    """In-memory cache of the UI assets, looked up by basename only."""

    def __init__(self, *, context: dict[str, Any] | None = None, extra_dir: str | Path | None = None) -> None:
        self._context = dict(context or {})
        self._extra_dir = Path(extra_dir) if extra_dir else None
        self._assets: dict[str, StaticAsset] = {}

    def __len__(self) -> int:
        return len(self._assets)

    def names(self) -> list[str]:
        return sorted(self._assets)

    def load(self) -> int:
        assets: dict[str, StaticAsset] = {}
        static_root = resources.files("xrrecorder.webui").joinpath("static")
        for entry in static_root.iterdir():
            if entry.is_file() and not entry.name.startswith("."):
                assets[entry.name] = _asset_for(entry.name, entry.read_bytes())

        page = render_template(FRONTEND_PAGE, **self._context)
        assets[FRONTEND_PAGE] = _asset_for(FRONTEND_PAGE, page.encode("utf-8"))

        if self._extra_dir is not None:
            try:
                entries = sorted(self._extra_dir.iterdir())
            except OSError as exc:
                log.warning("Static directory %s unreadable: %s", self._extra_dir, exc)
                entries = []
            for path in entries:
                if not path.is_file() or path.name.startswith("."):
                    continue
                try:
                    assets[path.name] = _asset_for(path.name, path.read_bytes())
                except OSError as exc:
                    log.warning("Skipping static asset %s: %s", path, exc)

        self._assets = assets
        log.debug("Loaded %d static assets", len(assets))
        return len(assets)

    def get(self, request_path: str) -> StaticAsset | None:
        name = PurePosixPath(request_path).name
        if request_path.endswith("/") or name in _INDEX_ALIASES:
            name = FRONTEND_PAGE
        return self._assets.get(name)
