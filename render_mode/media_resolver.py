"""Resolve ``media/<name>`` references against an inline asset table."""
from __future__ import annotations

import re
from types import MappingProxyType
from typing import Dict, Iterable, Mapping, Optional

from logging_utils import get_logger

from .markup import Element
from .models import MEDIA_PREFIX, MediaAsset

logger = get_logger(__name__)

_BACKGROUND_URL_RE = re.compile(r"url\(\s*['\"]?(?P<url>[^'\")]+)['\"]?\s*\)")
_MEDIA_TAGS = ("img", "video", "audio")


def is_media_reference(value: object) -> bool:
    if not isinstance(value, str) or not value:
        return False
    return value.startswith(MEDIA_PREFIX) or "/media/" in value


def derived_name(reference: str) -> str:
    return reference.rsplit("/", 1)[-1]


class MediaResolver:
    """Read-only lookup from logical media references to data URIs."""

    def __init__(self, assets: Iterable[MediaAsset] = ()) -> None:
        table: Dict[str, MediaAsset] = {}
        by_name: Dict[str, MediaAsset] = {}
        for asset in assets:
            if asset.id in table:
                raise ValueError(f"Duplicate media id: {asset.id}")
            table[asset.id] = asset
            by_name.setdefault(asset.file_name, asset)
        self._assets: Mapping[str, MediaAsset] = MappingProxyType(table)
        self._by_name: Mapping[str, MediaAsset] = MappingProxyType(by_name)

    def __len__(self) -> int:
        return len(self._assets)

    @property
    def assets(self) -> Mapping[str, MediaAsset]:
        return self._assets

    def find(self, reference: str) -> Optional[MediaAsset]:
        """Look up by exact id, then by ``media/<name>``, then by derived filename."""
        if not reference:
            return None
        asset = self._assets.get(reference)
        if asset is not None:
            return asset
        name = derived_name(reference)
        return self._assets.get(f"{MEDIA_PREFIX}{name}") or self._by_name.get(name)

    def lookup(self, reference: str) -> Optional[str]:
        """Return the data URI for ``reference`` or ``None``."""
        asset = self.find(reference)
        return asset.data_uri() if asset is not None else None

    def resolve(self, reference: str) -> str:
        """Return the data URI, or the reference unchanged when it is unknown."""
        asset = self.find(reference)
        if asset is None:
            logger.warning("Unresolved media reference: %s", reference)
            return reference
        return asset.data_uri()


def rewrite_container_media(container: Element, resolver: MediaResolver) -> int:
    """Inline media referenced by ``src``, ``background-image`` or ``data-media-id``."""
    rewritten = 0
    for element in container.iter():
        src = element.get_attribute("src")
        if is_media_reference(src):
            resolved = resolver.resolve(src)  # type: ignore[arg-type]
            if resolved != src:
                element.set_attribute("src", resolved)
                rewritten += 1

        background = element.style.get("background-image")
        if isinstance(background, str) and "media/" in background:
            match = _BACKGROUND_URL_RE.search(background)
            if match and is_media_reference(match.group("url")):
                original = match.group("url")
                resolved = resolver.resolve(original)
                if resolved != original:
                    element.style["background-image"] = f"url({resolved})"
                    rewritten += 1

        media_id = element.get_attribute("data-media-id")
        if media_id:
            data_uri = resolver.lookup(media_id)
            if data_uri is None:
                logger.warning("Unresolved data-media-id: %s", media_id)
                continue
            if element.tag in _MEDIA_TAGS:
                element.set_attribute("src", data_uri)
                if element.tag != "img":
                    element.set_attribute("controls", "true")
                rewritten += 1
            elif element.style.get("background-image"):
                element.style["background-image"] = f"url({data_uri})"
                rewritten += 1
    return rewritten
