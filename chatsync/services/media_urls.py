"""Build object-storage image transformation URLs for responsive media."""
from __future__ import annotations

from typing import Literal, Sequence
from urllib.parse import urlencode, urlparse, urlunparse

from ..config import get_settings

ImageFormat = Literal["webp", "avif", "jpeg", "png"]
ResizeMode = Literal["contain", "cover", "fill"]

DEFAULT_SRCSET_WIDTHS: tuple[int, ...] = (320, 640, 960, 1280, 1920)


def is_storage_url(url: str | None) -> bool:
    return bool(url) and get_settings().storage_public_host in url


def optimized_image_url(
    storage_url: str,
    *,
    width: int | None = None,
    height: int | None = None,
    quality: int | None = None,
    format: ImageFormat | None = None,
    resize: ResizeMode = "cover",
) -> str:
    """Return ``storage_url`` with transformation parameters.

    URLs that do not point at object storage, and URLs that cannot be parsed,
    are returned unchanged. Any existing query string is replaced.
    """

    if not is_storage_url(storage_url):
        return storage_url

    settings = get_settings()
    parsed = urlparse(storage_url)
    if not parsed.scheme or not parsed.netloc:
        return storage_url

    params: list[tuple[str, str]] = []
    if width:
        params.append(("width", str(width)))
    if height:
        params.append(("height", str(height)))
    params.append(("quality", str(quality if quality is not None else settings.image_default_quality)))
    params.append(("format", format or settings.image_default_format))
    params.append(("resize", resize))
    return urlunparse(parsed._replace(query=urlencode(params)))


def build_srcset(storage_url: str, widths: Sequence[int] = DEFAULT_SRCSET_WIDTHS) -> str:
    return ", ".join(f"{optimized_image_url(storage_url, width=width, format='webp')} {width}w" for width in widths)


def picture_sources(storage_url: str, width: int | None = None) -> list[dict[str, str]]:
    """Sources for a ``<picture>`` element, AVIF first with a WebP fallback."""

    return [
        {"src_set": optimized_image_url(storage_url, width=width, format="avif"), "type": "image/avif"},
        {"src_set": optimized_image_url(storage_url, width=width, format="webp"), "type": "image/webp"},
    ]


__all__ = [
    "DEFAULT_SRCSET_WIDTHS",
    "is_storage_url",
    "optimized_image_url",
    "build_srcset",
    "picture_sources",
]
