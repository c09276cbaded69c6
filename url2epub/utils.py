"""Utility helpers for string normalization and URL handling."""

from __future__ import annotations

import re
from urllib.parse import urljoin, urlparse

SLUG_PATTERN = re.compile(r"[^a-z0-9]+")


def slugify(value: str, fallback: str = "page") -> str:
    """Generate a filesystem-friendly slug using ASCII characters only."""
    normalized = value.encode("ascii", "ignore").decode("ascii")
    normalized = normalized.lower()
    normalized = SLUG_PATTERN.sub("-", normalized).strip("-")
    return normalized or fallback


def resolve_url(src: str, base_address: str) -> str:
    """Make ``src`` absolute against ``base_address``.

    Raises ``ValueError`` when the base has no scheme or host to resolve
    against.
    """
    src = src.strip()
    if not src:
        raise ValueError("empty image source")
    base = urlparse(base_address)
    if src.startswith("//"):
        if not base.scheme:
            raise ValueError(f"cannot resolve {src!r} without a base scheme")
        return f"{base.scheme}:{src}"
    if src.startswith("/"):
        if not base.scheme or not base.netloc:
            raise ValueError(f"cannot resolve {src!r} against {base_address!r}")
        return f"{base.scheme}://{base.netloc}{src}"
    if urlparse(src).scheme in ("http", "https"):
        return src
    if not base.scheme or not base.netloc:
        raise ValueError(f"cannot resolve {src!r} against {base_address!r}")
    return urljoin(base_address, src)


def downgrade_scheme(url: str) -> str:
    """Rewrite an ``https://`` address to plain ``http://``."""
    if url.startswith("https://"):
        return "http://" + url[len("https://") :]
    return url


def first_srcset_url(srcset: str) -> str:
    """Return the first candidate URL of a responsive ``srcset`` value."""
    first = srcset.split(",")[0].strip()
    return first.split()[0] if first else ""
