"""Data models used throughout the pipeline."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import List, Optional

Address = str


@dataclass(frozen=True)
class ImageReference:
    """Raw image reference discovered while transforming page markup."""

    original_src: str
    resolved_url: str
    alt_text: str


@dataclass
class DownloadedImage:
    """Image bytes retrieved for one reference, in memory or on disk."""

    original_src: str
    resolved_url: str
    alt_text: str
    media_type: str
    content: Optional[bytes] = None
    local_path: Optional[Path] = None

    def read_bytes(self) -> bytes:
        if self.content is not None:
            return self.content
        if self.local_path is None:
            raise OSError(f"No content stored for {self.resolved_url}")
        return self.local_path.read_bytes()

    def for_reference(self, reference: ImageReference) -> "DownloadedImage":
        """Reuse this download for another reference to the same URL."""
        return DownloadedImage(
            original_src=reference.original_src,
            resolved_url=self.resolved_url,
            alt_text=reference.alt_text,
            media_type=self.media_type,
            content=self.content,
            local_path=self.local_path,
        )


class AnnotationCategory(str, Enum):
    WARNING = "warning"
    INFO = "info"
    TIP = "tip"
    GENERIC = "generic"


@dataclass
class Annotation:
    """Side content moved to the end of a page and linked both ways."""

    id: str
    back_reference_id: str
    sequence_number: int
    category: AnnotationCategory
    content: str


@dataclass(frozen=True)
class Chapter:
    """One processed page, in input order."""

    title: str
    content: str
    source_address: Address
    is_error: bool = False


@dataclass
class TransformedPage:
    """Output of the markup transformer for one page."""

    title: str
    markup: str
    images: List[ImageReference] = field(default_factory=list)
    annotations: List[Annotation] = field(default_factory=list)


@dataclass
class ResolvedPage:
    """Markup with images inlined, plus the downloads that made it."""

    markup: str
    images: List[DownloadedImage] = field(default_factory=list)
    failed: List[ImageReference] = field(default_factory=list)


@dataclass
class PageResult:
    """Successful outcome of processing one address."""

    chapter: Chapter
    images: List[DownloadedImage] = field(default_factory=list)
