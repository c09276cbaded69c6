"""Configuration objects and constants for the pipeline."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Optional, Sequence, Tuple

DEFAULT_USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/121.0.0.0 Safari/537.36"
)
DEFAULT_TITLE = "Web Articles Collection"
DEFAULT_AUTHOR = "Web Scraper"
DEFAULT_LANGUAGE = "en"

DEFAULT_PAGE_TIMEOUT = 30.0
DEFAULT_PAGE_RETRIES = 3
DEFAULT_IMAGE_TIMEOUT = 15.0
DEFAULT_IMAGE_RETRIES = 2


@dataclass(frozen=True)
class RetrievalStrategy:
    """One entry of a retrieval cascade.

    ``transport`` names an entry of the transport registry in
    :mod:`url2epub.retrieval`. ``retries`` is the number of attempts made
    before the cascade moves on; each attempt is bounded by ``timeout``.
    """

    name: str
    transport: str = "requests"
    timeout: float = DEFAULT_PAGE_TIMEOUT
    retries: int = DEFAULT_PAGE_RETRIES
    verify_tls: bool = False
    trust_env: bool = True
    downgrade_scheme: bool = False


DEFAULT_PAGE_STRATEGIES: Tuple[RetrievalStrategy, ...] = (
    RetrievalStrategy(name="direct"),
    RetrievalStrategy(name="no-proxy", trust_env=False),
    RetrievalStrategy(name="http-downgrade", downgrade_scheme=True),
    RetrievalStrategy(name="wget", transport="wget"),
    RetrievalStrategy(name="curl", transport="curl"),
)

DEFAULT_IMAGE_STRATEGIES: Tuple[RetrievalStrategy, ...] = (
    RetrievalStrategy(
        name="image-direct",
        timeout=DEFAULT_IMAGE_TIMEOUT,
        retries=DEFAULT_IMAGE_RETRIES,
        verify_tls=True,
    ),
    RetrievalStrategy(
        name="image-insecure",
        timeout=DEFAULT_IMAGE_TIMEOUT,
        retries=DEFAULT_IMAGE_RETRIES,
        trust_env=False,
    ),
    RetrievalStrategy(
        name="image-curl",
        transport="curl",
        timeout=DEFAULT_IMAGE_TIMEOUT,
        retries=1,
    ),
)


def with_limits(
    strategies: Sequence[RetrievalStrategy],
    timeout: Optional[float] = None,
    retries: Optional[int] = None,
) -> Tuple[RetrievalStrategy, ...]:
    """Return ``strategies`` with their timeout and/or retry count overridden."""
    updated = []
    for strategy in strategies:
        if timeout is not None:
            strategy = replace(strategy, timeout=timeout)
        if retries is not None:
            strategy = replace(strategy, retries=max(1, retries))
        updated.append(strategy)
    return tuple(updated)


@dataclass
class BookMetadata:
    """Metadata handed to the document builder."""

    title: str = DEFAULT_TITLE
    author: str = DEFAULT_AUTHOR
    language: str = DEFAULT_LANGUAGE


@dataclass
class PipelineConfig:
    """Top-level settings that control retrieval, batching and output."""

    output_root: Path
    max_concurrent_pages: int = 3
    max_concurrent_images_per_page: int = 5
    batch_size: int = 5
    inter_batch_delay: float = 1.0
    page_strategies: Tuple[RetrievalStrategy, ...] = DEFAULT_PAGE_STRATEGIES
    image_strategies: Tuple[RetrievalStrategy, ...] = DEFAULT_IMAGE_STRATEGIES
    user_agent: str = DEFAULT_USER_AGENT
    work_dir: Optional[Path] = None
    metadata: BookMetadata = field(default_factory=BookMetadata)

    @property
    def group_size(self) -> int:
        return max(1, min(self.batch_size, self.max_concurrent_pages))

    @property
    def image_dir(self) -> Optional[Path]:
        if self.work_dir is None:
            return None
        return self.work_dir / "images"
