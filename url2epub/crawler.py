"""Page processing and batch orchestration."""

from __future__ import annotations

import asyncio
import html
import logging
import time
from dataclasses import dataclass, field
from typing import Awaitable, Callable, List, Mapping, Optional, Sequence, Union

from .config import PipelineConfig
from .content import UNTITLED, transform
from .errors import PageFailure, RetrievalFailure, RunFailure, TransformFailure
from .images import ImageResolver, RetrievalCache
from .models import Address, Chapter, DownloadedImage, PageResult, TransformedPage
from .retrieval import Retriever, Transport

logger = logging.getLogger("url2epub")

PageOutcome = Union[PageResult, PageFailure]
ProcessFn = Callable[[Address, int, RetrievalCache], Awaitable[PageOutcome]]


@dataclass
class CrawlResult:
    """Ordered chapters plus run-level accounting."""

    chapters: List[Chapter]
    images: List[DownloadedImage] = field(default_factory=list)
    failures: List[PageFailure] = field(default_factory=list)
    cache_hits: int = 0
    cached_images: int = 0


class PageProcessor:
    """Retrieve, transform and inline images for a single address."""

    def __init__(
        self,
        config: PipelineConfig,
        page_retriever: Optional[Retriever] = None,
        image_resolver: Optional[ImageResolver] = None,
        transports: Optional[Mapping[str, Transport]] = None,
    ) -> None:
        self.config = config
        self.page_retriever = page_retriever or Retriever(
            config.page_strategies, transports, user_agent=config.user_agent
        )
        self.image_resolver = image_resolver or ImageResolver(
            Retriever(config.image_strategies, transports, user_agent=config.user_agent),
            max_concurrent=config.max_concurrent_images_per_page,
            image_dir=config.image_dir,
        )

    async def process(self, address: Address, index: int, cache: RetrievalCache) -> PageOutcome:
        """Return a :class:`PageResult`, or a :class:`PageFailure` describing why not."""
        start = time.perf_counter()
        try:
            logger.info("Loading %s", address)
            raw = await self.page_retriever.fetch(address)
            try:
                page = transform(raw, address)
            except TransformFailure as exc:
                logger.warning("Treating %s as an empty page: %s", address, exc)
                page = TransformedPage(title=UNTITLED, markup="")
            if page.images:
                logger.info("Found %d image(s) on %s", len(page.images), address)
            resolved = await self.image_resolver.resolve(
                page.markup, page.images, index, cache
            )
        except RetrievalFailure as exc:
            return PageFailure(address, index, str(exc))
        except Exception as exc:  # pylint: disable=broad-except
            logger.exception("Unexpected error processing %s", address)
            return PageFailure(address, index, f"{type(exc).__name__}: {exc}")

        logger.debug("Processed %s in %.2fs", address, time.perf_counter() - start)
        chapter = Chapter(title=page.title, content=resolved.markup, source_address=address)
        return PageResult(chapter=chapter, images=resolved.images)


def error_chapter(failure: PageFailure) -> Chapter:
    """Placeholder chapter that keeps a failed address in its slot."""
    address = html.escape(failure.address)
    cause = html.escape(failure.cause)
    content = (
        '<div class="error-chapter">'
        "<h1>Failed to load content</h1>"
        f'<p>URL: <a href="{address}">{address}</a></p>'
        f"<p>Error: {cause}</p>"
        "</div>"
    )
    return Chapter(
        title=f"Error: {failure.address}",
        content=content,
        source_address=failure.address,
        is_error=True,
    )


def partition(addresses: Sequence[Address], size: int) -> List[List[Address]]:
    size = max(1, size)
    return [list(addresses[i : i + size]) for i in range(0, len(addresses), size)]


async def run_crawler(
    addresses: Sequence[Address],
    config: PipelineConfig,
    processor: Optional[Union[PageProcessor, ProcessFn]] = None,
    cache: Optional[RetrievalCache] = None,
    transports: Optional[Mapping[str, Transport]] = None,
) -> CrawlResult:
    """Process ``addresses`` in paced, bounded groups, preserving their order."""
    if not addresses:
        raise RunFailure("No addresses were provided")

    if processor is None:
        processor = PageProcessor(config, transports=transports)
    process: ProcessFn = getattr(processor, "process", processor)
    cache = cache if cache is not None else RetrievalCache()

    chapters: List[Optional[Chapter]] = [None] * len(addresses)
    images: List[DownloadedImage] = []
    failures: List[PageFailure] = []
    groups = partition(addresses, config.group_size)

    offset = 0
    for group_number, group in enumerate(groups, start=1):
        logger.info(
            "Processing batch %d of %d (size: %d)", group_number, len(groups), len(group)
        )
        outcomes = await asyncio.gather(
            *(process(address, offset + position, cache) for position, address in enumerate(group)),
            return_exceptions=True,
        )
        for position, outcome in enumerate(outcomes):
            index = offset + position
            address = group[position]
            if isinstance(outcome, PageResult):
                chapters[index] = outcome.chapter
                images.extend(outcome.images)
                continue
            if isinstance(outcome, PageFailure):
                failure = outcome
            elif isinstance(outcome, Exception):
                failure = PageFailure(address, index, f"{type(outcome).__name__}: {outcome}")
            elif isinstance(outcome, BaseException):
                raise outcome
            else:
                failure = PageFailure(address, index, f"Unexpected page result {outcome!r}")
            logger.warning("Page %d (%s) failed: %s", index + 1, address, failure.cause)
            failures.append(failure)
            chapters[index] = error_chapter(failure)
        offset += len(group)

        if group_number < len(groups) and config.inter_batch_delay > 0:
            await asyncio.sleep(config.inter_batch_delay)

    ordered = [chapter for chapter in chapters if chapter is not None]
    if len(ordered) != len(addresses):
        raise RuntimeError(
            "Mismatch between chapters and addresses "
            f"({len(ordered)} != {len(addresses)})"
        )
    return CrawlResult(
        chapters=ordered,
        images=images,
        failures=failures,
        cache_hits=cache.hits,
        cached_images=len(cache),
    )
