"""Run-level lifecycle: work directory, crawl, EPUB build."""

from __future__ import annotations

import logging
import tempfile
import time
from dataclasses import replace
from pathlib import Path
from typing import Mapping, Optional, Sequence

from .config import PipelineConfig
from .crawler import CrawlResult, PageProcessor, ProcessFn, run_crawler
from .epub import EpubBuilder, generate_filename
from .errors import RunFailure
from .retrieval import Transport

logger = logging.getLogger("url2epub")


def format_size(path: Path) -> str:
    try:
        size = path.stat().st_size
    except OSError:
        return "unknown size"
    return f"{size / (1024 * 1024):.2f} MB"


def log_summary(result: CrawlResult, elapsed: float) -> None:
    logger.info(
        "Finished in %.2fs (%d/%d pages succeeded, %d failed, %d image(s) embedded, "
        "%d distinct image(s) downloaded, %d cache hit(s))",
        elapsed,
        len(result.chapters) - len(result.failures),
        len(result.chapters),
        len(result.failures),
        len(result.images),
        result.cached_images,
        result.cache_hits,
    )


async def _run(
    addresses: Sequence[str],
    config: PipelineConfig,
    builder: EpubBuilder,
    processor: Optional[ProcessFn],
    transports: Optional[Mapping[str, Transport]],
) -> Path:
    overall_start = time.perf_counter()
    logger.info("Processing %d URL(s)", len(addresses))
    if processor is None:
        processor = PageProcessor(config, transports=transports).process
    result = await run_crawler(addresses, config, processor=processor)
    log_summary(result, time.perf_counter() - overall_start)

    output_path = config.output_root / generate_filename(config.metadata.title)
    logger.info("Generating EPUB...")
    builder.build(result.chapters, config.metadata, output_path)
    return output_path


async def compile_epub(
    addresses: Sequence[str],
    config: PipelineConfig,
    builder: Optional[EpubBuilder] = None,
    processor: Optional[ProcessFn] = None,
    transports: Optional[Mapping[str, Transport]] = None,
) -> Path:
    """Turn ``addresses`` into one EPUB and return its path.

    Downloaded images live in a temporary work directory for the duration of
    the run unless ``config.work_dir`` is already set, in which case the
    caller owns it.
    """
    addresses = [address.strip() for address in addresses if address and address.strip()]
    if not addresses:
        raise RunFailure("No valid URLs provided")

    builder = builder or EpubBuilder()
    if config.work_dir is not None:
        return await _run(addresses, config, builder, processor, transports)

    with tempfile.TemporaryDirectory(prefix="url2epub-") as tmp_dir:
        run_config = replace(config, work_dir=Path(tmp_dir))
        output_path = await _run(addresses, run_config, builder, processor, transports)
    logger.debug("Removed work directory %s", tmp_dir)
    return output_path
