"""Command-line entry point for url2epub."""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from pathlib import Path
from typing import List, Sequence

from .config import (
    DEFAULT_AUTHOR,
    DEFAULT_IMAGE_STRATEGIES,
    DEFAULT_LANGUAGE,
    DEFAULT_PAGE_STRATEGIES,
    DEFAULT_TITLE,
    BookMetadata,
    PipelineConfig,
    with_limits,
)
from .errors import RunFailure
from .pipeline import compile_epub, format_size

logger = logging.getLogger("url2epub.cli")


def split_urls(values: Sequence[str]) -> List[str]:
    """Accept URLs as separate arguments or as one comma-separated string."""
    urls: List[str] = []
    for value in values:
        urls.extend(part.strip() for part in value.split(",") if part.strip())
    return urls


def parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Fetch web pages, inline their images and bundle them into one EPUB.",
    )
    parser.add_argument(
        "urls",
        nargs="+",
        help='One or more URLs, separately or comma-separated ("url1,url2")',
    )
    parser.add_argument(
        "--output",
        default="output",
        type=Path,
        help="Directory where the EPUB should be written",
    )
    parser.add_argument("--title", default=DEFAULT_TITLE, help="Book title")
    parser.add_argument("--author", default=DEFAULT_AUTHOR, help="Book author")
    parser.add_argument("--language", default=DEFAULT_LANGUAGE, help="Book language code")
    parser.add_argument(
        "--max-pages",
        type=int,
        default=3,
        help="Maximum number of pages processed concurrently",
    )
    parser.add_argument(
        "--max-images",
        type=int,
        default=5,
        help="Maximum number of simultaneous image downloads per page",
    )
    parser.add_argument(
        "--batch-size",
        type=int,
        default=5,
        help="Number of pages per batch (capped by --max-pages)",
    )
    parser.add_argument(
        "--delay",
        type=float,
        default=1.0,
        help="Seconds to pause between batches",
    )
    parser.add_argument(
        "--page-timeout",
        type=float,
        default=None,
        help="Override the timeout in seconds of every page retrieval strategy",
    )
    parser.add_argument(
        "--page-retries",
        type=int,
        default=None,
        help="Override the attempt count of every page retrieval strategy",
    )
    parser.add_argument(
        "--image-timeout",
        type=float,
        default=None,
        help="Override the timeout in seconds of every image retrieval strategy",
    )
    parser.add_argument(
        "--image-retries",
        type=int,
        default=None,
        help="Override the attempt count of every image retrieval strategy",
    )
    parser.add_argument(
        "--verbose",
        action="store_true",
        help="Enable verbose logging",
    )
    return parser.parse_args(argv)


def build_config(args: argparse.Namespace) -> PipelineConfig:
    return PipelineConfig(
        output_root=Path(args.output).resolve(),
        max_concurrent_pages=args.max_pages,
        max_concurrent_images_per_page=args.max_images,
        batch_size=args.batch_size,
        inter_batch_delay=args.delay,
        page_strategies=with_limits(
            DEFAULT_PAGE_STRATEGIES, args.page_timeout, args.page_retries
        ),
        image_strategies=with_limits(
            DEFAULT_IMAGE_STRATEGIES, args.image_timeout, args.image_retries
        ),
        metadata=BookMetadata(
            title=args.title, author=args.author, language=args.language
        ),
    )


def main(argv: Sequence[str] | None = None) -> int:
    args = parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s [%(levelname)s] %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
        force=True,
    )

    urls = split_urls(args.urls)
    config = build_config(args)
    try:
        output_path = asyncio.run(compile_epub(urls, config))
    except (RunFailure, OSError) as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1

    logger.info("EPUB created: %s (%s)", output_path, format_size(output_path))
    print(output_path)
    return 0


if __name__ == "__main__":
    sys.exit(main())
