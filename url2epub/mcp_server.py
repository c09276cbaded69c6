"""MCP server exposing the url2epub pipeline as a tool."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import List, Optional

from mcp.server.fastmcp import FastMCP

from .config import DEFAULT_AUTHOR, DEFAULT_TITLE, BookMetadata, PipelineConfig
from .pipeline import compile_epub as run_pipeline

logger = logging.getLogger("url2epub.mcp")
logger.setLevel(logging.ERROR)

mcp = FastMCP(name="url2epub")


@mcp.tool()
async def compile_epub(
    urls: List[str],
    output_dir: str = "output",
    title: str = DEFAULT_TITLE,
    author: Optional[str] = None,
) -> str:
    """Fetch the given web pages and bundle them into one EPUB; returns its path."""

    config = PipelineConfig(
        output_root=Path(output_dir).expanduser().resolve(),
        metadata=BookMetadata(title=title, author=author or DEFAULT_AUTHOR),
    )
    output_path = await run_pipeline(urls, config)
    return str(output_path)


def main() -> None:
    """Entry point for running the MCP server."""
    logging.basicConfig(level=logging.ERROR)
    mcp.run()


if __name__ == "__main__":
    main()
