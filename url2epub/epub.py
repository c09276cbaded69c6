"""EPUB assembly for the ordered chapter list."""

from __future__ import annotations

import datetime as dt
import html
import logging
import uuid
from pathlib import Path
from typing import List, Sequence

from ebooklib import epub

from .config import BookMetadata
from .models import Chapter
from .utils import slugify

logger = logging.getLogger("url2epub")

BASE_CSS = """
body { font-family: serif; line-height: 1.5; margin: 0.5em; }
img { max-width: 100%; height: auto; }
.chapter-source { font-size: 0.8em; color: #666; margin-bottom: 1em; }
.quote-marker { font-size: 0.8em; color: #777; margin: 0; }
.quote-source { font-size: 0.9em; font-style: italic; text-align: right; }
.annotation-marker a { text-decoration: none; }
.annotations { margin-top: 2em; border-top: 1px solid #ccc; padding-top: 0.5em; }
.image-placeholder { color: #777; text-align: center; }
.error-chapter { color: #a94442; }
"""


def generate_filename(title: str) -> str:
    """Build ``<title-slug>-<UTC timestamp>.epub``."""
    timestamp = dt.datetime.now(dt.timezone.utc).strftime("%Y%m%dT%H%M%S")
    return f"{slugify(title, fallback='book')[:60]}-{timestamp}.epub"


def render_chapter(chapter: Chapter) -> str:
    source = html.escape(chapter.source_address)
    header = (
        f'<p class="chapter-source">Source: <a href="{source}">{source}</a></p>'
    )
    return header + chapter.content


class EpubBuilder:
    """Write chapters, in order, into a single EPUB 3 file."""

    def __init__(self, css: str = BASE_CSS) -> None:
        self.css = css

    def build(
        self,
        chapters: Sequence[Chapter],
        metadata: BookMetadata,
        output_path: Path,
    ) -> Path:
        book = epub.EpubBook()
        book.set_identifier(f"urn:uuid:{uuid.uuid4()}")
        book.set_title(metadata.title)
        book.set_language(metadata.language)
        book.add_author(metadata.author)

        css_item = epub.EpubItem(
            uid="style_default",
            file_name="style/default.css",
            media_type="text/css",
            content=self.css,
        )
        book.add_item(css_item)

        items: List[epub.EpubHtml] = []
        for number, chapter in enumerate(chapters, start=1):
            item = epub.EpubHtml(
                uid=f"chapter_{number:03d}",
                title=chapter.title or f"Chapter {number}",
                file_name=f"chapter_{number:03d}.xhtml",
                lang=metadata.language,
            )
            item.content = render_chapter(chapter)
            item.add_item(css_item)
            book.add_item(item)
            items.append(item)

        book.toc = tuple(items)
        book.add_item(epub.EpubNcx())
        book.add_item(epub.EpubNav())
        book.spine = ["nav"] + items

        output_path.parent.mkdir(parents=True, exist_ok=True)
        epub.write_epub(str(output_path), book)
        logger.info("Wrote EPUB with %d chapter(s) to %s", len(items), output_path)
        return output_path
