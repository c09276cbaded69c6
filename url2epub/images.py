"""Image downloading, caching and inlining."""

from __future__ import annotations

import asyncio
import base64
import html
import logging
import re
from pathlib import Path, PurePosixPath
from typing import Dict, Iterable, List, Optional, Set
from urllib.parse import urlparse

from bs4 import BeautifulSoup
from filetype import guess

from .content import BACKGROUND_URL_PATTERN
from .errors import ImageFailure, RetrievalFailure
from .models import DownloadedImage, ImageReference, ResolvedPage
from .retrieval import Retriever
from .utils import first_srcset_url, slugify

logger = logging.getLogger("url2epub")

MAX_IMAGE_BYTES = 10 * 1024 * 1024
DEFAULT_MEDIA_TYPE = "image/jpeg"
EXTENSION_MEDIA_TYPES = {
    "jpg": "image/jpeg",
    "jpeg": "image/jpeg",
    "png": "image/png",
    "gif": "image/gif",
    "webp": "image/webp",
    "svg": "image/svg+xml",
    "bmp": "image/bmp",
    "avif": "image/avif",
}


def detect_image_format(data: bytes) -> Optional[str]:
    """Detect image type using filetype; returns lowercase extension."""
    kind = guess(data)
    if kind and kind.mime.startswith("image/"):
        ext = kind.extension.lower()
        if ext == "jpeg":
            return "jpg"
        return ext
    return None


def url_extension(url: str) -> str:
    return PurePosixPath(urlparse(url).path).suffix.lower().lstrip(".")


def infer_media_type(url: str, data: bytes = b"") -> str:
    """Map the URL's file extension to a media type.

    Unknown extensions fall back to the file signature, then to
    ``image/jpeg``.
    """
    extension = url_extension(url)
    if extension in EXTENSION_MEDIA_TYPES:
        return EXTENSION_MEDIA_TYPES[extension]
    detected = detect_image_format(data) if data else None
    if detected and detected in EXTENSION_MEDIA_TYPES:
        return EXTENSION_MEDIA_TYPES[detected]
    return DEFAULT_MEDIA_TYPE


def extension_for(media_type: str) -> str:
    for extension, candidate in EXTENSION_MEDIA_TYPES.items():
        if candidate == media_type:
            return extension
    return "jpg"


class RetrievalCache:
    """Downloaded images keyed by resolved URL, shared by one run."""

    def __init__(self) -> None:
        self._entries: Dict[str, DownloadedImage] = {}
        self.hits = 0
        self.misses = 0

    def get(self, url: str) -> Optional[DownloadedImage]:
        entry = self._entries.get(url)
        if entry is None:
            self.misses += 1
        else:
            self.hits += 1
        return entry

    def put(self, image: DownloadedImage) -> None:
        # Concurrent pages may download the same URL; the latest entry wins.
        self._entries[image.resolved_url] = image

    def __contains__(self, url: object) -> bool:
        return url in self._entries

    def __len__(self) -> int:
        return len(self._entries)


def to_data_uri(image: DownloadedImage) -> str:
    encoded = base64.b64encode(image.read_bytes()).decode("ascii")
    return f"data:{image.media_type};base64,{encoded}"


def _literal_forms(image: DownloadedImage) -> List[str]:
    """Attribute values that may refer to ``image`` in serialized markup."""
    forms = [image.original_src]
    if image.original_src.startswith("/") and not image.original_src.startswith("//"):
        forms.append(image.resolved_url)
    for value in list(forms):
        escaped = html.escape(value, quote=False)
        if escaped != value:
            forms.append(escaped)
    unique: List[str] = []
    for value in forms:
        if value not in unique:
            unique.append(value)
    return unique


def substitute_image(markup: str, image: DownloadedImage, data_uri: str) -> str:
    """Rewrite every literal reference to ``image`` with ``data_uri``.

    Works on text rather than on a parsed tree: the original attribute value
    is regex-escaped and matched in ``data-src``/``src`` attributes, CSS
    ``url()`` values and ``srcset`` attributes that start with it.
    """
    src_attr = f'src="{data_uri}"'
    for value in _literal_forms(image):
        escaped = re.escape(value)
        markup = re.sub(
            rf"data-src=([\"']){escaped}\1", lambda _: src_attr, markup, flags=re.IGNORECASE
        )
        markup = re.sub(
            rf"(?<![\w-])src=([\"']){escaped}\1",
            lambda _: src_attr,
            markup,
            flags=re.IGNORECASE,
        )
        markup = re.sub(
            rf"url\(\s*([\"']?){escaped}\1\s*\)",
            lambda _: f"url('{data_uri}')",
            markup,
            flags=re.IGNORECASE,
        )
        markup = re.sub(
            rf"srcset=([\"']){escaped}(?=[\s,\"'])[^\"']*\1",
            lambda _: f'srcset="{data_uri}"',
            markup,
            flags=re.IGNORECASE,
        )
    return markup


def replace_with_placeholders(
    markup: str,
    failed_sources: Set[str],
    replace_all: bool = False,
) -> str:
    """Swap ``<img>`` elements for a short ``[alt]`` text placeholder.

    Only images whose ``src``/``data-src`` is in ``failed_sources`` are
    replaced, unless ``replace_all`` is set. ``<picture>`` sources pointing at
    a failed URL are dropped so the fallback ``<img>`` is used, and a failed
    background image loses its ``style`` attribute.
    """
    soup = BeautifulSoup(markup, "html.parser")
    for img in soup.find_all("img"):
        src = img.get("src") or img.get("data-src") or ""
        if not replace_all and src not in failed_sources:
            continue
        alt = (img.get("alt") or "").strip() or "Image"
        placeholder = soup.new_tag("p", attrs={"class": "image-placeholder"})
        emphasis = soup.new_tag("em")
        emphasis.string = f"[{alt}]"
        placeholder.append(emphasis)
        img.replace_with(placeholder)
    for source in soup.select("picture source"):
        if first_srcset_url(source.get("srcset") or "") in failed_sources:
            source.decompose()
    for element in soup.find_all(style=BACKGROUND_URL_PATTERN):
        match = BACKGROUND_URL_PATTERN.search(element["style"])
        if replace_all or match.group(2).strip() in failed_sources:
            del element["style"]
    return soup.decode()


class ImageResolver:
    """Download a page's images in bounded waves and inline them."""

    def __init__(
        self,
        retriever: Retriever,
        max_concurrent: int = 5,
        image_dir: Optional[Path] = None,
        placeholder_all_on_total_failure: bool = True,
    ) -> None:
        self.retriever = retriever
        self.max_concurrent = max(1, max_concurrent)
        self.image_dir = image_dir
        self.placeholder_all_on_total_failure = placeholder_all_on_total_failure

    def _store(self, image: DownloadedImage, data: bytes, page_index: int, position: int) -> None:
        if self.image_dir is None:
            image.content = data
            return
        alt_slug = slugify(image.alt_text or "image", fallback="image")
        filename = f"image-{page_index:03d}-{position:02d}-{alt_slug}"[:80]
        filename += f".{extension_for(image.media_type)}"
        destination = self.image_dir / filename
        try:
            self.image_dir.mkdir(parents=True, exist_ok=True)
            destination.write_bytes(data)
        except OSError as exc:
            raise ImageFailure(image.resolved_url, f"could not store image: {exc}") from exc
        image.local_path = destination

    async def download(
        self, reference: ImageReference, page_index: int = 0, position: int = 0
    ) -> DownloadedImage:
        """Fetch one image through the strategy cascade."""
        url = reference.resolved_url
        try:
            data = await self.retriever.fetch(url)
        except RetrievalFailure as exc:
            raise ImageFailure(url, str(exc)) from exc
        if len(data) > MAX_IMAGE_BYTES:
            raise ImageFailure(url, f"image larger than {MAX_IMAGE_BYTES} bytes")

        image = DownloadedImage(
            original_src=reference.original_src,
            resolved_url=url,
            alt_text=reference.alt_text,
            media_type=infer_media_type(url, data),
        )
        self._store(image, data, page_index, position)
        logger.debug("Downloaded image %s (%d bytes, %s)", url, len(data), image.media_type)
        return image

    async def _download_waves(
        self, targets: List[ImageReference], page_index: int
    ) -> Dict[str, DownloadedImage]:
        results: Dict[str, DownloadedImage] = {}
        for start in range(0, len(targets), self.max_concurrent):
            wave = targets[start : start + self.max_concurrent]
            outcomes = await asyncio.gather(
                *(
                    self.download(reference, page_index, start + offset)
                    for offset, reference in enumerate(wave, start=1)
                ),
                return_exceptions=True,
            )
            for reference, outcome in zip(wave, outcomes):
                if isinstance(outcome, ImageFailure):
                    logger.warning("Skipping image %s", outcome)
                elif isinstance(outcome, Exception):
                    logger.warning(
                        "Unexpected error downloading %s: %s", reference.resolved_url, outcome
                    )
                elif isinstance(outcome, BaseException):
                    raise outcome
                else:
                    results[reference.resolved_url] = outcome
        return results

    async def resolve(
        self,
        markup: str,
        references: Iterable[ImageReference],
        page_index: int,
        cache: RetrievalCache,
    ) -> ResolvedPage:
        """Inline every image that can be retrieved; placehold the rest."""
        references = list(references)
        if not references:
            return ResolvedPage(markup=markup)

        entries: Dict[str, DownloadedImage] = {}
        pending: Dict[str, ImageReference] = {}
        repeated: List[str] = []
        for reference in references:
            url = reference.resolved_url
            if url in entries or url in pending:
                repeated.append(url)
                continue
            cached = cache.get(url)
            if cached is not None:
                entries[url] = cached
            else:
                pending[url] = reference

        if pending:
            logger.info(
                "Downloading %d image(s) for page %d (%d cached)",
                len(pending),
                page_index,
                len(entries),
            )
        fetched = await self._download_waves(list(pending.values()), page_index)
        for image in fetched.values():
            cache.put(image)
        entries.update(fetched)
        # A repeated reference is served from the cache like a later page would be.
        for url in repeated:
            cache.get(url)

        downloaded: List[DownloadedImage] = []
        failed: List[ImageReference] = []
        data_uris: Dict[str, str] = {}
        for reference in references:
            entry = entries.get(reference.resolved_url)
            if entry is None:
                failed.append(reference)
                continue
            if reference.resolved_url not in data_uris:
                try:
                    data_uris[reference.resolved_url] = to_data_uri(entry)
                except OSError as exc:
                    logger.warning("Could not embed image %s: %s", reference.resolved_url, exc)
                    failed.append(reference)
                    continue
            downloaded.append(entry.for_reference(reference))

        if failed:
            replace_all = not downloaded and self.placeholder_all_on_total_failure
            if replace_all:
                logger.info("No images retrieved for page %d, using placeholders", page_index)
            markup = replace_with_placeholders(
                markup,
                {reference.original_src for reference in failed},
                replace_all=replace_all,
            )

        for image in downloaded:
            markup = substitute_image(markup, image, data_uris[image.resolved_url])

        return ResolvedPage(markup=markup, images=downloaded, failed=failed)
