"""HTML cleanup, annotation relocation and image discovery."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Iterable, List, Optional, Set, Tuple, Union

from bs4 import BeautifulSoup, ParserRejectedMarkup, Tag, UnicodeDammit

from .classifiers import (
    ElementRole,
    NoteKind,
    annotation_category,
    class_tokens,
    classify_element,
    classify_note,
    is_important,
)
from .errors import TransformFailure
from .models import Annotation, AnnotationCategory, ImageReference, TransformedPage
from .utils import first_srcset_url, resolve_url

logger = logging.getLogger("url2epub")

UNTITLED = "Untitled"
ALWAYS_REMOVED_TAGS = ["script", "style", "noscript"]
CHROME_TAGS = ["nav", "header", "footer", "iframe"]
HEADING_TAGS = ["h1", "h2", "h3", "h4", "h5", "h6"]

BACKGROUND_URL_PATTERN = re.compile(
    r"background(?:-image)?\s*:[^;]*?url\(\s*(['\"]?)(.*?)\1\s*\)", re.IGNORECASE
)

CATEGORY_COLORS = {
    AnnotationCategory.WARNING: ("#fdecea", "#d9534f"),
    AnnotationCategory.INFO: ("#e8f4fd", "#3a87ad"),
    AnnotationCategory.TIP: ("#eafaf1", "#3c9d5d"),
    AnnotationCategory.GENERIC: ("#f5f5f5", "#999999"),
}


@dataclass
class AnnotationState:
    """Per-page annotation counter; a fresh one is made for every page."""

    annotations: List[Annotation] = field(default_factory=list)

    def add(self, category: AnnotationCategory, content: str) -> Annotation:
        number = len(self.annotations) + 1
        annotation = Annotation(
            id=f"annotation-{number}",
            back_reference_id=f"annotation-ref-{number}",
            sequence_number=number,
            category=category,
            content=content,
        )
        self.annotations.append(annotation)
        return annotation


def decode_markup(raw: Union[bytes, str]) -> str:
    """Decode fetched bytes using the document's declared or sniffed encoding."""
    if isinstance(raw, str):
        return raw
    dammit = UnicodeDammit(raw, is_html=True)
    if dammit.unicode_markup is None:
        return raw.decode("utf-8", "replace")
    return dammit.unicode_markup


def extract_title(soup: BeautifulSoup) -> str:
    if soup.title:
        title = soup.title.get_text(" ", strip=True)
        if title:
            return title
    for heading in soup.find_all(HEADING_TAGS):
        text = heading.get_text(" ", strip=True)
        if text:
            return text
    return UNTITLED


def _is_attached(element: Tag, soup: BeautifulSoup) -> bool:
    return any(parent is soup for parent in element.parents)


def _outermost(elements: List[Tag]) -> List[Tag]:
    """Drop matches nested inside another match, keeping document order."""
    seen = {id(element) for element in elements}
    return [
        element
        for element in elements
        if not any(id(parent) in seen for parent in element.parents)
    ]


def _reduce_style(style: str) -> Optional[str]:
    """Inline styles are dropped; only a background image survives."""
    match = BACKGROUND_URL_PATTERN.search(style)
    if not match or not match.group(2).strip():
        return None
    return f"background-image: url('{match.group(2).strip()}')"


def strip_noise(soup: BeautifulSoup) -> BeautifulSoup:
    """Remove scripts, page chrome and ad-like regions, then inline styles."""
    for tag in soup(ALWAYS_REMOVED_TAGS):
        tag.decompose()
    for element in soup.find_all(True):
        if element.decomposed:
            continue
        tokens = class_tokens(element.get("class"))
        if element.name in CHROME_TAGS and not is_important(element.name, tokens):
            element.decompose()
            continue
        if classify_element(element.name, tokens, element.attrs) is ElementRole.AD:
            element.decompose()
            continue
        style = element.get("style")
        if style is not None:
            reduced = _reduce_style(style)
            if reduced:
                element["style"] = reduced
            else:
                del element["style"]
    return soup


def _note_matches(soup: BeautifulSoup, kinds: Iterable[NoteKind]) -> List[Tuple[Tag, NoteKind]]:
    wanted = set(kinds)
    matches = []
    for element in soup.find_all(True):
        kind = classify_note(element.name, class_tokens(element.get("class")), element.attrs)
        if kind in wanted:
            matches.append((element, kind))
    return matches


def _marker(soup: BeautifulSoup, annotation: Annotation) -> Tag:
    sup = soup.new_tag("sup", attrs={"class": "annotation-marker"})
    link = soup.new_tag(
        "a", attrs={"id": annotation.back_reference_id, "href": f"#{annotation.id}"}
    )
    link.string = f"[{annotation.sequence_number}]"
    sup.append(link)
    return sup


def _relocate(soup: BeautifulSoup, element: Tag, state: AnnotationState) -> Annotation:
    tokens = class_tokens(element.get("class"))
    annotation = state.add(
        annotation_category(tokens, element.attrs),
        element.get_text(" ", strip=True),
    )
    marker = _marker(soup, annotation)
    if element.name in ("li", "dt", "dd"):
        # Keep list items so the surrounding list stays valid.
        element.clear()
        element.attrs = {}
        element.append(marker)
    else:
        element.replace_with(marker)
    return annotation


def relocate_annotations(soup: BeautifulSoup, state: AnnotationState) -> None:
    """Replace note/tip/warning callouts with numbered markers."""
    matches = _note_matches(soup, [NoteKind.ANNOTATION])
    for element in _outermost([element for element, _ in matches]):
        _relocate(soup, element, state)


def relocate_footnotes(soup: BeautifulSoup, state: AnnotationState) -> None:
    """Replace footnote entries with markers; label footnote containers."""
    matches = _note_matches(soup, [NoteKind.FOOTNOTE, NoteKind.FOOTNOTE_CONTAINER])
    entries = [element for element, kind in matches if kind is NoteKind.FOOTNOTE]
    containers = [element for element, kind in matches if kind is NoteKind.FOOTNOTE_CONTAINER]
    for element in _outermost(entries):
        _relocate(soup, element, state)
    for container in _outermost(containers):
        if not _is_attached(container, soup):
            continue
        heading = soup.new_tag("h3", attrs={"class": "annotation-heading"})
        heading.string = "References"
        container.insert_before(heading)


def decorate_blockquotes(soup: BeautifulSoup) -> None:
    for quote in soup.find_all("blockquote"):
        marker = soup.new_tag("p", attrs={"class": "quote-marker"})
        strong = soup.new_tag("strong")
        strong.string = "[quote]"
        marker.append(strong)
        quote.insert(0, marker)

        source = (quote.get("cite") or "").strip()
        if not source:
            cite = quote.find("cite")
            if cite:
                source = cite.get_text(" ", strip=True)
        if source:
            line = soup.new_tag("p", attrs={"class": "quote-source"})
            line.string = f"Source: {source}"
            quote.append(line)


def collect_images(soup: BeautifulSoup, base_address: str) -> List[ImageReference]:
    """Enumerate image references without rewriting the markup."""
    candidates: List[Tuple[str, str]] = []

    def _is_image_carrier(tag: Tag) -> bool:
        return tag.name == "img" or "background" in (tag.get("style") or "").lower()

    for element in soup.find_all(_is_image_carrier):
        if element.name == "img":
            src = element.get("src") or element.get("data-src")
            if src:
                candidates.append((src, element.get("alt", "")))
            continue
        match = BACKGROUND_URL_PATTERN.search(element.get("style", ""))
        if match and match.group(2).strip():
            candidates.append((match.group(2).strip(), element.get("aria-label", "")))

    for source in soup.select("picture source"):
        srcset = source.get("srcset") or ""
        first = first_srcset_url(srcset)
        if not first:
            continue
        picture = source.find_parent("picture")
        img = picture.find("img") if picture else None
        candidates.append((first, img.get("alt", "") if img else ""))

    references: List[ImageReference] = []
    seen: Set[Tuple[str, str]] = set()
    for src, alt in candidates:
        if src.strip().lower().startswith("data:"):
            continue
        try:
            resolved = resolve_url(src, base_address)
        except ValueError as exc:
            logger.warning("Could not resolve image URL %r on %s: %s", src, base_address, exc)
            continue
        key = (src, resolved)
        if key in seen:
            continue
        seen.add(key)
        references.append(ImageReference(src, resolved, (alt or "").strip()))
    return references


def append_annotation_block(soup: BeautifulSoup, annotations: List[Annotation]) -> None:
    if not annotations:
        return
    section = soup.new_tag("section", attrs={"class": "annotations"})
    heading = soup.new_tag("h2")
    heading.string = "Notes"
    section.append(heading)
    for annotation in annotations:
        background, border = CATEGORY_COLORS[annotation.category]
        box = soup.new_tag(
            "div",
            attrs={
                "id": annotation.id,
                "class": f"annotation annotation-{annotation.category.value}",
                "style": (
                    f"background-color: {background}; border-left: 4px solid {border}; "
                    "padding: 0.4em 0.6em; margin: 0.5em 0;"
                ),
            },
        )
        paragraph = soup.new_tag("p")
        backref = soup.new_tag(
            "a",
            attrs={"class": "annotation-backref", "href": f"#{annotation.back_reference_id}"},
        )
        backref.string = f"[{annotation.sequence_number}]"
        paragraph.append(backref)
        paragraph.append(" " + annotation.content)
        box.append(paragraph)
        section.append(box)
    (soup.body or soup).append(section)


def parse_markup(raw_markup: Union[bytes, str]) -> BeautifulSoup:
    try:
        return BeautifulSoup(decode_markup(raw_markup), "html.parser")
    except (ParserRejectedMarkup, AssertionError) as exc:
        raise TransformFailure(f"Markup could not be parsed: {exc}") from exc


def transform(raw_markup: Union[bytes, str], base_address: str) -> TransformedPage:
    """Clean a page, relocate its annotations and enumerate its images."""
    soup = parse_markup(raw_markup)
    title = extract_title(soup)

    strip_noise(soup)
    state = AnnotationState()
    relocate_annotations(soup, state)
    relocate_footnotes(soup, state)
    decorate_blockquotes(soup)
    images = collect_images(soup, base_address)
    append_annotation_block(soup, state.annotations)

    markup = soup.body.decode_contents() if soup.body else soup.decode()
    logger.debug(
        "Transformed %s: %d annotation(s), %d image reference(s)",
        base_address,
        len(state.annotations),
        len(images),
    )
    return TransformedPage(
        title=title, markup=markup, images=images, annotations=state.annotations
    )
