"""Heuristic element classifiers.

Every function here is pure: it looks at a tag name, the element's class
tokens and its attributes, and returns a verdict. The transformer in
:mod:`url2epub.content` only asks questions; tuning a heuristic never touches
the transformation itself.
"""

from __future__ import annotations

import re
from enum import Enum
from typing import Iterable, Mapping, Optional, Sequence

from .models import AnnotationCategory

WORD_SPLIT = re.compile(r"[-_:]+")

NOISE_TAGS = ("script", "style", "noscript", "nav", "header", "footer", "iframe")

IMPORTANT_TAGS = frozenset({"html", "body", "main", "article", "blockquote", "q"})
IMPORTANT_CLASS_TOKENS = frozenset(
    {
        "content",
        "main",
        "main-content",
        "article",
        "article-body",
        "article-content",
        "post",
        "post-body",
        "post-content",
        "entry-content",
        "story",
        "quote",
        "blockquote",
        "pullquote",
    }
)

AD_EXACT_TOKENS = frozenset({"ad", "ads", "advert", "adsbygoogle", "sidebar", "menu"})
AD_SUBSTRINGS = ("advert", "sponsor", "adsense", "adslot", "ad-slot", "promoted")
AD_PREFIXES = ("ad-", "ad_", "ads-", "ads_")
AD_SUFFIXES = ("-ad", "_ad", "-ads", "_ads")

ANNOTATION_TOKENS = (
    "note",
    "tip",
    "hint",
    "warning",
    "caution",
    "danger",
    "callout",
    "admonition",
    "alert",
    "sidenote",
    "marginnote",
)
ANNOTATION_ROLES = frozenset({"note", "doc-tip", "doc-notice"})

FOOTNOTE_TOKENS = ("footnote", "endnote", "citation")
FOOTNOTE_EXACT_TOKENS = frozenset({"fn", "reference", "references", "ref-list"})
FOOTNOTE_CONTAINER_TOKENS = ("footnotes", "endnotes", "references", "citations", "ref-list")
FOOTNOTE_ROLES = frozenset({"doc-footnote", "doc-endnote", "doc-biblioentry"})
FOOTNOTE_CONTAINER_ROLES = frozenset({"doc-endnotes", "doc-footnotes", "doc-bibliography"})
CONTAINER_TAGS = frozenset({"ol", "ul", "dl", "section", "div", "aside"})

# Inline markers point at notes; they are never notes themselves.
INLINE_TAGS = frozenset({"a", "sup", "sub", "span", "abbr", "cite", "img", "code", "em", "strong"})

WARNING_KEYWORDS = ("warning", "warn", "caution", "danger", "error", "important")
INFO_KEYWORDS = ("info", "note", "notice", "sidenote", "marginnote")
TIP_KEYWORDS = ("tip", "hint", "success", "help")


class ElementRole(str, Enum):
    IMPORTANT = "important"
    AD = "ad"
    CONTENT = "content"


class NoteKind(str, Enum):
    ANNOTATION = "annotation"
    FOOTNOTE = "footnote"
    FOOTNOTE_CONTAINER = "footnote-container"


def class_tokens(value: object) -> tuple:
    """Normalize a BeautifulSoup ``class`` value into lowercase tokens."""
    if not value:
        return ()
    if isinstance(value, str):
        parts: Iterable[str] = value.split()
    else:
        parts = value  # type: ignore[assignment]
    return tuple(str(part).lower() for part in parts if part)


def _attr(attrs: Mapping[str, object], name: str) -> str:
    value = attrs.get(name)
    if isinstance(value, (list, tuple)):
        return " ".join(str(v) for v in value).lower()
    return str(value).lower() if value else ""


def is_important(tag: str, tokens: Sequence[str]) -> bool:
    """Main content containers and quotations are never stripped as noise."""
    if tag in IMPORTANT_TAGS:
        return True
    return any(token in IMPORTANT_CLASS_TOKENS for token in tokens)


def _looks_like_ad_token(token: str) -> bool:
    if token in AD_EXACT_TOKENS:
        return True
    if token.startswith(AD_PREFIXES) or token.endswith(AD_SUFFIXES):
        return True
    return any(marker in token for marker in AD_SUBSTRINGS)


def is_ad_like(tokens: Sequence[str], element_id: str = "") -> bool:
    if any(_looks_like_ad_token(token) for token in tokens):
        return True
    element_id = element_id.lower()
    return bool(element_id) and _looks_like_ad_token(element_id)


def classify_element(tag: str, tokens: Sequence[str], attrs: Mapping[str, object]) -> ElementRole:
    """Decide whether an element is kept, protected, or removed as an ad."""
    if is_important(tag, tokens):
        return ElementRole.IMPORTANT
    if is_ad_like(tokens, _attr(attrs, "id")):
        return ElementRole.AD
    return ElementRole.CONTENT


def _has_token(tokens: Sequence[str], needles: Iterable[str]) -> bool:
    needles = tuple(needles)
    return any(needle in token for token in tokens for needle in needles)


def _has_word(tokens: Sequence[str], words: Iterable[str]) -> bool:
    """Match whole words inside tokens, so ``tooltip`` is not a ``tip``."""
    words = frozenset(words)
    for token in tokens:
        for word in WORD_SPLIT.split(token):
            if word in words or word.rstrip("s") in words:
                return True
    return False


def classify_note(
    tag: str, tokens: Sequence[str], attrs: Mapping[str, object]
) -> Optional[NoteKind]:
    """Return the note kind of an element, or ``None`` for ordinary content."""
    if tag in INLINE_TAGS or tag in IMPORTANT_TAGS:
        return None
    role = _attr(attrs, "role")
    if tag in CONTAINER_TAGS and (
        role in FOOTNOTE_CONTAINER_ROLES or _has_token(tokens, FOOTNOTE_CONTAINER_TOKENS)
    ):
        return NoteKind.FOOTNOTE_CONTAINER
    if (
        role in FOOTNOTE_ROLES
        or _has_token(tokens, FOOTNOTE_TOKENS)
        or any(token in FOOTNOTE_EXACT_TOKENS for token in tokens)
    ):
        return NoteKind.FOOTNOTE
    if role in ANNOTATION_ROLES or attrs.get("data-callout") is not None:
        return NoteKind.ANNOTATION
    if _has_word(tokens, ANNOTATION_TOKENS):
        return NoteKind.ANNOTATION
    return None


def annotation_category(tokens: Sequence[str], attrs: Mapping[str, object]) -> AnnotationCategory:
    """Infer the display category of an annotation from its class keywords."""
    words = list(tokens)
    callout = _attr(attrs, "data-callout")
    if callout:
        words.append(callout)
    if _has_word(words, WARNING_KEYWORDS):
        return AnnotationCategory.WARNING
    if _has_word(words, TIP_KEYWORDS):
        return AnnotationCategory.TIP
    if _has_word(words, INFO_KEYWORDS):
        return AnnotationCategory.INFO
    return AnnotationCategory.GENERIC
