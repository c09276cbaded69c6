"""Exception taxonomy for the pipeline."""

from __future__ import annotations

from typing import Optional


class Url2EpubError(Exception):
    """Base class for pipeline errors."""


class RetrievalFailure(Url2EpubError):
    """Every retrieval strategy was exhausted for a page or an image."""

    def __init__(self, url: str, last_error: Optional[BaseException] = None) -> None:
        self.url = url
        self.last_error = last_error
        detail = f": {last_error}" if last_error else ""
        super().__init__(f"All retrieval strategies failed for {url}{detail}")


class TransformFailure(Url2EpubError):
    """Markup could not be parsed."""


class ImageFailure(Url2EpubError):
    """A single image could not be downloaded or embedded."""

    def __init__(self, url: str, reason: str) -> None:
        self.url = url
        self.reason = reason
        super().__init__(f"{url}: {reason}")


class PageFailure(Url2EpubError):
    """A page could not be turned into a chapter."""

    def __init__(self, address: str, index: int, cause: str) -> None:
        self.address = address
        self.index = index
        self.cause = cause
        super().__init__(f"Page {index} ({address}) failed: {cause}")


class RunFailure(Url2EpubError):
    """The run cannot start or finish, e.g. no addresses were given."""
