import asyncio
import time
from pathlib import Path

import pytest

from url2epub import crawler
from url2epub.config import PipelineConfig, RetrievalStrategy
from url2epub.content import UNTITLED
from url2epub.crawler import PageProcessor, error_chapter, partition, run_crawler
from url2epub.errors import PageFailure, RunFailure, TransformFailure
from url2epub.images import RetrievalCache
from url2epub.models import Chapter, PageResult

PNG = b"\x89PNG\r\n\x1a\n" + b"\x00" * 32
FAKE = (RetrievalStrategy(name="fake", transport="fake", timeout=5, retries=1),)


class FakeProcessor:
    """Records start/end events and fails the addresses it is told to."""

    def __init__(self, failing=(), raising=()):
        self.failing = set(failing)
        self.raising = set(raising)
        self.events = []

    async def process(self, address, index, cache):
        self.events.append(("start", index))
        await asyncio.sleep(0.01)
        self.events.append(("end", index))
        if address in self.raising:
            raise RuntimeError("boom")
        if address in self.failing:
            return PageFailure(address, index, "retrieval exhausted")
        return PageResult(
            chapter=Chapter(title=f"Page {index}", content=f"<p>{address}</p>", source_address=address)
        )


def make_config(**kwargs):
    kwargs.setdefault("inter_batch_delay", 0.0)
    return PipelineConfig(output_root=Path("unused"), **kwargs)


def test_failed_page_keeps_its_slot() -> None:
    processor = FakeProcessor(failing={"B"})
    result = asyncio.run(run_crawler(["A", "B", "C"], make_config(), processor=processor))

    assert [chapter.source_address for chapter in result.chapters] == ["A", "B", "C"]
    assert not result.chapters[0].is_error
    assert result.chapters[1].is_error
    assert result.chapters[1].title == "Error: B"
    assert "retrieval exhausted" in result.chapters[1].content
    assert result.chapters[2].content == "<p>C</p>"
    assert [failure.address for failure in result.failures] == ["B"]


def test_unexpected_exception_becomes_error_chapter() -> None:
    processor = FakeProcessor(raising={"B"})
    result = asyncio.run(run_crawler(["A", "B"], make_config(), processor=processor))

    assert result.chapters[1].is_error
    assert "RuntimeError: boom" in result.chapters[1].content


def test_groups_run_one_after_another() -> None:
    processor = FakeProcessor()
    addresses = [f"https://site.example/{n}" for n in range(7)]
    config = make_config(batch_size=3, max_concurrent_pages=3)

    assert [len(group) for group in partition(addresses, config.group_size)] == [3, 3, 1]

    result = asyncio.run(run_crawler(addresses, config, processor=processor.process))

    assert len(result.chapters) == 7
    events = processor.events
    for earlier, later in (((0, 1, 2), (3, 4, 5)), ((3, 4, 5), (6,))):
        last_end = max(events.index(("end", index)) for index in earlier)
        first_start = min(events.index(("start", index)) for index in later)
        assert last_end < first_start


def test_group_size_is_capped_by_page_concurrency() -> None:
    config = make_config(batch_size=5, max_concurrent_pages=2)
    assert config.group_size == 2
    assert make_config(batch_size=0, max_concurrent_pages=3).group_size == 1


def test_delay_between_groups_only() -> None:
    config = make_config(batch_size=1, max_concurrent_pages=1, inter_batch_delay=0.05)

    start = time.perf_counter()
    asyncio.run(run_crawler(["A", "B", "C"], config, processor=FakeProcessor()))
    elapsed = time.perf_counter() - start

    assert elapsed >= 0.1


def test_empty_address_list_is_rejected() -> None:
    with pytest.raises(RunFailure):
        asyncio.run(run_crawler([], make_config(), processor=FakeProcessor()))


def test_error_chapter_escapes_address() -> None:
    chapter = error_chapter(PageFailure("https://x.example/?a=<b>", 0, "bad & worse"))
    assert "<b>" not in chapter.content
    assert "bad &amp; worse" in chapter.content


def fake_site(pages, images, calls):
    async def transport(url, strategy):
        calls.append(url)
        if url in pages:
            return pages[url].encode("utf-8")
        if url in images:
            return images[url]
        raise OSError(f"404 for {url}")

    return {"fake": transport}


def test_page_processor_inlines_images() -> None:
    page = "https://site.example/post"
    pages = {
        page: '<html><head><title>Post</title></head><body><img src="/logo.png" alt="Logo"></body></html>'
    }
    calls = []
    transports = fake_site(pages, {"https://site.example/logo.png": PNG}, calls)
    config = make_config(page_strategies=FAKE, image_strategies=FAKE)

    outcome = asyncio.run(
        PageProcessor(config, transports=transports).process(page, 0, RetrievalCache())
    )

    assert isinstance(outcome, PageResult)
    assert outcome.chapter.title == "Post"
    assert 'src="data:image/png;base64,' in outcome.chapter.content
    assert len(outcome.images) == 1


def test_page_processor_reports_unreachable_page() -> None:
    config = make_config(page_strategies=FAKE, image_strategies=FAKE)
    outcome = asyncio.run(
        PageProcessor(config, transports=fake_site({}, {}, [])).process(
            "https://down.example/", 4, RetrievalCache()
        )
    )

    assert isinstance(outcome, PageFailure)
    assert outcome.index == 4
    assert "All retrieval strategies failed" in outcome.cause


def test_shared_image_is_fetched_once_per_run() -> None:
    markup = '<html><body><img src="/logo.png" alt="Logo"></body></html>'
    pages = {
        "https://site.example/one": markup,
        "https://site.example/two": markup,
    }
    calls = []
    transports = fake_site(pages, {"https://site.example/logo.png": PNG}, calls)
    config = make_config(
        page_strategies=FAKE,
        image_strategies=FAKE,
        batch_size=1,
        max_concurrent_pages=1,
    )

    result = asyncio.run(run_crawler(list(pages), config, transports=transports))

    assert calls.count("https://site.example/logo.png") == 1
    assert result.cache_hits == 1
    assert result.cached_images == 1
    assert result.chapters[0].content == result.chapters[1].content


def test_unparseable_page_becomes_empty_chapter(monkeypatch) -> None:
    page = "https://site.example/broken"

    def reject(raw, base):
        raise TransformFailure("Markup could not be parsed")

    monkeypatch.setattr(crawler, "transform", reject)
    config = make_config(page_strategies=FAKE, image_strategies=FAKE)
    transports = fake_site({page: "<html><<<"}, {}, [])

    outcome = asyncio.run(
        PageProcessor(config, transports=transports).process(page, 0, RetrievalCache())
    )

    assert isinstance(outcome, PageResult)
    assert outcome.chapter.title == UNTITLED
    assert outcome.chapter.content == ""
    assert not outcome.chapter.is_error
    assert outcome.images == []
