import asyncio

import pytest

from url2epub import retrieval
from url2epub.config import DEFAULT_PAGE_STRATEGIES, RetrievalStrategy
from url2epub.errors import RetrievalFailure
from url2epub.retrieval import EmptyContentError, Retriever, make_command_transport

URL = "https://site.example/page"


def make_transport(outcomes, calls):
    """Fake transport driven by per-strategy outcome lists."""

    async def transport(url, strategy):
        calls.append((strategy.name, url))
        queue = outcomes[strategy.name]
        outcome = queue.pop(0) if len(queue) > 1 else queue[0]
        if isinstance(outcome, BaseException):
            raise outcome
        return outcome

    return transport


def strategy(name, **kwargs):
    kwargs.setdefault("transport", "fake")
    kwargs.setdefault("timeout", 5)
    kwargs.setdefault("retries", 1)
    return RetrievalStrategy(name=name, **kwargs)


def test_first_non_empty_payload_wins() -> None:
    calls = []
    transport = make_transport({"a": [b""], "b": [b"<html></html>"], "c": [b"unused"]}, calls)
    retriever = Retriever([strategy("a"), strategy("b"), strategy("c")], {"fake": transport})

    assert asyncio.run(retriever.fetch(URL)) == b"<html></html>"
    assert calls == [("a", URL), ("b", URL)]


def test_empty_payload_is_not_retried() -> None:
    calls = []
    transport = make_transport({"a": [b""], "b": [b"ok"]}, calls)
    retriever = Retriever([strategy("a", retries=3), strategy("b")], {"fake": transport})

    asyncio.run(retriever.fetch(URL))
    assert [name for name, _ in calls] == ["a", "b"]


def test_retries_within_a_strategy() -> None:
    calls = []
    outcomes = {"a": [OSError("reset"), OSError("reset"), b"third time"]}
    retriever = Retriever([strategy("a", retries=3)], {"fake": make_transport(outcomes, calls)})

    assert asyncio.run(retriever.fetch(URL)) == b"third time"
    assert len(calls) == 3


def test_exhaustion_reports_last_error() -> None:
    calls = []
    outcomes = {"a": [OSError("first")], "b": [ValueError("second")]}
    retriever = Retriever(
        [strategy("a", retries=2), strategy("b")], {"fake": make_transport(outcomes, calls)}
    )

    with pytest.raises(RetrievalFailure) as excinfo:
        asyncio.run(retriever.fetch(URL))

    assert excinfo.value.url == URL
    assert isinstance(excinfo.value.last_error, ValueError)
    assert "second" in str(excinfo.value)
    assert len(calls) == 3


def test_all_empty_reports_empty_content() -> None:
    calls = []
    retriever = Retriever([strategy("a")], {"fake": make_transport({"a": [b""]}, calls)})

    with pytest.raises(RetrievalFailure) as excinfo:
        asyncio.run(retriever.fetch(URL))
    assert isinstance(excinfo.value.last_error, EmptyContentError)


def test_scheme_downgrade_strategy() -> None:
    calls = []
    outcomes = {"a": [OSError("tls")], "b": [b"plain"]}
    retriever = Retriever(
        [strategy("a"), strategy("b", downgrade_scheme=True)],
        {"fake": make_transport(outcomes, calls)},
    )

    assert asyncio.run(retriever.fetch(URL)) == b"plain"
    assert calls[-1] == ("b", "http://site.example/page")


def test_timeout_moves_to_next_strategy() -> None:
    async def slow(url, strategy):
        await asyncio.sleep(1)
        return b"too late"

    async def fast(url, strategy):
        return b"fast"

    retriever = Retriever(
        [
            RetrievalStrategy(name="slow", transport="slow", timeout=0.01, retries=1),
            RetrievalStrategy(name="fast", transport="fast", timeout=5, retries=1),
        ],
        {"slow": slow, "fast": fast},
    )
    assert asyncio.run(retriever.fetch(URL)) == b"fast"


def test_unknown_transport_counts_as_failure() -> None:
    retriever = Retriever([strategy("a", transport="missing")], {})
    with pytest.raises(RetrievalFailure):
        asyncio.run(retriever.fetch(URL))


def test_retriever_requires_strategies() -> None:
    with pytest.raises(ValueError):
        Retriever([], {})


def record_commands(monkeypatch):
    commands = []

    async def fake_run_command(args):
        commands.append(list(args))
        return b"<html></html>"

    monkeypatch.setattr(retrieval, "_run_command", fake_run_command)
    return commands


def test_curl_command_line(monkeypatch) -> None:
    commands = record_commands(monkeypatch)
    transport = make_command_transport("curl", "TestAgent/1.0")

    data = asyncio.run(transport(URL, strategy("curl", timeout=30)))

    assert data == b"<html></html>"
    args = commands[0]
    assert args[0] == "curl"
    assert args[-1] == URL
    assert args[args.index("--max-time") + 1] == "30"
    assert args[args.index("--user-agent") + 1] == "TestAgent/1.0"
    assert "--location" in args
    assert "--insecure" in args


def test_curl_keeps_tls_checks_when_verifying(monkeypatch) -> None:
    commands = record_commands(monkeypatch)
    transport = make_command_transport("curl")

    asyncio.run(transport(URL, strategy("curl", verify_tls=True)))

    assert "--insecure" not in commands[0]


def test_wget_command_line(monkeypatch) -> None:
    commands = record_commands(monkeypatch)
    transport = make_command_transport("wget", "TestAgent/1.0")

    asyncio.run(transport(URL, strategy("wget", timeout=15.5)))

    args = commands[0]
    assert args[0] == "wget"
    assert args[-1] == URL
    assert "--timeout=15" in args
    assert "--output-document=-" in args
    assert "--user-agent=TestAgent/1.0" in args
    assert "--no-check-certificate" in args


def test_unsupported_command_transport() -> None:
    transport = make_command_transport("lynx")
    with pytest.raises(ValueError):
        asyncio.run(transport(URL, strategy("lynx")))


def test_default_page_cascade_uses_command_fallbacks() -> None:
    assert [entry.transport for entry in DEFAULT_PAGE_STRATEGIES][-2:] == ["wget", "curl"]
