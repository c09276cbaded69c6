"""Byte retrieval with cascading fallback strategies."""

from __future__ import annotations

import asyncio
import logging
import warnings
from typing import Awaitable, Callable, Dict, Mapping, Optional, Sequence

import requests
from urllib3.exceptions import InsecureRequestWarning

from .config import DEFAULT_USER_AGENT, RetrievalStrategy
from .errors import RetrievalFailure
from .utils import downgrade_scheme

logger = logging.getLogger("url2epub")

MAX_REDIRECTS = 5

Transport = Callable[[str, RetrievalStrategy], Awaitable[bytes]]


class EmptyContentError(Exception):
    """A strategy completed but returned zero bytes."""


def _request_headers(user_agent: str) -> Dict[str, str]:
    return {
        "User-Agent": user_agent,
        "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,image/webp,*/*;q=0.8",
        "Accept-Language": "en-US,en;q=0.9",
    }


def _requests_get(url: str, strategy: RetrievalStrategy, user_agent: str) -> bytes:
    with requests.Session() as session:
        session.trust_env = strategy.trust_env
        session.max_redirects = MAX_REDIRECTS
        with warnings.catch_warnings():
            if not strategy.verify_tls:
                warnings.simplefilter("ignore", InsecureRequestWarning)
            resp = session.get(
                url,
                headers=_request_headers(user_agent),
                timeout=strategy.timeout,
                verify=strategy.verify_tls,
            )
        resp.raise_for_status()
        return resp.content


def make_requests_transport(user_agent: str = DEFAULT_USER_AGENT) -> Transport:
    async def fetch_with_requests(url: str, strategy: RetrievalStrategy) -> bytes:
        return await asyncio.to_thread(_requests_get, url, strategy, user_agent)

    return fetch_with_requests


async def _run_command(args: Sequence[str]) -> bytes:
    process = await asyncio.create_subprocess_exec(
        *args,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
    )
    try:
        stdout, stderr = await process.communicate()
    except asyncio.CancelledError:
        process.kill()
        await process.wait()
        raise
    if process.returncode != 0:
        message = stderr.decode("utf-8", "replace").strip()
        raise OSError(f"{args[0]} exited with status {process.returncode}: {message}")
    return stdout


def make_command_transport(program: str, user_agent: str = DEFAULT_USER_AGENT) -> Transport:
    """Build a transport that shells out to ``curl`` or ``wget``."""

    async def fetch_with_command(url: str, strategy: RetrievalStrategy) -> bytes:
        seconds = str(max(1, int(strategy.timeout)))
        if program == "curl":
            args = [
                "curl",
                "--location",
                "--silent",
                "--show-error",
                "--fail",
                "--max-time",
                seconds,
                "--max-redirs",
                str(MAX_REDIRECTS),
                "--user-agent",
                user_agent,
            ]
            if not strategy.verify_tls:
                args.append("--insecure")
            args.append(url)
        elif program == "wget":
            args = [
                "wget",
                "--quiet",
                f"--timeout={seconds}",
                "--tries=1",
                f"--max-redirect={MAX_REDIRECTS}",
                f"--user-agent={user_agent}",
                "--output-document=-",
            ]
            if not strategy.verify_tls:
                args.append("--no-check-certificate")
            args.append(url)
        else:
            raise ValueError(f"Unsupported retrieval utility: {program}")
        return await _run_command(args)

    return fetch_with_command


def default_transports(user_agent: str = DEFAULT_USER_AGENT) -> Dict[str, Transport]:
    return {
        "requests": make_requests_transport(user_agent),
        "curl": make_command_transport("curl", user_agent),
        "wget": make_command_transport("wget", user_agent),
    }


class Retriever:
    """Interpret an ordered list of strategies until one yields bytes."""

    def __init__(
        self,
        strategies: Sequence[RetrievalStrategy],
        transports: Optional[Mapping[str, Transport]] = None,
        user_agent: str = DEFAULT_USER_AGENT,
    ) -> None:
        if not strategies:
            raise ValueError("At least one retrieval strategy is required")
        self.strategies = tuple(strategies)
        self.transports: Mapping[str, Transport] = (
            transports if transports is not None else default_transports(user_agent)
        )

    async def _attempt(self, url: str, strategy: RetrievalStrategy) -> bytes:
        transport = self.transports.get(strategy.transport)
        if transport is None:
            raise ValueError(f"Unknown transport {strategy.transport!r}")
        target = downgrade_scheme(url) if strategy.downgrade_scheme else url
        last_error: BaseException = OSError(f"{strategy.name} made no attempt")
        for attempt in range(1, max(1, strategy.retries) + 1):
            try:
                data = await asyncio.wait_for(
                    transport(target, strategy), timeout=strategy.timeout
                )
            except asyncio.TimeoutError:
                last_error = TimeoutError(
                    f"{strategy.name} timed out after {strategy.timeout:.0f}s"
                )
            except (requests.RequestException, OSError, ValueError) as exc:
                last_error = exc
            else:
                if not data:
                    raise EmptyContentError(f"{strategy.name} returned no content")
                return data
            logger.debug(
                "Attempt %d/%d of %s failed for %s: %s",
                attempt,
                strategy.retries,
                strategy.name,
                target,
                last_error,
            )
        raise last_error

    async def fetch(self, url: str) -> bytes:
        """Return the first non-empty payload, or raise ``RetrievalFailure``."""
        last_error: Optional[BaseException] = None
        for index, strategy in enumerate(self.strategies, start=1):
            try:
                data = await self._attempt(url, strategy)
            except (EmptyContentError, requests.RequestException, OSError, ValueError) as exc:
                last_error = exc
                logger.warning(
                    "Strategy %d/%d (%s) failed for %s: %s",
                    index,
                    len(self.strategies),
                    strategy.name,
                    url,
                    exc,
                )
                continue
            logger.debug("Fetched %s with %s (%d bytes)", url, strategy.name, len(data))
            return data
        raise RetrievalFailure(url, last_error)
