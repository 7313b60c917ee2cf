"""UrlContentFetcher over aiohttp, with trafilatura for content extraction."""
from __future__ import annotations

import asyncio
import logging

import aiohttp
import trafilatura

from taskloop.engine.capabilities import UrlContentFetcher
from taskloop.engine.errors import AdapterError

logger = logging.getLogger(__name__)

MAX_CONTENT_CHARS = 50_000
_USER_AGENT = "Mozilla/5.0 (compatible; taskloop/0.1)"


def html_to_markdown(html: str, url: str | None = None) -> str:
    """Main content of an HTML page as markdown; empty when nothing extracts."""
    if not html or not html.strip():
        return ""
    try:
        text = trafilatura.extract(
            html,
            url=url,
            output_format="markdown",
            include_tables=True,
            include_links=True,
            favor_precision=True,
        )
    except Exception as exc:  # noqa: BLE001
        logger.warning("trafilatura.extract failed for %s: %s", url or "<unknown>", exc)
        text = None
    if not text:
        try:
            text = trafilatura.extract(html, url=url, output_format="markdown", favor_recall=True)
        except Exception as exc:  # noqa: BLE001
            logger.warning("trafilatura fallback failed for %s: %s", url or "<unknown>", exc)
            return ""
    return text or ""


class HttpUrlContentFetcher(UrlContentFetcher):
    """Fetches pages with one shared aiohttp session between launch and close."""

    def __init__(self, timeout_seconds: float = 15.0, max_chars: int = MAX_CONTENT_CHARS) -> None:
        self._timeout = aiohttp.ClientTimeout(total=timeout_seconds)
        self._max_chars = max_chars
        self._session: aiohttp.ClientSession | None = None

    async def launch_browser(self) -> None:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                timeout=self._timeout, headers={"User-Agent": _USER_AGENT},
            )

    async def close_browser(self) -> None:
        if self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None

    async def url_to_markdown(self, url: str) -> str:
        if self._session is None:
            raise AdapterError("url_fetch", "launch_browser() must be called before fetching")
        try:
            async with self._session.get(url) as response:
                if response.status >= 400:
                    raise AdapterError("url_fetch", f"HTTP {response.status} for {url}")
                body = await response.text(errors="replace")
                content_type = response.headers.get("Content-Type", "")
        except aiohttp.ClientError as exc:
            raise AdapterError("url_fetch", f"{type(exc).__name__}: {exc}") from exc
        except asyncio.TimeoutError as exc:
            raise AdapterError("url_fetch", f"timed out fetching {url}") from exc

        if "html" in content_type:
            text = html_to_markdown(body, url) or body
        else:
            text = body
        logger.debug("Fetched %s (%d chars, %s)", url, len(text), content_type or "unknown type")
        if len(text) > self._max_chars:
            text = text[: self._max_chars].rstrip() + "\n\n[content truncated]"
        return text
