"""Expand @-mentions in user text.

    @/src/app.py        file content (or a directory listing)
    @https://host/page  page content converted to markdown

The mention stays in the text; the referenced content is appended as
a tagged block after it.
"""
from __future__ import annotations

import logging
import os
import re

from .capabilities import UrlContentFetcher

logger = logging.getLogger(__name__)

MENTION_PATTERN = re.compile(r"(?<![\w@])@(/[^\s]*|https?://[^\s]+)")
_TRAILING_PUNCTUATION = ".,;:!?)]}'\""
MAX_MENTION_FILE_BYTES = 500_000


def find_mentions(text: str) -> list[str]:
    seen: list[str] = []
    for match in MENTION_PATTERN.finditer(text):
        mention = match.group(1).rstrip(_TRAILING_PUNCTUATION)
        if mention and mention not in seen:
            seen.append(mention)
    return seen


def _read_path_mention(cwd: str, mention: str) -> str:
    rel = mention.lstrip("/")
    abs_path = os.path.abspath(os.path.join(cwd, rel))
    if os.path.isdir(abs_path):
        names = sorted(os.listdir(abs_path))
        return "\n".join(
            name + ("/" if os.path.isdir(os.path.join(abs_path, name)) else "")
            for name in names
        ) or "(empty directory)"
    if not os.path.isfile(abs_path):
        return f"Error fetching content: {rel} does not exist"
    if os.path.getsize(abs_path) > MAX_MENTION_FILE_BYTES:
        return f"Error fetching content: {rel} is too large to include"
    try:
        with open(abs_path, encoding="utf-8") as f:
            return f.read()
    except UnicodeDecodeError:
        return f"(Binary file {rel} omitted)"


async def parse_mentions(
    text: str,
    cwd: str,
    url_fetcher: UrlContentFetcher | None = None,
) -> str:
    """Return text followed by one block per distinct mention."""
    mentions = find_mentions(text)
    if not mentions:
        return text

    blocks: list[str] = []
    fetcher_ready = False
    try:
        for mention in mentions:
            if mention.startswith("http"):
                if url_fetcher is None:
                    content = "Error fetching content: URL fetching is not available"
                else:
                    try:
                        if not fetcher_ready:
                            await url_fetcher.launch_browser()
                            fetcher_ready = True
                        content = await url_fetcher.url_to_markdown(mention)
                    except Exception as exc:
                        logger.warning("Failed to fetch mentioned URL %s: %s", mention, exc)
                        content = f"Error fetching content: {exc}"
                blocks.append(f'<url_content url="{mention}">\n{content}\n</url_content>')
            else:
                try:
                    content = _read_path_mention(cwd, mention)
                except OSError as exc:
                    content = f"Error fetching content: {exc}"
                tag = "folder_content" if mention.endswith("/") else "file_content"
                blocks.append(f'<{tag} path="{mention.lstrip("/")}">\n{content}\n</{tag}>')
    finally:
        if fetcher_ready and url_fetcher is not None:
            await url_fetcher.close_browser()

    logger.debug("Expanded %d mention(s)", len(blocks))
    return text + "\n\n" + "\n\n".join(blocks)
