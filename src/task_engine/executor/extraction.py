"""Text extraction from fetched HTML pages."""

from __future__ import annotations

import logging

import trafilatura
from lxml import etree
from lxml import html as lxml_html
from lxml.cssselect import SelectorError

from task_engine.executor.base import ActionExecutionError

logger = logging.getLogger(__name__)


def extract_text(
    document: str,
    *,
    selector: str | None = None,
    url: str | None = None,
    max_chars: int = 0,
) -> str | None:
    """Return text of the first ``selector`` match, or the page's main text.

    A selector that matches nothing yields ``None``; the scrape itself still
    counts as successful.
    """

    if not document or not document.strip():
        return None

    text = _select_text(document, selector) if selector else _main_text(document, url=url)
    if text and max_chars > 0 and len(text) > max_chars:
        text = text[:max_chars].rstrip()
    return text


def _select_text(document: str, selector: str) -> str | None:
    try:
        tree = lxml_html.fromstring(document)
    except (etree.ParserError, ValueError) as error:
        logger.warning("Cannot parse HTML for selector %s: %s", selector, error)
        return None
    try:
        matches = tree.cssselect(selector)
    except SelectorError as error:
        raise ActionExecutionError(
            f"Invalid CSS selector {selector!r}: {error}",
            transient=False,
        ) from error
    if not matches:
        return None
    text = matches[0].text_content().strip()
    return text or None


def _main_text(document: str, *, url: str | None) -> str | None:
    try:
        return trafilatura.extract(document, url=url, favor_precision=True)
    except Exception as exc:  # noqa: BLE001
        logger.warning("trafilatura.extract failed for %s: %s", url or "<unknown>", exc)
        return None
