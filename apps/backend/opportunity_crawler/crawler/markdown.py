"""
HTML to markdown conversion for LLM extraction.
"""

import re

from bs4 import BeautifulSoup
from markdownify import ATX, markdownify

# Tags with no value to the extraction prompt
NON_CONTENT_TAGS = ["script", "style", "noscript", "iframe", "svg", "canvas", "video", "audio"]

_EXTRA_BLANK_LINES = re.compile(r"\n{3,}")


def html_to_markdown(html: str) -> str:
    """
    Strip non-content tags and convert the remaining markup to markdown.

    Input without markup is returned unchanged.
    """
    if not html or "<" not in html:
        return html or ""

    soup = BeautifulSoup(html, "lxml")
    for tag in soup(NON_CONTENT_TAGS):
        tag.decompose()

    markdown = markdownify(str(soup), heading_style=ATX)
    return _EXTRA_BLANK_LINES.sub("\n\n", markdown).strip()
