"""Convert between tracker HTML and the markdown stored locally.

Azure DevOps keeps rich text fields and comments as HTML; feature
descriptions and comment bodies are markdown everywhere else.
"""

from __future__ import annotations

import re

import markdown
from markdownify import markdownify

MARKDOWN_EXTENSIONS = ["fenced_code", "tables", "sane_lists"]


def _clean_markdown(text: str) -> str:
    text = "\n".join(line.rstrip() for line in text.split("\n"))
    return re.sub(r"\n{3,}", "\n\n", text).strip()


def html_to_markdown(html: str) -> str:
    """Convert tracker HTML to markdown. Blank input stays blank."""
    if not html.strip():
        return ""
    converted = markdownify(
        html,
        heading_style="ATX",
        bullets="-",
        escape_underscores=False,
    )
    return _clean_markdown(converted)


def markdown_to_html(text: str) -> str:
    if not text.strip():
        return ""
    return markdown.markdown(text, extensions=MARKDOWN_EXTENSIONS)
