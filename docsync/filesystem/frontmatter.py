"""YAML front matter parser for imported markdown documents."""

from __future__ import annotations

import hashlib
import re
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any

import frontmatter

from docsync.services.datetime_service import parse_datetime

MARKDOWN_SUFFIXES: tuple[str, ...] = (".md", ".mdx")

_WHITESPACE_RE = re.compile(r"\s+")


@dataclass
class ParsedDocument:
    """Markdown file parsed into storable metadata."""

    file_path: str
    file_name: str
    slug: str
    title: str
    content: str
    content_hash: str
    excerpt: str | None = None
    category: str | None = None
    tags: list[str] = field(default_factory=list)
    author: str | None = None
    published_at: datetime | None = None
    is_draft: bool = False
    is_blog_post: bool = False


def hash_content(content: str | bytes) -> str:
    """Compute SHA-256 hash of content."""
    if isinstance(content, str):
        content = content.encode("utf-8")
    return hashlib.sha256(content).hexdigest()


def is_markdown_path(file_path: str) -> bool:
    """Return True for files the importer treats as markdown documents."""
    return file_path.lower().endswith(MARKDOWN_SUFFIXES)


def is_blog_path(file_path: str) -> bool:
    """Blog posts are markdown files under any ``blog/`` directory."""
    return "blog" in file_path.lower().split("/")[:-1]


def slug_from_path(file_path: str) -> str:
    """Derive a URL-friendly slug from a repository-relative path.

    ``docs/guide/index.md`` maps to its directory (``docs/guide``); a root
    ``index.md`` maps to ``docs``.
    """
    name = file_path.strip("/")
    for suffix in MARKDOWN_SUFFIXES:
        if name.lower().endswith(suffix):
            name = name[: -len(suffix)]
            break
    slug = _WHITESPACE_RE.sub("-", name.lower())
    parts = slug.split("/")
    if parts[-1] == "index":
        parts.pop()
        slug = "/".join(parts) or "docs"
    return slug


def extract_title(content: str, file_path: str = "") -> str:
    """Extract title from first # heading in markdown body.

    Falls back to deriving title from filename.
    """
    for line in content.strip().split("\n"):
        stripped = line.strip()
        if stripped.startswith("# ") and not stripped.startswith("## "):
            return stripped.removeprefix("# ").strip()
    if file_path:
        name = file_path.rsplit("/", maxsplit=1)[-1]
        for suffix in MARKDOWN_SUFFIXES:
            name = name.removesuffix(suffix)
        return name.replace("-", " ").replace("_", " ")
    return "Untitled"


def generate_excerpt(content: str, max_length: int = 200) -> str:
    """Generate a plain excerpt from the markdown body.

    Skips headings, code blocks and images.
    """
    lines: list[str] = []
    in_code_block = False
    for line in content.split("\n"):
        stripped = line.strip()
        if stripped.startswith("```"):
            in_code_block = not in_code_block
            continue
        if in_code_block or stripped.startswith(("#", "![")):
            continue
        if stripped:
            lines.append(stripped)

    text = " ".join(lines)
    if len(text) > max_length:
        text = text[:max_length].rsplit(" ", maxsplit=1)[0] + "..."
    return text


def parse_tags(raw_tags: object | None) -> list[str]:
    """Parse tags given either as a YAML list or a comma-separated string."""
    if isinstance(raw_tags, list):
        return [str(tag).strip() for tag in raw_tags if str(tag).strip()]
    if isinstance(raw_tags, str):
        return [tag.strip() for tag in raw_tags.split(",") if tag.strip()]
    return []


def infer_category(file_path: str) -> str | None:
    """Use the first directory below ``docs/`` as the category."""
    parts = file_path.strip("/").split("/")
    try:
        docs_idx = parts.index("docs")
    except ValueError:
        return None
    directories = parts[docs_idx + 1 : -1]
    return directories[0] if directories else None


def _optional_str(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def parse_markdown_document(file_path: str, raw_content: str) -> ParsedDocument:
    """Parse a markdown file with YAML front matter into a ParsedDocument.

    Raises yaml.YAMLError or ValueError when the front matter is malformed.
    """
    post = frontmatter.loads(raw_content)
    metadata = post.metadata

    fm_title = _optional_str(metadata.get("title"))
    title = fm_title or extract_title(post.content, file_path)

    excerpt = _optional_str(metadata.get("excerpt")) or _optional_str(
        metadata.get("description")
    )
    if excerpt is None:
        excerpt = generate_excerpt(post.content) or None

    published_at: datetime | None = None
    for key in ("date", "publishedAt", "published"):
        raw_date = metadata.get(key)
        if raw_date is not None and raw_date != "":
            published_at = parse_datetime(
                raw_date if isinstance(raw_date, date) else str(raw_date)
            )
            break

    is_draft = metadata.get("draft") is True or metadata.get("status") == "draft"

    return ParsedDocument(
        file_path=file_path,
        file_name=file_path.rsplit("/", maxsplit=1)[-1],
        slug=slug_from_path(file_path),
        title=title,
        content=post.content,
        content_hash=hash_content(raw_content),
        excerpt=excerpt,
        category=_optional_str(metadata.get("category")) or infer_category(file_path),
        tags=parse_tags(metadata.get("tags")),
        author=_optional_str(metadata.get("author")),
        published_at=published_at,
        is_draft=is_draft,
        is_blog_post=is_blog_path(file_path),
    )
