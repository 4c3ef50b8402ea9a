"""Parser for ``_meta.json`` category navigation files."""

from __future__ import annotations

import json
from dataclasses import dataclass

META_FILE_NAME = "_meta.json"


@dataclass
class CategoryEntry:
    """One category declared in a ``_meta.json`` file."""

    category_slug: str
    title: str
    order: int
    level: int
    parent_slug: str | None = None
    icon: str | None = None
    description: str | None = None


def is_meta_path(file_path: str) -> bool:
    """Return True for ``_meta.json`` files."""
    return file_path.rsplit("/", maxsplit=1)[-1] == META_FILE_NAME


def parse_meta_file(file_path: str, raw_content: str) -> list[CategoryEntry]:
    """Parse a ``_meta.json`` file into category entries.

    *file_path* is relative to the repository base path. Entries in a nested
    directory are namespaced by that directory: ``guides/_meta.json`` with key
    ``setup`` yields ``guides/setup`` with parent ``guides``. The ``index``
    key is reserved for the directory landing page and skipped.

    Raises ValueError when the file is not a JSON object of objects.
    """
    data = json.loads(raw_content)
    if not isinstance(data, dict):
        msg = f"{file_path}: expected a JSON object"
        raise ValueError(msg)

    directories = [part for part in file_path.strip("/").split("/")[:-1] if part]
    parent_slug = "/".join(directories) or None

    entries: list[CategoryEntry] = []
    order = 0
    for key, raw_entry in data.items():
        if key == "index":
            continue
        if isinstance(raw_entry, str):
            raw_entry = {"title": raw_entry}
        if not isinstance(raw_entry, dict) or not raw_entry.get("title"):
            msg = f"{file_path}: entry {key!r} must have a title"
            raise ValueError(msg)

        entries.append(
            CategoryEntry(
                category_slug=f"{parent_slug}/{key}" if parent_slug else key,
                title=str(raw_entry["title"]),
                order=order,
                level=len(directories),
                parent_slug=parent_slug,
                icon=raw_entry.get("icon"),
                description=raw_entry.get("description"),
            )
        )
        order += 1
    return entries
