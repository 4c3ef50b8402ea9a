"""Tests for _meta.json category parsing."""

from __future__ import annotations

import json

import pytest

from docsync.filesystem.meta import is_meta_path, parse_meta_file


class TestParseMetaFile:
    def test_root_entries(self) -> None:
        raw = json.dumps(
            {
                "index": {"title": "Home"},
                "guides": {"title": "Guides", "icon": "book", "description": "How-tos"},
                "api": "API",
            }
        )

        entries = parse_meta_file("_meta.json", raw)

        assert [e.category_slug for e in entries] == ["guides", "api"]
        assert [e.order for e in entries] == [0, 1]
        assert entries[0].icon == "book"
        assert entries[0].description == "How-tos"
        assert entries[1].title == "API"
        assert all(e.level == 0 and e.parent_slug is None for e in entries)

    def test_nested_entries_are_namespaced(self) -> None:
        entries = parse_meta_file("guides/advanced/_meta.json", '{"tuning": "Tuning"}')

        assert entries[0].category_slug == "guides/advanced/tuning"
        assert entries[0].parent_slug == "guides/advanced"
        assert entries[0].level == 2

    def test_non_object_rejected(self) -> None:
        with pytest.raises(ValueError, match="JSON object"):
            parse_meta_file("_meta.json", "[1, 2]")

    def test_entry_without_title_rejected(self) -> None:
        with pytest.raises(ValueError, match="title"):
            parse_meta_file("_meta.json", '{"guides": {"icon": "book"}}')

    def test_invalid_json_rejected(self) -> None:
        with pytest.raises(ValueError):
            parse_meta_file("_meta.json", "{not json")

    def test_meta_path_detection(self) -> None:
        assert is_meta_path("_meta.json")
        assert is_meta_path("guides/_meta.json")
        assert not is_meta_path("guides/meta.json")
