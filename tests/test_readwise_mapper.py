"""Tests for mapping library items onto Readwise books and highlights."""

from __future__ import annotations

import unittest
from datetime import UTC, datetime

from highlight_sync.adapters.readwise.mapper import (
    MapperOptions,
    ReadwiseHighlightMapper,
    category_for,
    color_name,
    normalize_text,
    truncate_text,
)
from highlight_sync.sync.models import ItemWithAnnotations, SourceAnnotation, SourceItem


def _item(annotations, *, attachment_key=None, **item_fields) -> ItemWithAnnotations:
    fields = {"key": "ITEM1", "library_id": "1", "title": "On Computable Numbers"}
    fields.update(item_fields)
    return ItemWithAnnotations(
        item=SourceItem(**fields), annotations=annotations, attachment_key=attachment_key
    )


class TestTextHelpers(unittest.TestCase):
    def test_normalize_text(self):
        raw = "  Hello\x07   world\t\tagain \n\n\n\n  next line  "
        assert normalize_text(raw) == "Hello world again\n\nnext line"
        assert normalize_text(None) == ""

    def test_truncate_at_word_boundary(self):
        text = "word " * 30
        truncated = truncate_text(text.strip(), 52)
        assert truncated.endswith("...")
        assert truncated == "word " * 9 + "word..."

    def test_truncate_hard_cut_without_late_space(self):
        assert truncate_text("a" * 20, 10) == "a" * 10 + "..."

    def test_short_text_untouched(self):
        assert truncate_text("short", 10) == "short"

    def test_color_and_category(self):
        assert color_name("#FFD400") == "yellow"
        assert color_name("#123456") == "#123456"
        assert color_name("") == ""
        assert category_for("book") == "books"
        assert category_for("podcast") == "podcasts"
        assert category_for("somethingElse") == "articles"


class TestReadwiseHighlightMapper(unittest.TestCase):
    def setUp(self):
        self.mapper = ReadwiseHighlightMapper()

    def test_parent_metadata(self):
        mapped = self.mapper.map_item(
            _item([], creators=["Alan Turing", "Alonzo Church"], item_type="book", doi="10.1/abc")
        )
        parent = mapped.parent_metadata
        assert parent.key == "ITEM1"
        assert parent.author == "Alan Turing, Alonzo Church"
        assert parent.category == "books"
        assert parent.source_url == "https://doi.org/10.1/abc"

    def test_unique_url_fallbacks(self):
        with_url = self.mapper.map_parent(SourceItem(key="K", url="https://example.org/p"))
        bare = self.mapper.map_parent(SourceItem(key="K", library_id="5", title=""))
        assert with_url.source_url == "https://example.org/p"
        assert bare.source_url == "zotero://select/library/5/items/K"
        assert bare.title == "Untitled"
        assert bare.author is None

    def test_highlight_fields(self):
        annotation = SourceAnnotation(
            key="ANN1",
            text="Machines can think",
            comment="Bold claim",
            color="#2ea8e5",
            page_label="12",
            page_index=11,
            tags=["ai"],
            date_added=datetime(2024, 2, 1, tzinfo=UTC),
        )
        mapped = self.mapper.map_item(_item([annotation], attachment_key="ATT1"))

        (highlight,) = mapped.highlights
        link = "zotero://open-pdf/library/items/ATT1?annotation=ANN1"
        assert highlight.annotation_key == "ANN1"
        assert highlight.text == "Machines can think"
        assert highlight.note == f"Bold claim\n\nOpen in Zotero: {link}"
        assert highlight.highlight_url == link
        assert highlight.location == 12
        assert highlight.location_type == "page"
        assert highlight.color == "blue"
        assert highlight.highlighted_at == "2024-02-01T00:00:00Z"
        assert highlight.tags == ["ai"]
        assert [f.annotation_key for f in mapped.fingerprint_inputs] == ["ANN1"]

    def test_page_index_fallback_and_select_link(self):
        annotation = SourceAnnotation(key="ANN1", text="x", page_index=0)
        mapper = ReadwiseHighlightMapper(MapperOptions(color_to_tags=True))
        (highlight,) = mapper.map_item(_item([annotation])).highlights

        assert highlight.location == 1
        assert highlight.highlight_url == "zotero://select/library/items/ITEM1"
        assert highlight.tags == []

    def test_note_annotation_uses_comment_as_text(self):
        annotation = SourceAnnotation(key="N1", annotation_type="note", comment="Standalone thought")
        mapper = ReadwiseHighlightMapper(MapperOptions(include_deep_links=False))
        (highlight,) = mapper.map_item(_item([annotation])).highlights

        assert highlight.text == "Standalone thought"
        assert highlight.note is None

    def test_empty_highlights_are_dropped(self):
        mapped = self.mapper.map_item(
            _item([SourceAnnotation(key="E1", text="   "), SourceAnnotation(key="E2", text="ok")])
        )
        assert [h.annotation_key for h in mapped.highlights] == ["E2"]
        assert len(mapped.fingerprint_inputs) == 2

    def test_optional_tags(self):
        annotation = SourceAnnotation(key="A", text="x", color="#ff6666", tags=["t"])
        mapper = ReadwiseHighlightMapper(MapperOptions(color_to_tags=True, collection_tags=True))
        (highlight,) = mapper.map_item(_item([annotation], collections=["Thesis"])).highlights

        assert highlight.tags == ["t", "color:red", "Thesis"]
