"""Map reference-library items and annotations onto Readwise books and highlights."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import TYPE_CHECKING

from highlight_sync.core.time_utils import to_iso
from highlight_sync.sync.fingerprint import fingerprint_input_for
from highlight_sync.sync.models import HighlightPayload, MappedItem, ParentMetadata

if TYPE_CHECKING:
    from highlight_sync.sync.models import ItemWithAnnotations, SourceAnnotation, SourceItem

logger = logging.getLogger(__name__)

_CONTROL_CHARS = re.compile(r"[\x00-\x08\x0B\x0C\x0E-\x1F\x7F]")
_HORIZONTAL_WS = re.compile(r"[ \t]+")
_EXTRA_NEWLINES = re.compile(r"\n{3,}")

COLOR_NAMES = {
    "#ffd400": "yellow",
    "#ff6666": "red",
    "#5fb236": "green",
    "#2ea8e5": "blue",
    "#a28ae5": "purple",
    "#e56eee": "pink",
    "#f19837": "orange",
    "#aaaaaa": "gray",
}

ITEM_TYPE_CATEGORIES = {
    "journalArticle": "articles",
    "book": "books",
    "bookSection": "books",
    "conferencePaper": "articles",
    "thesis": "articles",
    "report": "articles",
    "webpage": "articles",
    "blogPost": "articles",
    "magazineArticle": "articles",
    "newspaperArticle": "articles",
    "audioRecording": "podcasts",
    "podcast": "podcasts",
    "videoRecording": "videos",
    "film": "videos",
    "tvBroadcast": "videos",
    "radioBroadcast": "podcasts",
    "email": "emails",
    "tweet": "tweets",
}

DEFAULT_CATEGORY = "articles"


def normalize_text(text: str | None) -> str:
    """Strip control characters and collapse runs of whitespace and blank lines."""
    if not text:
        return ""
    normalized = _CONTROL_CHARS.sub("", text)
    normalized = _HORIZONTAL_WS.sub(" ", normalized)
    normalized = _EXTRA_NEWLINES.sub("\n\n", normalized)
    normalized = "\n".join(line.strip() for line in normalized.split("\n"))
    return normalized.strip()


def truncate_text(text: str, max_length: int) -> str:
    """Cut ``text`` to ``max_length`` and append an ellipsis.

    The cut moves back to the last space when that space lies in the final
    20% of the allowed length, so words are not split.
    """
    if len(text) <= max_length:
        return text
    truncated = text[:max_length]
    last_space = truncated.rfind(" ")
    if last_space > max_length * 0.8:
        truncated = truncated[:last_space]
    return truncated + "..."


def color_name(color: str | None) -> str:
    if not color:
        return ""
    return COLOR_NAMES.get(color.lower(), color)


def category_for(item_type: str) -> str:
    return ITEM_TYPE_CATEGORIES.get(item_type, DEFAULT_CATEGORY)


def unique_url_for(item: SourceItem) -> str:
    """DOI link first, then the item URL, then the library URI."""
    if item.doi:
        return f"https://doi.org/{item.doi}"
    if item.url:
        return item.url
    return f"zotero://select/library/{item.library_id}/items/{item.key}"


def deep_link_for(item_key: str, annotation_key: str, attachment_key: str | None) -> str:
    if attachment_key:
        return f"zotero://open-pdf/library/items/{attachment_key}?annotation={annotation_key}"
    return f"zotero://select/library/items/{item_key}"


@dataclass(frozen=True)
class MapperOptions:
    include_deep_links: bool = True
    color_to_tags: bool = False
    collection_tags: bool = False
    max_text_length: int = 5000
    max_note_length: int = 2000
    normalize: bool = True


class ReadwiseHighlightMapper:
    """Default ``FieldMapper`` for the Readwise remote."""

    def __init__(self, options: MapperOptions | None = None) -> None:
        self.options = options or MapperOptions()

    def map_item(self, item: ItemWithAnnotations) -> MappedItem | None:
        source = item.item
        parent = self.map_parent(source)
        highlights: list[HighlightPayload] = []
        for annotation in item.annotations:
            highlight = self.map_annotation(annotation, source, item.attachment_key)
            if highlight is not None:
                highlights.append(highlight)

        if len(highlights) < len(item.annotations):
            logger.debug(
                "readwise_mapper_empty_highlights_dropped",
                extra={
                    "item_key": source.key,
                    "dropped": len(item.annotations) - len(highlights),
                },
            )

        return MappedItem(
            parent_metadata=parent,
            highlights=highlights,
            fingerprint_inputs=[
                fingerprint_input_for(annotation, source.key) for annotation in item.annotations
            ],
        )

    def map_parent(self, source: SourceItem) -> ParentMetadata:
        return ParentMetadata(
            key=source.key,
            title=source.title or "Untitled",
            author=", ".join(source.creators) or None,
            category=category_for(source.item_type),
            source_url=unique_url_for(source),
        )

    def map_annotation(
        self,
        annotation: SourceAnnotation,
        source: SourceItem,
        attachment_key: str | None = None,
    ) -> HighlightPayload | None:
        text = annotation.text
        note = annotation.comment
        # A standalone note has no highlighted text; its comment becomes the highlight.
        if annotation.annotation_type == "note" and not text:
            text, note = note, ""

        if self.options.normalize:
            text = normalize_text(text)
            note = normalize_text(note)
        if not text:
            return None
        text = truncate_text(text, self.options.max_text_length)
        if note:
            note = truncate_text(note, self.options.max_note_length)

        highlight_url = None
        if self.options.include_deep_links:
            highlight_url = deep_link_for(source.key, annotation.key, attachment_key)
            note = f"{note}\n\nOpen in Zotero: {highlight_url}"

        color = color_name(annotation.color)
        tags = list(annotation.tags)
        if self.options.color_to_tags and color:
            tags.append(f"color:{color}")
        if self.options.collection_tags:
            tags.extend(source.collections)

        location = self._location(annotation)
        highlighted_at = annotation.date_modified or annotation.date_added
        return HighlightPayload(
            annotation_key=annotation.key,
            text=text,
            note=note or None,
            location=location,
            location_type="page" if location is not None else None,
            highlighted_at=to_iso(highlighted_at) if highlighted_at else None,
            highlight_url=highlight_url or source.url,
            color=color or None,
            tags=tags,
        )

    @staticmethod
    def _location(annotation: SourceAnnotation) -> int | None:
        if annotation.page_label:
            try:
                return int(annotation.page_label)
            except ValueError:
                pass
        if annotation.page_index is not None:
            return annotation.page_index + 1
        return None
