"""Citation registry and in-text citation markers.

Citations arrive as metadata (``citation`` events, ``run_complete``) and are
referenced from message text by ``<citation .../>`` markers. The registry
keeps every citation received for the thread, deduplicated by
``citation_id``. ``active`` derives the citations actually referenced by
markers in the current text, so metadata the backend sent but the model never
cited does not show up as a source.
"""

from __future__ import annotations

import re
from typing import Dict, Iterable, List, Optional, Set

from pydantic import ConfigDict, Field

from ..core.logging_config import get_logger
from ..core.models.base import BaseSchema
from ..core.models.domain import CitationMetadata

logger = get_logger(__name__)

# Self-closing, opening-only and paired tags all match.
CITATION_TAG_PATTERN = re.compile(r"<citation\s+((?:[^>])+?)\s*(?:/>|>(?:</citation>)?)")
_ATTRIBUTE_PATTERN = re.compile(r'(\w+)="([^"]*)"')
_RECOGNIZED_ATTRIBUTES = ("item_id", "att_id", "external_id", "sid", "page")


class CitationMarker(BaseSchema):
    """Normalized attributes of one ``<citation>`` tag."""

    item_id: Optional[str] = None
    att_id: Optional[str] = None
    external_id: Optional[str] = None
    sid: Optional[str] = None
    page: Optional[str] = None

    @property
    def item_key(self) -> str:
        """
        Item-level key (``zotero:{lib}-{key}`` or ``external:{id}``).

        The attachment reference takes priority over the item reference.
        """
        ref = parse_item_reference(self.att_id) or parse_item_reference(self.item_id)
        if ref is not None:
            return f"zotero:{ref[0]}-{ref[1]}"
        if self.external_id:
            return f"external:{self.external_id}"
        return ""

    @property
    def full_key(self) -> str:
        """Item key plus the cited location, e.g. ``zotero:1-ABC123:sid=s0-s8:page=3``."""
        base = self.item_key
        if not base:
            return ""
        parts = [base]
        if self.sid:
            parts.append(f"sid={self.sid}")
        if self.page:
            parts.append(f"page={self.page}")
        return ":".join(parts)


class ActiveCitation(BaseSchema):
    citation: CitationMetadata
    number: int


def parse_item_reference(ref: Optional[str]) -> Optional[tuple[int, str]]:
    """Parse a ``"{library_id}-{zotero_key}"`` reference; ``None`` when malformed."""
    if not ref:
        return None
    clean = ref.replace("user-content-", "")
    library, sep, key = clean.partition("-")
    if not sep or not key or not library.isdigit():
        return None
    library_id = int(library)
    if library_id <= 0:
        return None
    return library_id, key


def parse_citation_attributes(attributes: str) -> CitationMarker:
    values: Dict[str, str] = {}
    for name, value in _ATTRIBUTE_PATTERN.findall(attributes):
        if name == "attachment_id":
            name = "att_id"
        if name in _RECOGNIZED_ATTRIBUTES:
            values[name] = value
    return CitationMarker(**values)


def find_citation_markers(text: str) -> List[CitationMarker]:
    return [parse_citation_attributes(m.group(1)) for m in CITATION_TAG_PATTERN.finditer(text)]


def _merge(earlier: CitationMetadata, later: CitationMetadata) -> CitationMetadata:
    update = {name: value for name, value in later if value is not None and value != []}
    return earlier.model_copy(update=update)


class CitationRegistry(BaseSchema):
    """Append-on-arrival citation store for one thread. Immutable; mutators return a new registry."""

    model_config = ConfigDict(populate_by_name=True, extra="forbid", frozen=True)

    citations: List[CitationMetadata] = Field(default_factory=list)

    def __len__(self) -> int:
        return len(self.citations)

    def get(self, citation_id: str) -> Optional[CitationMetadata]:
        for citation in self.citations:
            if citation.citation_id == citation_id:
                return citation
        return None

    def add(self, citation: CitationMetadata, run_id: Optional[str] = None) -> "CitationRegistry":
        """
        Add ``citation`` on behalf of ``run_id``, which overrides any run id in the payload.

        Entries are kept per run: a ``citation_id`` repeated within the same run
        merges the new metadata over the old, while another run gets its own
        entry so that dropping one run never removes a citation another run uses.
        """
        if run_id:
            citation = citation.model_copy(update={"run_id": run_id})
        citations = list(self.citations)
        for pos, existing in enumerate(citations):
            if existing.citation_id == citation.citation_id and existing.run_id == citation.run_id:
                citations[pos] = _merge(existing, citation)
                return CitationRegistry(citations=citations)
        citations.append(citation)
        return CitationRegistry(citations=citations)

    def add_many(self, citations: Iterable[CitationMetadata], run_id: Optional[str] = None) -> "CitationRegistry":
        registry = self
        for citation in citations:
            registry = registry.add(citation, run_id)
        return registry

    def for_run(self, run_id: str) -> List[CitationMetadata]:
        return [c for c in self.citations if c.run_id == run_id]

    def drop_runs(self, run_ids: Iterable[str]) -> "CitationRegistry":
        dropped = set(run_ids)
        return CitationRegistry(citations=[c for c in self.citations if c.run_id not in dropped])

    def active(self, texts: Iterable[str]) -> List[ActiveCitation]:
        """
        Citations referenced by markers in ``texts``.

        Each cited item gets a number by order of its first marker; every
        citation of the same item shares that number. A citation id cited by
        several runs is listed once. Citations are returned in number order,
        then arrival order.
        """
        numbers: Dict[str, int] = {}
        for text in texts:
            for marker in find_citation_markers(text):
                key = marker.item_key
                if key and key not in numbers:
                    numbers[key] = len(numbers) + 1

        active: List[ActiveCitation] = []
        seen: Set[str] = set()
        for c in self.citations:
            if c.item_key in numbers and c.citation_id not in seen:
                seen.add(c.citation_id)
                active.append(ActiveCitation(citation=c, number=numbers[c.item_key]))
        active.sort(key=lambda a: a.number)
        return active
