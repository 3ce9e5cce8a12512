"""
Synthetic document store.

Owns, per host document, one synthetic document per embedded language and
the line mapping between the two coordinate spaces. The store is a plain
registry object: the bridge creates one, opens hosts into it when the editor
opens them, and closes them again on close.

Two layouts are supported for the synthetic text:

- ``compact``: chunks are concatenated with one blank separator line between
  consecutive chunks. Synthetic and host lines differ by a per-chunk offset.
- ``preserve``: gaps are padded with as many blank lines as the host has, so
  every synthetic line has the same number as its host line.

Columns always pass through unchanged.
"""

from __future__ import annotations

import logging
from bisect import bisect_right
from dataclasses import dataclass, field, replace
from typing import Iterator, Mapping, Sequence

from polyglot_lsp.errors import MalformedRegion, NoSyntheticRegion, PositionOutOfRange
from polyglot_lsp.extractor import (
    Chunk,
    ExtractionResult,
    Rule,
    extract_chunks,
    rules_for,
    split_lines,
)

logger = logging.getLogger(__name__)

PADDING_COMPACT = "compact"
PADDING_PRESERVE = "preserve"
PADDINGS = (PADDING_COMPACT, PADDING_PRESERVE)


@dataclass
class SyntheticDocument:
    """Generated per-language document for one host document."""

    language: str
    host_uri: str
    text: str = ""
    chunks: list[Chunk] = field(default_factory=list)
    version: int = 0

    _synthetic_starts: list[int] = field(default_factory=list, repr=False, compare=False)
    _host_starts: list[int] = field(default_factory=list, repr=False, compare=False)

    def set_layout(self, text: str, chunks: list[Chunk]) -> bool:
        """Replace text and chunks. Returns True if anything changed."""
        if text == self.text and chunks == self.chunks:
            return False
        self.text = text
        self.chunks = chunks
        self._synthetic_starts = [c.synthetic_start_line for c in chunks]
        self._host_starts = [c.host_start_line for c in chunks]
        self.version += 1
        return True

    @property
    def line_count(self) -> int:
        if not self.chunks:
            return 0
        return self.chunks[-1].synthetic_end_line + 1

    def chunk_at_synthetic_line(self, line: int) -> Chunk | None:
        idx = bisect_right(self._synthetic_starts, line) - 1
        if idx < 0:
            return None
        chunk = self.chunks[idx]
        return chunk if line <= chunk.synthetic_end_line else None

    def chunk_at_host_line(self, line: int) -> Chunk | None:
        idx = bisect_right(self._host_starts, line) - 1
        if idx < 0:
            return None
        chunk = self.chunks[idx]
        return chunk if line <= chunk.host_end_line else None

    def to_host(self, line: int, col: int) -> tuple[int, int]:
        """Map a synthetic position to the host document."""
        chunk = self.chunk_at_synthetic_line(line)
        if chunk is None:
            raise PositionOutOfRange(self.language, line)
        return (chunk.host_start_line + (line - chunk.synthetic_start_line), col)

    def to_synthetic(self, line: int, col: int) -> tuple[int, int]:
        """Map a host position into this synthetic document."""
        chunk = self.chunk_at_host_line(line)
        if chunk is None:
            raise NoSyntheticRegion(self.language, line)
        return (chunk.synthetic_start_line + (line - chunk.host_start_line), col)


def layout_chunks(
    chunks: Sequence[Chunk], host_lines: Sequence[str], padding: str = PADDING_COMPACT
) -> tuple[str, list[Chunk]]:
    """Build synthetic text from one language's chunks.

    Returns the text and the chunks with ``synthetic_start_line`` filled in.
    """
    out: list[str] = []
    laid_out: list[Chunk] = []
    previous_end: int | None = None

    for chunk in chunks:
        if padding == PADDING_PRESERVE:
            gap = chunk.host_start_line - (previous_end + 1 if previous_end is not None else 0)
        else:
            gap = 1 if previous_end is not None else 0
        out.extend([""] * gap)

        laid_out.append(replace(chunk, synthetic_start_line=len(out)))
        out.extend(host_lines[chunk.host_start_line:chunk.host_end_line + 1])
        previous_end = chunk.host_end_line

    text = "\n".join(out) + "\n" if out else ""
    return text, laid_out


@dataclass
class _HostEntry:
    text: str
    lines: list[str]
    extraction: ExtractionResult
    language_id: str | None = None
    documents: dict[str, SyntheticDocument] = field(default_factory=dict)


class DocumentStore:
    """Registry of host documents and their synthetic documents."""

    def __init__(
        self,
        padding: str = PADDING_COMPACT,
        aliases: Mapping[str, str] | None = None,
        rules: Sequence[Rule] | None = None,
    ) -> None:
        if padding not in PADDINGS:
            raise ValueError(f"unknown padding '{padding}', expected one of {PADDINGS}")
        self.padding = padding
        self.aliases = aliases
        self._rules = rules
        self._hosts: dict[str, _HostEntry] = {}

    def __contains__(self, host_uri: object) -> bool:
        return host_uri in self._hosts

    def _extract(self, text: str, language_id: str | None) -> ExtractionResult:
        rules = self._rules if self._rules is not None else rules_for(language_id)
        return extract_chunks(text, rules=rules, aliases=self.aliases)

    # -- lifecycle ----------------------------------------------------------

    def open(self, host_uri: str, text: str, language_id: str | None = None) -> set[str]:
        """Start tracking a host document. Returns the languages found."""
        entry = _HostEntry(
            text=text,
            lines=split_lines(text),
            extraction=self._extract(text, language_id),
            language_id=language_id,
        )
        self._hosts[host_uri] = entry
        languages = set(entry.extraction.by_language())
        for language in languages:
            self.rebuild(host_uri, language)
        logger.debug(f"STORE: opened {host_uri}: languages={sorted(languages)}")
        return languages

    def update(
        self,
        host_uri: str,
        text: str,
        changed: tuple[int, int] | None = None,
    ) -> set[str]:
        """Re-extract a host document after an edit.

        Args:
            host_uri: The edited host document.
            text: Full host text after the edit.
            changed: Inclusive host line range touched by the edit, or None
                if unknown (every language is then checked).

        Returns:
            Languages whose synthetic document was created or changed.
        """
        entry = self._hosts.get(host_uri)
        if entry is None:
            return self.open(host_uri, text)

        old_chunks = entry.extraction.by_language()
        entry.text = text
        entry.lines = split_lines(text)
        entry.extraction = self._extract(text, entry.language_id)
        new_chunks = entry.extraction.by_language()

        touched: set[str] = set()
        for language in set(old_chunks) | set(new_chunks) | set(entry.documents):
            before = old_chunks.get(language, [])
            after = new_chunks.get(language, [])
            if changed is not None and before == after:
                start, end = changed
                if not any(c.intersects(start, end) for c in after):
                    continue
            doc = self.get(host_uri, language)
            version = doc.version if doc is not None else -1
            if self.rebuild(host_uri, language).version != version:
                touched.add(language)

        logger.debug(f"STORE: updated {host_uri}: rebuilt={sorted(touched)}")
        return touched

    def close(self, host_uri: str) -> list[SyntheticDocument]:
        """Forget a host document. Returns the destroyed synthetic documents."""
        entry = self._hosts.pop(host_uri, None)
        if entry is None:
            return []
        return list(entry.documents.values())

    def rebuild(self, host_uri: str, language: str) -> SyntheticDocument:
        """Recompute the synthetic document of one language.

        Creates the document on first reference. Never touches the documents
        of other languages.
        """
        entry = self._hosts[host_uri]
        doc = entry.documents.get(language)
        if doc is None:
            doc = SyntheticDocument(language=language, host_uri=host_uri)
            entry.documents[language] = doc

        chunks = entry.extraction.by_language().get(language, [])
        text, laid_out = layout_chunks(chunks, entry.lines, self.padding)
        doc.set_layout(text, laid_out)
        return doc

    # -- queries ------------------------------------------------------------

    def hosts(self) -> list[str]:
        return list(self._hosts)

    def text(self, host_uri: str) -> str | None:
        entry = self._hosts.get(host_uri)
        return entry.text if entry is not None else None

    def get(self, host_uri: str, language: str) -> SyntheticDocument | None:
        entry = self._hosts.get(host_uri)
        if entry is None:
            return None
        return entry.documents.get(language)

    def documents(self, host_uri: str) -> list[SyntheticDocument]:
        entry = self._hosts.get(host_uri)
        return list(entry.documents.values()) if entry is not None else []

    def iter_documents(self) -> Iterator[SyntheticDocument]:
        for entry in self._hosts.values():
            yield from entry.documents.values()

    def languages(self, host_uri: str) -> list[str]:
        """Languages currently present in the host, in order of appearance."""
        entry = self._hosts.get(host_uri)
        return entry.extraction.languages if entry is not None else []

    def errors(self, host_uri: str) -> list[MalformedRegion]:
        entry = self._hosts.get(host_uri)
        return list(entry.extraction.errors) if entry is not None else []

    def language_at(self, host_uri: str, line: int) -> str | None:
        """Language of the chunk covering a host line, if any."""
        entry = self._hosts.get(host_uri)
        if entry is None:
            return None
        chunks = entry.extraction.chunks
        idx = bisect_right([c.host_start_line for c in chunks], line) - 1
        if idx >= 0 and chunks[idx].contains_host_line(line):
            return chunks[idx].language
        return None

    def to_host(self, host_uri: str, language: str, line: int, col: int) -> tuple[int, int]:
        doc = self.get(host_uri, language)
        if doc is None:
            raise PositionOutOfRange(language, line)
        return doc.to_host(line, col)

    def to_synthetic(self, host_uri: str, language: str, line: int, col: int) -> tuple[int, int]:
        doc = self.get(host_uri, language)
        if doc is None:
            raise NoSyntheticRegion(language, line)
        return doc.to_synthetic(line, col)
