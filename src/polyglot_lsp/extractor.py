"""
Chunk extraction for polyglot host documents.

Scans host document text line by line and produces the ordered list of
embedded-language regions ("chunks"). Two rule kinds exist:

- FenceRule: Markdown / Quarto / RMarkdown code fences (``` and ~~~)
- TagRule: fixed-language regions between start and end tags (HTML
  ``<script>`` and ``<style>``)

Each rule scans the document independently. The candidate regions are then
merged in host order, and a region that overlaps an already accepted one is
dropped and reported as MalformedRegion. Bad regions are collected, never
raised, so one broken fence cannot take the other chunks down with it.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Mapping, NamedTuple, Protocol, Sequence

from polyglot_lsp.errors import MalformedRegion

logger = logging.getLogger(__name__)

# LSP line terminators (str.splitlines() also breaks on \x0b, \x0c,  ...)
_LINE_BREAK = re.compile(r"\r\n|\r|\n")

# Info-string names normalised to the language ids the servers are keyed by
DEFAULT_LANGUAGE_ALIASES: dict[str, str] = {
    "py": "python",
    "python3": "python",
    "ipython": "python",
    "js": "javascript",
    "jsx": "javascriptreact",
    "ts": "typescript",
    "tsx": "typescriptreact",
    "sh": "bash",
    "shell": "bash",
    "zsh": "bash",
    "yml": "yaml",
    "c++": "cpp",
    "jl": "julia",
    "rs": "rust",
}


def split_lines(text: str) -> list[str]:
    """Split text into lines the way the protocol counts them."""
    return _LINE_BREAK.split(text)


@dataclass(frozen=True)
class Chunk:
    """One contiguous host region belonging to a single language.

    Line numbers are 0-based and inclusive, and cover content lines only
    (fence or tag marker lines are not part of the chunk).
    """

    language: str
    host_start_line: int
    host_end_line: int
    synthetic_start_line: int = 0

    @property
    def line_count(self) -> int:
        return self.host_end_line - self.host_start_line + 1

    @property
    def synthetic_end_line(self) -> int:
        return self.synthetic_start_line + self.line_count - 1

    def contains_host_line(self, line: int) -> bool:
        return self.host_start_line <= line <= self.host_end_line

    def intersects(self, start_line: int, end_line: int) -> bool:
        return self.host_start_line <= end_line and start_line <= self.host_end_line


@dataclass
class ExtractionResult:
    """Result of scanning a host document."""

    chunks: list[Chunk] = field(default_factory=list)
    """Accepted chunks, ordered by host start line."""

    errors: list[MalformedRegion] = field(default_factory=list)
    """Regions that could not be extracted."""

    def by_language(self) -> dict[str, list[Chunk]]:
        grouped: dict[str, list[Chunk]] = {}
        for chunk in self.chunks:
            grouped.setdefault(chunk.language, []).append(chunk)
        return grouped

    @property
    def languages(self) -> list[str]:
        """Languages in order of first appearance."""
        return list(self.by_language())


class _Region(NamedTuple):
    language: str
    start_line: int
    end_line: int
    marker_line: int


class Rule(Protocol):
    """A region detector."""

    def scan(
        self, lines: Sequence[str], aliases: Mapping[str, str]
    ) -> tuple[list[_Region], list[MalformedRegion]]:
        ...


def normalize_language(name: str, aliases: Mapping[str, str]) -> str:
    """Lower-case an info-string language name and resolve aliases."""
    lang = name.strip().lower()
    return aliases.get(lang, lang)


# ---------------------------------------------------------------------------
# Rules
# ---------------------------------------------------------------------------

_FENCE_OPEN = re.compile(r"^ {0,3}(?P<fence>`{3,}|~{3,})\s*(?P<info>.*?)\s*$")
_FENCE_CLOSE = re.compile(r"^ {0,3}(?P<fence>`{3,}|~{3,})\s*$")
# ```{python}, ```{r, echo=FALSE}, ```{.python .numberLines}
_BRACED_INFO = re.compile(r"^\{\s*\.?(?P<lang>[^\s,}]*)")


class FenceRule:
    """Markdown code fences with a language in the info string."""

    def language_of(self, info: str, aliases: Mapping[str, str]) -> str | None:
        info = info.strip()
        if not info:
            return None
        braced = _BRACED_INFO.match(info)
        if braced:
            name = braced.group("lang")
        else:
            name = info.split()[0].lstrip(".")
        return normalize_language(name, aliases) if name else None

    def scan(
        self, lines: Sequence[str], aliases: Mapping[str, str]
    ) -> tuple[list[_Region], list[MalformedRegion]]:
        regions: list[_Region] = []
        errors: list[MalformedRegion] = []

        # (marker_line, fence, language) of the fence being scanned
        current: tuple[int, str, str | None] | None = None

        for i, line in enumerate(lines):
            if current is None:
                m = _FENCE_OPEN.match(line)
                if m is None:
                    continue
                fence, info = m.group("fence"), m.group("info")
                if fence[0] == "`" and "`" in info:
                    continue  # inline code span, not a fence
                current = (i, fence, self.language_of(info, aliases))
                continue

            m = _FENCE_CLOSE.match(line)
            if m is None:
                continue
            marker_line, fence, language = current
            closer = m.group("fence")
            if closer[0] != fence[0] or len(closer) < len(fence):
                continue
            if language is not None and i - marker_line > 1:
                regions.append(_Region(language, marker_line + 1, i - 1, marker_line))
            current = None

        if current is not None:
            marker_line, _, language = current
            errors.append(MalformedRegion(marker_line, "unclosed code fence", language))

        return regions, errors


class TagRule:
    """Fixed-language regions between an opening and a closing tag line."""

    def __init__(self, language: str, start: str, end: str) -> None:
        self.language = language
        self.start = re.compile(start, re.IGNORECASE)
        self.end = re.compile(end, re.IGNORECASE)

    def scan(
        self, lines: Sequence[str], aliases: Mapping[str, str]
    ) -> tuple[list[_Region], list[MalformedRegion]]:
        regions: list[_Region] = []
        errors: list[MalformedRegion] = []
        language = normalize_language(self.language, aliases)
        opened_at: int | None = None

        for i, line in enumerate(lines):
            start = self.start.search(line)
            if opened_at is None:
                if start is None:
                    if self.end.search(line):
                        errors.append(MalformedRegion(i, "closing tag without opening tag", language))
                    continue
                if self.end.search(line, start.end()):
                    continue  # single-line element, nothing to extract
                opened_at = i
                continue

            end = self.end.search(line)
            if end is not None:
                if i - opened_at > 1:
                    regions.append(_Region(language, opened_at + 1, i - 1, opened_at))
                opened_at = None
            elif start is not None:
                errors.append(MalformedRegion(opened_at, "nested opening tag", language))
                opened_at = i

        if opened_at is not None:
            errors.append(MalformedRegion(opened_at, "unclosed tag", language))

        return regions, errors


MARKDOWN_RULES: tuple[Rule, ...] = (FenceRule(),)

HTML_RULES: tuple[Rule, ...] = (
    TagRule("javascript", r"<script\b[^>]*>", r"</script\s*>"),
    TagRule("css", r"<style\b[^>]*>", r"</style\s*>"),
)

DEFAULT_RULES = MARKDOWN_RULES


def rules_for(language_id: str | None) -> tuple[Rule, ...]:
    """Pick the rule set for a host document's language id."""
    if language_id in ("html", "htm", "xhtml", "vue", "svelte"):
        return HTML_RULES
    return DEFAULT_RULES


# ---------------------------------------------------------------------------
# Extraction
# ---------------------------------------------------------------------------

def extract_chunks(
    text: str,
    rules: Sequence[Rule] | None = None,
    aliases: Mapping[str, str] | None = None,
) -> ExtractionResult:
    """Extract the ordered chunk list from host document text.

    Pure: calling it twice on the same text yields equal results.
    """
    if rules is None:
        rules = DEFAULT_RULES
    if aliases is None:
        aliases = DEFAULT_LANGUAGE_ALIASES

    lines = split_lines(text)
    candidates: list[_Region] = []
    errors: list[MalformedRegion] = []

    for rule in rules:
        found, failed = rule.scan(lines, aliases)
        candidates.extend(found)
        errors.extend(failed)

    result = ExtractionResult()
    last_end = -1
    for region in sorted(candidates, key=lambda r: (r.start_line, r.end_line)):
        if region.start_line <= last_end:
            errors.append(
                MalformedRegion(
                    region.marker_line,
                    f"region overlaps an earlier region ending at line {last_end}",
                    region.language,
                )
            )
            continue
        result.chunks.append(Chunk(region.language, region.start_line, region.end_line))
        last_end = region.end_line

    result.errors = sorted(errors, key=lambda e: e.line)
    for error in result.errors:
        logger.debug(f"EXTRACT: skipped region: {error}")

    return result
