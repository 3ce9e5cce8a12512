"""
Error taxonomy for the polyglot bridge.

None of these ever reach the editor as protocol errors. Extraction problems
are collected and published as diagnostics, coordinate lookups degrade a
single request or item to "unavailable", and alias decode failures mean the
identifier already belongs to a host document.
"""

from __future__ import annotations


class BridgeError(Exception):
    """Base exception for all bridge errors."""


class MalformedRegion(BridgeError):
    """A region marker could not be turned into a chunk.

    Collected by the extractor instead of raised so that one bad region does
    not stop extraction of the others.
    """

    def __init__(self, line: int, reason: str, language: str | None = None) -> None:
        self.line = line
        self.reason = reason
        self.language = language
        super().__init__(f"line {line}: {reason}")

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, MalformedRegion):
            return NotImplemented
        return (self.line, self.reason, self.language) == (
            other.line,
            other.reason,
            other.language,
        )

    def __hash__(self) -> int:
        return hash((self.line, self.reason, self.language))


class PositionOutOfRange(BridgeError):
    """A synthetic line is not inside any chunk (stale mapping)."""

    def __init__(self, language: str, line: int) -> None:
        self.language = language
        self.line = line
        super().__init__(f"synthetic line {line} of '{language}' is not inside a chunk")


class NoSyntheticRegion(BridgeError):
    """A host line is not covered by any chunk of the language."""

    def __init__(self, language: str | None, line: int) -> None:
        self.language = language
        self.line = line
        where = f"'{language}'" if language else "any language"
        super().__init__(f"host line {line} is not covered by {where}")


class NotAnAlias(BridgeError):
    """The identifier was not produced by the alias encoder."""

    def __init__(self, candidate: object) -> None:
        self.candidate = candidate
        super().__init__(f"not a synthetic alias: {candidate!r}")
