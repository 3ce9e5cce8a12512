"""
Request routing from host coordinates into synthetic documents.

The router decides which synthetic document an outgoing request belongs to,
rewrites the document identifier and position of the request params, and
records a TranslationContext for the response translator. Contexts are keyed
by request id and consumed exactly once.
"""

from __future__ import annotations

import itertools
import logging
from dataclasses import dataclass
from typing import Any

import attrs
from lsprotocol import types as lsp

from polyglot_lsp.aliases import decode_alias, encode_alias, is_alias
from polyglot_lsp.errors import NoSyntheticRegion
from polyglot_lsp.store import DocumentStore

logger = logging.getLogger(__name__)

# Requests carrying a text document and a cursor position
POSITIONAL_METHODS = frozenset(
    {
        lsp.TEXT_DOCUMENT_DEFINITION,
        lsp.TEXT_DOCUMENT_TYPE_DEFINITION,
        lsp.TEXT_DOCUMENT_IMPLEMENTATION,
        lsp.TEXT_DOCUMENT_DECLARATION,
        lsp.TEXT_DOCUMENT_REFERENCES,
        lsp.TEXT_DOCUMENT_RENAME,
        lsp.TEXT_DOCUMENT_PREPARE_RENAME,
        lsp.TEXT_DOCUMENT_COMPLETION,
        lsp.TEXT_DOCUMENT_HOVER,
        lsp.TEXT_DOCUMENT_SIGNATURE_HELP,
    }
)

# Requests about the whole document, sent to every language of the host
FAN_OUT_METHODS = frozenset(
    {
        lsp.TEXT_DOCUMENT_DOCUMENT_SYMBOL,
        lsp.TEXT_DOCUMENT_INLAY_HINT,
    }
)


@dataclass
class TranslationContext:
    """Everything the translator needs to reverse one request's mapping."""

    request_id: int
    method: str
    host_uri: str
    alias: str
    language: str
    params: Any
    """The outgoing params, in synthetic coordinates."""

    host_range: lsp.Range | None = None
    """Host range originally asked for by range requests (inlay hints)."""

    def restore_host_identifier(self) -> None:
        """Point the originating params back at the host document."""
        text_document = getattr(self.params, "text_document", None)
        if text_document is not None:
            text_document.uri = self.host_uri


class PendingRequests:
    """In-flight translation contexts keyed by request id."""

    def __init__(self) -> None:
        self._contexts: dict[int, TranslationContext] = {}
        self._ids = itertools.count(1)

    def __len__(self) -> int:
        return len(self._contexts)

    def __contains__(self, request_id: object) -> bool:
        return request_id in self._contexts

    def record(
        self,
        method: str,
        host_uri: str,
        language: str,
        params: Any,
        host_range: lsp.Range | None = None,
    ) -> TranslationContext:
        context = TranslationContext(
            request_id=next(self._ids),
            method=method,
            host_uri=host_uri,
            alias=encode_alias(host_uri, language),
            language=language,
            params=params,
            host_range=host_range,
        )
        self._contexts[context.request_id] = context
        return context

    def consume(self, request_id: int) -> TranslationContext:
        """Remove and return a context. Raises KeyError if already consumed."""
        return self._contexts.pop(request_id)

    def discard(self, request_id: int) -> None:
        self._contexts.pop(request_id, None)


class Router:
    """Routes host-document requests to synthetic documents."""

    def __init__(self, store: DocumentStore, pending: PendingRequests | None = None) -> None:
        self.store = store
        self.pending = pending if pending is not None else PendingRequests()
        # host uri -> language that answered the last completion request
        self._completion_languages: dict[str, str] = {}
        self._last_completion_host: str | None = None

    def route(
        self,
        host_uri: str,
        position: lsp.Position,
        method: str,
        params: Any,
    ) -> TranslationContext | None:
        """Route a positional request.

        Returns None, without recording anything, when no chunk covers the
        position (e.g. the cursor is in prose).
        """
        language = self.store.language_at(host_uri, position.line)
        if language is None:
            logger.debug(f"ROUTE: {method} at {host_uri}:{position.line} is outside any chunk")
            return None

        try:
            line, col = self.store.to_synthetic(host_uri, language, position.line, position.character)
        except NoSyntheticRegion as e:
            logger.debug(f"ROUTE: {method}: {e}")
            return None

        outgoing = attrs.evolve(
            params,
            text_document=lsp.TextDocumentIdentifier(uri=encode_alias(host_uri, language)),
            position=lsp.Position(line=line, character=col),
        )

        if method == lsp.TEXT_DOCUMENT_COMPLETION:
            self._completion_languages[host_uri] = language
            self._last_completion_host = host_uri

        return self.pending.record(method, host_uri, language, outgoing)

    def fan_out(self, host_uri: str, method: str, params: Any) -> list[TranslationContext]:
        """Route a whole-document request to every language of the host."""
        contexts: list[TranslationContext] = []
        for language in self.store.languages(host_uri):
            doc = self.store.get(host_uri, language)
            if doc is None or not doc.chunks:
                continue

            changes: dict[str, Any] = {
                "text_document": lsp.TextDocumentIdentifier(uri=encode_alias(host_uri, language)),
            }
            host_range = None
            if method == lsp.TEXT_DOCUMENT_INLAY_HINT:
                # Ask for the whole synthetic document, results are clipped later
                host_range = params.range
                changes["range"] = lsp.Range(
                    start=lsp.Position(line=0, character=0),
                    end=lsp.Position(line=doc.line_count, character=0),
                )

            outgoing = attrs.evolve(params, **changes)
            contexts.append(self.pending.record(method, host_uri, language, outgoing, host_range))
        return contexts

    def route_resolve(self, item: lsp.CompletionItem) -> TranslationContext | None:
        """Route completionItem/resolve back to the synthetic document that
        produced the item.

        The item's ``data["uri"]`` holds the host URI (the translator put it
        there); it is swapped back to the alias for the child server.
        """
        data = item.data if isinstance(item.data, dict) else None
        uri = data.get("uri") if data is not None else None

        if is_alias(uri):
            host_uri, language = decode_alias(uri)
        else:
            host_uri = uri if isinstance(uri, str) else self._last_completion_host
            if host_uri is None:
                return None
            language = self._completion_languages.get(host_uri)
            if language is None:
                logger.debug(f"ROUTE: no completion language recorded for {host_uri}")
                return None

        alias = encode_alias(host_uri, language)
        outgoing = item
        if data is not None and "uri" in data:
            outgoing = attrs.evolve(item, data={**data, "uri": alias})

        return self.pending.record(lsp.COMPLETION_ITEM_RESOLVE, host_uri, language, outgoing)

    def complete(self, request_id: int) -> TranslationContext:
        """Consume the context of a finished request."""
        return self.pending.consume(request_id)

    def forget_host(self, host_uri: str) -> None:
        self._completion_languages.pop(host_uri, None)
        if self._last_completion_host == host_uri:
            self._last_completion_host = None
