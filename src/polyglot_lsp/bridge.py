"""
The polyglot document bridge.

Ties the document store, request router, response translator and the child
language-server backends together:

- host lifecycle notifications (open / edit / close) keep the synthetic
  documents and the child servers in sync
- ``dispatch`` routes one positional request into the right synthetic
  document and translates the response back
- ``dispatch_all`` fans a whole-document request out to every language and
  merges the translated results
- child diagnostics are translated, merged per host with malformed-region
  warnings and published on the host URI
"""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING, Any, Callable

from lsprotocol import types as lsp

from polyglot_lsp.aliases import encode_alias
from polyglot_lsp.backend import LanguageBackend
from polyglot_lsp.config import BridgeConfig
from polyglot_lsp.errors import MalformedRegion
from polyglot_lsp.router import Router, TranslationContext
from polyglot_lsp.store import DocumentStore
from polyglot_lsp.translator import ResponseTranslator

if TYPE_CHECKING:
    from pygls.lsp.server import LanguageServer

logger = logging.getLogger(__name__)


class _NotApplicable:
    """Returned by dispatch when no language covers the position."""

    def __repr__(self) -> str:
        return "NOT_APPLICABLE"

    def __bool__(self) -> bool:
        return False


NOT_APPLICABLE = _NotApplicable()

BackendFactory = Callable[[str, list[str]], LanguageBackend]
DiagnosticsPublisher = Callable[[str, list[lsp.Diagnostic]], None]


def malformed_region_diagnostic(error: MalformedRegion) -> lsp.Diagnostic:
    """Warning shown on the host line of a region that was skipped."""
    what = f"'{error.language}' region" if error.language else "region"
    return lsp.Diagnostic(
        range=lsp.Range(
            start=lsp.Position(line=error.line, character=0),
            end=lsp.Position(line=error.line + 1, character=0),
        ),
        message=f"Skipped {what}: {error.reason}",
        severity=lsp.DiagnosticSeverity.Warning,
        source="polyglot-lsp",
        code="malformed-region",
    )


def _document_symbol_from_information(item: lsp.SymbolInformation) -> lsp.DocumentSymbol:
    return lsp.DocumentSymbol(
        name=item.name,
        kind=item.kind,
        range=item.location.range,
        selection_range=item.location.range,
        detail=item.container_name,
    )


def _merge_document_symbols(results: list[Any]) -> list[Any]:
    """Concatenate per-language symbol lists into one response.

    A response must be all DocumentSymbol or all SymbolInformation, so when
    servers disagree the flat SymbolInformation entries are converted.
    """
    merged: list[Any] = [item for result in results for item in result or []]
    if any(isinstance(item, lsp.DocumentSymbol) for item in merged):
        merged = [
            _document_symbol_from_information(item) if isinstance(item, lsp.SymbolInformation) else item
            for item in merged
        ]
        merged.sort(key=lambda s: (s.range.start.line, s.range.start.character))
    else:
        merged.sort(key=lambda s: (s.location.range.start.line, s.location.range.start.character))
    return merged


def _merge_inlay_hints(results: list[Any]) -> list[lsp.InlayHint]:
    merged = [hint for result in results for hint in result or []]
    merged.sort(key=lambda h: (h.position.line, h.position.character))
    return merged


class Bridge:
    """Serves a host document's embedded languages through their own servers."""

    def __init__(
        self,
        store: DocumentStore,
        config: BridgeConfig | None = None,
        router: Router | None = None,
        translator: ResponseTranslator | None = None,
        backend_factory: BackendFactory | None = None,
        publish_diagnostics: DiagnosticsPublisher | None = None,
        server: "LanguageServer | None" = None,
    ) -> None:
        self.store = store
        self.config = config or BridgeConfig()
        self.router = router or Router(store)
        self.translator = translator or ResponseTranslator(store)
        self._backend_factory = backend_factory or self._default_backend
        self._publish_diagnostics = publish_diagnostics
        self._server = server
        self.workspace_root: str | None = None

        self._backends: dict[str, LanguageBackend] = {}
        # language -> start-up shared by every caller until it settles
        self._starting: dict[str, asyncio.Task] = {}
        # host uri -> language -> translated diagnostics
        self._diagnostics: dict[str, dict[str, list[lsp.Diagnostic]]] = {}

    def _default_backend(self, language: str, command: list[str]) -> LanguageBackend:
        return LanguageBackend(
            language=language,
            command=command,
            on_diagnostics=self.on_backend_diagnostics,
            settings=self.config.settings_for(language),
            server=self._server,
        )

    # ------------------------------------------------------------------
    # Backends
    # ------------------------------------------------------------------

    @property
    def backends(self) -> dict[str, LanguageBackend]:
        return dict(self._backends)

    async def ensure_backend(self, language: str) -> LanguageBackend | None:
        """Return the running backend for a language, starting it on first use.

        Returns None when no server is configured or the server failed to start.
        """
        backend = self._backends.get(language)
        if backend is None:
            command = self.config.command_for(language)
            if command is None:
                return None
            backend = self._backend_factory(language, command)
            self._backends[language] = backend

        if backend.started:
            return backend
        if backend.failed:
            return None

        task = self._starting.get(language)
        if task is None:
            task = asyncio.ensure_future(self._start_backend(backend))
            self._starting[language] = task
            task.add_done_callback(lambda _: self._starting.pop(language, None))
        # A cancelled caller must not abort the start the others wait on
        if not await asyncio.shield(task):
            return None
        return backend

    async def _start_backend(self, backend: LanguageBackend) -> bool:
        if not await backend.start(self.workspace_root):
            return False

        # Documents opened before the server was up
        for doc in self.store.iter_documents():
            if doc.language == backend.language:
                backend.sync_document(encode_alias(doc.host_uri, doc.language), doc.text, doc.version)
        return True

    def _sync(self, host_uri: str, language: str) -> None:
        doc = self.store.get(host_uri, language)
        backend = self._backends.get(language)
        if doc is None or backend is None or not backend.started:
            return
        backend.sync_document(encode_alias(host_uri, language), doc.text, doc.version)

    async def update_settings(self, settings: Any) -> None:
        for backend in self._backends.values():
            await backend.update_settings(settings)

    async def shutdown(self) -> None:
        for backend in self._backends.values():
            await backend.stop()
        self._backends.clear()

    # ------------------------------------------------------------------
    # Host document lifecycle
    # ------------------------------------------------------------------

    async def on_host_open(self, host_uri: str, text: str, language_id: str | None = None) -> None:
        """Start tracking a host document and open its synthetic documents."""
        languages = self.store.open(host_uri, text, language_id)
        logger.debug(f"BRIDGE: opened {host_uri} with {sorted(languages)}")
        for language in self.store.languages(host_uri):
            if await self.ensure_backend(language) is not None:
                self._sync(host_uri, language)
        self.publish(host_uri)

    async def on_host_edit(
        self,
        host_uri: str,
        text: str,
        changed_line_range: tuple[int, int] | None = None,
    ) -> None:
        """Re-sync after a host edit.

        Only languages whose chunks intersect ``changed_line_range`` (or whose
        chunk layout moved) are rebuilt and re-sent.
        """
        touched = self.store.update(host_uri, text, changed_line_range)
        for language in sorted(touched):
            if await self.ensure_backend(language) is not None:
                self._sync(host_uri, language)
        self.publish(host_uri)

    async def on_host_close(self, host_uri: str) -> None:
        """Close every synthetic document of a host and forget it."""
        for doc in self.store.close(host_uri):
            backend = self._backends.get(doc.language)
            if backend is not None:
                backend.close_document(encode_alias(host_uri, doc.language))
        self.router.forget_host(host_uri)
        self._diagnostics.pop(host_uri, None)
        if self._publish_diagnostics is not None:
            self._publish_diagnostics(host_uri, [])

    # ------------------------------------------------------------------
    # Requests
    # ------------------------------------------------------------------

    async def _send(self, context: TranslationContext) -> Any:
        """Send a routed request and translate the answer.

        Child errors propagate unchanged. The context leaves the pending table
        on every exit path, cancellation included.
        """
        try:
            backend = await self.ensure_backend(context.language)
            if backend is None:
                return NOT_APPLICABLE
            result = await backend.request(context.method, context.params)
            context = self.router.complete(context.request_id)
        finally:
            self.router.pending.discard(context.request_id)
        return self.translator.translate(context, result)

    async def dispatch(
        self,
        host_uri: str,
        host_position: lsp.Position,
        method: str,
        params: Any,
    ) -> Any:
        """Serve one positional request from the host document.

        Returns the translated result, or NOT_APPLICABLE when no embedded
        language (or no running server) covers the position.
        """
        context = self.router.route(host_uri, host_position, method, params)
        if context is None:
            return NOT_APPLICABLE
        return await self._send(context)

    async def _gather(self, contexts: list[TranslationContext]) -> list[Any]:
        """Send several routed requests concurrently.

        A failing language is logged and left out. If every language fails
        the first error is raised.
        """
        outcomes = await asyncio.gather(
            *(self._send(context) for context in contexts), return_exceptions=True
        )
        results = []
        errors = []
        for context, outcome in zip(contexts, outcomes):
            if isinstance(outcome, BaseException):
                logger.warning(f"BRIDGE: {context.method} failed for '{context.language}': {outcome}")
                errors.append(outcome)
            elif outcome is not NOT_APPLICABLE:
                results.append(outcome)
        if errors and not results:
            raise errors[0]
        return results

    async def dispatch_all(self, host_uri: str, method: str, params: Any) -> Any:
        """Serve a whole-document request by asking every language."""
        contexts = self.router.fan_out(host_uri, method, params)
        if not contexts:
            return NOT_APPLICABLE
        results = await self._gather(contexts)
        if not results:
            return NOT_APPLICABLE
        if method == lsp.TEXT_DOCUMENT_DOCUMENT_SYMBOL:
            return _merge_document_symbols(results)
        if method == lsp.TEXT_DOCUMENT_INLAY_HINT:
            return _merge_inlay_hints(results)
        return [item for result in results for item in result or []]

    async def resolve_completion(self, item: lsp.CompletionItem) -> lsp.CompletionItem:
        """Resolve a completion item with the server that produced it."""
        context = self.router.route_resolve(item)
        if context is None:
            return item
        result = await self._send(context)
        if result is NOT_APPLICABLE or result is None:
            return item
        return result

    async def workspace_symbols(self, query: str) -> list[Any]:
        """Search symbols in every running child server."""
        params = lsp.WorkspaceSymbolParams(query=query)
        backends = [b for b in self._backends.values() if b.started]
        outcomes = await asyncio.gather(
            *(b.request(lsp.WORKSPACE_SYMBOL, params) for b in backends),
            return_exceptions=True,
        )
        symbols: list[Any] = []
        errors = []
        for backend, outcome in zip(backends, outcomes):
            if isinstance(outcome, BaseException):
                logger.warning(f"BRIDGE: workspace/symbol failed for '{backend.language}': {outcome}")
                errors.append(outcome)
                continue
            symbols.extend(self.translator.translate_workspace_symbols(outcome))
        if errors and len(errors) == len(backends):
            raise errors[0]
        return symbols

    # ------------------------------------------------------------------
    # Diagnostics
    # ------------------------------------------------------------------

    def on_backend_diagnostics(self, uri: str, diagnostics: list[lsp.Diagnostic]) -> None:
        """Translate diagnostics a child published for one of its aliases."""
        translated = self.translator.translate_diagnostics(uri, diagnostics)
        if translated is None:
            logger.debug(f"BRIDGE: ignoring diagnostics for non-synthetic document {uri}")
            return
        host_uri, language, adjusted = translated
        if host_uri not in self.store:
            return
        self._diagnostics.setdefault(host_uri, {})[language] = adjusted
        self.publish(host_uri)

    def diagnostics(self, host_uri: str) -> list[lsp.Diagnostic]:
        """Everything currently known about a host: region warnings first."""
        merged = [malformed_region_diagnostic(e) for e in self.store.errors(host_uri)]
        for language_diagnostics in self._diagnostics.get(host_uri, {}).values():
            merged.extend(language_diagnostics)
        return merged

    def publish(self, host_uri: str) -> None:
        if self._publish_diagnostics is None:
            return
        self._publish_diagnostics(host_uri, self.diagnostics(host_uri))

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    def synthetic_text(self, host_uri: str, language: str) -> str | None:
        doc = self.store.get(host_uri, language)
        return doc.text if doc is not None else None
