"""
Child language-server backend.

One LanguageBackend runs per embedded language. It spawns the language
server for that language (e.g. pyright-langserver for Python), keeps the
synthetic documents in sync with it under their alias URIs, and forwards
requests that are already in synthetic coordinates. Translation back to the
host is not done here; the bridge hands the results to the translator.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import TYPE_CHECKING, Any, Callable, Optional, Union

from lsprotocol import types as lsp
from pygls.lsp.client import LanguageClient

from polyglot_lsp import __version__

if TYPE_CHECKING:
    from pygls.lsp.server import LanguageServer

logger = logging.getLogger(__name__)

# Protocol method -> LanguageClient coroutine sending it
_REQUEST_CALLS: dict[str, str] = {
    lsp.TEXT_DOCUMENT_DEFINITION: "text_document_definition_async",
    lsp.TEXT_DOCUMENT_TYPE_DEFINITION: "text_document_type_definition_async",
    lsp.TEXT_DOCUMENT_IMPLEMENTATION: "text_document_implementation_async",
    lsp.TEXT_DOCUMENT_DECLARATION: "text_document_declaration_async",
    lsp.TEXT_DOCUMENT_REFERENCES: "text_document_references_async",
    lsp.TEXT_DOCUMENT_DOCUMENT_SYMBOL: "text_document_document_symbol_async",
    lsp.TEXT_DOCUMENT_RENAME: "text_document_rename_async",
    lsp.TEXT_DOCUMENT_PREPARE_RENAME: "text_document_prepare_rename_async",
    lsp.TEXT_DOCUMENT_COMPLETION: "text_document_completion_async",
    lsp.COMPLETION_ITEM_RESOLVE: "completion_item_resolve_async",
    lsp.TEXT_DOCUMENT_HOVER: "text_document_hover_async",
    lsp.TEXT_DOCUMENT_SIGNATURE_HELP: "text_document_signature_help_async",
    lsp.TEXT_DOCUMENT_INLAY_HINT: "text_document_inlay_hint_async",
    lsp.WORKSPACE_SYMBOL: "workspace_symbol_async",
}

SUPPORTED_METHODS = frozenset(_REQUEST_CALLS)


class LanguageBackend:
    """Client side of one child language server."""

    def __init__(
        self,
        language: str,
        command: list[str],
        on_diagnostics: Callable[[str, list[lsp.Diagnostic]], None] | None = None,
        settings: dict[str, Any] | None = None,
        server: "LanguageServer | None" = None,
    ) -> None:
        """Initialize the backend.

        Args:
            language: Language id served by the child (e.g. "python").
            command: Command spawning the child over stdio.
            on_diagnostics: Called with (alias uri, diagnostics) whenever the
                child publishes diagnostics.
            settings: Forwarded as initializationOptions and used to answer
                workspace/configuration requests from the child.
            server: The bridge's own LanguageServer, used to forward
                workspace/configuration requests to the editor.
        """
        self.language = language
        self._command = command
        self._client: LanguageClient | None = None
        self._on_diagnostics = on_diagnostics
        self._settings = settings or {}
        self._server: LanguageServer | None = server
        self._open_documents: dict[str, int] = {}  # alias -> version sent
        self._started = False
        self._failed = False

    @property
    def started(self) -> bool:
        return self._started

    @property
    def failed(self) -> bool:
        """True once start() has failed; the backend is not retried."""
        return self._failed

    async def start(self, workspace_root: str | None = None) -> bool:
        """Spawn the child and run the initialize handshake.

        Returns True if the child is ready.
        """
        if self._started:
            return True
        logger.info(f"BACKEND[{self.language}]: starting {self._command}, workspace={workspace_root}")

        self._client = LanguageClient(f"polyglot-lsp-{self.language}", __version__)
        _patch_converter(self._client.protocol._converter)

        @self._client.feature(lsp.TEXT_DOCUMENT_PUBLISH_DIAGNOSTICS)
        def on_publish_diagnostics(params: lsp.PublishDiagnosticsParams) -> None:
            self._handle_diagnostics(params)

        @self._client.feature(lsp.WORKSPACE_CONFIGURATION)
        async def on_workspace_configuration(params: lsp.ConfigurationParams) -> list[Any]:
            return await self._handle_configuration_request(params)

        @self._client.feature(lsp.WINDOW_LOG_MESSAGE)
        def on_log_message(params: lsp.LogMessageParams) -> None:
            self._handle_log_message(params)

        # Indexing progress of the child shows up in the editor
        @self._client.feature(lsp.WINDOW_WORK_DONE_PROGRESS_CREATE)
        async def on_work_done_progress_create(params: lsp.WorkDoneProgressCreateParams) -> None:
            await self._handle_progress_create(params)

        @self._client.feature(lsp.PROGRESS)
        def on_progress(params: lsp.ProgressParams) -> None:
            self._handle_progress(params)

        try:
            await self._client.start_io(*self._command)
        except Exception as e:
            logger.error(f"BACKEND[{self.language}]: failed to start {self._command}: {e}")
            self._client = None
            self._failed = True
            return False

        workspace_uri = Path(workspace_root).as_uri() if workspace_root else None
        workspace_folders = None
        if workspace_root:
            workspace_folders = [
                lsp.WorkspaceFolder(uri=workspace_uri, name=Path(workspace_root).name)
            ]

        try:
            result = await self._client.initialize_async(
                lsp.InitializeParams(
                    capabilities=_client_capabilities(),
                    root_uri=workspace_uri,
                    workspace_folders=workspace_folders,
                    initialization_options=self._settings if self._settings else None,
                )
            )
            server_info = getattr(result, "server_info", None)
            logger.info(f"BACKEND[{self.language}]: initialized: {server_info}")
        except Exception as e:
            logger.error(f"BACKEND[{self.language}]: initialization failed: {e}")
            await self._try_stop_client()
            self._failed = True
            return False

        self._client.initialized(lsp.InitializedParams())
        if self._settings:
            self._client.workspace_did_change_configuration(
                lsp.DidChangeConfigurationParams(settings=self._settings)
            )

        self._started = True
        logger.info(f"BACKEND[{self.language}]: ready: {' '.join(self._command)}")
        return True

    async def stop(self) -> None:
        """Stop the child language server."""
        await self._try_stop_client()
        self._started = False
        self._open_documents.clear()

    async def _try_stop_client(self) -> None:
        if self._client is None:
            return
        try:
            await self._client.shutdown_async(None)
            self._client.exit(None)
        except Exception as e:
            logger.debug(f"BACKEND[{self.language}]: error during shutdown: {e}")
        try:
            await self._client.stop()
        except Exception as e:
            logger.debug(f"BACKEND[{self.language}]: error stopping client: {e}")
        self._client = None

    async def update_settings(self, settings: Any) -> None:
        """Forward settings changes to the child."""
        if isinstance(settings, dict):
            self._settings = settings
        if not self._started or self._client is None:
            return
        self._client.workspace_did_change_configuration(
            lsp.DidChangeConfigurationParams(settings=settings)
        )

    # ------------------------------------------------------------------
    # Document synchronization
    # ------------------------------------------------------------------

    def is_open(self, alias: str) -> bool:
        return alias in self._open_documents

    def sync_document(self, alias: str, text: str, version: int) -> None:
        """Send didOpen for a new alias, or a full-text didChange."""
        if not self._started or self._client is None:
            return

        if alias not in self._open_documents:
            self._client.text_document_did_open(
                lsp.DidOpenTextDocumentParams(
                    text_document=lsp.TextDocumentItem(
                        uri=alias,
                        language_id=self.language,
                        version=version,
                        text=text,
                    )
                )
            )
        elif self._open_documents[alias] != version:
            self._client.text_document_did_change(
                lsp.DidChangeTextDocumentParams(
                    text_document=lsp.VersionedTextDocumentIdentifier(uri=alias, version=version),
                    content_changes=[lsp.TextDocumentContentChangeWholeDocument(text=text)],
                )
            )
        self._open_documents[alias] = version

    def close_document(self, alias: str) -> None:
        if alias not in self._open_documents:
            return
        del self._open_documents[alias]
        if not self._started or self._client is None:
            return
        self._client.text_document_did_close(
            lsp.DidCloseTextDocumentParams(text_document=lsp.TextDocumentIdentifier(uri=alias))
        )

    # ------------------------------------------------------------------
    # Requests
    # ------------------------------------------------------------------

    async def request(self, method: str, params: Any) -> Any:
        """Send a request to the child and return its (untranslated) result.

        Errors reported by the child are raised unchanged.
        """
        if not self._started or self._client is None:
            return None
        call = _REQUEST_CALLS.get(method)
        if call is None:
            raise ValueError(f"unsupported method: {method}")
        logger.debug(f"BACKEND[{self.language}]: -> {method}")
        return await getattr(self._client, call)(params)

    # ------------------------------------------------------------------
    # Child -> bridge traffic
    # ------------------------------------------------------------------

    def _handle_diagnostics(self, params: lsp.PublishDiagnosticsParams) -> None:
        if self._on_diagnostics is None:
            return
        self._on_diagnostics(params.uri, list(params.diagnostics or []))

    def _handle_log_message(self, params: lsp.LogMessageParams) -> None:
        """Re-log window/logMessage from the child."""
        level_map = {
            lsp.MessageType.Error: logging.ERROR,
            lsp.MessageType.Warning: logging.WARNING,
            lsp.MessageType.Info: logging.INFO,
            lsp.MessageType.Log: logging.DEBUG,
            lsp.MessageType.Debug: logging.DEBUG,
        }
        level = level_map.get(params.type, logging.DEBUG)
        logger.log(level, f"[{self.language}] {params.message}")

    async def _handle_progress_create(self, params: lsp.WorkDoneProgressCreateParams) -> None:
        """Forward window/workDoneProgress/create from the child to the editor."""
        if self._server is None:
            return
        try:
            await self._server.work_done_progress.create_async(params.token)
        except Exception as e:
            logger.debug(f"BACKEND[{self.language}]: progress create forward failed: {e}")

    def _handle_progress(self, params: lsp.ProgressParams) -> None:
        """Forward $/progress notifications from the child to the editor."""
        if self._server is None:
            return
        token, value = params.token, params.value
        try:
            progress = self._server.work_done_progress
            if isinstance(value, lsp.WorkDoneProgressBegin):
                value.title = f"{value.title} ({self.language})"
                progress.begin(token, value)
            elif isinstance(value, lsp.WorkDoneProgressReport):
                progress.report(token, value)
            elif isinstance(value, lsp.WorkDoneProgressEnd):
                progress.end(token, value)
            else:
                # Raw dict from JSON
                self._server.protocol.notify(lsp.PROGRESS, lsp.ProgressParams(token=token, value=value))
        except Exception as e:
            logger.debug(f"BACKEND[{self.language}]: progress forward failed: {e}")

    async def _handle_configuration_request(self, params: lsp.ConfigurationParams) -> list[Any]:
        """Answer workspace/configuration from the child.

        Asks the editor first and falls back to the configured settings.
        """
        if self._server is not None:
            try:
                result = await self._server.send_request_async(lsp.WORKSPACE_CONFIGURATION, params)
                if result is not None:
                    return result
            except Exception as e:
                logger.debug(f"BACKEND[{self.language}]: editor config request failed: {e}")
        return self._resolve_settings(params)

    def _resolve_settings(self, params: lsp.ConfigurationParams) -> list[Any]:
        results = []
        for item in params.items:
            section = item.section or ""
            value: Any = self._settings
            if section:
                for part in section.split("."):
                    if isinstance(value, dict) and part in value:
                        value = value[part]
                    else:
                        value = {}
                        break
            results.append(value)
        return results


def _client_capabilities() -> lsp.ClientCapabilities:
    """Capabilities announced to every child server."""
    return lsp.ClientCapabilities(
        text_document=lsp.TextDocumentClientCapabilities(
            synchronization=lsp.TextDocumentSyncClientCapabilities(),
            completion=lsp.CompletionClientCapabilities(
                completion_item=lsp.ClientCompletionItemOptions(snippet_support=True),
            ),
            hover=lsp.HoverClientCapabilities(
                content_format=[lsp.MarkupKind.Markdown, lsp.MarkupKind.PlainText],
            ),
            signature_help=lsp.SignatureHelpClientCapabilities(),
            definition=lsp.DefinitionClientCapabilities(link_support=True),
            type_definition=lsp.TypeDefinitionClientCapabilities(link_support=True),
            implementation=lsp.ImplementationClientCapabilities(link_support=True),
            declaration=lsp.DeclarationClientCapabilities(link_support=True),
            references=lsp.ReferenceClientCapabilities(),
            document_symbol=lsp.DocumentSymbolClientCapabilities(
                hierarchical_document_symbol_support=True,
            ),
            rename=lsp.RenameClientCapabilities(prepare_support=True),
            publish_diagnostics=lsp.PublishDiagnosticsClientCapabilities(
                related_information=True,
            ),
            inlay_hint=lsp.InlayHintClientCapabilities(),
        ),
        workspace=lsp.WorkspaceClientCapabilities(
            configuration=True,
            workspace_folders=True,
            workspace_edit=lsp.WorkspaceEditClientCapabilities(document_changes=True),
            symbol=lsp.WorkspaceSymbolClientCapabilities(),
        ),
        window=lsp.WindowClientCapabilities(work_done_progress=True),
    )


# ---------------------------------------------------------------------------
# lsprotocol issue #430: the cattrs converter lacks a structure hook for the
# Optional variant of the notebook document filter union. Servers that
# advertise notebookDocumentSync capabilities trigger it.
# ---------------------------------------------------------------------------
_NotebookFilterUnion = Optional[
    Union[
        str,
        lsp.NotebookDocumentFilterNotebookType,
        lsp.NotebookDocumentFilterScheme,
        lsp.NotebookDocumentFilterPattern,
    ]
]


def _patch_converter(converter: Any) -> None:
    """Register missing lsprotocol cattrs hooks on *converter*."""

    def _notebook_filter_hook(obj: Any, _: Any) -> Any:
        if obj is None:
            return None
        if isinstance(obj, str):
            return obj
        if "notebookType" in obj:
            return converter.structure(obj, lsp.NotebookDocumentFilterNotebookType)
        if "scheme" in obj:
            return converter.structure(obj, lsp.NotebookDocumentFilterScheme)
        return converter.structure(obj, lsp.NotebookDocumentFilterPattern)

    converter.register_structure_hook(_NotebookFilterUnion, _notebook_filter_hook)
