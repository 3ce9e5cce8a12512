"""
Polyglot Language Server

pygls server exposing the bridge to the editor. The editor talks to this
server about the host document (e.g. a Markdown file); requests are routed to
the language servers of the embedded languages and the answers come back in
host coordinates.
"""

from __future__ import annotations

import argparse
import logging
from typing import TYPE_CHECKING, Any, Sequence

from lsprotocol import types as lsp
from pygls.lsp.server import LanguageServer

from polyglot_lsp import __version__
from polyglot_lsp.bridge import NOT_APPLICABLE, Bridge
from polyglot_lsp.config import KNOWN_SERVERS, BridgeConfig
from polyglot_lsp.store import PADDINGS, DocumentStore

if TYPE_CHECKING:
    from pygls.workspace import TextDocument

# WARNING by default, Neovim treats all stderr as [ERROR]
logging.basicConfig(
    level=logging.WARNING,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

SYNTHETIC_DOCUMENT_REQUEST = "polyglot/syntheticDocument"


class PolyglotLanguageServer(LanguageServer):
    """Language server for documents with embedded languages."""

    def __init__(self, *args: Any, **kwargs: Any) -> None:
        super().__init__(*args, **kwargs)
        self.config = BridgeConfig()
        self.bridge = self._create_bridge()

        # Command-line overrides, re-applied after initializationOptions
        self._cli_servers: list[str] = []
        self._cli_padding: str | None = None

    def _create_bridge(self) -> Bridge:
        store = DocumentStore(
            padding=self.config.padding,
            aliases=self.config.language_aliases,
        )
        return Bridge(
            store,
            self.config,
            publish_diagnostics=self.publish_host_diagnostics,
            server=self,
        )

    def configure(self, initialization_options: Any = None) -> None:
        """Apply editor options, then command-line overrides, and rebuild the bridge."""
        self.config.apply_initialization_options(initialization_options)
        self.config.apply_cli_servers(self._cli_servers)
        if self._cli_padding is not None:
            self.config.set_padding(self._cli_padding)
        self.bridge = self._create_bridge()

    def publish_host_diagnostics(self, uri: str, diagnostics: list[lsp.Diagnostic]) -> None:
        self.text_document_publish_diagnostics(
            lsp.PublishDiagnosticsParams(uri=uri, diagnostics=diagnostics)
        )

    def get_document(self, uri: str) -> TextDocument | None:
        """Get a document from the workspace."""
        return self.workspace.get_text_document(uri)


# Create server instance
server = PolyglotLanguageServer(
    name="polyglot-lsp",
    version=__version__,
)


def _or_none(result: Any) -> Any:
    return None if result is NOT_APPLICABLE else result


async def _dispatch(method: str, params: Any) -> Any:
    return _or_none(
        await server.bridge.dispatch(
            params.text_document.uri, params.position, method, params
        )
    )


def _changed_line_range(
    changes: Sequence[lsp.TextDocumentContentChangeEvent],
) -> tuple[int, int] | None:
    """Host lines touched by a didChange, or None for full-text changes."""
    start: int | None = None
    end: int | None = None
    for change in changes:
        if not isinstance(change, lsp.TextDocumentContentChangePartial):
            return None
        first = change.range.start.line
        last = max(change.range.end.line, first + change.text.count("\n"))
        start = first if start is None else min(start, first)
        end = last if end is None else max(end, last)
    if start is None or end is None:
        return None
    return (start, end)


def _param(params: Any, name: str) -> Any:
    if isinstance(params, dict):
        return params.get(name)
    return getattr(params, name, None)


# ============================================================================
# Lifecycle Events
# ============================================================================


@server.feature(lsp.INITIALIZE)
async def initialize(params: lsp.InitializeParams) -> None:
    """Handle the initialize request - read initializationOptions."""
    server.configure(params.initialization_options)

    if params.root_uri:
        from urllib.parse import unquote, urlparse
        parsed = urlparse(params.root_uri)
        server.bridge.workspace_root = unquote(parsed.path)
    elif params.root_path:
        server.bridge.workspace_root = params.root_path

    logger.info(f"Configured servers: {sorted(server.config.servers)}, padding={server.config.padding}")


@server.feature(lsp.SHUTDOWN)
async def shutdown(params: Any) -> None:
    """Handle the shutdown request - stop every child server."""
    await server.bridge.shutdown()


# ============================================================================
# Document Events
# ============================================================================


@server.feature(lsp.TEXT_DOCUMENT_DID_OPEN)
async def did_open(params: lsp.DidOpenTextDocumentParams) -> None:
    """Handle document open."""
    doc = params.text_document
    logger.debug(f"Document opened: {doc.uri}")
    await server.bridge.on_host_open(doc.uri, doc.text, doc.language_id)


@server.feature(lsp.TEXT_DOCUMENT_DID_CHANGE)
async def did_change(params: lsp.DidChangeTextDocumentParams) -> None:
    """Handle document change."""
    uri = params.text_document.uri
    doc = server.get_document(uri)
    if doc is None:
        return
    changed = _changed_line_range(params.content_changes)
    logger.debug(f"Document changed: {uri} lines={changed}")
    await server.bridge.on_host_edit(uri, doc.source, changed)


@server.feature(lsp.TEXT_DOCUMENT_DID_CLOSE)
async def did_close(params: lsp.DidCloseTextDocumentParams) -> None:
    """Handle document close."""
    uri = params.text_document.uri
    logger.debug(f"Document closed: {uri}")
    await server.bridge.on_host_close(uri)


# ============================================================================
# Completion
# ============================================================================


@server.feature(
    lsp.TEXT_DOCUMENT_COMPLETION,
    lsp.CompletionOptions(
        trigger_characters=[".", ":", "(", "$", "@", "/", "<", '"'],
        resolve_provider=True,
    ),
)
async def completion(params: lsp.CompletionParams) -> Any:
    """Provide completions from the language at the cursor."""
    return await _dispatch(lsp.TEXT_DOCUMENT_COMPLETION, params)


@server.feature(lsp.COMPLETION_ITEM_RESOLVE)
async def completion_resolve(item: lsp.CompletionItem) -> lsp.CompletionItem:
    """Resolve a completion item with the server that produced it."""
    return await server.bridge.resolve_completion(item)


# ============================================================================
# Hover / Signature Help
# ============================================================================


@server.feature(lsp.TEXT_DOCUMENT_HOVER)
async def hover(params: lsp.HoverParams) -> lsp.Hover | None:
    """Provide hover information."""
    return await _dispatch(lsp.TEXT_DOCUMENT_HOVER, params)


@server.feature(
    lsp.TEXT_DOCUMENT_SIGNATURE_HELP,
    lsp.SignatureHelpOptions(
        trigger_characters=["(", ","],
        retrigger_characters=[","],
    ),
)
async def signature_help(params: lsp.SignatureHelpParams) -> lsp.SignatureHelp | None:
    """Provide signature help."""
    return await _dispatch(lsp.TEXT_DOCUMENT_SIGNATURE_HELP, params)


# ============================================================================
# Navigation
# ============================================================================


@server.feature(lsp.TEXT_DOCUMENT_DEFINITION)
async def definition(params: lsp.DefinitionParams) -> Any:
    """Provide go-to-definition."""
    return await _dispatch(lsp.TEXT_DOCUMENT_DEFINITION, params)


@server.feature(lsp.TEXT_DOCUMENT_TYPE_DEFINITION)
async def type_definition(params: lsp.TypeDefinitionParams) -> Any:
    """Provide go-to-type-definition."""
    return await _dispatch(lsp.TEXT_DOCUMENT_TYPE_DEFINITION, params)


@server.feature(lsp.TEXT_DOCUMENT_IMPLEMENTATION)
async def implementation(params: lsp.ImplementationParams) -> Any:
    """Provide go-to-implementation."""
    return await _dispatch(lsp.TEXT_DOCUMENT_IMPLEMENTATION, params)


@server.feature(lsp.TEXT_DOCUMENT_DECLARATION)
async def declaration(params: lsp.DeclarationParams) -> Any:
    """Provide go-to-declaration."""
    return await _dispatch(lsp.TEXT_DOCUMENT_DECLARATION, params)


@server.feature(lsp.TEXT_DOCUMENT_REFERENCES)
async def references(params: lsp.ReferenceParams) -> list[lsp.Location] | None:
    """Provide find references."""
    return await _dispatch(lsp.TEXT_DOCUMENT_REFERENCES, params)


# ============================================================================
# Rename
# ============================================================================


@server.feature(
    lsp.TEXT_DOCUMENT_RENAME,
    lsp.RenameOptions(prepare_provider=True),
)
async def rename(params: lsp.RenameParams) -> lsp.WorkspaceEdit | None:
    """Rename a symbol inside an embedded language."""
    return await _dispatch(lsp.TEXT_DOCUMENT_RENAME, params)


@server.feature(lsp.TEXT_DOCUMENT_PREPARE_RENAME)
async def prepare_rename(params: lsp.PrepareRenameParams) -> Any:
    """Check whether a rename is possible at the cursor."""
    return await _dispatch(lsp.TEXT_DOCUMENT_PREPARE_RENAME, params)


# ============================================================================
# Document Symbols / Inlay Hints
# ============================================================================


@server.feature(lsp.TEXT_DOCUMENT_DOCUMENT_SYMBOL)
async def document_symbols(params: lsp.DocumentSymbolParams) -> Any:
    """Provide symbols of every embedded language."""
    return _or_none(
        await server.bridge.dispatch_all(
            params.text_document.uri, lsp.TEXT_DOCUMENT_DOCUMENT_SYMBOL, params
        )
    )


@server.feature(lsp.TEXT_DOCUMENT_INLAY_HINT)
async def inlay_hint(params: lsp.InlayHintParams) -> list[lsp.InlayHint] | None:
    """Provide inlay hints of every embedded language in the visible range."""
    hints = _or_none(
        await server.bridge.dispatch_all(
            params.text_document.uri, lsp.TEXT_DOCUMENT_INLAY_HINT, params
        )
    )
    return hints or None


# ============================================================================
# Workspace Symbols
# ============================================================================


@server.feature(lsp.WORKSPACE_SYMBOL)
async def workspace_symbol(params: lsp.WorkspaceSymbolParams) -> Any:
    """Provide workspace symbol search across all running servers."""
    symbols = await server.bridge.workspace_symbols(params.query)
    return symbols or None


# ============================================================================
# Workspace Configuration
# ============================================================================


@server.feature(lsp.WORKSPACE_DID_CHANGE_CONFIGURATION)
async def did_change_configuration(params: lsp.DidChangeConfigurationParams) -> None:
    """Forward configuration changes to the child servers."""
    await server.bridge.update_settings(params.settings)


# ============================================================================
# Synthetic document introspection
# ============================================================================


@server.feature(SYNTHETIC_DOCUMENT_REQUEST)
async def synthetic_document(params: Any) -> dict[str, Any] | None:
    """Return the generated document of one embedded language.

    Params: ``{"uri": <host uri>, "language": <language id>}``. Without a
    language, the list of languages in the host is returned instead.
    """
    uri = _param(params, "uri")
    if not uri:
        return None
    language = _param(params, "language")
    if not language:
        return {"uri": uri, "languages": server.bridge.store.languages(uri)}

    doc = server.bridge.store.get(uri, language)
    if doc is None:
        return None
    return {
        "uri": uri,
        "language": language,
        "version": doc.version,
        "content": doc.text,
        "chunks": [
            {
                "hostStartLine": c.host_start_line,
                "hostEndLine": c.host_end_line,
                "syntheticStartLine": c.synthetic_start_line,
            }
            for c in doc.chunks
        ],
    }


# ============================================================================
# Main Entry Point
# ============================================================================


def main() -> None:
    """Main entry point for the language server."""
    parser = argparse.ArgumentParser(
        description="Polyglot Language Server",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )

    parser.add_argument(
        "--stdio",
        action="store_true",
        default=True,
        help="Use stdio for communication (default)",
    )
    parser.add_argument(
        "--tcp",
        action="store_true",
        help="Use TCP for communication",
    )
    parser.add_argument(
        "--host",
        default="127.0.0.1",
        help="TCP host (default: 127.0.0.1)",
    )
    parser.add_argument(
        "--port",
        type=int,
        default=2087,
        help="TCP port (default: 2087)",
    )
    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        default="WARNING",
        help="Set the logging level (default: WARNING)",
    )
    parser.add_argument(
        "--version",
        action="version",
        version=f"polyglot-lsp {__version__}",
    )
    parser.add_argument(
        "--server",
        action="append",
        default=[],
        metavar="LANG=COMMAND",
        help=(
            "Language server command for an embedded language, e.g. "
            '"python=pylsp". Repeatable. Built-in defaults: '
            + ", ".join(sorted(KNOWN_SERVERS))
        ),
    )
    parser.add_argument(
        "--padding",
        choices=list(PADDINGS),
        help="Synthetic document layout (default: compact)",
    )

    args = parser.parse_args()

    # Set log level
    logging.getLogger().setLevel(getattr(logging, args.log_level))

    # Store overrides for use during initialization
    server._cli_servers = args.server
    server._cli_padding = args.padding
    server.configure()

    if args.tcp:
        logger.info(f"Starting polyglot-lsp in TCP mode on {args.host}:{args.port}")
        server.start_tcp(args.host, args.port)
    else:
        logger.info("Starting polyglot-lsp in stdio mode")
        server.start_io()


if __name__ == "__main__":
    main()
