"""Tests for the bridge facade."""

import asyncio

import pytest
from unittest.mock import AsyncMock, MagicMock

from lsprotocol import types as lsp
from polyglot_lsp.aliases import encode_alias
from polyglot_lsp.bridge import NOT_APPLICABLE, Bridge, malformed_region_diagnostic
from polyglot_lsp.config import BridgeConfig
from polyglot_lsp.errors import MalformedRegion
from polyglot_lsp.store import DocumentStore

HOST = "file:///notes/analysis.qmd"
PY_ALIAS = encode_alias(HOST, "py")
R_ALIAS = encode_alias(HOST, "r")


def _doc(*lines: str) -> str:
    return "\n".join(lines) + "\n"


# py at host lines 3-5 and 9-10 (synthetic 0-2 and 4-5), r at host line 13
DOCUMENT = _doc(
    "# Title",
    "",
    "```py",
    "x = 1",
    "y = 2",
    "z = 3",
    "```",
    "Some prose",
    "```py",
    "w = x",
    "print(w)",
    "```",
    "```r",
    "v <- 1",
    "```",
)


def _range(start_line, start_char, end_line, end_char):
    return lsp.Range(
        start=lsp.Position(line=start_line, character=start_char),
        end=lsp.Position(line=end_line, character=end_char),
    )


def _position_params(cls, line, character=0):
    return cls(
        text_document=lsp.TextDocumentIdentifier(uri=HOST),
        position=lsp.Position(line=line, character=character),
    )


class FakeBackend:
    """Stands in for a LanguageBackend without spawning anything."""

    def __init__(self, language, command, start_ok=True, start_delay=0):
        self.language = language
        self.command = command
        self.started = False
        self.failed = False
        self.start_ok = start_ok
        self.start_delay = start_delay
        self.start_calls = 0
        self.synced = []
        self.closed = []
        self.request = AsyncMock(return_value=None)
        self.stop = AsyncMock()
        self.update_settings = AsyncMock()

    async def start(self, workspace_root=None):
        self.start_calls += 1
        if self.start_delay:
            await asyncio.sleep(self.start_delay)
        self.started = self.start_ok
        self.failed = not self.start_ok
        return self.start_ok

    def sync_document(self, alias, text, version):
        self.synced.append((alias, text, version))

    def close_document(self, alias):
        self.closed.append(alias)


@pytest.fixture
def backends():
    return {}


@pytest.fixture
def publish():
    return MagicMock()


@pytest.fixture
def bridge(backends, publish):
    def factory(language, command):
        backend = FakeBackend(language, command)
        backends[language] = backend
        return backend

    config = BridgeConfig(servers={"py": ["py-ls"], "r": ["r-ls"]})
    return Bridge(
        DocumentStore(aliases={}),
        config,
        backend_factory=factory,
        publish_diagnostics=publish,
    )


class TestHostLifecycle:
    """Test open / edit / close propagation."""

    @pytest.mark.asyncio
    async def test_open_starts_and_syncs(self, bridge, backends, publish):
        await bridge.on_host_open(HOST, DOCUMENT, "quarto")

        assert set(backends) == {"py", "r"}
        assert backends["py"].command == ["py-ls"]
        assert backends["py"].synced[-1] == (PY_ALIAS, "x = 1\ny = 2\nz = 3\n\nw = x\nprint(w)\n", 1)
        assert backends["r"].synced[-1] == (R_ALIAS, "v <- 1\n", 1)
        publish.assert_called_with(HOST, [])

    @pytest.mark.asyncio
    async def test_language_without_server(self, backends, publish):
        bridge = Bridge(
            DocumentStore(aliases={}),
            BridgeConfig(servers={}),
            backend_factory=lambda language, command: FakeBackend(language, command),
            publish_diagnostics=publish,
        )
        await bridge.on_host_open(HOST, DOCUMENT)
        assert bridge.backends == {}

    @pytest.mark.asyncio
    async def test_concurrent_opens_start_one_server(self, backends, publish):
        def factory(language, command):
            backend = FakeBackend(language, command, start_delay=0.05)
            backends[language] = backend
            return backend

        bridge = Bridge(
            DocumentStore(aliases={}),
            BridgeConfig(servers={"py": ["py-ls"]}),
            backend_factory=factory,
            publish_diagnostics=publish,
        )
        other = "file:///notes/other.md"

        await asyncio.gather(bridge.on_host_open(HOST, DOCUMENT), bridge.on_host_open(other, DOCUMENT))

        assert backends["py"].start_calls == 1
        synced = {alias for alias, _, _ in backends["py"].synced}
        assert synced == {PY_ALIAS, encode_alias(other, "py")}

    @pytest.mark.asyncio
    async def test_cancelled_caller_does_not_abort_start(self, backends, publish):
        def factory(language, command):
            backend = FakeBackend(language, command, start_delay=0.05)
            backends[language] = backend
            return backend

        bridge = Bridge(
            DocumentStore(aliases={}),
            BridgeConfig(servers={"py": ["py-ls"]}),
            backend_factory=factory,
            publish_diagnostics=publish,
        )
        first = asyncio.ensure_future(bridge.ensure_backend("py"))
        await asyncio.sleep(0.01)
        first.cancel()
        with pytest.raises(asyncio.CancelledError):
            await first

        backend = await bridge.ensure_backend("py")

        assert backend is backends["py"]
        assert backend.started
        assert backend.start_calls == 1

    @pytest.mark.asyncio
    async def test_edit_resyncs_touched_language_only(self, bridge, backends):
        await bridge.on_host_open(HOST, DOCUMENT)
        r_synced = list(backends["r"].synced)

        await bridge.on_host_edit(HOST, DOCUMENT.replace("w = x", "w = x + 1"), (9, 9))

        assert backends["py"].synced[-1][2] == 2
        assert "w = x + 1" in backends["py"].synced[-1][1]
        assert backends["r"].synced == r_synced

    @pytest.mark.asyncio
    async def test_close(self, bridge, backends, publish):
        await bridge.on_host_open(HOST, DOCUMENT)

        await bridge.on_host_close(HOST)

        assert backends["py"].closed == [PY_ALIAS]
        assert backends["r"].closed == [R_ALIAS]
        assert HOST not in bridge.store
        publish.assert_called_with(HOST, [])

    @pytest.mark.asyncio
    async def test_shutdown(self, bridge, backends):
        await bridge.on_host_open(HOST, DOCUMENT)
        await bridge.shutdown()
        backends["py"].stop.assert_awaited_once()
        assert bridge.backends == {}

    @pytest.mark.asyncio
    async def test_update_settings(self, bridge, backends):
        await bridge.on_host_open(HOST, DOCUMENT)
        await bridge.update_settings({"py": {}})
        backends["r"].update_settings.assert_awaited_once_with({"py": {}})

    @pytest.mark.asyncio
    async def test_synthetic_text(self, bridge):
        await bridge.on_host_open(HOST, DOCUMENT)
        assert bridge.synthetic_text(HOST, "r") == "v <- 1\n"
        assert bridge.synthetic_text(HOST, "lua") is None


class TestDispatch:
    """Test positional request dispatch."""

    @pytest.mark.asyncio
    async def test_definition_comes_back_in_host_coordinates(self, bridge, backends):
        await bridge.on_host_open(HOST, DOCUMENT)
        backends["py"].request.return_value = lsp.Location(uri=PY_ALIAS, range=_range(0, 0, 0, 1))
        params = _position_params(lsp.DefinitionParams, 9, 4)

        result = await bridge.dispatch(HOST, params.position, lsp.TEXT_DOCUMENT_DEFINITION, params)

        assert result.uri == HOST
        assert result.range == _range(3, 0, 3, 1)
        method, sent = backends["py"].request.call_args[0]
        assert method == lsp.TEXT_DOCUMENT_DEFINITION
        assert sent.text_document.uri == HOST  # restored after translation
        assert sent.position == lsp.Position(line=4, character=4)
        assert len(bridge.router.pending) == 0

    @pytest.mark.asyncio
    async def test_prose_is_not_applicable(self, bridge, backends):
        await bridge.on_host_open(HOST, DOCUMENT)
        params = _position_params(lsp.HoverParams, 7, 2)

        result = await bridge.dispatch(HOST, params.position, lsp.TEXT_DOCUMENT_HOVER, params)

        assert result is NOT_APPLICABLE
        assert not result
        backends["py"].request.assert_not_called()
        backends["r"].request.assert_not_called()
        assert len(bridge.router.pending) == 0

    @pytest.mark.asyncio
    async def test_no_server_is_not_applicable(self, publish):
        bridge = Bridge(
            DocumentStore(aliases={}),
            BridgeConfig(servers={"py": ["py-ls"]}),
            backend_factory=lambda language, command: FakeBackend(language, command),
            publish_diagnostics=publish,
        )
        await bridge.on_host_open(HOST, DOCUMENT)
        params = _position_params(lsp.HoverParams, 13)

        result = await bridge.dispatch(HOST, params.position, lsp.TEXT_DOCUMENT_HOVER, params)

        assert result is NOT_APPLICABLE
        assert len(bridge.router.pending) == 0

    @pytest.mark.asyncio
    async def test_failed_start_is_not_retried(self, publish):
        created = []

        def factory(language, command):
            backend = FakeBackend(language, command, start_ok=False)
            created.append(backend)
            return backend

        bridge = Bridge(
            DocumentStore(aliases={}),
            BridgeConfig(servers={"py": ["missing-ls"]}),
            backend_factory=factory,
            publish_diagnostics=publish,
        )
        await bridge.on_host_open(HOST, DOCUMENT)
        params = _position_params(lsp.HoverParams, 4)

        assert await bridge.dispatch(HOST, params.position, lsp.TEXT_DOCUMENT_HOVER, params) is NOT_APPLICABLE
        assert len(created) == 1
        assert created[0].start_calls == 1

    @pytest.mark.asyncio
    async def test_child_error_propagates(self, bridge, backends):
        await bridge.on_host_open(HOST, DOCUMENT)
        backends["py"].request.side_effect = RuntimeError("child failed")
        params = _position_params(lsp.HoverParams, 4)

        with pytest.raises(RuntimeError, match="child failed"):
            await bridge.dispatch(HOST, params.position, lsp.TEXT_DOCUMENT_HOVER, params)
        assert len(bridge.router.pending) == 0

    @pytest.mark.asyncio
    async def test_cancelled_request_leaves_nothing_pending(self, bridge, backends):
        await bridge.on_host_open(HOST, DOCUMENT)

        async def never_answers(method, params):
            await asyncio.Event().wait()

        backends["py"].request.side_effect = never_answers
        params = _position_params(lsp.CompletionParams, 4, 1)

        tasks = [
            asyncio.ensure_future(bridge.dispatch(HOST, params.position, lsp.TEXT_DOCUMENT_COMPLETION, params))
            for _ in range(5)
        ]
        await asyncio.sleep(0.01)
        assert len(bridge.router.pending) == 5
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

        assert all(task.cancelled() for task in tasks)
        assert len(bridge.router.pending) == 0

    @pytest.mark.asyncio
    async def test_none_result(self, bridge, backends):
        await bridge.on_host_open(HOST, DOCUMENT)
        params = _position_params(lsp.HoverParams, 4)
        assert await bridge.dispatch(HOST, params.position, lsp.TEXT_DOCUMENT_HOVER, params) is None


class TestDispatchAll:
    """Test fan-out requests."""

    @pytest.mark.asyncio
    async def test_document_symbols_merged(self, bridge, backends):
        await bridge.on_host_open(HOST, DOCUMENT)
        backends["py"].request.return_value = [
            lsp.DocumentSymbol(
                name="w",
                kind=lsp.SymbolKind.Variable,
                range=_range(4, 0, 4, 5),
                selection_range=_range(4, 0, 4, 1),
            )
        ]
        backends["r"].request.return_value = [
            lsp.SymbolInformation(
                name="v",
                kind=lsp.SymbolKind.Variable,
                location=lsp.Location(uri=R_ALIAS, range=_range(0, 0, 0, 6)),
            )
        ]
        params = lsp.DocumentSymbolParams(text_document=lsp.TextDocumentIdentifier(uri=HOST))

        result = await bridge.dispatch_all(HOST, lsp.TEXT_DOCUMENT_DOCUMENT_SYMBOL, params)

        assert [s.name for s in result] == ["w", "v"]
        assert all(isinstance(s, lsp.DocumentSymbol) for s in result)
        assert result[1].range == _range(13, 0, 13, 6)

    @pytest.mark.asyncio
    async def test_one_language_failing(self, bridge, backends):
        await bridge.on_host_open(HOST, DOCUMENT)
        backends["py"].request.side_effect = RuntimeError("py failed")
        backends["r"].request.return_value = [
            lsp.InlayHint(position=lsp.Position(line=0, character=1), label=": num")
        ]
        params = lsp.InlayHintParams(
            text_document=lsp.TextDocumentIdentifier(uri=HOST), range=_range(0, 0, 20, 0)
        )

        result = await bridge.dispatch_all(HOST, lsp.TEXT_DOCUMENT_INLAY_HINT, params)

        assert [h.position.line for h in result] == [13]
        assert len(bridge.router.pending) == 0

    @pytest.mark.asyncio
    async def test_every_language_failing(self, bridge, backends):
        await bridge.on_host_open(HOST, DOCUMENT)
        backends["py"].request.side_effect = RuntimeError("py failed")
        backends["r"].request.side_effect = RuntimeError("r failed")
        params = lsp.DocumentSymbolParams(text_document=lsp.TextDocumentIdentifier(uri=HOST))

        with pytest.raises(RuntimeError):
            await bridge.dispatch_all(HOST, lsp.TEXT_DOCUMENT_DOCUMENT_SYMBOL, params)

    @pytest.mark.asyncio
    async def test_prose_only_host(self, bridge):
        await bridge.on_host_open(HOST, "no code here\n")
        params = lsp.DocumentSymbolParams(text_document=lsp.TextDocumentIdentifier(uri=HOST))
        assert await bridge.dispatch_all(HOST, lsp.TEXT_DOCUMENT_DOCUMENT_SYMBOL, params) is NOT_APPLICABLE


class TestCompletionResolve:
    """Test completionItem/resolve."""

    @pytest.mark.asyncio
    async def test_resolved_by_producing_language(self, bridge, backends):
        await bridge.on_host_open(HOST, DOCUMENT)
        backends["r"].request.return_value = [lsp.CompletionItem(label="vapply", data={"uri": R_ALIAS})]
        params = _position_params(lsp.CompletionParams, 13, 1)
        items = await bridge.dispatch(HOST, params.position, lsp.TEXT_DOCUMENT_COMPLETION, params)
        assert items[0].data == {"uri": HOST}

        backends["r"].request.return_value = lsp.CompletionItem(
            label="vapply", data={"uri": R_ALIAS}, detail="Apply a function"
        )
        resolved = await bridge.resolve_completion(items[0])

        method, sent = backends["r"].request.call_args[0]
        assert method == lsp.COMPLETION_ITEM_RESOLVE
        assert sent.data["uri"] == HOST  # restored after translation
        assert resolved.detail == "Apply a function"
        assert resolved.data == {"uri": HOST}

    @pytest.mark.asyncio
    async def test_unroutable_item_returned_unchanged(self, bridge):
        item = lsp.CompletionItem(label="print")
        assert await bridge.resolve_completion(item) is item


class TestWorkspaceSymbols:
    """Test workspace/symbol across backends."""

    @pytest.mark.asyncio
    async def test_symbols_translated(self, bridge, backends):
        await bridge.on_host_open(HOST, DOCUMENT)
        backends["py"].request.return_value = [
            lsp.SymbolInformation(
                name="w",
                kind=lsp.SymbolKind.Variable,
                location=lsp.Location(uri=PY_ALIAS, range=_range(4, 0, 4, 1)),
            )
        ]
        backends["r"].request.return_value = None

        result = await bridge.workspace_symbols("w")

        assert len(result) == 1
        assert result[0].location.uri == HOST
        assert result[0].location.range.start.line == 9

    @pytest.mark.asyncio
    async def test_no_backends(self, bridge):
        assert await bridge.workspace_symbols("w") == []


class TestDiagnostics:
    """Test diagnostics translation and publishing."""

    @pytest.mark.asyncio
    async def test_child_diagnostics_published_on_host(self, bridge, publish):
        await bridge.on_host_open(HOST, DOCUMENT)

        bridge.on_backend_diagnostics(
            PY_ALIAS, [lsp.Diagnostic(range=_range(4, 0, 4, 1), message="undefined name 'x'")]
        )

        uri, diagnostics = publish.call_args[0]
        assert uri == HOST
        assert diagnostics[0].range == _range(9, 0, 9, 1)

    @pytest.mark.asyncio
    async def test_languages_merged(self, bridge, publish):
        await bridge.on_host_open(HOST, DOCUMENT)
        bridge.on_backend_diagnostics(PY_ALIAS, [lsp.Diagnostic(range=_range(0, 0, 0, 1), message="py")])
        bridge.on_backend_diagnostics(R_ALIAS, [lsp.Diagnostic(range=_range(0, 0, 0, 1), message="r")])

        assert [d.message for d in bridge.diagnostics(HOST)] == ["py", "r"]

        # A new publish for one language replaces only that language
        bridge.on_backend_diagnostics(PY_ALIAS, [])
        assert [d.message for d in bridge.diagnostics(HOST)] == ["r"]

    @pytest.mark.asyncio
    async def test_malformed_regions_published(self, bridge, publish):
        await bridge.on_host_open(HOST, _doc("```py", "x = 1", "```", "```r", "y <- 2"))

        uri, diagnostics = publish.call_args[0]
        assert len(diagnostics) == 1
        assert diagnostics[0].code == "malformed-region"
        assert diagnostics[0].source == "polyglot-lsp"
        assert diagnostics[0].severity == lsp.DiagnosticSeverity.Warning
        assert diagnostics[0].range.start.line == 3

    def test_non_alias_ignored(self, bridge, publish):
        bridge.on_backend_diagnostics("file:///lib/os.py", [])
        publish.assert_not_called()

    def test_closed_host_ignored(self, bridge, publish):
        bridge.on_backend_diagnostics(PY_ALIAS, [])
        publish.assert_not_called()

    def test_malformed_region_message(self):
        diagnostic = malformed_region_diagnostic(MalformedRegion(4, "unclosed code fence", "r"))
        assert diagnostic.message == "Skipped 'r' region: unclosed code fence"
        assert diagnostic.range == _range(4, 0, 5, 0)
