"""
Response translation from synthetic documents back to host documents.

Every supported method has one rewrite rule. Responses that may be a single
object or a list are normalised into a list first (``_as_items``), the rule
runs per item, and the original shape is restored on the way out
(``_restore_shape``).

Only identifiers that are synthetic aliases are rewritten, and only positions
inside those documents are remapped. Locations in ordinary files pass through
untouched, so translating an already translated response changes nothing.
Items whose positions can no longer be mapped (the host was edited while the
request was in flight) are dropped rather than forwarded with bad positions.
"""

from __future__ import annotations

import logging
from typing import Any, Callable, Sequence

from lsprotocol import types as lsp

from polyglot_lsp.aliases import decode_alias, host_identity, is_alias
from polyglot_lsp.errors import BridgeError, PositionOutOfRange
from polyglot_lsp.router import TranslationContext
from polyglot_lsp.store import DocumentStore

logger = logging.getLogger(__name__)


def _as_items(result: Any) -> tuple[list[Any], bool]:
    """Normalise a single-or-list response into a list."""
    if isinstance(result, (list, tuple)):
        return list(result), True
    return [result], False


def _restore_shape(items: list[Any], was_list: bool) -> Any:
    if was_list:
        return items
    return items[0] if items else None


def _point(position: lsp.Position) -> tuple[int, int]:
    return position.line, position.character


class ResponseTranslator:
    """Rewrites child server responses into host coordinates."""

    def __init__(self, store: DocumentStore) -> None:
        self.store = store
        self._rules: dict[str, Callable[[TranslationContext, Any], Any]] = {
            lsp.TEXT_DOCUMENT_DEFINITION: self._locations,
            lsp.TEXT_DOCUMENT_TYPE_DEFINITION: self._locations,
            lsp.TEXT_DOCUMENT_IMPLEMENTATION: self._locations,
            lsp.TEXT_DOCUMENT_DECLARATION: self._locations,
            lsp.TEXT_DOCUMENT_REFERENCES: self._locations,
            lsp.TEXT_DOCUMENT_DOCUMENT_SYMBOL: self._document_symbols,
            lsp.TEXT_DOCUMENT_RENAME: self._rename,
            lsp.TEXT_DOCUMENT_PREPARE_RENAME: self._prepare_rename,
            lsp.TEXT_DOCUMENT_COMPLETION: self._completion,
            lsp.COMPLETION_ITEM_RESOLVE: self._completion_resolve,
            lsp.TEXT_DOCUMENT_HOVER: self._hover,
            lsp.TEXT_DOCUMENT_INLAY_HINT: self._inlay_hints,
            lsp.TEXT_DOCUMENT_SIGNATURE_HELP: self._passthrough,
        }

    def translate(self, context: TranslationContext, result: Any) -> Any:
        """Translate one successful response using the context it was sent with.

        Afterwards the originating params point at the host document again.
        """
        translated = None
        if result is not None:
            rule = self._rules.get(context.method, self._passthrough)
            translated = rule(context, result)
        context.restore_host_identifier()
        return translated

    # ------------------------------------------------------------------
    # Coordinate helpers
    # ------------------------------------------------------------------

    def _map_position(self, host_uri: str, language: str, position: lsp.Position) -> lsp.Position:
        line, col = self.store.to_host(host_uri, language, position.line, position.character)
        return lsp.Position(line=line, character=col)

    def _map_range(self, host_uri: str, language: str, rng: lsp.Range) -> lsp.Range:
        start = self._map_position(host_uri, language, rng.start)
        try:
            end = self._map_position(host_uri, language, rng.end)
        except PositionOutOfRange:
            # Exclusive end at column 0 of the line after a chunk
            if rng.end.character != 0 or rng.end.line <= rng.start.line:
                raise
            line, _ = self.store.to_host(host_uri, language, rng.end.line - 1, 0)
            end = lsp.Position(line=line + 1, character=0)
        return lsp.Range(start=start, end=end)

    def _context_range(self, context: TranslationContext, rng: lsp.Range) -> lsp.Range:
        return self._map_range(context.host_uri, context.language, rng)

    def translate_location(self, uri: str, rng: lsp.Range) -> tuple[str, lsp.Range]:
        """Map a (uri, range) pair. Non-alias URIs are returned unchanged."""
        if not is_alias(uri):
            return uri, rng
        host_uri, language = decode_alias(uri)
        return host_uri, self._map_range(host_uri, language, rng)

    def _map_edits(self, uri: str, edits: Sequence[Any]) -> tuple[str, list[Any]]:
        """Map text edits targeting ``uri``. Unmappable edits are dropped."""
        if not is_alias(uri):
            return uri, list(edits)
        host_uri, language = decode_alias(uri)
        mapped = []
        for edit in edits:
            try:
                edit.range = self._map_range(host_uri, language, edit.range)
            except BridgeError as e:
                logger.debug(f"TRANSLATE: dropping edit in {uri}: {e}")
                continue
            mapped.append(edit)
        return host_uri, mapped

    # ------------------------------------------------------------------
    # Per-method rules
    # ------------------------------------------------------------------

    def _passthrough(self, context: TranslationContext, result: Any) -> Any:
        return result

    def _translate_location_item(self, context: TranslationContext, item: Any) -> Any:
        if isinstance(item, lsp.Location):
            item.uri, item.range = self.translate_location(item.uri, item.range)
        elif isinstance(item, lsp.LocationLink):
            target_uri = item.target_uri
            item.target_uri, item.target_range = self.translate_location(target_uri, item.target_range)
            _, item.target_selection_range = self.translate_location(
                target_uri, item.target_selection_range
            )
            if item.origin_selection_range is not None:
                item.origin_selection_range = self._context_range(
                    context, item.origin_selection_range
                )
        return item

    def _locations(self, context: TranslationContext, result: Any) -> Any:
        items, was_list = _as_items(result)
        translated = []
        for item in items:
            try:
                translated.append(self._translate_location_item(context, item))
            except BridgeError as e:
                logger.debug(f"TRANSLATE: {context.method}: dropping location: {e}")
        return _restore_shape(translated, was_list)

    def _map_document_symbol(self, context: TranslationContext, symbol: lsp.DocumentSymbol) -> lsp.DocumentSymbol:
        symbol.range = self._context_range(context, symbol.range)
        symbol.selection_range = self._context_range(context, symbol.selection_range)
        if symbol.children:
            children = []
            for child in symbol.children:
                try:
                    children.append(self._map_document_symbol(context, child))
                except BridgeError as e:
                    logger.debug(f"TRANSLATE: dropping symbol {child.name}: {e}")
            symbol.children = children
        return symbol

    def _document_symbols(self, context: TranslationContext, result: Any) -> Any:
        items, was_list = _as_items(result)
        translated = []
        for item in items:
            try:
                if isinstance(item, lsp.DocumentSymbol):
                    item = self._map_document_symbol(context, item)
                elif isinstance(item, lsp.SymbolInformation):
                    location = item.location
                    location.uri, location.range = self.translate_location(location.uri, location.range)
            except BridgeError as e:
                logger.debug(f"TRANSLATE: dropping symbol {getattr(item, 'name', '?')}: {e}")
                continue
            translated.append(item)
        return _restore_shape(translated, was_list)

    def translate_workspace_edit(self, edit: lsp.WorkspaceEdit) -> lsp.WorkspaceEdit:
        """Rewrite every alias in a workspace edit to its own host document.

        Edits for several aliases of the same host are merged into one list.
        Edits for other hosts stay with their own host.
        """
        if edit.changes:
            merged: dict[str, list[lsp.TextEdit]] = {}
            for uri, edits in edit.changes.items():
                target, mapped = self._map_edits(uri, edits)
                merged.setdefault(target, []).extend(mapped)
            edit.changes = merged

        if edit.document_changes:
            changes: list[Any] = []
            by_target: dict[str, lsp.TextDocumentEdit] = {}
            for change in edit.document_changes:
                if isinstance(change, lsp.TextDocumentEdit):
                    uri = change.text_document.uri
                    target, mapped = self._map_edits(uri, change.edits)
                    if target in by_target:
                        by_target[target].edits.extend(mapped)
                        continue
                    if target != uri:
                        # Synthetic versions mean nothing to the host document
                        change.text_document = lsp.OptionalVersionedTextDocumentIdentifier(
                            uri=target, version=None
                        )
                    change.edits = mapped
                    by_target[target] = change
                elif isinstance(change, (lsp.CreateFile, lsp.DeleteFile)):
                    change.uri = host_identity(change.uri)
                elif isinstance(change, lsp.RenameFile):
                    change.old_uri = host_identity(change.old_uri)
                    change.new_uri = host_identity(change.new_uri)
                changes.append(change)
            edit.document_changes = changes

        return edit

    def _rename(self, context: TranslationContext, result: Any) -> Any:
        items, was_list = _as_items(result)
        translated = [
            self.translate_workspace_edit(item) if isinstance(item, lsp.WorkspaceEdit) else item
            for item in items
        ]
        return _restore_shape(translated, was_list)

    def _prepare_rename(self, context: TranslationContext, result: Any) -> Any:
        try:
            if isinstance(result, lsp.Range):
                return self._context_range(context, result)
            if isinstance(result, lsp.PrepareRenamePlaceholder):
                result.range = self._context_range(context, result.range)
        except BridgeError as e:
            logger.debug(f"TRANSLATE: prepareRename: {e}")
            return None
        return result

    def _map_completion_item(self, context: TranslationContext, item: lsp.CompletionItem) -> lsp.CompletionItem:
        if isinstance(item.data, dict) and "uri" in item.data:
            item.data["uri"] = host_identity(item.data["uri"])

        text_edit = item.text_edit
        if isinstance(text_edit, lsp.TextEdit):
            text_edit.range = self._context_range(context, text_edit.range)
        elif isinstance(text_edit, lsp.InsertReplaceEdit):
            text_edit.insert = self._context_range(context, text_edit.insert)
            text_edit.replace = self._context_range(context, text_edit.replace)

        if item.additional_text_edits:
            for edit in item.additional_text_edits:
                edit.range = self._context_range(context, edit.range)
        return item

    def _completion(self, context: TranslationContext, result: Any) -> Any:
        if isinstance(result, lsp.CompletionList):
            items = result.items
        else:
            items, _ = _as_items(result)

        translated = []
        for item in items:
            try:
                translated.append(self._map_completion_item(context, item))
            except BridgeError as e:
                logger.debug(f"TRANSLATE: dropping completion {item.label}: {e}")

        if isinstance(result, lsp.CompletionList):
            result.items = translated
            defaults = result.item_defaults
            if defaults is not None and defaults.edit_range is not None:
                try:
                    if isinstance(defaults.edit_range, lsp.Range):
                        defaults.edit_range = self._context_range(context, defaults.edit_range)
                    else:
                        defaults.edit_range.insert = self._context_range(context, defaults.edit_range.insert)
                        defaults.edit_range.replace = self._context_range(context, defaults.edit_range.replace)
                except BridgeError as e:
                    logger.debug(f"TRANSLATE: dropping default edit range: {e}")
                    defaults.edit_range = None
            return result
        return translated

    def _completion_resolve(self, context: TranslationContext, result: Any) -> Any:
        params = context.params
        if isinstance(getattr(params, "data", None), dict) and "uri" in params.data:
            params.data["uri"] = context.host_uri
        try:
            return self._map_completion_item(context, result)
        except BridgeError as e:
            logger.debug(f"TRANSLATE: completion resolve: {e}")
            return None

    def _hover(self, context: TranslationContext, result: Any) -> Any:
        if isinstance(result, lsp.Hover) and result.range is not None:
            try:
                result.range = self._context_range(context, result.range)
            except BridgeError as e:
                logger.debug(f"TRANSLATE: hover range: {e}")
                result.range = None
        return result

    def _map_inlay_hint(self, context: TranslationContext, hint: lsp.InlayHint) -> lsp.InlayHint:
        hint.position = self._map_position(context.host_uri, context.language, hint.position)
        if hint.text_edits:
            for edit in hint.text_edits:
                edit.range = self._context_range(context, edit.range)
        if isinstance(hint.label, list):
            for part in hint.label:
                if part.location is not None:
                    loc = part.location
                    loc.uri, loc.range = self.translate_location(loc.uri, loc.range)
        return hint

    def _inlay_hints(self, context: TranslationContext, result: Any) -> Any:
        items, _ = _as_items(result)
        wanted = context.host_range
        hints = []
        for hint in items:
            try:
                hint = self._map_inlay_hint(context, hint)
            except BridgeError as e:
                logger.debug(f"TRANSLATE: dropping inlay hint: {e}")
                continue
            if wanted is not None and not (
                _point(wanted.start) <= _point(hint.position) <= _point(wanted.end)
            ):
                continue
            hints.append(hint)
        return hints

    # ------------------------------------------------------------------
    # Context-free translations
    # ------------------------------------------------------------------

    def translate_workspace_symbols(self, result: Any) -> list[Any]:
        """Translate workspace/symbol results from any child server."""
        if result is None:
            return []
        symbols = []
        for item in result:
            location = getattr(item, "location", None)
            try:
                if isinstance(location, lsp.Location):
                    location.uri, location.range = self.translate_location(location.uri, location.range)
                elif location is not None:
                    location.uri = host_identity(location.uri)
            except BridgeError as e:
                logger.debug(f"TRANSLATE: dropping workspace symbol {item.name}: {e}")
                continue
            symbols.append(item)
        return symbols

    def translate_diagnostics(
        self, uri: str, diagnostics: Sequence[lsp.Diagnostic]
    ) -> tuple[str, str, list[lsp.Diagnostic]] | None:
        """Translate diagnostics published for an alias.

        Returns (host uri, language, diagnostics), or None when ``uri`` is not
        a synthetic document.
        """
        if not is_alias(uri):
            return None
        host_uri, language = decode_alias(uri)

        adjusted: list[lsp.Diagnostic] = []
        for diag in diagnostics:
            try:
                diag.range = self._map_range(host_uri, language, diag.range)
                if diag.related_information:
                    for info in diag.related_information:
                        loc = info.location
                        loc.uri, loc.range = self.translate_location(loc.uri, loc.range)
            except BridgeError as e:
                logger.debug(f"TRANSLATE: dropping diagnostic '{diag.message}': {e}")
                continue
            adjusted.append(diag)
        return host_uri, language, adjusted
