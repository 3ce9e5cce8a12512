"""
Bridge configuration.

Settings come from the command line and from the ``initializationOptions``
the editor sends with ``initialize``; command-line values win.
"""

from __future__ import annotations

import logging
import shlex
from dataclasses import dataclass, field
from typing import Any, Iterable

from polyglot_lsp.extractor import DEFAULT_LANGUAGE_ALIASES
from polyglot_lsp.store import PADDING_COMPACT, PADDINGS

logger = logging.getLogger(__name__)

# Default server commands per language id
KNOWN_SERVERS: dict[str, list[str]] = {
    "python": ["pyright-langserver", "--stdio"],
    "r": ["R", "--slave", "-e", "languageserver::run()"],
    "julia": ["julia", "--startup-file=no", "-e", "using LanguageServer; runserver()"],
    "javascript": ["typescript-language-server", "--stdio"],
    "typescript": ["typescript-language-server", "--stdio"],
    "bash": ["bash-language-server", "start"],
    "lua": ["lua-language-server"],
    "css": ["vscode-css-language-server", "--stdio"],
    "html": ["vscode-html-language-server", "--stdio"],
    "rust": ["rust-analyzer"],
    "yaml": ["yaml-language-server", "--stdio"],
}


def _as_command(value: Any) -> list[str] | None:
    if isinstance(value, str):
        return shlex.split(value) or None
    if isinstance(value, (list, tuple)) and all(isinstance(v, str) for v in value):
        return list(value) or None
    return None


@dataclass
class BridgeConfig:
    """Resolved bridge settings."""

    servers: dict[str, list[str]] = field(default_factory=lambda: dict(KNOWN_SERVERS))
    """Language id -> command used to spawn its language server."""

    language_aliases: dict[str, str] = field(
        default_factory=lambda: dict(DEFAULT_LANGUAGE_ALIASES)
    )
    """Info-string name -> language id."""

    padding: str = PADDING_COMPACT
    """Synthetic document layout: ``compact`` or ``preserve``."""

    server_settings: dict[str, Any] = field(default_factory=dict)
    """Language id -> settings forwarded to that language server."""

    def command_for(self, language: str) -> list[str] | None:
        return self.servers.get(language)

    def settings_for(self, language: str) -> dict[str, Any]:
        settings = self.server_settings.get(language)
        return settings if isinstance(settings, dict) else {}

    def apply_initialization_options(self, opts: Any) -> None:
        """Merge ``initializationOptions`` into this config."""
        if not isinstance(opts, dict):
            return

        servers = opts.get("servers")
        if isinstance(servers, dict):
            for language, value in servers.items():
                command = _as_command(value)
                if command is None:
                    logger.warning(f"Ignoring invalid server command for '{language}': {value!r}")
                    continue
                self.servers[str(language).lower()] = command

        aliases = opts.get("languageAliases")
        if isinstance(aliases, dict):
            self.language_aliases.update(
                {str(k).lower(): str(v).lower() for k, v in aliases.items()}
            )

        if "padding" in opts:
            self.set_padding(opts["padding"])

        settings = opts.get("serverSettings")
        if isinstance(settings, dict):
            self.server_settings.update(settings)

    def apply_cli_servers(self, entries: Iterable[str]) -> None:
        """Apply ``LANG=COMMAND`` entries from the command line."""
        for entry in entries:
            language, sep, command = entry.partition("=")
            parsed = _as_command(command)
            if not sep or not language or parsed is None:
                logger.warning(f"Ignoring invalid --server value: {entry!r}")
                continue
            self.servers[language.strip().lower()] = parsed

    def set_padding(self, value: Any) -> None:
        if value in PADDINGS:
            self.padding = value
        else:
            logger.warning(f"Unknown padding {value!r}, using '{PADDING_COMPACT}'")
            self.padding = PADDING_COMPACT
