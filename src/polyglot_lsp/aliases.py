"""
Synthetic document identifiers.

A synthetic document is known to its language server under an alias URI that
embeds the host document URI and the language id::

    otter://<percent-encoded host uri>/<percent-encoded language>

Both parts are quoted with no safe characters, so a host URI such as
``file:///notes/a.md`` or a language containing ``/`` survives the round
trip. ``decode_alias`` accepts what ``encode_alias`` produces and the
spellings URI normalisation treats as equal (lower-case escapes, escaped
unreserved characters); anything else is rejected.
"""

from __future__ import annotations

import logging
import re
import string
from urllib.parse import quote, unquote

from polyglot_lsp.errors import NotAnAlias

ALIAS_SCHEME = "otter"
_PREFIX = f"{ALIAS_SCHEME}://"

_ESCAPE = re.compile(r"%([0-9A-Fa-f]{2})")
_UNRESERVED = frozenset(string.ascii_letters + string.digits + "-._~")

logger = logging.getLogger(__name__)


def _normalize_escapes(text: str) -> str:
    """Upper-case percent escapes and decode escaped unreserved characters."""

    def fix(match: re.Match) -> str:
        char = chr(int(match.group(1), 16))
        return char if char in _UNRESERVED else match.group(0).upper()

    return _ESCAPE.sub(fix, text)


def encode_alias(host_uri: str, language: str) -> str:
    """Build the alias URI for a (host, language) pair."""
    if not host_uri or not language:
        raise ValueError("host uri and language must be non-empty")
    return f"{_PREFIX}{quote(host_uri, safe='')}/{quote(language, safe='')}"


def decode_alias(alias: str) -> tuple[str, str]:
    """Split an alias URI back into (host uri, language).

    Raises:
        NotAnAlias: if ``alias`` is not (a normalised spelling of) an alias
            produced by ``encode_alias``.
    """
    if not isinstance(alias, str) or not alias.startswith(_PREFIX):
        raise NotAnAlias(alias)

    body = alias[len(_PREFIX):]
    host_part, sep, language_part = body.partition("/")
    if not sep or not host_part or not language_part or "/" in language_part:
        logger.debug(f"ALIAS: malformed alias {alias!r}")
        raise NotAnAlias(alias)

    host_uri = unquote(host_part)
    language = unquote(language_part)
    # Unescaped reserved characters (e.g. ':') are not an alias spelling
    if encode_alias(host_uri, language) != _PREFIX + _normalize_escapes(body):
        logger.debug(f"ALIAS: non-canonical alias {alias!r}")
        raise NotAnAlias(alias)
    return host_uri, language


def is_alias(candidate: object) -> bool:
    """Return True if ``candidate`` is an alias URI. Never raises."""
    try:
        decode_alias(candidate)  # type: ignore[arg-type]
    except (NotAnAlias, ValueError):
        return False
    return True


def host_identity(identifier: str) -> str:
    """Return the host URI behind an identifier.

    Host URIs are returned unchanged, which keeps identifier rewriting
    idempotent.
    """
    try:
        return decode_alias(identifier)[0]
    except NotAnAlias:
        return identifier
