"""Tests for synthetic document aliases."""

import logging

import pytest

from polyglot_lsp.aliases import (
    ALIAS_SCHEME,
    decode_alias,
    encode_alias,
    host_identity,
    is_alias,
)
from polyglot_lsp.errors import NotAnAlias


class TestEncodeAlias:
    """Test alias construction."""

    def test_simple_host(self):
        assert encode_alias("doc1", "py") == "otter://doc1/py"

    def test_scheme(self):
        assert encode_alias("file:///a.md", "python").startswith(f"{ALIAS_SCHEME}://")

    def test_file_uri_is_quoted(self):
        alias = encode_alias("file:///home/user/notes.md", "python")
        assert alias == "otter://file%3A%2F%2F%2Fhome%2Fuser%2Fnotes.md/python"

    @pytest.mark.parametrize("host, language", [("", "py"), ("doc1", "")])
    def test_empty_parts_rejected(self, host, language):
        with pytest.raises(ValueError):
            encode_alias(host, language)


class TestDecodeAlias:
    """Test alias decoding."""

    @pytest.mark.parametrize(
        "host, language",
        [
            ("doc1", "py"),
            ("file:///home/user/notes.md", "python"),
            ("file:///tmp/with%20space.qmd", "r"),
            ("untitled:Untitled-1", "c/c++"),
            ("file:///a/b.md", "100%"),
        ],
    )
    def test_round_trip(self, host, language):
        assert decode_alias(encode_alias(host, language)) == (host, language)

    @pytest.mark.parametrize(
        "candidate",
        [
            "file:///home/user/notes.md",
            "otter://",
            "otter://doc1",
            "otter://doc1/",
            "otter:///py",
            "otter://file:///a.md/py",
            "otter://doc1/py/extra",
            "otter://doc:1/py",
            "other://doc1/py",
        ],
    )
    def test_rejects_foreign_identifiers(self, candidate):
        with pytest.raises(NotAnAlias):
            decode_alias(candidate)

    def test_rejects_non_strings(self):
        with pytest.raises(NotAnAlias):
            decode_alias(None)

    @pytest.mark.parametrize(
        "spelling",
        [
            "otter://file%3a%2f%2f%2fhome%2fuser%2fnotes.md/python",
            "otter://file%3A%2F%2F%2Fhome%2Fuser%2Fnotes%2Emd/python",
            "otter://file%3A%2F%2F%2Fhome%2Fuser%2Fnotes.md/%70ython",
        ],
    )
    def test_normalised_spellings_accepted(self, spelling):
        assert decode_alias(spelling) == ("file:///home/user/notes.md", "python")

    def test_rejection_logged(self, caplog):
        with caplog.at_level(logging.DEBUG, logger="polyglot_lsp.aliases"):
            with pytest.raises(NotAnAlias):
                decode_alias("otter://doc:1/py")
        assert "otter://doc:1/py" in caplog.text


class TestIsAlias:
    """Test the alias predicate."""

    def test_alias(self):
        assert is_alias(encode_alias("file:///a.md", "python"))

    def test_host_uri(self):
        assert not is_alias("file:///a.md")

    @pytest.mark.parametrize("candidate", [None, 42, b"otter://doc1/py", {"uri": "x"}])
    def test_never_raises(self, candidate):
        assert is_alias(candidate) is False


class TestHostIdentity:
    """Test identifier rewriting."""

    def test_alias_becomes_host(self):
        assert host_identity(encode_alias("file:///a.md", "python")) == "file:///a.md"

    def test_host_is_unchanged(self):
        assert host_identity("file:///a.md") == "file:///a.md"

    def test_idempotent(self):
        alias = encode_alias("file:///a.md", "python")
        assert host_identity(host_identity(alias)) == host_identity(alias)
