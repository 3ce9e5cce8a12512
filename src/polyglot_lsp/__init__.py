"""
Polyglot Language Server

A Language Server Protocol bridge for documents with embedded code
(Markdown fences, HTML script/style tags), serving each embedded language
through its own language server.
"""

__version__ = "0.1.0"

# Import on demand to avoid import errors
def get_server():
    from polyglot_lsp.server import PolyglotLanguageServer
    return PolyglotLanguageServer

__all__ = ["get_server", "__version__"]
