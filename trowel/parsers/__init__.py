"""Template parsing: extracts ``data-trowel`` asset directives from HTML."""

from trowel.parsers.html_parser import DIRECTIVE_MARKER, ManifestParser, parse

__all__ = [
    "DIRECTIVE_MARKER",
    "ManifestParser",
    "parse",
]
