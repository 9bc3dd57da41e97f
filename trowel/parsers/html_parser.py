"""HTML template parser: finds asset directives using BeautifulSoup4.

A directive is any ``link``, ``script`` or ``style`` element carrying the
boolean ``data-trowel`` marker.  Its ``rel`` selects the pipeline:

- ``rust`` -> application build (``href`` defaults to ``Cargo.toml``)
- ``sass`` / ``scss`` -> stylesheet compile
- ``css`` -> plain stylesheet
- ``icon`` -> favicon
- ``inline`` -> content embedded into the page
- ``copy-file`` / ``copy-dir`` -> copied verbatim into the bundle
"""

from __future__ import annotations

import re

from bs4 import BeautifulSoup, Tag
from bs4.builder import ParserRejectedMarkup

from trowel.core.models import AssetDirective, PipelineKind
from trowel.utils.exceptions import ParseError, ValidationError

DIRECTIVE_MARKER = "data-trowel"

_KIND_ALIASES: dict[str, PipelineKind] = {
    "rust": PipelineKind.RUST,
    "sass": PipelineKind.SASS,
    "scss": PipelineKind.SASS,
    "css": PipelineKind.CSS,
    "icon": PipelineKind.ICON,
    "inline": PipelineKind.INLINE,
    "copy-file": PipelineKind.COPY_FILE,
    "copy-dir": PipelineKind.COPY_DIR,
}

# Kinds whose source may be given as element body instead of a path.
_INLINE_CAPABLE = {PipelineKind.SASS, PipelineKind.CSS, PipelineKind.INLINE}

# Kinds that cannot do without an explicit path.
_HREF_REQUIRED = {PipelineKind.ICON, PipelineKind.COPY_FILE, PipelineKind.COPY_DIR}

_DIRECTIVE_TAGS = ("link", "script", "style")


def load_template(html: str) -> BeautifulSoup:
    """Parse *html* into a tree, rejecting documents we cannot assemble into.

    Multi-valued attribute splitting is disabled so ``rel``/``class`` come
    back exactly as written and survive a rewrite unchanged.
    """
    if not html or not html.strip():
        raise ParseError("template is empty")
    try:
        soup = BeautifulSoup(html, "html.parser", multi_valued_attributes=None)
    except ParserRejectedMarkup as exc:
        raise ParseError(str(exc)) from exc

    if soup.find("html") is None:
        raise ParseError("template has no <html> element")
    if soup.find("head") is None:
        raise ParseError("template has no <head> element")
    return soup


def find_directive_elements(soup: BeautifulSoup) -> list[Tag]:
    """Return every element carrying the directive marker, in document order."""
    return soup.find_all(attrs={DIRECTIVE_MARKER: True})


_RAW_TEXT_CLOSE = {
    "script": re.compile(r"</script\s*>", re.IGNORECASE),
    "style": re.compile(r"</style\s*>", re.IGNORECASE),
}
_HEAD_CLOSE = re.compile(r"</head\s*>", re.IGNORECASE)


class SourceMap:
    """Character offsets of parsed elements within the template text.

    ``html.parser`` records where each start tag begins (1-based line,
    0-based column); this turns those positions into spans of *html* so an
    element can be replaced without re-serializing the rest of the page.
    """

    def __init__(self, html: str) -> None:
        self.html = html
        self._line_starts = [0]
        for match in re.finditer("\n", html):
            self._line_starts.append(match.end())

    def start_of(self, element: Tag) -> int:
        line, column = element.sourceline, element.sourcepos
        if line is None or column is None or line > len(self._line_starts):
            raise ParseError(f"no source position recorded for <{element.name}>")
        offset = self._line_starts[line - 1] + column
        if self.html[offset : offset + 1] != "<":
            raise ParseError(f"source position of <{element.name}> does not point at a tag", line)
        return offset

    def start_tag_end(self, offset: int) -> int:
        """Offset just past the ``>`` closing the start tag at *offset*."""
        quote = None
        for pos in range(offset + 1, len(self.html)):
            char = self.html[pos]
            if quote:
                if char == quote:
                    quote = None
            elif char in "\"'":
                quote = char
            elif char == ">":
                return pos + 1
        raise ParseError("unterminated start tag", self._line_of(offset))

    def span_of(self, element: Tag) -> tuple[int, int]:
        """``(start, end)`` of *element*, its body and end tag included."""
        start = self.start_of(element)
        end = self.start_tag_end(start)
        closer = _RAW_TEXT_CLOSE.get(element.name)
        if closer is not None and not self.html[start:end].rstrip(" >").endswith("/"):
            match = closer.search(self.html, end)
            if match is None:
                raise ParseError(f"<{element.name}> is never closed", element.sourceline)
            end = match.end()
        return start, end

    def head_insertion_point(self, soup: BeautifulSoup) -> int:
        """Where markup appended to ``<head>`` goes: before ``</head>``."""
        head_start = self.start_of(soup.head)
        match = _HEAD_CLOSE.search(self.html, head_start)
        if match is not None:
            return match.start()
        # Implicitly closed head; append right after its start tag.
        return self.start_tag_end(head_start)

    def _line_of(self, offset: int) -> int:
        return self.html.count("\n", 0, offset) + 1


class ManifestParser:
    """Extract :class:`AssetDirective` records from an HTML template."""

    def parse(self, html: str) -> list[AssetDirective]:
        """Parse an HTML string and return its directives in document order."""
        soup = load_template(html)
        return [
            self._parse_directive(index, element)
            for index, element in enumerate(find_directive_elements(soup))
        ]

    def parse_file(self, path: str) -> list[AssetDirective]:
        """Read an HTML file and parse it."""
        with open(path, "r", encoding="utf-8") as fh:
            return self.parse(fh.read())

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _parse_directive(self, index: int, element: Tag) -> AssetDirective:
        tag_name = element.name.lower()
        line = element.sourceline
        where = f"<{tag_name} {DIRECTIVE_MARKER}> #{index}"

        if tag_name not in _DIRECTIVE_TAGS:
            raise ValidationError(
                where, f"directive marker is only allowed on {', '.join(_DIRECTIVE_TAGS)}", line
            )

        rel = (element.get("rel") or "").strip().lower()
        if not rel:
            raise ValidationError(where, "missing rel attribute selecting the pipeline", line)
        kind = _KIND_ALIASES.get(rel)
        if kind is None:
            raise ValidationError(where, f"unknown directive kind: {rel!r}", line)

        href = self._source_reference(element)
        content = self._inline_content(element)

        if kind in _HREF_REQUIRED and not href:
            raise ValidationError(where, f"rel={rel} requires an href", line)
        if kind in _INLINE_CAPABLE and not href and content is None:
            raise ValidationError(where, f"rel={rel} requires an href or inline content", line)
        if content is not None and kind not in _INLINE_CAPABLE:
            raise ValidationError(where, f"rel={rel} does not accept inline content", line)

        attrs = {
            name: value
            for name, value in element.attrs.items()
            if name not in (DIRECTIVE_MARKER, "rel", "href", "src")
        }

        return AssetDirective(
            index=index,
            kind=kind,
            tag=tag_name,
            href=href,
            content=content,
            attrs=attrs,
            line=line,
            column=element.sourcepos,
        )

    @staticmethod
    def _source_reference(element: Tag) -> str | None:
        attr = "src" if element.name == "script" else "href"
        value = (element.get(attr) or "").strip()
        return value or None

    @staticmethod
    def _inline_content(element: Tag) -> str | None:
        if element.name not in ("script", "style"):
            return None
        text = element.get_text()
        return text if text.strip() else None


def parse(html: str) -> list[AssetDirective]:
    """Module-level convenience wrapper around :meth:`ManifestParser.parse`."""
    return ManifestParser().parse(html)
