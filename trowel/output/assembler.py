"""Output assembler -- rewrites the template and publishes the bundle.

:meth:`OutputAssembler.assemble` replaces every directive element with
markup referencing its hashed artifacts and writes artifacts plus the
rewritten page into a generation-scoped staging directory.  Only the
directive elements change: replacements are spliced into the template
text at each element's source span and every other byte is copied
through.  :meth:`OutputAssembler.publish` then swaps that directory in
for the public output directory with renames, so readers see either the
old bundle or the new one, never a mix.
"""

from __future__ import annotations

import asyncio
import os
import shutil
from pathlib import Path

import aiofiles  # type: ignore[import-untyped]
from bs4 import BeautifulSoup
from pydantic import BaseModel

from trowel.core.context import BuildContext
from trowel.core.generation import BuildGeneration
from trowel.core.models import AssetDirective, OutputArtifact, PipelineKind
from trowel.output.reload_script import reload_client_script
from trowel.parsers.html_parser import SourceMap, find_directive_elements, load_template
from trowel.pipelines.assets import InlinePipeline
from trowel.utils.exceptions import AssemblyError, ParseError
from trowel.utils.file_utils import ensure_dir, remove_tree
from trowel.utils.logging import get_logger

logger = get_logger("output.assembler")

# Builds the replacement elements; never holds a document.
_TAGS = BeautifulSoup("", "html.parser")


def _markup(name: str, attrs: dict[str, str] | None = None, text: str | None = None) -> str:
    tag = _TAGS.new_tag(name, attrs=attrs or {})
    if text is not None:
        tag.string = text
    return tag.decode(formatter="html5")


class Rendered(BaseModel):
    """Markup standing in for one directive.

    Attributes:
        replacement: Text replacing the directive element itself.
        head: Elements appended to ``<head>`` (preload hints).
    """

    replacement: str = ""
    head: list[str] = []


class StagedBundle(BaseModel):
    """A fully written bundle waiting to be published.

    Attributes:
        generation: The generation that produced it.
        path: Its staging directory.
        files: Bundle-relative names of everything written, page included.
    """

    generation: int
    path: Path
    files: list[str] = []


class OutputAssembler:
    """Stage and publish bundles for one project.

    Parameters
    ----------
    context:
        Supplies the output directory, staging root, public URL and whether
        the live-reload client is injected.
    """

    def __init__(self, context: BuildContext) -> None:
        self.context = context
        self.dist: Path = context.dist
        self.staging_root: Path = context.staging_root

    # ------------------------------------------------------------------
    # Assembly
    # ------------------------------------------------------------------

    async def assemble(
        self,
        html: str,
        directives: list[AssetDirective],
        artifacts: dict[int, list[OutputArtifact]],
        generation: BuildGeneration,
    ) -> StagedBundle:
        """Write *artifacts* and the rewritten *html* into staging.

        Raises
        ------
        AssemblyError
            When a directive has no artifacts or the template no longer
            matches *directives*.
        """
        soup = load_template(html)
        elements = find_directive_elements(soup)
        if len(elements) != len(directives):
            raise AssemblyError(
                f"template has {len(elements)} directives, expected {len(directives)}"
            )
        source = SourceMap(html)
        try:
            spans = [source.span_of(element) for element in elements]
            head_end = source.head_insertion_point(soup)
        except ParseError as exc:
            raise AssemblyError(f"cannot locate directives in the template: {exc}") from exc

        staging = self.staging_dir(generation.id)
        await asyncio.to_thread(remove_tree, staging)
        ensure_dir(staging)
        generation.staging = staging
        logger.info("assemble_start", generation=generation.id, staging=str(staging))

        files: list[str] = []
        edits: list[tuple[int, int, str]] = []
        head: list[str] = []
        for directive, span in zip(directives, spans):
            produced = artifacts.get(directive.index)
            if not produced:
                raise AssemblyError(f"no artifacts for directive {directive.label}")
            rendered = self._render(directive, produced)
            edits.append((span[0], span[1], rendered.replacement))
            head.extend(rendered.head)
            for artifact in produced:
                if artifact.inline:
                    continue
                await self._write(staging, artifact)
                files.append(artifact.filename)
                generation.token.raise_if_cancelled()

        if self.context.inject_reload_script:
            head.append(_markup("script", text=reload_client_script()))
        if head:
            edits.append((head_end, head_end, "".join(head)))

        page = self.context.template.name
        async with aiofiles.open(staging / page, mode="w", encoding="utf-8", newline="") as fh:
            await fh.write(self._splice(html, edits))
        files.append(page)
        generation.token.raise_if_cancelled()

        logger.info("assemble_complete", generation=generation.id, files=len(files))
        return StagedBundle(generation=generation.id, path=staging, files=files)

    def staging_dir(self, generation: int) -> Path:
        return self.staging_root / f"gen-{generation}"

    def discard(self, generation: BuildGeneration) -> None:
        """Delete whatever *generation* left in staging (no-op once published)."""
        if generation.staging is not None and generation.staging.exists():
            remove_tree(generation.staging)
            logger.debug("staging_discarded", generation=generation.id)
        generation.staging = None

    # ------------------------------------------------------------------
    # Publishing
    # ------------------------------------------------------------------

    def publish(self, bundle: StagedBundle) -> None:
        """Atomically replace the public output directory with *bundle*.

        The current bundle is renamed aside, the staged one renamed into
        place, and the old one removed.  Both renames stay on one
        filesystem because staging lives beside ``dist``.
        """
        if not bundle.path.is_dir():
            raise AssemblyError(f"staged bundle missing: {bundle.path}")

        ensure_dir(self.dist.parent)
        retired = self.staging_root / f"retired-{bundle.generation}"
        remove_tree(retired)

        had_previous = self.dist.exists()
        if had_previous:
            os.replace(self.dist, retired)
        try:
            os.replace(bundle.path, self.dist)
        except OSError as exc:
            if had_previous:
                os.replace(retired, self.dist)
            raise AssemblyError(f"failed to publish {bundle.path}: {exc}") from exc

        remove_tree(retired)
        logger.info("bundle_published", generation=bundle.generation, dist=str(self.dist))

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _write(self, staging: Path, artifact: OutputArtifact) -> None:
        target = staging / artifact.filename
        if not target.resolve().is_relative_to(staging.resolve()):
            raise AssemblyError(f"artifact {artifact.filename} would be written outside the bundle")
        target.parent.mkdir(parents=True, exist_ok=True)
        try:
            if artifact.content is not None:
                async with aiofiles.open(target, mode="wb") as fh:
                    await fh.write(artifact.content)
            elif artifact.path.is_dir():
                await asyncio.to_thread(shutil.copytree, artifact.path, target, dirs_exist_ok=True)
            else:
                await asyncio.to_thread(shutil.copy2, artifact.path, target)
        except OSError as exc:
            raise AssemblyError(f"failed to stage {artifact.filename}: {exc}") from exc

    @staticmethod
    def _splice(html: str, edits: list[tuple[int, int, str]]) -> str:
        """Apply ``(start, end, text)`` replacements; the rest of *html* is kept."""
        parts: list[str] = []
        cursor = 0
        for start, end, text in sorted(edits, key=lambda edit: (edit[0], edit[1])):
            parts.append(html[cursor:start])
            parts.append(text)
            cursor = end
        parts.append(html[cursor:])
        return "".join(parts)

    def _render(self, directive: AssetDirective, artifacts: list[OutputArtifact]) -> Rendered:
        """Markup for *directive*'s artifacts."""
        public_url = self.context.public_url
        kind = directive.kind

        if kind is PipelineKind.RUST:
            js = self._pick(artifacts, ".js", directive)
            wasm = self._pick(artifacts, ".wasm", directive)
            js_url, wasm_url = js.url(public_url), wasm.url(public_url)
            preload = _markup(
                "link",
                {
                    "rel": "preload",
                    "href": wasm_url,
                    "as": "fetch",
                    "type": "application/wasm",
                    "crossorigin": "",
                },
            )
            modulepreload = _markup("link", {"rel": "modulepreload", "href": js_url})
            script = _markup(
                "script",
                {"type": "module"},
                f"import init from '{js_url}';init('{wasm_url}');",
            )
            return Rendered(replacement=script, head=[preload, modulepreload])

        if kind in (PipelineKind.SASS, PipelineKind.CSS):
            css = self._pick(artifacts, ".css", directive)
            attrs = {"rel": "stylesheet", "href": css.url(public_url)}
            attrs.update(self._passthrough_attrs(directive, exclude=("type", "lang")))
            return Rendered(replacement=_markup("link", attrs))

        if kind is PipelineKind.ICON:
            attrs = {"rel": "icon", "href": artifacts[0].url(public_url)}
            attrs.update(self._passthrough_attrs(directive))
            return Rendered(replacement=_markup("link", attrs))

        if kind is PipelineKind.INLINE:
            return Rendered(replacement=self._render_inline(directive, artifacts[0]))

        if kind in (PipelineKind.COPY_FILE, PipelineKind.COPY_DIR):
            return Rendered()

        raise AssemblyError(f"no renderer for directive kind {kind.value}")  # pragma: no cover

    @staticmethod
    def _render_inline(directive: AssetDirective, artifact: OutputArtifact) -> str:
        text = artifact.content.decode("utf-8")
        content_type = InlinePipeline.content_type(directive)
        if content_type == "css":
            return _markup("style", text=text)
        if content_type == "module":
            return _markup("script", {"type": "module"}, text)
        if content_type == "js":
            return _markup("script", text=text)
        # html and svg go in as written.
        return text

    @staticmethod
    def _pick(artifacts: list[OutputArtifact], suffix: str, directive: AssetDirective) -> OutputArtifact:
        for artifact in artifacts:
            if artifact.filename.endswith(suffix):
                return artifact
        raise AssemblyError(f"directive {directive.label} produced no {suffix} artifact")

    @staticmethod
    def _passthrough_attrs(directive: AssetDirective, exclude: tuple[str, ...] = ()) -> dict[str, str]:
        """Plain HTML attributes (``media``, ``sizes``...) carried onto the output tag."""
        return {
            name: value
            for name, value in directive.attrs.items()
            if not name.startswith("data-") and name not in exclude
        }
