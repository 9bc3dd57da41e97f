"""Data models shared by the parser, pipelines, assembler and orchestrator.

Directive and artifact records are frozen: a directive is extracted once
per build and an artifact is produced exactly once per successful
pipeline run, and neither changes afterwards.
"""

from __future__ import annotations

from enum import Enum
from pathlib import Path
from typing import Literal

from pydantic import BaseModel, Field, model_validator

from trowel.core.metadata import ProjectMetadata
from trowel.utils.exceptions import Diagnostic


class PipelineKind(str, Enum):
    """The closed set of asset pipelines a directive can select."""

    RUST = "rust"
    SASS = "sass"
    CSS = "css"
    ICON = "icon"
    INLINE = "inline"
    COPY_FILE = "copy-file"
    COPY_DIR = "copy-dir"


class AssetDirective(BaseModel):
    """A ``data-trowel`` element found in the HTML template.

    Attributes:
        index: Position among the template's directives (document order).
        kind: Pipeline the directive selects.
        tag: Element name (``link``, ``script`` or ``style``).
        href: Raw ``href``/``src`` value, unresolved.
        content: Inline body text, for ``script``/``style`` directives.
        attrs: All remaining attributes, verbatim.
        line: 1-based source line of the element, when known.
        column: 0-based column of the element, when known.
    """

    model_config = {"frozen": True}

    index: int
    kind: PipelineKind
    tag: str = "link"
    href: str | None = None
    content: str | None = None
    attrs: dict[str, str] = {}
    line: int | None = None
    column: int | None = None

    @property
    def label(self) -> str:
        ref = self.href or "<inline>"
        where = f" (line {self.line})" if self.line is not None else ""
        return f"<{self.tag} rel={self.kind.value} {ref}>{where}"


class PipelineConfig(BaseModel):
    """A validated directive plus everything resolved for its pipeline."""

    directive: AssetDirective
    source: Path | None = None
    content: str | None = None
    release: bool = False
    public_url: str = "/"
    target_path: str | None = None
    options: dict[str, str] = {}
    project: ProjectMetadata | None = None

    @property
    def kind(self) -> PipelineKind:
        return self.directive.kind

    @property
    def label(self) -> str:
        return str(self.source) if self.source is not None else self.directive.label


class OutputArtifact(BaseModel):
    """One content-addressed output of a pipeline.

    Exactly one of ``content`` (bytes held in memory) or ``path`` (file or
    directory already on disk) is set.  ``filename`` is the artifact's
    location relative to the bundle root.  Inline artifacts are embedded
    into the HTML instead of being written out.
    """

    model_config = {"frozen": True}

    filename: str
    directive: int
    kind: PipelineKind
    media_type: str
    content_hash: str
    content: bytes | None = None
    path: Path | None = None
    inline: bool = False

    @model_validator(mode="after")
    def _exactly_one_payload(self) -> "OutputArtifact":
        if (self.content is None) == (self.path is None):
            raise ValueError("OutputArtifact needs exactly one of content or path")
        return self

    def url(self, public_url: str = "/") -> str:
        return f"{public_url}{self.filename}"


class RebuildRequest(BaseModel):
    """A debounced batch of filesystem changes."""

    model_config = {"frozen": True}

    paths: frozenset[Path] = frozenset()


class ReloadMessage(BaseModel):
    """Notice broadcast to live-reload clients after a build attempt."""

    generation: int
    status: Literal["ok", "error"] = "ok"
    message: str = ""

    def to_wire(self) -> dict:
        if self.status == "ok":
            return {"type": "reload", "generation": self.generation}
        return {"type": "error", "generation": self.generation, "message": self.message}


class BuildState(str, Enum):
    IDLE = "idle"
    BUILDING = "building"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class BuildStatus(BaseModel):
    """Snapshot of the orchestrator's state machine."""

    state: BuildState = BuildState.IDLE
    generation: int = 0
    error: str | None = None


class BuildEvent(BaseModel):
    """Lifecycle notification emitted by the orchestrator to its listeners."""

    kind: Literal["building", "published", "failed"]
    generation: int
    error: str | None = None
    diagnostics: list[Diagnostic] = []


class BuildReport(BaseModel):
    """Outcome of the most recent completed generation."""

    success: bool = False
    generation: int = 0
    state: BuildState = BuildState.IDLE
    diagnostics: list[Diagnostic] = []
    published: list[str] = Field(default_factory=list)
