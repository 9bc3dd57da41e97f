"""Error taxonomy for the build orchestrator.

Every error that can reach the user derives from :class:`TrowelError` and
can describe itself as a list of :class:`Diagnostic` records (source,
message, optional position).
"""

from __future__ import annotations

from pydantic import BaseModel


class Diagnostic(BaseModel):
    """One reportable problem, pinned to a file or directive when known."""

    source: str
    message: str
    line: int | None = None
    column: int | None = None

    def __str__(self) -> str:
        position = ""
        if self.line is not None:
            position = f":{self.line}"
            if self.column is not None:
                position += f":{self.column}"
        return f"{self.source}{position}: {self.message}"


class TrowelError(Exception):
    """Base exception for the build orchestrator."""

    def diagnostics(self) -> list[Diagnostic]:
        return [Diagnostic(source=type(self).__name__, message=str(self))]


class ParseError(TrowelError):
    def __init__(self, detail: str, line: int | None = None, column: int | None = None):
        self.detail = detail
        self.line = line
        self.column = column
        super().__init__(f"Failed to parse HTML template: {detail}")

    def diagnostics(self) -> list[Diagnostic]:
        return [
            Diagnostic(source="template", message=self.detail, line=self.line, column=self.column)
        ]


class ValidationError(TrowelError):
    def __init__(self, directive: str, detail: str, line: int | None = None):
        self.directive = directive
        self.detail = detail
        self.line = line
        super().__init__(f"Invalid directive {directive}: {detail}")

    def diagnostics(self) -> list[Diagnostic]:
        return [Diagnostic(source=self.directive, message=self.detail, line=self.line)]


class PipelineError(TrowelError):
    """Base for failures raised while executing an asset pipeline.

    ``tool_diagnostics`` holds positions extracted from the external tool's
    output; the full tool message is always kept in ``detail``.
    """

    label = "pipeline"

    def __init__(
        self,
        source: str,
        detail: str,
        tool_diagnostics: list[Diagnostic] | None = None,
    ):
        self.source = source
        self.detail = detail
        self.tool_diagnostics = tool_diagnostics or []
        super().__init__(f"{self.label} failed for {source}: {detail}")

    def diagnostics(self) -> list[Diagnostic]:
        return [Diagnostic(source=self.source, message=self.detail), *self.tool_diagnostics]


class BuildError(PipelineError):
    label = "application build"


class BindgenError(PipelineError):
    label = "wasm-bindgen"


class CompileError(PipelineError):
    label = "stylesheet compile"


class IoError(PipelineError):
    label = "asset I/O"


class AssemblyError(TrowelError):
    pass


class WatchError(TrowelError):
    pass


class ServerError(TrowelError):
    pass


class GenerationCancelled(Exception):
    """Raised inside a pipeline when its generation has been superseded.

    Deliberately not a :class:`TrowelError`: cancellation is a normal
    control-flow outcome and never produces diagnostics.
    """

    def __init__(self, generation: int):
        self.generation = generation
        super().__init__(f"Generation {generation} was cancelled")
