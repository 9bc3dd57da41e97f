"""Per-project build context handed to the executor, assembler and watcher."""

from __future__ import annotations

from pathlib import Path

from pydantic import BaseModel

from trowel.config import Settings
from trowel.core.metadata import ManifestMetadataProvider


class ToolPaths(BaseModel):
    """Executables invoked as subprocesses."""

    cargo: str = "cargo"
    wasm_bindgen: str = "wasm-bindgen"
    sass: str = "sass"


class BuildContext:
    """Resolved, read-only inputs of a build.

    Parameters
    ----------
    template:
        Path to the HTML template; relative directive references resolve
        against its directory.
    dist:
        The public output directory that :meth:`OutputAssembler.publish`
        replaces.
    inject_reload_script:
        Append the live-reload client to every published page (serve mode).
    """

    def __init__(
        self,
        template: str | Path,
        dist: str | Path,
        *,
        release: bool = False,
        public_url: str = "/",
        workers: int = 4,
        tools: ToolPaths | None = None,
        metadata: ManifestMetadataProvider | None = None,
        inject_reload_script: bool = False,
        watch: list[str | Path] | None = None,
        ignore: list[str | Path] | None = None,
        debounce_seconds: float = 1.0,
    ) -> None:
        self.template = Path(template).resolve()
        self.dist = Path(dist).resolve()
        self.release = release
        self.public_url = public_url
        self.workers = max(1, workers)
        self.tools = tools or ToolPaths()
        self.metadata = metadata or ManifestMetadataProvider()
        self.inject_reload_script = inject_reload_script
        self.debounce_seconds = debounce_seconds
        self._watch = [Path(p).resolve() for p in (watch or [])]
        self._ignore = [Path(p).resolve() for p in (ignore or [])]

    @classmethod
    def from_settings(cls, settings: Settings, serving: bool = False) -> "BuildContext":
        return cls(
            settings.target,
            settings.dist,
            release=settings.release,
            public_url=settings.public_url,
            workers=settings.workers,
            tools=ToolPaths(
                cargo=settings.cargo_bin,
                wasm_bindgen=settings.wasm_bindgen_bin,
                sass=settings.sass_bin,
            ),
            metadata=ManifestMetadataProvider(settings.crate_name, settings.target_dir),
            inject_reload_script=serving and settings.hot_reload,
            watch=settings.watch,
            ignore=settings.ignore,
            debounce_seconds=settings.debounce_seconds,
        )

    @property
    def template_dir(self) -> Path:
        return self.template.parent

    @property
    def staging_root(self) -> Path:
        """Sibling of ``dist`` so that publishing is a same-filesystem rename."""
        return self.dist.parent / f".{self.dist.name}-stage"

    def watch_paths(self) -> list[Path]:
        return list(self._watch) or [self.template_dir]

    def ignored_paths(self) -> list[Path]:
        """Paths whose changes must never trigger a rebuild.

        Our own output and the cargo target directory are always excluded.
        """
        ignored = [self.dist, self.staging_root, self.template_dir / "target"]
        if self.metadata.target_dir is not None:
            ignored.append(self.metadata.target_dir.resolve())
        return ignored + self._ignore
