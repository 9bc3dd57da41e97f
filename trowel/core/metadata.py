"""Project metadata collaborator: crate name and cargo target directory."""

from __future__ import annotations

import tomllib
from pathlib import Path

from pydantic import BaseModel

from trowel.utils.exceptions import ValidationError


class ProjectMetadata(BaseModel):
    crate_name: str
    manifest_path: Path
    target_dir: Path

    @property
    def artifact_stem(self) -> str:
        """Cargo writes library/binary artifacts with ``-`` replaced by ``_``."""
        return self.crate_name.replace("-", "_")


class ManifestMetadataProvider:
    """Resolve :class:`ProjectMetadata` for a ``Cargo.toml``.

    Explicit overrides win; otherwise the crate name comes from the
    manifest's ``[package]`` table and the target dir defaults to
    ``target/`` beside the manifest.
    """

    def __init__(self, crate_name: str | None = None, target_dir: str | Path | None = None) -> None:
        self.crate_name = crate_name
        self.target_dir = Path(target_dir) if target_dir else None

    def resolve(self, manifest_path: Path) -> ProjectMetadata:
        crate_name = self.crate_name
        if crate_name is None:
            try:
                with open(manifest_path, "rb") as fh:
                    manifest = tomllib.load(fh)
            except (OSError, tomllib.TOMLDecodeError) as exc:
                raise ValidationError(str(manifest_path), f"cannot read cargo manifest: {exc}") from exc
            crate_name = manifest.get("package", {}).get("name")
            if not crate_name:
                raise ValidationError(str(manifest_path), "cargo manifest has no [package] name")

        target_dir = self.target_dir or manifest_path.parent / "target"
        return ProjectMetadata(
            crate_name=crate_name,
            manifest_path=manifest_path,
            target_dir=target_dir.resolve(),
        )
