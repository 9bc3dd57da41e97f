"""The application pipeline: cargo build to wasm, then wasm-bindgen.

Outputs the ``.wasm`` module and its JS glue, both named with one hash
computed over the combined bindgen output, plus any ``snippets/``
directory wasm-bindgen emits for crates with inline JS.
"""

from __future__ import annotations

import asyncio
import shutil

import aiofiles  # type: ignore[import-untyped]

from trowel.core.context import BuildContext
from trowel.core.generation import CancellationToken
from trowel.core.models import AssetDirective, OutputArtifact, PipelineConfig, PipelineKind
from trowel.pipelines.base import AssetPipeline
from trowel.pipelines.tools import ToolProcess, parse_rustc_diagnostics
from trowel.utils.exceptions import BindgenError, BuildError, IoError, ValidationError
from trowel.utils.file_utils import content_hash, hashed_filename, tree_hash
from trowel.utils.logging import get_logger

logger = get_logger("pipelines.application")

WASM_TARGET = "wasm32-unknown-unknown"


class RustAppPipeline(AssetPipeline):
    kind = PipelineKind.RUST

    def configure(self, directive: AssetDirective, context: BuildContext) -> PipelineConfig:
        config = super().configure(directive, context)
        manifest = config.source or context.template_dir / "Cargo.toml"
        if manifest.is_dir():
            manifest = manifest / "Cargo.toml"
        if not manifest.is_file():
            raise ValidationError(
                directive.label, f"cargo manifest not found: {manifest}", directive.line
            )
        project = context.metadata.resolve(manifest)
        return config.model_copy(
            update={"source": manifest, "project": project},
        )

    def validate(self, config: PipelineConfig) -> None:
        self.require_file(config)
        if config.project is None:
            raise ValidationError(config.directive.label, "project metadata unresolved")

    async def execute(
        self,
        config: PipelineConfig,
        context: BuildContext,
        token: CancellationToken,
    ) -> list[OutputArtifact]:
        project = config.project
        profile = "release" if config.release else "debug"
        binary = config.options.get("bin")
        stem = binary.replace("-", "_") if binary else project.artifact_stem

        # 1. cargo build
        args = ["build", f"--target={WASM_TARGET}", f"--manifest-path={project.manifest_path}"]
        if config.release:
            args.append("--release")
        if binary:
            args.append(f"--bin={binary}")
        if features := config.options.get("cargo-features"):
            args.append(f"--features={features}")

        cargo = ToolProcess(context.tools.cargo, args, cwd=project.manifest_path.parent)
        logger.info("cargo_build_start", manifest=str(project.manifest_path), profile=profile)
        try:
            result = await cargo.run(token)
        except OSError as exc:
            raise BuildError(str(project.manifest_path), f"failed to run {cargo.program}: {exc}") from exc
        if not result.ok:
            raise BuildError(
                str(project.manifest_path),
                result.stderr.strip() or f"cargo exited with status {result.returncode}",
                parse_rustc_diagnostics(result.stderr),
            )

        wasm_path = project.target_dir / WASM_TARGET / profile / f"{stem}.wasm"
        if not wasm_path.is_file():
            raise BuildError(str(project.manifest_path), f"cargo did not produce {wasm_path}")

        # 2. wasm-bindgen into a clean scratch dir inside the target dir
        bindgen_dir = project.target_dir / "wasm-bindgen" / profile
        await asyncio.to_thread(shutil.rmtree, bindgen_dir, True)
        bindgen_dir.mkdir(parents=True, exist_ok=True)
        token.raise_if_cancelled()

        bindgen = ToolProcess(
            context.tools.wasm_bindgen,
            [
                "--target=web",
                "--no-typescript",
                f"--out-dir={bindgen_dir}",
                f"--out-name={stem}",
                str(wasm_path),
            ],
        )
        try:
            result = await bindgen.run(token)
        except OSError as exc:
            raise BindgenError(str(wasm_path), f"failed to run {bindgen.program}: {exc}") from exc
        if not result.ok:
            raise BindgenError(
                str(wasm_path),
                result.stderr.strip() or f"wasm-bindgen exited with status {result.returncode}",
            )

        # 3. hash the combined output
        js_file = bindgen_dir / f"{stem}.js"
        wasm_file = bindgen_dir / f"{stem}_bg.wasm"
        try:
            async with aiofiles.open(js_file, mode="rb") as fh:
                js_bytes = await fh.read()
            token.raise_if_cancelled()
            async with aiofiles.open(wasm_file, mode="rb") as fh:
                wasm_bytes = await fh.read()
        except OSError as exc:
            raise BindgenError(str(wasm_path), f"missing wasm-bindgen output: {exc}") from exc
        token.raise_if_cancelled()

        digest = content_hash(wasm_bytes, js_bytes)
        index = config.directive.index
        artifacts = [
            OutputArtifact(
                filename=hashed_filename(stem, digest, "js"),
                directive=index,
                kind=self.kind,
                media_type="text/javascript",
                content_hash=digest,
                content=js_bytes,
            ),
            OutputArtifact(
                filename=hashed_filename(f"{stem}_bg", digest, "wasm"),
                directive=index,
                kind=self.kind,
                media_type="application/wasm",
                content_hash=digest,
                content=wasm_bytes,
            ),
        ]

        snippets = bindgen_dir / "snippets"
        if snippets.is_dir():
            try:
                snippets_hash = await asyncio.to_thread(tree_hash, snippets)
            except OSError as exc:
                raise IoError(str(snippets), str(exc)) from exc
            artifacts.append(
                OutputArtifact(
                    filename="snippets",
                    directive=index,
                    kind=self.kind,
                    media_type="inode/directory",
                    content_hash=snippets_hash,
                    path=snippets,
                )
            )

        logger.info("cargo_build_complete", crate=project.crate_name, hash=digest)
        return artifacts
