import stat
from pathlib import Path

import pytest

from trowel.core.context import BuildContext, ToolPaths

# Exactly 10 bytes.
STYLE_CSS = "a{color:0}"

INDEX_HTML = """<!DOCTYPE html>
<html>
<head>
<meta charset="utf-8">
<title>Demo</title>
<link data-trowel rel="css" href="style.css" media="screen">
</head>
<body>
<h1>Hello</h1>
</body>
</html>
"""


@pytest.fixture
def sample_html():
    return """<!DOCTYPE html>
<html>
<head>
<link data-trowel rel="rust" href="Cargo.toml" data-bin="app">
<link data-trowel rel="scss" href="style.scss">
<link data-trowel rel="css" href="vendor.css">
<link data-trowel rel="icon" href="favicon.png">
<script data-trowel rel="inline" type="module">console.log("hi");</script>
</head>
<body>
<p>Body text</p>
<link data-trowel rel="copy-file" href="robots.txt">
<link data-trowel rel="copy-dir" href="assets">
</body>
</html>
"""


@pytest.fixture
def project(tmp_path):
    """A project directory holding an index.html with one css directive."""
    root = tmp_path / "project"
    root.mkdir()
    (root / "index.html").write_text(INDEX_HTML, encoding="utf-8")
    (root / "style.css").write_text(STYLE_CSS, encoding="utf-8")
    return root


@pytest.fixture
def write_template(project):
    def _write(head: str = "", body: str = "") -> Path:
        path = project / "index.html"
        path.write_text(
            f"<!DOCTYPE html>\n<html>\n<head>\n{head}\n</head>\n<body>\n{body}\n</body>\n</html>\n",
            encoding="utf-8",
        )
        return path

    return _write


@pytest.fixture
def make_context(project):
    def _make(template: str = "index.html", **kwargs) -> BuildContext:
        kwargs.setdefault("workers", 4)
        return BuildContext(project / template, project / "dist", **kwargs)

    return _make


@pytest.fixture
def context(make_context):
    return make_context()


@pytest.fixture
def read_dist(project):
    """Return ``{relative path: bytes}`` for everything currently in dist."""

    def _read() -> dict[str, bytes]:
        dist = project / "dist"
        if not dist.exists():
            return {}
        return {
            p.relative_to(dist).as_posix(): p.read_bytes()
            for p in sorted(dist.rglob("*"))
            if p.is_file()
        }

    return _read


@pytest.fixture
def fake_tool(tmp_path):
    """Write an executable shell script standing in for an external tool."""
    bin_dir = tmp_path / "bin"
    bin_dir.mkdir()

    def _make(name: str, body: str) -> str:
        path = bin_dir / name
        path.write_text("#!/bin/sh\n" + body, encoding="utf-8")
        path.chmod(path.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
        return str(path)

    return _make


@pytest.fixture
def fake_sass(fake_tool):
    # Echoes its input: the last argument's file, or stdin for --stdin.
    return fake_tool(
        "sass",
        'for arg in "$@"; do last="$arg"; done\n'
        'if [ "$last" = "--stdin" ]; then cat; else cat "$last"; fi\n',
    )


@pytest.fixture
def rust_project(project, fake_tool):
    """A cargo project with a faked toolchain.

    The fake cargo does nothing (the wasm module is already in the target
    dir); the fake wasm-bindgen copies it and writes a JS stub.
    """
    (project / "Cargo.toml").write_text('[package]\nname = "demo-app"\nversion = "0.1.0"\n')
    wasm_dir = project / "target" / "wasm32-unknown-unknown" / "debug"
    wasm_dir.mkdir(parents=True)
    (wasm_dir / "demo_app.wasm").write_bytes(b"\0asm\x01\0\0\0")

    cargo = fake_tool("cargo", "exit 0\n")
    bindgen = fake_tool(
        "wasm-bindgen",
        'for arg in "$@"; do\n'
        '  case "$arg" in\n'
        '    --out-dir=*) out="${arg#--out-dir=}" ;;\n'
        '    --out-name=*) name="${arg#--out-name=}" ;;\n'
        "    --*) ;;\n"
        '    *) input="$arg" ;;\n'
        "  esac\n"
        "done\n"
        'mkdir -p "$out"\n'
        'cp "$input" "$out/${name}_bg.wasm"\n'
        "echo 'export default function init() {}' > \"$out/${name}.js\"\n",
    )
    return ToolPaths(cargo=cargo, wasm_bindgen=bindgen)
