import hashlib
import mimetypes
import shutil
from pathlib import Path

HASH_DIGEST_SIZE = 8


def ensure_dir(path: str | Path) -> Path:
    p = Path(path)
    p.mkdir(parents=True, exist_ok=True)
    return p


def content_hash(*chunks: bytes) -> str:
    """Hex digest over the concatenation of *chunks*.

    Only content is hashed, never names or timestamps, so identical bytes
    always produce identical output names.
    """
    digest = hashlib.blake2b(digest_size=HASH_DIGEST_SIZE)
    for chunk in chunks:
        digest.update(chunk)
    return digest.hexdigest()


def hashed_filename(base: str, digest: str, extension: str) -> str:
    """Return ``<base>-<digest>.<extension>``."""
    return f"{base}-{digest}.{extension.lstrip('.')}"


def tree_hash(root: Path) -> str:
    """Hash a directory tree by relative path and file content."""
    digest = hashlib.blake2b(digest_size=HASH_DIGEST_SIZE)
    for path in sorted(p for p in root.rglob("*") if p.is_file()):
        digest.update(path.relative_to(root).as_posix().encode())
        digest.update(b"\0")
        digest.update(path.read_bytes())
    return digest.hexdigest()


def media_type_for(filename: str) -> str:
    if filename.endswith(".wasm"):
        return "application/wasm"
    guessed, _ = mimetypes.guess_type(filename)
    return guessed or "application/octet-stream"


def remove_tree(path: str | Path) -> None:
    shutil.rmtree(path, ignore_errors=True)
