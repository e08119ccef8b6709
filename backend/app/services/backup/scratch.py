"""Scratch directories for archive extraction and encoding."""
import shutil
import tempfile
from contextlib import contextmanager
from pathlib import Path


def scratch_root(backup_dir: Path) -> Path:
    """<backup dir>/temp, created on demand."""
    root = backup_dir / "temp"
    root.mkdir(parents=True, exist_ok=True)
    return root


@contextmanager
def scratch_directory(backup_dir: Path, prefix: str):
    """A fresh directory under <backup dir>/temp, removed on every exit path."""
    path = Path(tempfile.mkdtemp(prefix=f"{prefix}_", dir=scratch_root(backup_dir)))
    try:
        yield path
    finally:
        shutil.rmtree(path, ignore_errors=True)
