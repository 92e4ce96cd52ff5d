import os
import tempfile
from pathlib import Path

from ticketvault import config


def _path(key: str) -> Path:
    # Keys look like "attachments/<id>" or "avatars/<id>"; anything that could
    # climb out of FILES_DIR is refused.
    if not key or key.startswith(("/", "\\")) or "\\" in key or ".." in key.split("/"):
        raise ValueError(f"Invalid file key: {key!r}")
    return Path(config.FILES_DIR) / key


def write(key: str, data: bytes):
    """Store a file under key, replacing any previous content in one rename."""
    path = _path(key)
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, temp_path = tempfile.mkstemp(dir=str(path.parent), prefix=".tmp-")
    try:
        with os.fdopen(fd, "wb") as f:
            f.write(data)
        os.replace(temp_path, path)
    except Exception:
        if os.path.exists(temp_path):
            os.unlink(temp_path)
        raise


def read(key: str):
    path = _path(key)
    if not path.is_file():
        return None
    return path.read_bytes()


def delete(key: str):
    path = _path(key)
    if path.is_file():
        path.unlink()
