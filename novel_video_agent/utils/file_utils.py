"""
File utility functions for the novel video agent.

Provides safe file operations including atomic writes,
directory creation, and text decoding of uploaded novels.
"""

import os
import tempfile
from typing import Dict


def ensure_directories(paths: Dict[str, str]) -> None:
    """Create directories from paths dict if they don't exist.

    Idempotent operation - safe to call multiple times.

    Args:
        paths: Dictionary mapping names to directory paths.

    Examples:
        >>> ensure_directories({"storage": "/tmp/blobs", "logs": "/tmp/logs"})
    """
    for path in paths.values():
        if path:
            os.makedirs(path, exist_ok=True)


def atomic_write(dst: str, data: bytes) -> None:
    """Atomically write bytes to dst.

    Writes to a temporary file in the destination directory and renames it
    into place, so readers never observe a partial file.

    Args:
        dst: Destination file path.
        data: Bytes to write.

    Examples:
        >>> atomic_write("/blobs/u1/chapter.txt", b"...")
    """
    dst_dir = os.path.dirname(dst) or '.'
    os.makedirs(dst_dir, exist_ok=True)

    with tempfile.NamedTemporaryFile(dir=dst_dir, delete=False) as tmp:
        tmp_path = tmp.name
        tmp.write(data)

    try:
        os.replace(tmp_path, dst)
    except Exception:
        # Clean up temp file on failure
        if os.path.exists(tmp_path):
            os.remove(tmp_path)
        raise


def decode_text(data: bytes) -> str:
    """Decode uploaded novel bytes to text.

    Tries UTF-8 (with or without BOM) first, then GB18030 which covers
    most Chinese web novels.

    Args:
        data: Raw file bytes.

    Returns:
        Decoded text.

    Raises:
        ValueError: If the bytes cannot be decoded.
    """
    for encoding in ("utf-8-sig", "gb18030"):
        try:
            return data.decode(encoding)
        except UnicodeDecodeError:
            continue
    raise ValueError("Unable to decode text: unsupported encoding")


def split_extension(filename: str) -> str:
    """Return the lower-case extension of filename without the dot."""
    _, ext = os.path.splitext(os.path.basename(filename))
    return ext[1:].lower() if ext else ""
