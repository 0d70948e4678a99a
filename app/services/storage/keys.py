"""
Blob key generation

Keys look like ``records/42/1760880000123456789-3fa9c1d2e4b5-my-photo.jpg``:
parent id, nanosecond timestamp, random suffix, then the sanitized
original filename.
"""

import re
import secrets
import time
from typing import Optional

from app.config import settings

_WHITESPACE = re.compile(r"\s+")
_UNSAFE = re.compile(r"[^\w.\-]")
_MAX_FILENAME_LENGTH = 100
_DEFAULT_FILENAME = "image"


def sanitize_filename(filename: Optional[str]) -> str:
    """
    Make an uploaded filename safe to embed in a blob key and URL.

    Whitespace runs become "-", path components are dropped and any
    character other than word characters, "." and "-" is removed.
    """
    if not filename:
        return _DEFAULT_FILENAME

    # Browsers may send a full client path
    name = filename.replace("\\", "/").rsplit("/", 1)[-1]
    name = _WHITESPACE.sub("-", name.strip())
    name = _UNSAFE.sub("", name)
    name = name.lstrip(".")

    if len(name) > _MAX_FILENAME_LENGTH:
        stem, dot, ext = name.rpartition(".")
        if dot and 0 < len(ext) <= 10:
            name = stem[: _MAX_FILENAME_LENGTH - len(ext) - 1] + "." + ext
        else:
            name = name[:_MAX_FILENAME_LENGTH]

    return name or _DEFAULT_FILENAME


def generate_blob_key(parent_id: int, original_filename: Optional[str], prefix: Optional[str] = None) -> str:
    """
    Build a globally unique key for a new attachment blob.

    Args:
        parent_id: Owning record id
        original_filename: Filename as uploaded by the client
        prefix: Key namespace. Defaults to settings.blob_key_prefix.

    Returns:
        The blob key
    """
    prefix = (prefix if prefix is not None else settings.blob_key_prefix).strip("/")
    suffix = secrets.token_hex(6)
    name = sanitize_filename(original_filename)
    key = f"{parent_id}/{time.time_ns()}-{suffix}-{name}"
    return f"{prefix}/{key}" if prefix else key
