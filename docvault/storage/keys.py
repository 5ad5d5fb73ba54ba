"""
Blob key generation.

Keys look like ``{workspace_id}/{epoch_ms}-{uuid4 hex}-{stem}{ext}``. The
random component makes every upload attempt land on a fresh key, so a
retried put never overwrites a committed version.
"""

from __future__ import annotations

import os
import re
import time
import uuid
from typing import Optional, Tuple

MAX_STEM_LENGTH = 50
MAX_EXTENSION_LENGTH = 16

_UNSAFE_STEM_CHARS = re.compile(r"[^A-Za-z0-9_-]")
_UNSAFE_EXT_CHARS = re.compile(r"[^a-z0-9]")


def split_filename(original_name: str) -> Tuple[str, str]:
    """Split a client-supplied name into (stem, extension) ignoring any directories."""
    base = original_name.replace("\\", "/").rsplit("/", 1)[-1]
    stem, ext = os.path.splitext(base)
    return stem, ext


def sanitize_stem(stem: str) -> str:
    cleaned = _UNSAFE_STEM_CHARS.sub("-", stem)[:MAX_STEM_LENGTH]
    return cleaned or "file"


def sanitize_extension(ext: str) -> str:
    cleaned = _UNSAFE_EXT_CHARS.sub("", ext.lstrip(".").lower())[:MAX_EXTENSION_LENGTH]
    return f".{cleaned}" if cleaned else ""


def generate_blob_key(
    workspace_id: int,
    original_name: str,
    now_ms: Optional[int] = None,
) -> str:
    """
    Build a collision-resistant object key for an upload.

    Args:
        workspace_id:  Owning workspace; becomes the key prefix.
        original_name: Client file name. Only its sanitised stem and
                       extension survive, never a path.
        now_ms:        Epoch milliseconds (injectable for tests).
    """
    stem, ext = split_filename(original_name)
    timestamp = now_ms if now_ms is not None else int(time.time() * 1000)
    return (
        f"{workspace_id}/{timestamp}-{uuid.uuid4().hex}-"
        f"{sanitize_stem(stem)}{sanitize_extension(ext)}"
    )


def workspace_prefix(workspace_id: int) -> str:
    return f"{workspace_id}/"
