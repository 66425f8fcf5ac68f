"""Multipart body assembly from part descriptors.

Bodies are always regenerated from MultipartPart descriptors, never from a
stream that may already have been consumed. File contents are read from disk
on each call, so the original attempt and a Digest retry send the same bytes.
"""

from __future__ import annotations

import os
from pathlib import Path

from restclient.models import MultipartPart

# httpx "files" entry: (field name, (filename, content, content type))
MultipartField = tuple[str, tuple[str | None, bytes, str | None]]


def build_multipart_files(parts: list[MultipartPart]) -> list[MultipartField]:
    """Convert part descriptors into an httpx `files=` list, preserving order.

    Text parts get no filename, which httpx renders as a plain form field.
    File parts default their filename to the basename of file_path and, with
    no explicit content type, let httpx guess one from the filename.

    Raises:
        OSError: If a file part's path cannot be read.
    """
    fields: list[MultipartField] = []
    for part in parts:
        if part.is_file:
            path = Path(part.file_path)
            filename = part.file_name or os.path.basename(part.file_path)
            fields.append((part.name, (filename, path.read_bytes(), part.content_type)))
        else:
            fields.append((part.name, (None, part.value.encode("utf-8"), None)))
    return fields
