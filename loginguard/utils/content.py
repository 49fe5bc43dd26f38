"""Cheap content-identity hashing for rescan suppression."""

from __future__ import annotations

SAMPLE_SIZE = 1000


def content_hash(source: str) -> str:
    """Sampled djb2 hash of ``source``, prefixed with its length.

    Only about ``SAMPLE_SIZE`` characters are read, so very large pages hash
    in constant time; small edits in unsampled positions are not detected,
    but any length change is.
    """
    text = source or ""
    step = max(1, len(text) // SAMPLE_SIZE)
    value = 5381
    for index in range(0, len(text), step):
        value = ((value << 5) + value + ord(text[index])) & 0xFFFFFFFF
    return f"{len(text)}:{value}"
