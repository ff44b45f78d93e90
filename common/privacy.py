"""Keeps user filenames and provider keys out of outbound requests and logs."""

from __future__ import annotations

import uuid

_BASE36 = "0123456789abcdefghijklmnopqrstuvwxyz"


def file_extension(filename: str, default: str = "mp3") -> str:
    name = filename.rsplit("/", 1)[-1]
    if "." not in name:
        return default
    ext = name.rsplit(".", 1)[-1].strip().lower()
    return ext or default


def obfuscate_filename(filename: str) -> str:
    """Random upload name that preserves only the extension."""
    return f"{uuid.uuid4()}.{file_extension(filename)}"


def _to_base36(value: int) -> str:
    if value == 0:
        return "0"
    digits = []
    while value:
        value, rem = divmod(value, 36)
        digits.append(_BASE36[rem])
    return "".join(reversed(digits))


def hash_filename(filename: str) -> str:
    """Short, non-reversible correlation id for a filename (8 base-36 chars)."""
    h = 0
    for char in filename:
        h = ((h << 5) - h + ord(char)) & 0xFFFFFFFF
    if h >= 0x80000000:
        h -= 0x100000000
    return _to_base36(abs(h)).rjust(8, "0")[:8]


def redact(text: str, secret: str | None) -> str:
    if not secret:
        return text
    return text.replace(secret, "***")
