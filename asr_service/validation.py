from __future__ import annotations

from asr_service.normalizer import normalize_language_code
from common.config import ASRSettings
from common.errors import ValidationError

SUPPORTED_AUDIO_TYPES = (
    "audio/mpeg",
    "audio/mp3",
    "audio/mp4",
    "audio/wav",
    "audio/wave",
    "audio/x-wav",
    "audio/webm",
    "audio/ogg",
    "audio/flac",
    "audio/aac",
    "audio/x-m4a",
    "video/mp4",
    "video/webm",
)

SUPPORTED_AUDIO_EXTENSIONS = (".mp3", ".mp4", ".m4a", ".wav", ".webm", ".ogg", ".flac", ".aac")

DEFAULT_FILENAME = "audio.mp3"


def is_supported_audio_type(content_type: str | None) -> bool:
    if not content_type:
        return False
    base = content_type.split(";", 1)[0].strip().lower()
    return base in SUPPORTED_AUDIO_TYPES or base == "application/octet-stream"


def has_supported_extension(filename: str) -> bool:
    return filename.lower().endswith(SUPPORTED_AUDIO_EXTENSIONS)


def validate_upload(
    data: bytes | None,
    filename: str | None,
    content_type: str | None,
    settings: ASRSettings,
) -> str:
    """Check an uploaded chunk and return the filename to use for it."""
    if data is None:
        raise ValidationError("No file provided. Please upload an audio file.")

    name = filename or DEFAULT_FILENAME
    size = len(data)

    if size == 0:
        raise ValidationError("File is empty. Please upload a valid audio file.")
    if size < settings.min_file_size_bytes:
        raise ValidationError(
            f"File is too small. Minimum file size is {settings.min_file_size_bytes // 1024} KB."
        )
    if size > settings.max_file_size_bytes:
        max_mb = settings.max_file_size_bytes / (1024 * 1024)
        raise ValidationError(f"File is too large. Maximum file size is {max_mb:g}MB.", status_code=413)
    if not is_supported_audio_type(content_type):
        raise ValidationError(
            f"Unsupported file type: {content_type}. Supported types: {', '.join(SUPPORTED_AUDIO_TYPES)}"
        )
    if not has_supported_extension(name):
        raise ValidationError(
            f"Unsupported file extension. Supported extensions: {', '.join(SUPPORTED_AUDIO_EXTENSIONS)}"
        )
    return name


def validate_part_numbers(chunk_index: int | None, total_chunks: int | None) -> None:
    if chunk_index is None and total_chunks is None:
        return
    if chunk_index is None or total_chunks is None:
        raise ValidationError("chunk_index and total_chunks must be provided together.")
    if total_chunks < 1 or not 0 <= chunk_index < total_chunks:
        raise ValidationError(
            f"Invalid chunk position: chunk_index={chunk_index}, total_chunks={total_chunks}."
        )


def validate_language(language: str | None) -> str | None:
    """Normalize the optional ``language`` field to an ISO 639-1 code."""
    if language is None or not language.strip():
        return None
    code = normalize_language_code(language.strip())
    if code is None:
        raise ValidationError(f"Invalid language code: {language!r}. Use an ISO 639-1 code such as 'en'.")
    return code
