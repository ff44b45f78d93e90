from __future__ import annotations

from common.schemas import ResponseFormat


def is_diarize_model(model: str) -> bool:
    return "diarize" in model.strip().lower()


def determine_format(model: str) -> ResponseFormat:
    """Pick the richest response schema the model family supports.

    Whisper models return timestamped segments with ``verbose_json``. Diarize
    models only return speaker-labelled segments when asked for
    ``diarized_json``. Everything else degrades to text-only ``json``.
    """
    normalized = model.strip().lower()
    if normalized.startswith("whisper"):
        return ResponseFormat.verbose_json
    if "diarize" in normalized:
        return ResponseFormat.diarized_json
    return ResponseFormat.json
