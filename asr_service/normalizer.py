"""Maps the provider's three response schemas onto one canonical result.

The raw response is classified exactly once, in :func:`parse_provider_response`.
Diarized responses can carry ``language``/``duration`` as well, so they must be
recognised before verbose ones.
"""

from __future__ import annotations

import math
import re
from typing import Any, Optional

from asr_service.models import (
    DiarizedResponse,
    PlainResponse,
    ProviderResponse,
    VerboseResponse,
)
from common.schemas import (
    CanonicalSegment,
    CanonicalTranscriptionResult,
    TranscriptMetadata,
    TranscriptSegment,
)

QUALITY_FIELDS = ("seek", "tokens", "temperature", "avg_logprob", "compression_ratio", "no_speech_prob")


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _as_time(value: Any) -> float:
    # non-numeric timestamps become NaN and are dropped by the sanitizer
    return float(value) if _is_number(value) else math.nan


def _segment_id(segment: dict[str, Any], index: int) -> int | str:
    value = segment.get("id")
    if isinstance(value, (int, str)) and not isinstance(value, bool):
        return value
    return index


def _usage_seconds(raw: dict[str, Any]) -> Optional[float]:
    usage = raw.get("usage")
    if not isinstance(usage, dict):
        return None
    seconds = usage.get("seconds")
    return float(seconds) if _is_number(seconds) else None


def _looks_diarized(segments: Any) -> bool:
    if not isinstance(segments, list) or not segments:
        return False
    first = segments[0]
    return (
        isinstance(first, dict)
        and _is_number(first.get("start"))
        and _is_number(first.get("end"))
        and isinstance(first.get("text"), str)
        and "speaker" in first
    )


def parse_provider_response(raw: dict[str, Any]) -> ProviderResponse:
    """Classify a raw provider response into its variant."""
    text = raw.get("text") if isinstance(raw.get("text"), str) else ""
    segments = raw.get("segments")

    if _looks_diarized(segments):
        duration = raw.get("duration")
        return DiarizedResponse(
            text=text,
            segments=tuple(s for s in segments if isinstance(s, dict)),
            task=raw.get("task") if isinstance(raw.get("task"), str) else None,
            duration=float(duration) if _is_number(duration) else None,
            usage_seconds=_usage_seconds(raw),
        )

    if isinstance(raw.get("language"), str) and _is_number(raw.get("duration")):
        return VerboseResponse(
            language=raw["language"],
            duration=float(raw["duration"]),
            text=text,
            segments=tuple(s for s in segments or () if isinstance(s, dict)),
        )

    language = raw.get("language")
    return PlainResponse(
        text=text,
        language=language if isinstance(language, str) else None,
        usage_seconds=_usage_seconds(raw),
    )


def normalize_speaker_label(raw_speaker: Any, segment_index: int) -> str:
    if isinstance(raw_speaker, str) and raw_speaker.strip():
        return raw_speaker.strip()

    if _is_number(raw_speaker) and math.isfinite(raw_speaker):
        return f"Speaker {math.trunc(raw_speaker) + 1}"

    if isinstance(raw_speaker, dict):
        for key in ("label", "name"):
            value = raw_speaker.get(key)
            if isinstance(value, str):
                if value.strip():
                    return value.strip()
                break

    return f"Speaker {segment_index + 1}"


def normalize_response(response: ProviderResponse) -> CanonicalTranscriptionResult:
    if isinstance(response, DiarizedResponse):
        duration = response.duration if response.duration is not None else response.usage_seconds
        return CanonicalTranscriptionResult(
            task=response.task or "transcribe",
            duration_s=duration,
            text=response.text,
            segments=[
                CanonicalSegment(
                    id=_segment_id(segment, index),
                    start=_as_time(segment.get("start")),
                    end=_as_time(segment.get("end")),
                    text=segment.get("text") or "",
                    speaker=normalize_speaker_label(segment.get("speaker"), index),
                )
                for index, segment in enumerate(response.segments)
            ],
        )

    if isinstance(response, VerboseResponse):
        return CanonicalTranscriptionResult(
            task="transcribe",
            language=response.language,
            duration_s=response.duration,
            text=response.text,
            segments=[
                CanonicalSegment(
                    id=_segment_id(segment, index),
                    start=_as_time(segment.get("start")),
                    end=_as_time(segment.get("end")),
                    text=segment.get("text") or "",
                    **{key: segment.get(key) for key in QUALITY_FIELDS},
                )
                for index, segment in enumerate(response.segments)
            ],
        )

    return CanonicalTranscriptionResult(
        task="transcribe",
        language=response.language,
        duration_s=response.usage_seconds,
        text=response.text,
        segments=[],
    )


def normalize_raw(raw: dict[str, Any]) -> CanonicalTranscriptionResult:
    return normalize_response(parse_provider_response(raw))


# --- Canonical result -> wire segments / metadata ---

def to_transcript_segments(
    result: CanonicalTranscriptionResult,
    fallback_duration: float = 0.0,
) -> list[TranscriptSegment]:
    """Convert canonical segments, synthesizing one segment for text-only results."""
    if not result.segments:
        text = result.text.strip()
        if not text:
            return []
        end = result.duration_s if result.duration_s else fallback_duration
        return [TranscriptSegment(index=0, start=0.0, end=end or 0.0, text=text)]

    segments = []
    for index, segment in enumerate(result.segments):
        speaker = segment.speaker.strip() if segment.speaker else None
        segments.append(
            TranscriptSegment(
                index=index,
                start=segment.start,
                end=segment.end,
                text=segment.text.strip(),
                speaker=speaker or None,
            )
        )
    return segments


def calculate_duration(
    result: CanonicalTranscriptionResult,
    segments: list[TranscriptSegment],
    fallback_duration: float = 0.0,
) -> float:
    if result.duration_s is not None and result.duration_s > 0:
        return result.duration_s
    if segments:
        return segments[-1].end
    return fallback_duration


_LANGUAGE_RE = re.compile(r"^[a-z]{2}$")


def normalize_language_code(code: Optional[str]) -> Optional[str]:
    """Return a lower-cased ISO 639-1 code, or None."""
    if not code or len(code) != 2:
        return None
    normalized = code.lower()
    return normalized if _LANGUAGE_RE.match(normalized) else None


def extract_metadata(
    result: CanonicalTranscriptionResult,
    segments: list[TranscriptSegment],
    file_size: int,
    model: str,
    fallback_duration: float = 0.0,
) -> TranscriptMetadata:
    return TranscriptMetadata(
        model=model,
        language=result.language.lower() if result.language else None,
        duration_s=calculate_duration(result, segments, fallback_duration),
        file_size_bytes=file_size,
    )
