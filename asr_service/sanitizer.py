from __future__ import annotations

import math

from asr_service.models import SanitizationResult, SegmentPolicy, ValidationReport
from common.schemas import TranscriptSegment


def sanitize_segments(
    segments: list[TranscriptSegment],
    policy: SegmentPolicy | None = None,
) -> SanitizationResult:
    """Repair segment timing and reindex.

    Segments are sorted chronologically, those with unusable timing or empty
    text are dropped, short segments are stretched to ``min_duration`` and,
    unless overlaps are allowed, overlapping starts are trimmed to the previous
    segment's end. Every repair is reported as a warning.
    """
    policy = policy or SegmentPolicy()
    sanitized: list[TranscriptSegment] = []
    warnings: list[str] = []

    ordered = sorted(segments, key=lambda s: (s.start, s.index))

    for segment in ordered:
        start, end = segment.start, segment.end
        text = (segment.text or "").strip()
        speaker = segment.speaker.strip() if segment.speaker else None

        if not math.isfinite(start) or not math.isfinite(end):
            warnings.append(
                f"Dropped segment {segment.index} with non-finite timestamps (start={start}, end={end})."
            )
            continue

        if not text:
            if policy.remove_empty_text:
                warnings.append(f"Dropped segment {segment.index} with empty text.")
                continue
            warnings.append(f"Kept segment {segment.index} with empty text (empty text allowed).")

        if end < start:
            warnings.append(
                f"Dropped segment {segment.index} with end before start (start={start}, end={end})."
            )
            continue

        if start < 0:
            warnings.append(f"Clamped negative start time for segment {segment.index} (start={start}).")
            start = 0.0
            end = max(end, 0.0)

        if end - start < policy.min_duration:
            adjusted_end = start + max(policy.min_duration, 0.001)
            warnings.append(
                f"Adjusted end time for segment {segment.index} "
                f"(start={start}, end={end}) -> {adjusted_end}."
            )
            end = adjusted_end

        if not policy.allow_overlaps and sanitized:
            previous = sanitized[-1]
            if start < previous.end - policy.overlap_epsilon:
                adjusted_start = previous.end
                if adjusted_start >= end:
                    warnings.append(
                        f"Dropped segment {segment.index} due to unresolved overlap "
                        f"with segment {previous.index}."
                    )
                    continue
                warnings.append(
                    f"Adjusted start time for segment {segment.index} to avoid overlap "
                    f"(start={start} -> {adjusted_start})."
                )
                start = adjusted_start

        sanitized.append(
            TranscriptSegment(
                index=len(sanitized),
                start=start,
                end=end,
                text=text,
                speaker=speaker or None,
            )
        )

    return SanitizationResult(segments=sanitized, warnings=warnings)


def validate_segments(
    segments: list[TranscriptSegment],
    policy: SegmentPolicy | None = None,
) -> ValidationReport:
    policy = policy or SegmentPolicy()
    errors: list[str] = []

    if not segments:
        return ValidationReport(valid=False, errors=["Segments array is empty"])

    for i, segment in enumerate(segments):
        if segment.index != i:
            errors.append(f"Segment {i} has incorrect index: expected {i}, got {segment.index}")

        # tolerate float rounding from start + min_duration
        if segment.end < segment.start + policy.min_duration - 1e-9:
            errors.append(
                f"Segment {i} has invalid time range: start={segment.start}, end={segment.end}"
            )

        if segment.start < 0 or segment.end < 0:
            errors.append(f"Segment {i} has negative timestamp")

        if not policy.allow_overlaps and i < len(segments) - 1:
            following = segments[i + 1]
            if segment.end > following.start + policy.overlap_epsilon:
                errors.append(
                    f"Segment {i} overlaps with segment {i + 1}: "
                    f"seg{i}.end={segment.end} > seg{i + 1}.start={following.start}"
                )

        if policy.remove_empty_text and not segment.text.strip():
            errors.append(f"Segment {i} has empty text")

    return ValidationReport(valid=not errors, errors=errors)
