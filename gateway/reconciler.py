"""Merge independently transcribed chunk results into one global transcript.

Each chunk's timestamps are relative to the chunk. They are shifted by a
cumulative offset that advances to the end of the chunk's last segment, which
reflects the audio actually transcribed; the nominal chunk duration is used
only for chunks that produced no segments. Re-encoding trims silence, so using
the nominal duration everywhere would make later chunks drift.
"""

from __future__ import annotations

import logging
import uuid
from typing import Iterable

from common.errors import ReconciliationError
from common.schemas import (
    ChunkTranscript,
    GlobalSegment,
    ReconciledTranscript,
    TranscriptMetadata,
)

logger = logging.getLogger(__name__)


def _part_index(part: ChunkTranscript) -> int:
    return part.part_index if part.part_index is not None else 0


def _check_parts(parts: list[ChunkTranscript]) -> None:
    if not parts:
        raise ReconciliationError("No transcript parts supplied")

    indices = [_part_index(p) for p in parts]
    if len(set(indices)) != len(indices):
        raise ReconciliationError(f"Duplicate transcript parts: {sorted(indices)}")

    declared = {p.total_parts for p in parts if p.total_parts is not None}
    if len(declared) > 1:
        raise ReconciliationError(f"Transcript parts disagree on total_parts: {sorted(declared)}")
    if declared:
        total = declared.pop()
        if total != len(parts):
            raise ReconciliationError(f"Expected {total} transcript parts, got {len(parts)}")


def reconcile_chunks(
    parts: Iterable[ChunkTranscript],
    *,
    filename: str | None = None,
    transcript_id: str | None = None,
) -> ReconciledTranscript:
    ordered = sorted(parts, key=_part_index)
    _check_parts(ordered)

    segments: list[GlobalSegment] = []
    warnings: list[str] = []
    cumulative_offset = 0.0

    for part in ordered:
        for segment in part.segments:
            segments.append(
                GlobalSegment(
                    index=len(segments),
                    start=segment.start + cumulative_offset,
                    end=segment.end + cumulative_offset,
                    text=segment.text,
                    speaker=segment.speaker,
                )
            )

        if part.segments:
            cumulative_offset = segments[-1].end
        else:
            cumulative_offset += part.metadata.duration_s

        label = f"part {_part_index(part)}"
        warnings.extend(f"{label}: {w}" for w in part.warnings)
        warnings.extend(f"{label}: {e}" for e in part.validation_errors)

    first = ordered[0]
    text = " ".join(part.text for part in ordered).strip()
    metadata = TranscriptMetadata(
        model=first.metadata.model,
        language=next((p.metadata.language for p in ordered if p.metadata.language), None),
        duration_s=cumulative_offset or first.metadata.duration_s,
        file_size_bytes=sum(p.metadata.file_size_bytes for p in ordered),
    )

    logger.info(
        "Reconciled %d parts: segments=%d duration=%.2f",
        len(ordered), len(segments), metadata.duration_s,
    )
    return ReconciledTranscript(
        id=transcript_id or (first.id if len(ordered) == 1 else uuid.uuid4().hex),
        filename=filename or first.filename,
        text=text,
        segments=tuple(segments),
        metadata=metadata,
        warnings=tuple(warnings),
    )
