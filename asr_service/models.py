"""Internal models for ASR service processing."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Optional, Union

from common.schemas import ResponseFormat, TranscriptSegment


@dataclass(frozen=True)
class ProviderPayload:
    """Raw provider response plus the format the transport actually requested."""
    raw: dict[str, Any]
    response_format: ResponseFormat


@dataclass(frozen=True)
class TransportResult:
    raw: dict[str, Any]
    response_format: ResponseFormat
    attempts: int = 1


# --- Provider response variants ---

@dataclass(frozen=True)
class VerboseResponse:
    language: str
    duration: float
    text: str
    segments: tuple[dict[str, Any], ...] = ()


@dataclass(frozen=True)
class DiarizedResponse:
    text: str
    segments: tuple[dict[str, Any], ...]
    task: Optional[str] = None
    duration: Optional[float] = None
    usage_seconds: Optional[float] = None


@dataclass(frozen=True)
class PlainResponse:
    text: str
    language: Optional[str] = None
    usage_seconds: Optional[float] = None


ProviderResponse = Union[VerboseResponse, DiarizedResponse, PlainResponse]


# --- Sanitation ---

@dataclass(frozen=True)
class SegmentPolicy:
    allow_overlaps: bool = False
    overlap_epsilon: float = 0.05
    min_duration: float = 0.001
    remove_empty_text: bool = True


@dataclass
class SanitizationResult:
    segments: list[TranscriptSegment]
    warnings: list[str] = field(default_factory=list)


@dataclass
class ValidationReport:
    valid: bool
    errors: list[str] = field(default_factory=list)
