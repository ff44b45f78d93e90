from __future__ import annotations

from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field


# --- Audio handed over by the external splitter ---

class AudioChunk(BaseModel):
    model_config = ConfigDict(frozen=True)

    data: bytes
    filename: str = "audio.mp3"
    estimated_duration_s: float = 0.0
    chunk_index: int = 0
    total_chunks: int = 1
    content_type: Optional[str] = None

    @property
    def size(self) -> int:
        return len(self.data)


# --- Canonical per-chunk results ---

class ResponseFormat(str, Enum):
    verbose_json = "verbose_json"
    diarized_json = "diarized_json"
    json = "json"


class CanonicalSegment(BaseModel):
    id: int | str
    start: float
    end: float
    text: str
    speaker: Optional[str] = None
    seek: Optional[int] = None
    tokens: Optional[list[int]] = None
    temperature: Optional[float] = None
    avg_logprob: Optional[float] = None
    compression_ratio: Optional[float] = None
    no_speech_prob: Optional[float] = None


class CanonicalTranscriptionResult(BaseModel):
    task: str = "transcribe"
    language: Optional[str] = None
    duration_s: Optional[float] = None
    text: str = ""
    segments: list[CanonicalSegment] = []


class TranscriptSegment(BaseModel):
    index: int
    start: float
    end: float
    text: str
    speaker: Optional[str] = None


class TranscriptMetadata(BaseModel):
    model: str
    language: Optional[str] = None
    duration_s: float = 0.0
    file_size_bytes: int = 0


class ChunkTranscript(BaseModel):
    id: str
    filename: str
    text: str
    segments: list[TranscriptSegment]
    metadata: TranscriptMetadata
    response_format: ResponseFormat = ResponseFormat.json
    part_index: Optional[int] = None
    total_parts: Optional[int] = None
    warnings: list[str] = []
    validation_errors: list[str] = []


# --- Reconciled transcript ---

class GlobalSegment(BaseModel):
    model_config = ConfigDict(frozen=True)

    index: int
    start: float
    end: float
    text: str
    speaker: Optional[str] = None


class ReconciledTranscript(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    filename: str
    text: str
    segments: tuple[GlobalSegment, ...]
    metadata: TranscriptMetadata
    part_index: Optional[int] = None
    total_parts: Optional[int] = None
    warnings: tuple[str, ...] = ()


# --- ASR service HTTP envelope ---

class TranscribeResponse(BaseModel):
    success: bool
    data: Optional[ChunkTranscript] = None
    error: Optional[str] = None
    details: Optional[dict[str, Any]] = None


# --- Progress ---

class ProgressStage(str, Enum):
    uploading = "uploading"
    processing = "processing"
    transcribing = "transcribing"
    complete = "complete"
    error = "error"


class ProgressUpdate(BaseModel):
    stage: ProgressStage
    percent: float = Field(ge=0, le=100)
    message: str = ""
    current_section: Optional[str] = None


# --- WebSocket messages: client ↔ gateway ---

class ClientMessageType(str, Enum):
    start = "start"
    end = "end"
    cancel = "cancel"


class ChunkDescriptor(BaseModel):
    estimated_duration_s: float = 0.0
    filename: Optional[str] = None


class StartMessage(BaseModel):
    type: ClientMessageType = ClientMessageType.start
    stream_id: str
    filename: str = "recording.mp3"
    model: Optional[str] = None
    language: Optional[str] = None
    chunks: list[ChunkDescriptor]


class EndMessage(BaseModel):
    type: ClientMessageType = ClientMessageType.end
    stream_id: str


class CancelMessage(BaseModel):
    type: ClientMessageType = ClientMessageType.cancel
    stream_id: str


class ServerMessageType(str, Enum):
    progress = "progress"
    transcript_complete = "transcript_complete"
    error = "error"


class ProgressMessage(BaseModel):
    type: ServerMessageType = ServerMessageType.progress
    stream_id: str
    progress: ProgressUpdate


class TranscriptCompleteMessage(BaseModel):
    type: ServerMessageType = ServerMessageType.transcript_complete
    stream_id: str
    transcript: ReconciledTranscript


class ErrorMessage(BaseModel):
    type: ServerMessageType = ServerMessageType.error
    stream_id: str
    detail: str
    category: str = "unknown"
    status_code: int = 500
