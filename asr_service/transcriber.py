from __future__ import annotations

import logging
import uuid

import httpx
from openai import AsyncOpenAI

from asr_service.formats import determine_format
from asr_service.models import SegmentPolicy
from asr_service.normalizer import extract_metadata, normalize_raw, to_transcript_segments
from asr_service.retry import RetryController
from asr_service.sanitizer import sanitize_segments, validate_segments
from asr_service.transport import (
    DirectTransport,
    ProviderTransport,
    SdkTransport,
    build_sdk_client,
    uses_direct_transport,
)
from common.config import ASRSettings
from common.context import RequestContext
from common.privacy import hash_filename
from common.schemas import AudioChunk, ChunkTranscript, ResponseFormat

logger = logging.getLogger(__name__)


def generate_transcript_id() -> str:
    return uuid.uuid4().hex


class TranscriptionEngine:
    """Per-chunk pipeline: retry/transport, normalize, sanitize, validate."""

    def __init__(
        self,
        settings: ASRSettings,
        sdk_client: AsyncOpenAI | None = None,
        http_client: httpx.AsyncClient | None = None,
    ):
        self.settings = settings
        self._sdk_client = sdk_client
        self._http_client = http_client
        self._sdk_transport: SdkTransport | None = None
        self._direct_transport: DirectTransport | None = None

    def transport_for(self, model: str) -> ProviderTransport:
        if uses_direct_transport(model, self.settings):
            if self._direct_transport is None:
                self._direct_transport = DirectTransport(self.settings, client=self._http_client)
            return self._direct_transport
        if self._sdk_transport is None:
            client = self._sdk_client or build_sdk_client(self.settings)
            self._sdk_transport = SdkTransport(client)
        return self._sdk_transport

    def segment_policy(self, response_format: ResponseFormat) -> SegmentPolicy:
        # concurrent speakers legitimately overlap in diarized output
        return SegmentPolicy(
            allow_overlaps=response_format == ResponseFormat.diarized_json,
            overlap_epsilon=self.settings.overlap_epsilon,
            min_duration=self.settings.min_segment_duration,
        )

    async def transcribe_chunk(
        self,
        chunk: AudioChunk,
        *,
        model: str | None = None,
        language: str | None = None,
        ctx: RequestContext | None = None,
        multipart: bool = False,
    ) -> ChunkTranscript:
        ctx = ctx or RequestContext()
        model = model or self.settings.default_model
        file_hash = hash_filename(chunk.filename)
        requested_format = determine_format(model)

        logger.info(
            "Processing file=%s size=%d model=%s format=%s part=%d/%d",
            file_hash, chunk.size, model, requested_format.value,
            chunk.chunk_index + 1, chunk.total_chunks,
        )

        controller = RetryController(
            self.transport_for(model),
            max_retries=self.settings.max_retries,
            base_delay_s=self.settings.retry_base_delay_s,
        )
        result = await controller.transcribe(
            chunk,
            model=model,
            response_format=requested_format,
            language=language,
            ctx=ctx,
        )

        canonical = normalize_raw(result.raw)
        logger.debug(
            "Normalized transcription response: format=%s segments=%d",
            result.response_format.value, len(canonical.segments),
        )

        policy = self.segment_policy(result.response_format)
        converted = to_transcript_segments(canonical, fallback_duration=chunk.estimated_duration_s)
        sanitized = sanitize_segments(converted, policy)
        if sanitized.warnings:
            logger.warning("Segment sanitation warnings for file=%s: %s", file_hash, sanitized.warnings)

        report = validate_segments(sanitized.segments, policy)
        if not report.valid:
            logger.warning(
                "Segment validation errors for file=%s (continuing with %d segments): %s",
                file_hash, len(sanitized.segments), report.errors,
            )

        metadata = extract_metadata(
            canonical,
            sanitized.segments,
            file_size=chunk.size,
            model=model,
            fallback_duration=chunk.estimated_duration_s,
        )
        if not metadata.language and language:
            metadata.language = language.lower()

        transcript = ChunkTranscript(
            id=generate_transcript_id(),
            filename=chunk.filename,
            text=canonical.text.strip(),
            segments=sanitized.segments,
            metadata=metadata,
            response_format=result.response_format,
            part_index=chunk.chunk_index if multipart else None,
            total_parts=chunk.total_chunks if multipart else None,
            warnings=sanitized.warnings,
            validation_errors=report.errors,
        )
        logger.info(
            "Transcription completed: id=%s file=%s segments=%d duration=%.2f attempts=%d",
            transcript.id, file_hash, len(transcript.segments), metadata.duration_s, result.attempts,
        )
        return transcript


_engine: TranscriptionEngine | None = None


def get_engine(settings: ASRSettings | None = None) -> TranscriptionEngine:
    global _engine
    if _engine is None:
        _engine = TranscriptionEngine(settings or ASRSettings())
    return _engine
