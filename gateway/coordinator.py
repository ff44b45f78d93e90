from __future__ import annotations

import asyncio
import logging
from typing import Optional

import httpx
from pydantic import ValidationError as SchemaValidationError

from common.config import GatewaySettings
from common.context import RequestContext
from common.errors import (
    FatalProviderError,
    ProviderErrorKind,
    ReconciliationError,
    TranscriptionCancelled,
    TranscriptionError,
    TransientProviderError,
    ValidationError,
    classify_http_status,
)
from common.privacy import hash_filename
from common.schemas import AudioChunk, ChunkTranscript, ProgressStage, ReconciledTranscript, TranscribeResponse
from gateway.progress import ProgressCallback, ProgressTracker
from gateway.reconciler import reconcile_chunks

logger = logging.getLogger(__name__)

PROCESSING_DONE = 30
UPLOADING_DONE = 40
TRANSCRIBING_DONE = 99


class ChunkFailedError(TranscriptionError):
    """The ASR service reported a failure for one chunk."""

    def __init__(self, message: str, category: str = "unknown", status_code: int = 500):
        super().__init__(message)
        self.category = category
        self.status_code = status_code


def _error_from_category(message: str, category: str, status_code: int) -> TranscriptionError:
    if category == "validation":
        return ValidationError(message, status_code)
    if category == "rate_limit":
        return TransientProviderError(message, ProviderErrorKind.rate_limited, status_code)
    if category == "network":
        return TransientProviderError(message, ProviderErrorKind.network, status_code)
    if category == "server_unavailable":
        return TransientProviderError(message, ProviderErrorKind.server_error, status_code)
    if category == "configuration":
        return FatalProviderError(message, ProviderErrorKind.client_error, 401)
    return ChunkFailedError(message, category, status_code)


class UploadCoordinator:
    """Uploads chunks to the ASR service concurrently and reconciles the results."""

    def __init__(self, settings: GatewaySettings, client: httpx.AsyncClient | None = None):
        self.settings = settings
        self._client = client

    def client_timeout(self) -> httpx.Timeout:
        return httpx.Timeout(self.settings.upload_timeout_s, connect=self.settings.connect_timeout_s)

    async def transcribe(
        self,
        chunks: list[AudioChunk],
        *,
        model: Optional[str] = None,
        language: Optional[str] = None,
        filename: Optional[str] = None,
        ctx: RequestContext | None = None,
        on_progress: ProgressCallback | None = None,
    ) -> ReconciledTranscript:
        if not chunks:
            raise ValidationError("No audio chunks supplied.")

        ctx = ctx or RequestContext()
        progress = ProgressTracker(on_progress, min_interval_s=self.settings.progress_interval_s)
        model = model or self.settings.default_model
        total = len(chunks)

        progress.report(ProgressStage.processing, 5, "Preparing audio chunks...")
        progress.report(ProgressStage.processing, PROCESSING_DONE, f"Prepared {total} audio chunk(s)")

        try:
            if self._client is not None:
                parts = await self._upload_all(self._client, chunks, model, language, ctx, progress)
            else:
                async with httpx.AsyncClient(timeout=self.client_timeout()) as client:
                    parts = await self._upload_all(client, chunks, model, language, ctx, progress)
            transcript = reconcile_chunks(parts, filename=filename)
        except TranscriptionError as exc:
            progress.report(ProgressStage.error, progress.percent, str(exc.message))
            raise

        progress.report(ProgressStage.complete, 100, "Transcription complete!")
        return transcript

    async def _upload_all(
        self,
        client: httpx.AsyncClient,
        chunks: list[AudioChunk],
        model: Optional[str],
        language: Optional[str],
        ctx: RequestContext,
        progress: ProgressTracker,
    ) -> list[ChunkTranscript]:
        total = len(chunks)
        semaphore = asyncio.Semaphore(max(1, self.settings.max_concurrent_uploads))
        completed = 0

        async def run(chunk: AudioChunk) -> ChunkTranscript:
            nonlocal completed
            async with semaphore:
                ctx.raise_if_cancelled()
                message = f"Uploading {total} audio chunks..." if total > 1 else "Uploading audio..."
                progress.report(
                    ProgressStage.uploading,
                    UPLOADING_DONE if total == 1 else PROCESSING_DONE + 1,
                    message,
                    current_section=f"part {chunk.chunk_index + 1}/{total}",
                )
                part = await self._upload_one(client, chunk, model, language, ctx)

            completed += 1
            percent = UPLOADING_DONE + round(completed / total * (TRANSCRIBING_DONE - UPLOADING_DONE))
            progress.report(
                ProgressStage.transcribing,
                min(percent, TRANSCRIBING_DONE),
                f"Processed {completed}/{total} audio chunks",
                current_section=f"part {chunk.chunk_index + 1}/{total}",
            )
            return part

        results = await asyncio.gather(*(run(c) for c in chunks), return_exceptions=True)
        progress.flush()

        failures = [(c, r) for c, r in zip(chunks, results) if isinstance(r, BaseException)]
        if failures:
            for chunk, exc in failures:
                logger.error("Chunk %d/%d failed: %s", chunk.chunk_index + 1, total, exc)
            first_chunk, first_exc = failures[0]
            if any(isinstance(exc, TranscriptionCancelled) for _, exc in failures):
                raise TranscriptionCancelled()
            if not isinstance(first_exc, Exception):
                raise first_exc
            raise ReconciliationError(
                f"{len(failures)} of {total} chunk(s) failed; first failure in part {first_chunk.chunk_index}",
                cause=first_exc,
            )
        return list(results)

    async def _upload_one(
        self,
        client: httpx.AsyncClient,
        chunk: AudioChunk,
        model: Optional[str],
        language: Optional[str],
        ctx: RequestContext,
    ) -> ChunkTranscript:
        multipart = chunk.total_chunks > 1
        data: dict[str, str] = {"estimated_duration_s": str(chunk.estimated_duration_s)}
        if model:
            data["model"] = model
        if language:
            data["language"] = language
        if multipart:
            data["chunk_index"] = str(chunk.chunk_index)
            data["total_chunks"] = str(chunk.total_chunks)
        files = {"file": (chunk.filename, chunk.data, chunk.content_type or "application/octet-stream")}

        url = f"{self.settings.asr_url.rstrip('/')}/transcribe"
        logger.debug("Uploading file=%s part=%d/%d", hash_filename(chunk.filename), chunk.chunk_index + 1, chunk.total_chunks)
        try:
            resp = await ctx.guard(client.post(url, data=data, files=files))
        except httpx.TimeoutException as exc:
            raise TransientProviderError(
                "Upload timed out. Please check your connection and try again.", ProviderErrorKind.timeout
            ).with_context(chunk_index=chunk.chunk_index) from exc
        except httpx.TransportError as exc:
            raise TransientProviderError(
                f"Network error during transcription: {exc}", ProviderErrorKind.network
            ).with_context(chunk_index=chunk.chunk_index) from exc

        try:
            body = TranscribeResponse.model_validate(resp.json())
        except (ValueError, SchemaValidationError) as exc:
            if resp.status_code >= 400:
                raise classify_http_status(resp.status_code, resp.text).with_context(
                    chunk_index=chunk.chunk_index
                ) from exc
            raise ChunkFailedError("Failed to parse transcription response").with_context(
                chunk_index=chunk.chunk_index
            ) from exc

        if resp.status_code >= 400 or not body.success or body.data is None:
            details = body.details or {}
            raise _error_from_category(
                body.error or f"Transcription failed with status {resp.status_code}",
                str(details.get("category", "unknown")),
                resp.status_code,
            ).with_context(chunk_index=chunk.chunk_index)

        part = body.data
        if not part.metadata.duration_s:
            part.metadata.duration_s = chunk.estimated_duration_s
        if not part.metadata.file_size_bytes:
            part.metadata.file_size_bytes = chunk.size
        if multipart and part.part_index is None:
            part.part_index = chunk.chunk_index
            part.total_parts = chunk.total_chunks
        return part
