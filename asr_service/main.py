from __future__ import annotations

import asyncio
import logging
from typing import Optional

from fastapi import Depends, FastAPI, File, Form, Request, UploadFile
from fastapi.responses import JSONResponse

from asr_service.transcriber import TranscriptionEngine, get_engine
from asr_service.validation import (
    SUPPORTED_AUDIO_EXTENSIONS,
    SUPPORTED_AUDIO_TYPES,
    validate_language,
    validate_part_numbers,
    validate_upload,
)
from common.config import ASRSettings
from common.context import RequestContext
from common.errors import TranscriptionError, to_user_error
from common.log import configure_logging
from common.privacy import hash_filename
from common.schemas import AudioChunk, TranscribeResponse

logger = logging.getLogger(__name__)

settings = ASRSettings()
configure_logging(settings.log_level)
app = FastAPI(title="ASR Service")

DISCONNECT_POLL_S = 0.5


def engine_dependency() -> TranscriptionEngine:
    return get_engine(settings)


def error_response(exc: BaseException) -> JSONResponse:
    user_error = to_user_error(exc)
    body = TranscribeResponse(
        success=False,
        error=user_error.message,
        details={"type": f"{user_error.category}_error", "category": user_error.category},
    )
    return JSONResponse(status_code=user_error.status_code, content=body.model_dump(mode="json"))


async def _watch_disconnect(request: Request, ctx: RequestContext) -> None:
    while not ctx.cancelled:
        if await request.is_disconnected():
            ctx.cancel()
            return
        await asyncio.sleep(DISCONNECT_POLL_S)


@app.get("/health")
async def health():
    return {"status": "ok"}


@app.get("/transcribe")
async def transcribe_info():
    return {
        "success": True,
        "data": {
            "endpoint": "/transcribe",
            "method": "POST",
            "content_type": "multipart/form-data",
            "supported_formats": list(SUPPORTED_AUDIO_TYPES),
            "supported_extensions": list(SUPPORTED_AUDIO_EXTENSIONS),
            "max_file_size": settings.max_file_size_bytes,
            "max_file_size_mb": settings.max_file_size_bytes / (1024 * 1024),
            "features": [
                "Per-model response format negotiation with json fallback",
                "Speaker diarization for diarize models",
                "Automatic retry with exponential backoff on transient failures",
                "Segment sanitation and validation",
                "Multi-part chunk metadata for client-side reconciliation",
            ],
        },
    }


@app.post("/transcribe")
async def transcribe(
    request: Request,
    file: Optional[UploadFile] = File(None),
    model: Optional[str] = Form(None),
    language: Optional[str] = Form(None),
    chunk_index: Optional[int] = Form(None),
    total_chunks: Optional[int] = Form(None),
    estimated_duration_s: Optional[float] = Form(None),
    engine: TranscriptionEngine = Depends(engine_dependency),
):
    ctx = RequestContext()
    watcher: asyncio.Task | None = None
    try:
        data = await file.read() if file is not None else None
        filename = validate_upload(
            data,
            file.filename if file is not None else None,
            file.content_type if file is not None else None,
            engine.settings,
        )
        validate_part_numbers(chunk_index, total_chunks)
        language = validate_language(language)
        multipart = total_chunks is not None and total_chunks > 1

        chunk = AudioChunk(
            data=data,
            filename=filename,
            estimated_duration_s=estimated_duration_s or 0.0,
            chunk_index=chunk_index or 0,
            total_chunks=total_chunks or 1,
            content_type=file.content_type,
        )
        logger.debug(
            "Received transcription request: request=%s file=%s size=%d part=%s/%s",
            ctx.request_id, hash_filename(filename), chunk.size, chunk_index, total_chunks,
        )

        watcher = asyncio.create_task(_watch_disconnect(request, ctx))
        transcript = await engine.transcribe_chunk(
            chunk,
            model=model,
            language=language,
            ctx=ctx,
            multipart=multipart,
        )
    except TranscriptionError as exc:
        logger.error("Transcription failed: request=%s error=%s", ctx.request_id, exc)
        return error_response(exc)
    except Exception as exc:
        logger.exception("Unexpected error in transcribe endpoint: request=%s", ctx.request_id)
        return error_response(exc)
    finally:
        if watcher is not None:
            watcher.cancel()

    return TranscribeResponse(success=True, data=transcript).model_dump(mode="json")


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host=settings.host, port=settings.port)
