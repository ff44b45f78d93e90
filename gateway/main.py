from __future__ import annotations

import asyncio
import json
import logging

from fastapi import FastAPI, WebSocket, WebSocketDisconnect

from common.config import GatewaySettings
from common.errors import TranscriptionCancelled, TranscriptionError, ValidationError, to_user_error
from common.log import configure_logging
from common.schemas import (
    CancelMessage,
    ClientMessageType,
    EndMessage,
    ErrorMessage,
    ProgressMessage,
    ProgressUpdate,
    StartMessage,
    TranscriptCompleteMessage,
)
from gateway.coordinator import UploadCoordinator
from gateway.session import Session, SessionManager, SessionRejected

logger = logging.getLogger(__name__)

settings = GatewaySettings()
configure_logging(settings.log_level)
app = FastAPI(title="Chunked Transcriptor Gateway")
manager = SessionManager(max_sessions=settings.max_sessions)
coordinator = UploadCoordinator(settings)


@app.get("/health")
async def health():
    return {"status": "ok", "active_sessions": manager.active_count}


@app.websocket("/transcribe")
async def transcribe_endpoint(ws: WebSocket):
    await ws.accept()
    session: Session | None = None
    stream_id = ""
    try:
        # Expect a start message first (text frame)
        raw = await ws.receive_text()
        msg = json.loads(raw)
        if msg.get("type") != ClientMessageType.start:
            await ws.send_text(ErrorMessage(stream_id="", detail="Expected start message", category="validation",
                                            status_code=400).model_dump_json())
            await ws.close()
            return

        start = StartMessage(**msg)
        stream_id = start.stream_id
        session = await manager.register(Session.from_start(start))

        # One binary frame per declared chunk, then an end (or cancel) message
        while True:
            message = await ws.receive()
            if message.get("type") == "websocket.disconnect":
                session.ctx.cancel()
                return
            if message.get("bytes") is not None:
                session.add_chunk(message["bytes"])
                logger.info("Chunk received for %s: %d/%d", stream_id, len(session.received),
                            session.expected_chunks)
            elif message.get("text") is not None:
                data = json.loads(message["text"])
                if data.get("type") == ClientMessageType.end:
                    _check_stream(EndMessage(**data).stream_id, stream_id)
                    break
                if data.get("type") == ClientMessageType.cancel:
                    _check_stream(CancelMessage(**data).stream_id, stream_id)
                    session.ctx.cancel()
                    raise TranscriptionCancelled()

        transcript = await _run_transcription(ws, session)
        await ws.send_text(TranscriptCompleteMessage(stream_id=stream_id, transcript=transcript).model_dump_json())

    except WebSocketDisconnect:
        logger.info("Client disconnected: %s", stream_id)
        if session:
            session.ctx.cancel()
    except SessionRejected as exc:
        logger.warning("Session rejected: %s", exc)
        await _send_error(ws, stream_id, str(exc), "rate_limit", 429)
    except TranscriptionError as exc:
        logger.error("Transcription failed for %s: %s", stream_id, exc)
        user_error = to_user_error(exc)
        await _send_error(ws, stream_id, user_error.message, user_error.category, user_error.status_code)
    except ValueError as exc:
        # malformed JSON or a message that does not match its schema
        logger.warning("Invalid client message for %s: %s", stream_id or "<unknown>", exc)
        await _send_error(ws, stream_id, f"Invalid message: {exc}", "validation", 400)
    except Exception:
        logger.exception("Unexpected error in transcribe endpoint")
        await _send_error(ws, stream_id, "Internal gateway error", "unknown", 500)
    finally:
        if session:
            await manager.remove(session.stream_id)


async def _run_transcription(ws: WebSocket, session: Session):
    chunks = session.build_chunks()
    updates: asyncio.Queue[ProgressUpdate] = asyncio.Queue()

    job = asyncio.create_task(
        coordinator.transcribe(
            chunks,
            model=session.model,
            language=session.language,
            filename=session.filename,
            ctx=session.ctx,
            on_progress=updates.put_nowait,
        )
    )
    listener = asyncio.create_task(_listen_for_cancel(ws, session))
    try:
        while True:
            getter = asyncio.create_task(updates.get())
            done, _ = await asyncio.wait({job, getter}, return_when=asyncio.FIRST_COMPLETED)
            if getter not in done:
                getter.cancel()
                break
            await _send_progress(ws, session.stream_id, getter.result())
        while not updates.empty():
            await _send_progress(ws, session.stream_id, updates.get_nowait())
        return job.result()
    finally:
        listener.cancel()
        if not job.done():
            session.ctx.cancel()
            job.cancel()


async def _listen_for_cancel(ws: WebSocket, session: Session) -> None:
    """Cancel the session when the client disconnects or asks to cancel."""
    while True:
        message = await ws.receive()
        if message.get("type") == "websocket.disconnect":
            session.ctx.cancel()
            return
        text = message.get("text")
        if text is None:
            continue
        try:
            data = json.loads(text)
        except ValueError:
            logger.warning("Ignoring malformed message on %s", session.stream_id)
            continue
        if isinstance(data, dict) and data.get("type") == ClientMessageType.cancel:
            session.ctx.cancel()
            return


def _check_stream(message_stream_id: str, stream_id: str) -> None:
    if message_stream_id != stream_id:
        raise ValidationError(f"Message for stream {message_stream_id} sent on stream {stream_id}")


async def _send_progress(ws: WebSocket, stream_id: str, update: ProgressUpdate) -> None:
    await ws.send_text(ProgressMessage(stream_id=stream_id, progress=update).model_dump_json())


async def _send_error(ws: WebSocket, stream_id: str, detail: str, category: str, status_code: int) -> None:
    try:
        await ws.send_text(
            ErrorMessage(stream_id=stream_id, detail=detail, category=category, status_code=status_code)
            .model_dump_json()
        )
    except (WebSocketDisconnect, RuntimeError):
        logger.info("Could not deliver error to %s; client gone", stream_id)


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host=settings.host, port=settings.port)
