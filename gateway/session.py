from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field

from common.context import RequestContext
from common.errors import ValidationError
from common.schemas import AudioChunk, ChunkDescriptor, StartMessage

logger = logging.getLogger(__name__)


@dataclass
class Session:
    """Per-stream state: declared chunks, received bytes and cancellation."""
    stream_id: str
    filename: str = "recording.mp3"
    model: str | None = None
    language: str | None = None
    descriptors: list[ChunkDescriptor] = field(default_factory=list)
    received: list[bytes] = field(default_factory=list)
    ctx: RequestContext = field(default_factory=RequestContext)

    @classmethod
    def from_start(cls, start: StartMessage) -> "Session":
        return cls(
            stream_id=start.stream_id,
            filename=start.filename,
            model=start.model,
            language=start.language,
            descriptors=list(start.chunks),
            ctx=RequestContext(request_id=start.stream_id),
        )

    @property
    def expected_chunks(self) -> int:
        return len(self.descriptors)

    def add_chunk(self, data: bytes) -> None:
        if len(self.received) >= self.expected_chunks:
            raise ValidationError(f"Received more than the {self.expected_chunks} declared chunks")
        self.received.append(data)

    def build_chunks(self) -> list[AudioChunk]:
        if len(self.received) != self.expected_chunks:
            raise ValidationError(
                f"Expected {self.expected_chunks} chunks, received {len(self.received)}"
            )
        total = self.expected_chunks
        chunks = []
        for index, (descriptor, data) in enumerate(zip(self.descriptors, self.received)):
            chunks.append(
                AudioChunk(
                    data=data,
                    filename=descriptor.filename or self.filename,
                    estimated_duration_s=descriptor.estimated_duration_s,
                    chunk_index=index,
                    total_chunks=total,
                )
            )
        return chunks


class SessionRejected(RuntimeError):
    """The session limit is reached or the stream id is already in use."""


class SessionManager:
    def __init__(self, max_sessions: int = 10) -> None:
        self._max = max_sessions
        self._sessions: dict[str, Session] = {}
        self._lock = asyncio.Lock()

    async def register(self, session: Session) -> Session:
        async with self._lock:
            if len(self._sessions) >= self._max:
                raise SessionRejected(f"Max sessions ({self._max}) reached")
            if session.stream_id in self._sessions:
                raise SessionRejected(f"Session {session.stream_id} already exists")
            self._sessions[session.stream_id] = session
            logger.info("Session created: %s (%d active)", session.stream_id, len(self._sessions))
            return session

    async def remove(self, stream_id: str) -> None:
        async with self._lock:
            self._sessions.pop(stream_id, None)
            logger.info("Session removed: %s (%d active)", stream_id, len(self._sessions))

    @property
    def active_count(self) -> int:
        return len(self._sessions)
