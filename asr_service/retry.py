from __future__ import annotations

import logging

from tenacity import AsyncRetrying, RetryCallState, retry_if_exception, stop_after_attempt, wait_exponential

from asr_service.models import TransportResult
from asr_service.transport import ProviderTransport
from common.context import RequestContext
from common.errors import FormatRejectedError, ProviderError
from common.privacy import hash_filename
from common.schemas import AudioChunk, ResponseFormat

logger = logging.getLogger(__name__)

MAX_RETRIES = 3
RETRY_BASE_DELAY_S = 1.0


class RetryController:
    """Runs a transport call with bounded retries.

    A rejected response format is downgraded to ``json`` once and retried
    immediately; that retry counts against ``max_retries``. Other retryable
    failures back off ``base_delay_s * 2**(attempt - 1)`` before the next
    attempt. Fatal failures and the final attempt's failure propagate without
    sleeping.
    """

    def __init__(
        self,
        transport: ProviderTransport,
        max_retries: int = MAX_RETRIES,
        base_delay_s: float = RETRY_BASE_DELAY_S,
    ):
        if max_retries < 1:
            raise ValueError("max_retries must be at least 1")
        self.transport = transport
        self.max_retries = max_retries
        self.base_delay_s = base_delay_s
        self._backoff = wait_exponential(multiplier=base_delay_s)

    async def transcribe(
        self,
        chunk: AudioChunk,
        *,
        model: str,
        response_format: ResponseFormat,
        language: str | None,
        ctx: RequestContext,
    ) -> TransportResult:
        file_hash = hash_filename(chunk.filename)
        current_format = response_format
        downgraded = False

        def can_downgrade(exc: BaseException) -> bool:
            return isinstance(exc, FormatRejectedError) and current_format != ResponseFormat.json and not downgraded

        def should_retry(exc: BaseException) -> bool:
            return can_downgrade(exc) or (isinstance(exc, ProviderError) and exc.retryable)

        def wait(retry_state: RetryCallState) -> float:
            if can_downgrade(retry_state.outcome.exception()):
                return 0.0
            return self._backoff(retry_state)

        def before_sleep(retry_state: RetryCallState) -> None:
            nonlocal current_format, downgraded
            if can_downgrade(retry_state.outcome.exception()):
                logger.warning("Response format %s rejected. Falling back to json.", current_format.value)
                current_format = ResponseFormat.json
                downgraded = True
                return
            logger.debug("Retrying file=%s in %.1fs", file_hash, retry_state.next_action.sleep)

        async def sleep(delay: float) -> None:
            if delay > 0:
                await ctx.sleep(delay)

        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.max_retries),
            retry=retry_if_exception(should_retry),
            wait=wait,
            sleep=sleep,
            before_sleep=before_sleep,
            reraise=True,
        )

        async for attempt in retrying:
            with attempt:
                number = attempt.retry_state.attempt_number
                ctx.raise_if_cancelled()
                logger.debug(
                    "Attempt %d/%d for file=%s chunk=%d format=%s",
                    number, self.max_retries, file_hash, chunk.chunk_index, current_format.value,
                )
                try:
                    payload = await ctx.guard(
                        self.transport.transcribe(
                            chunk, model=model, response_format=current_format, language=language
                        )
                    )
                except ProviderError as exc:
                    exc.with_context(chunk_index=chunk.chunk_index, attempt=number)
                    logger.warning(
                        "Attempt %d failed for file=%s: kind=%s status=%s",
                        number, file_hash, exc.kind.value, exc.status_code,
                    )
                    raise

        logger.debug("Success for file=%s format=%s", file_hash, payload.response_format.value)
        return TransportResult(
            raw=payload.raw,
            response_format=payload.response_format,
            attempts=attempt.retry_state.attempt_number,
        )
