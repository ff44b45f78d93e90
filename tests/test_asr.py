import asyncio
import json
import math
import re
from types import SimpleNamespace

import httpx
import openai
import pytest

from asr_service.formats import determine_format, is_diarize_model
from asr_service.models import DiarizedResponse, PlainResponse, ProviderPayload, SegmentPolicy, VerboseResponse
from asr_service.normalizer import (
    extract_metadata,
    normalize_language_code,
    normalize_raw,
    normalize_speaker_label,
    parse_provider_response,
    to_transcript_segments,
)
from asr_service.retry import RetryController
from asr_service.sanitizer import sanitize_segments, validate_segments
from asr_service.transcriber import TranscriptionEngine
from asr_service.transport import DirectTransport, SdkTransport, uses_direct_transport
from asr_service.validation import validate_language, validate_part_numbers, validate_upload
from common.config import ASRSettings
from common.context import RequestContext
from common.errors import (
    ConfigurationError,
    FatalProviderError,
    FormatRejectedError,
    ProviderErrorKind,
    ProviderTimeoutError,
    TranscriptionCancelled,
    TransientProviderError,
    ValidationError,
)
from common.schemas import AudioChunk, ResponseFormat, TranscriptSegment

AZURE = dict(azure_endpoint="https://example.openai.azure.com/", azure_api_key="azure-key")

VERBOSE_RAW = {
    "task": "transcribe",
    "language": "english",
    "duration": 118.0,
    "text": "one two three",
    "segments": [
        {"id": 0, "start": 0.0, "end": 40.0, "text": " one", "avg_logprob": -0.2},
        {"id": 1, "start": 40.0, "end": 80.0, "text": " two"},
        {"id": 2, "start": 80.0, "end": 118.0, "text": " three"},
    ],
}

DIARIZED_RAW = {
    "text": "hi there",
    "duration": 4.0,
    "segments": [
        {"id": "seg_0", "start": 0.0, "end": 2.5, "text": "hi", "speaker": "A"},
        {"id": "seg_1", "start": 2.0, "end": 4.0, "text": "there", "speaker": 2},
    ],
}


def seg(index, start, end, text="x", speaker=None):
    return TranscriptSegment(index=index, start=start, end=end, text=text, speaker=speaker)


def chunk(filename="meeting-notes.mp3", **kwargs):
    return AudioChunk(data=b"\x00" * 2048, filename=filename, **kwargs)


class RecordingContext(RequestContext):
    """Records backoff delays instead of sleeping."""

    def __init__(self):
        super().__init__()
        self.delays = []

    async def sleep(self, delay):
        self.raise_if_cancelled()
        self.delays.append(delay)


class FakeTransport:
    def __init__(self, outcomes):
        self.outcomes = list(outcomes)
        self.calls = []

    async def transcribe(self, chunk, *, model, response_format, language=None):
        self.calls.append(response_format)
        outcome = self.outcomes.pop(0)
        if isinstance(outcome, Exception):
            raise outcome
        return ProviderPayload(raw=outcome, response_format=response_format)


class FakeSdkClient:
    def __init__(self, response=None, error=None):
        self.kwargs = None
        self._response = response
        self._error = error
        self.audio = SimpleNamespace(transcriptions=SimpleNamespace(create=self._create))

    async def _create(self, **kwargs):
        self.kwargs = kwargs
        if self._error is not None:
            raise self._error
        return self._response


class TestFormats:
    def test_whisper_uses_verbose_json(self):
        assert determine_format("whisper-1") == ResponseFormat.verbose_json
        assert determine_format("  Whisper-Large ") == ResponseFormat.verbose_json

    def test_diarize_uses_diarized_json(self):
        assert determine_format("gpt-4o-transcribe-diarize") == ResponseFormat.diarized_json
        assert is_diarize_model("GPT-4O-TRANSCRIBE-DIARIZE")

    def test_other_models_use_json(self):
        assert determine_format("gpt-4o-transcribe") == ResponseFormat.json
        assert not is_diarize_model("gpt-4o-mini-transcribe")


class TestNormalizer:
    def test_parse_classifies_each_variant(self):
        assert isinstance(parse_provider_response(VERBOSE_RAW), VerboseResponse)
        assert isinstance(parse_provider_response(DIARIZED_RAW), DiarizedResponse)
        assert isinstance(parse_provider_response({"text": "plain"}), PlainResponse)

    def test_diarized_checked_before_verbose(self):
        raw = dict(DIARIZED_RAW, language="en")
        assert isinstance(parse_provider_response(raw), DiarizedResponse)

    def test_numeric_speaker_is_one_based(self):
        result = normalize_raw(DIARIZED_RAW)
        assert result.segments[1].speaker == "Speaker 3"
        assert result.segments[0].speaker == "A"

    @pytest.mark.parametrize("raw_speaker,expected", [
        ("  Alice ", "Alice"),
        (0, "Speaker 1"),
        (1.7, "Speaker 2"),
        ({"label": "Bob"}, "Bob"),
        ({"name": "Carol"}, "Carol"),
        ({"label": "  "}, "Speaker 5"),
        (None, "Speaker 5"),
        ("", "Speaker 5"),
        (float("nan"), "Speaker 5"),
    ])
    def test_speaker_label_fallbacks(self, raw_speaker, expected):
        assert normalize_speaker_label(raw_speaker, 4) == expected

    def test_verbose_keeps_quality_fields(self):
        result = normalize_raw(VERBOSE_RAW)
        assert result.language == "english"
        assert result.duration_s == 118.0
        assert [s.id for s in result.segments] == [0, 1, 2]
        assert result.segments[0].avg_logprob == -0.2
        assert result.segments[0].speaker is None

    def test_plain_uses_usage_seconds(self):
        result = normalize_raw({"text": "hello", "usage": {"type": "duration", "seconds": 7}})
        assert result.segments == []
        assert result.duration_s == 7.0

    def test_non_numeric_timestamps_become_nan(self):
        raw = {"text": "a", "language": "en", "duration": 1.0,
               "segments": [{"start": "0", "end": 1.0, "text": "a"}]}
        result = normalize_raw(raw)
        assert math.isnan(result.segments[0].start)

    def test_missing_segment_ids_are_positional(self):
        raw = {"text": "a b", "segments": [
            {"start": 0.0, "end": 1.0, "text": "a", "speaker": "A"},
            {"id": True, "start": 1.0, "end": 2.0, "text": "b", "speaker": "B"},
        ]}
        assert [s.id for s in normalize_raw(raw).segments] == [0, 1]

    def test_normalize_is_deterministic(self):
        assert normalize_raw(DIARIZED_RAW) == normalize_raw(dict(DIARIZED_RAW))

    def test_text_only_result_synthesizes_one_segment(self):
        result = normalize_raw({"text": " hello world "})
        segments = to_transcript_segments(result, fallback_duration=12.5)
        assert len(segments) == 1
        assert segments[0].start == 0.0
        assert segments[0].end == 12.5
        assert segments[0].text == "hello world"

    def test_empty_text_only_result_has_no_segments(self):
        assert to_transcript_segments(normalize_raw({"text": "  "}), 5.0) == []

    def test_extract_metadata_duration_fallbacks(self):
        result = normalize_raw({"text": "hi"})
        segments = [seg(0, 0.0, 3.0)]
        meta = extract_metadata(result, segments, file_size=10, model="gpt-4o-transcribe", fallback_duration=9)
        assert meta.duration_s == 3.0
        meta = extract_metadata(result, [], file_size=10, model="gpt-4o-transcribe", fallback_duration=9)
        assert meta.duration_s == 9

    def test_language_code(self):
        assert normalize_language_code("EN") == "en"
        assert normalize_language_code("english") is None
        assert normalize_language_code("e1") is None
        assert normalize_language_code(None) is None


class TestSanitizer:
    def test_sorts_and_reindexes(self):
        result = sanitize_segments([seg(0, 5.0, 6.0, "b"), seg(1, 0.0, 1.0, "a")])
        assert [s.text for s in result.segments] == ["a", "b"]
        assert [s.index for s in result.segments] == [0, 1]
        assert result.warnings == []

    def test_drops_unusable_segments(self):
        result = sanitize_segments([
            seg(0, math.nan, 1.0),
            seg(1, 0.0, 1.0, "   "),
            seg(2, 3.0, 2.0),
            seg(3, 4.0, 5.0, "ok"),
        ])
        assert [s.text for s in result.segments] == ["ok"]
        assert len(result.warnings) == 3

    def test_clamps_negative_start_and_stretches_short_segments(self):
        result = sanitize_segments([seg(0, -0.5, 0.0, "a"), seg(1, 2.0, 2.0, "b")])
        first, second = result.segments
        assert first.start == 0.0
        assert first.end == pytest.approx(0.001)
        assert second.end == pytest.approx(2.001)

    def test_trims_overlap(self):
        result = sanitize_segments([seg(0, 0.0, 2.0, "a"), seg(1, 1.0, 3.0, "b")])
        assert result.segments[1].start == 2.0
        assert any("overlap" in w for w in result.warnings)

    def test_overlap_within_epsilon_is_kept(self):
        result = sanitize_segments([seg(0, 0.0, 2.0, "a"), seg(1, 1.97, 3.0, "b")])
        assert result.segments[1].start == 1.97
        assert result.warnings == []

    def test_drops_fully_overlapped_segment(self):
        result = sanitize_segments([seg(0, 0.0, 5.0, "a"), seg(1, 1.0, 3.0, "b")])
        assert [s.text for s in result.segments] == ["a"]

    def test_diarized_overlaps_allowed(self):
        policy = SegmentPolicy(allow_overlaps=True)
        result = sanitize_segments([seg(0, 0.0, 2.0, "a"), seg(1, 1.0, 3.0, "b")], policy)
        assert result.segments[1].start == 1.0
        assert validate_segments(result.segments, policy).valid

    def test_sanitized_output_validates(self):
        messy = [seg(0, 3.0, 2.0), seg(1, 1.0, 4.0, "a"), seg(2, 2.0, 2.0, "b"), seg(3, -1.0, 0.5, "c")]
        result = sanitize_segments(messy)
        assert validate_segments(result.segments).valid

    def test_validate_reports_problems(self):
        report = validate_segments([seg(1, 0.0, 2.0), seg(1, 1.0, 0.5, "")])
        assert not report.valid
        assert any("incorrect index" in e for e in report.errors)
        assert any("overlaps" in e for e in report.errors)
        assert any("empty text" in e for e in report.errors)

    def test_validate_empty(self):
        assert validate_segments([]).errors == ["Segments array is empty"]


class TestRetryController:
    @pytest.mark.asyncio
    async def test_success_first_attempt(self):
        transport = FakeTransport([VERBOSE_RAW])
        result = await RetryController(transport).transcribe(
            chunk(), model="whisper-1", response_format=ResponseFormat.verbose_json,
            language=None, ctx=RecordingContext(),
        )
        assert result.attempts == 1
        assert result.response_format == ResponseFormat.verbose_json

    @pytest.mark.asyncio
    async def test_three_503s_exhaust_retries(self):
        transport = FakeTransport([TransientProviderError("503", ProviderErrorKind.server_error, 503)] * 3)
        ctx = RecordingContext()
        with pytest.raises(TransientProviderError) as info:
            await RetryController(transport, max_retries=3, base_delay_s=1.0).transcribe(
                chunk(chunk_index=2), model="whisper-1", response_format=ResponseFormat.verbose_json,
                language=None, ctx=ctx,
            )
        assert len(transport.calls) == 3
        assert ctx.delays == [1.0, 2.0]
        assert info.value.attempt == 3
        assert info.value.chunk_index == 2

    @pytest.mark.asyncio
    async def test_recovers_after_transient_failure(self):
        transport = FakeTransport([TransientProviderError("429", ProviderErrorKind.rate_limited, 429), VERBOSE_RAW])
        ctx = RecordingContext()
        result = await RetryController(transport).transcribe(
            chunk(), model="whisper-1", response_format=ResponseFormat.verbose_json, language=None, ctx=ctx,
        )
        assert result.attempts == 2
        assert ctx.delays == [1.0]

    @pytest.mark.asyncio
    async def test_format_rejection_downgrades_to_json_once(self):
        transport = FakeTransport([FormatRejectedError("400 bad response_format"), {"text": "ok"}])
        ctx = RecordingContext()
        result = await RetryController(transport).transcribe(
            chunk(), model="whisper-1", response_format=ResponseFormat.verbose_json, language=None, ctx=ctx,
        )
        assert transport.calls == [ResponseFormat.verbose_json, ResponseFormat.json]
        assert result.response_format == ResponseFormat.json
        assert result.attempts == 2
        assert ctx.delays == []

    @pytest.mark.asyncio
    async def test_downgrade_counts_against_max_retries(self):
        rejected = FormatRejectedError("400 bad response_format")
        transport = FakeTransport([rejected, TransientProviderError("503", ProviderErrorKind.server_error, 503)])
        with pytest.raises(TransientProviderError):
            await RetryController(transport, max_retries=2).transcribe(
                chunk(), model="whisper-1", response_format=ResponseFormat.verbose_json,
                language=None, ctx=RecordingContext(),
            )
        assert len(transport.calls) == 2

    @pytest.mark.asyncio
    async def test_second_format_rejection_is_fatal(self):
        transport = FakeTransport([FormatRejectedError("response_format"), FormatRejectedError("response_format")])
        with pytest.raises(FormatRejectedError):
            await RetryController(transport).transcribe(
                chunk(), model="whisper-1", response_format=ResponseFormat.verbose_json,
                language=None, ctx=RecordingContext(),
            )
        assert len(transport.calls) == 2

    @pytest.mark.asyncio
    async def test_fatal_error_is_not_retried(self):
        transport = FakeTransport([FatalProviderError("401", ProviderErrorKind.client_error, 401)])
        ctx = RecordingContext()
        with pytest.raises(FatalProviderError):
            await RetryController(transport).transcribe(
                chunk(), model="whisper-1", response_format=ResponseFormat.verbose_json, language=None, ctx=ctx,
            )
        assert len(transport.calls) == 1
        assert ctx.delays == []

    @pytest.mark.asyncio
    async def test_cancelled_before_start(self):
        transport = FakeTransport([VERBOSE_RAW])
        ctx = RecordingContext()
        ctx.cancel()
        with pytest.raises(TranscriptionCancelled):
            await RetryController(transport).transcribe(
                chunk(), model="whisper-1", response_format=ResponseFormat.verbose_json, language=None, ctx=ctx,
            )
        assert transport.calls == []

    @pytest.mark.asyncio
    async def test_cancel_aborts_in_flight_call(self):
        class HangingTransport:
            async def transcribe(self, chunk, **kwargs):
                await asyncio.Event().wait()

        ctx = RequestContext()
        task = asyncio.create_task(RetryController(HangingTransport()).transcribe(
            chunk(), model="whisper-1", response_format=ResponseFormat.verbose_json, language=None, ctx=ctx,
        ))
        await asyncio.sleep(0.01)
        ctx.cancel()
        with pytest.raises(TranscriptionCancelled):
            await asyncio.wait_for(task, timeout=1)

    def test_rejects_zero_retries(self):
        with pytest.raises(ValueError):
            RetryController(FakeTransport([]), max_retries=0)

    @pytest.mark.asyncio
    async def test_backoff_scales_with_base_delay(self):
        transport = FakeTransport([TransientProviderError("503", ProviderErrorKind.server_error, 503)] * 3)
        ctx = RecordingContext()
        with pytest.raises(TransientProviderError):
            await RetryController(transport, max_retries=3, base_delay_s=0.5).transcribe(
                chunk(), model="whisper-1", response_format=ResponseFormat.verbose_json, language=None, ctx=ctx,
            )
        assert ctx.delays == [0.5, 1.0]

    @pytest.mark.asyncio
    async def test_transient_failure_after_downgrade_backs_off(self):
        transport = FakeTransport([
            FormatRejectedError("400 bad response_format"),
            TransientProviderError("503", ProviderErrorKind.server_error, 503),
            {"text": "ok"},
        ])
        ctx = RecordingContext()
        result = await RetryController(transport, max_retries=3).transcribe(
            chunk(), model="whisper-1", response_format=ResponseFormat.verbose_json, language=None, ctx=ctx,
        )
        assert transport.calls == [ResponseFormat.verbose_json, ResponseFormat.json, ResponseFormat.json]
        assert ctx.delays == [2.0]
        assert result.attempts == 3
        assert result.response_format == ResponseFormat.json


class TestDirectTransport:
    @pytest.fixture
    def settings(self):
        return ASRSettings(**AZURE, diarize_timeout_s=42)

    def make(self, settings, handler):
        return DirectTransport(settings, client=httpx.AsyncClient(transport=httpx.MockTransport(handler)))

    @pytest.mark.asyncio
    async def test_posts_diarize_form(self, settings):
        seen = {}

        def handler(request):
            seen["request"] = request
            return httpx.Response(200, json=DIARIZED_RAW)

        payload = await self.make(settings, handler).transcribe(
            chunk("secret-meeting.mp3"), model="gpt-4o-transcribe-diarize", language="en",
        )
        request = seen["request"]
        assert request.headers["api-key"] == "azure-key"
        assert request.url.path == "/openai/deployments/gpt-4o-transcribe-diarize/audio/transcriptions"
        assert request.url.params["api-version"] == settings.azure_diarize_api_version
        body = request.content
        assert b"diarized_json" in body
        assert b'name="chunking_strategy"' in body
        assert b"secret-meeting" not in body
        assert re.search(rb'filename="[0-9a-f-]{36}\.mp3"', body)
        assert payload.response_format == ResponseFormat.diarized_json
        assert payload.raw == DIARIZED_RAW

    @pytest.mark.asyncio
    async def test_timeout_is_classified(self, settings):
        def handler(request):
            raise httpx.ReadTimeout("timed out", request=request)

        with pytest.raises(ProviderTimeoutError) as info:
            await self.make(settings, handler).transcribe(chunk(), model="gpt-4o-transcribe-diarize")
        assert info.value.kind == ProviderErrorKind.timeout
        assert "42" in info.value.message

    @pytest.mark.asyncio
    async def test_connect_error_is_network(self, settings):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        with pytest.raises(TransientProviderError) as info:
            await self.make(settings, handler).transcribe(chunk(), model="gpt-4o-transcribe-diarize")
        assert info.value.kind == ProviderErrorKind.network

    @pytest.mark.parametrize("status,text,error_type,kind", [
        (503, "unavailable", TransientProviderError, ProviderErrorKind.server_error),
        (429, "slow down", TransientProviderError, ProviderErrorKind.rate_limited),
        (400, "unsupported response_format", FormatRejectedError, ProviderErrorKind.client_error),
        (401, "bad key", FatalProviderError, ProviderErrorKind.client_error),
    ])
    @pytest.mark.asyncio
    async def test_status_is_classified(self, settings, status, text, error_type, kind):
        def handler(request):
            return httpx.Response(status, text=text)

        with pytest.raises(error_type) as info:
            await self.make(settings, handler).transcribe(chunk(), model="gpt-4o-transcribe-diarize")
        assert info.value.kind == kind
        assert info.value.status_code == status

    @pytest.mark.asyncio
    async def test_invalid_json_is_fatal(self, settings):
        def handler(request):
            return httpx.Response(200, text="not json")

        with pytest.raises(FatalProviderError):
            await self.make(settings, handler).transcribe(chunk(), model="gpt-4o-transcribe-diarize")

    @pytest.mark.asyncio
    async def test_slow_body_hits_total_deadline(self):
        body = json.dumps(DIARIZED_RAW).encode()
        stop = asyncio.Event()

        async def handle(reader, writer):
            try:
                head = await reader.readuntil(b"\r\n\r\n")
                length = re.search(rb"content-length:\s*(\d+)", head, re.IGNORECASE)
                if length:
                    await reader.readexactly(int(length.group(1)))
                writer.write(b"HTTP/1.1 200 OK\r\nContent-Type: application/json\r\n"
                             b"Content-Length: %d\r\n\r\n" % len(body))
                # every read finishes well inside the timeout, the whole body does not
                for offset in range(0, len(body), 5):
                    if stop.is_set():
                        break
                    writer.write(body[offset:offset + 5])
                    await writer.drain()
                    await asyncio.sleep(0.15)
            except (ConnectionError, asyncio.IncompleteReadError):
                pass
            finally:
                writer.close()

        server = await asyncio.start_server(handle, "127.0.0.1", 0)
        port = server.sockets[0].getsockname()[1]
        settings = ASRSettings(azure_endpoint=f"http://127.0.0.1:{port}", azure_api_key="k", diarize_timeout_s=0.5)
        loop = asyncio.get_running_loop()
        started = loop.time()
        try:
            async with httpx.AsyncClient(trust_env=False) as client:
                with pytest.raises(ProviderTimeoutError):
                    await DirectTransport(settings, client=client).transcribe(
                        chunk(), model="gpt-4o-transcribe-diarize",
                    )
            assert loop.time() - started < 1.5
        finally:
            stop.set()
            server.close()
            await server.wait_closed()

    def test_requires_azure_credentials(self):
        with pytest.raises(ConfigurationError):
            DirectTransport(ASRSettings(azure_endpoint="", azure_api_key=""))

    def test_only_diarize_on_azure_goes_direct(self, settings):
        assert uses_direct_transport("gpt-4o-transcribe-diarize", settings)
        assert not uses_direct_transport("whisper-1", settings)
        assert not uses_direct_transport("gpt-4o-transcribe-diarize", ASRSettings(azure_endpoint=""))


class TestSdkTransport:
    @pytest.mark.asyncio
    async def test_verbose_requests_segment_timestamps(self):
        client = FakeSdkClient(response=VERBOSE_RAW)
        payload = await SdkTransport(client).transcribe(
            chunk("private.wav"), model="whisper-1", response_format=ResponseFormat.verbose_json, language="en",
        )
        assert client.kwargs["timestamp_granularities"] == ["segment"]
        assert client.kwargs["response_format"] == "verbose_json"
        assert client.kwargs["language"] == "en"
        upload_name = client.kwargs["file"][0]
        assert upload_name.endswith(".wav")
        assert "private" not in upload_name
        assert payload.raw == VERBOSE_RAW

    @pytest.mark.asyncio
    async def test_json_omits_timestamp_granularities(self):
        client = FakeSdkClient(response=SimpleNamespace(model_dump=lambda: {"text": "hi"}))
        payload = await SdkTransport(client).transcribe(
            chunk(), model="gpt-4o-transcribe", response_format=ResponseFormat.json,
        )
        assert "timestamp_granularities" not in client.kwargs
        assert "language" not in client.kwargs
        assert payload.raw == {"text": "hi"}

    @pytest.mark.asyncio
    async def test_status_error_is_classified(self):
        request = httpx.Request("POST", "https://api.openai.com/v1/audio/transcriptions")
        error = openai.APIStatusError(
            "rate limited", response=httpx.Response(429, request=request), body={"error": {"message": "slow"}},
        )
        with pytest.raises(TransientProviderError) as info:
            await SdkTransport(FakeSdkClient(error=error)).transcribe(
                chunk(), model="whisper-1", response_format=ResponseFormat.verbose_json,
            )
        assert info.value.kind == ProviderErrorKind.rate_limited

    @pytest.mark.asyncio
    async def test_connection_error_is_network(self):
        request = httpx.Request("POST", "https://api.openai.com/v1/audio/transcriptions")
        error = openai.APIConnectionError(request=request)
        with pytest.raises(TransientProviderError) as info:
            await SdkTransport(FakeSdkClient(error=error)).transcribe(
                chunk(), model="whisper-1", response_format=ResponseFormat.verbose_json,
            )
        assert info.value.kind == ProviderErrorKind.network


class TestValidation:
    @pytest.fixture
    def settings(self):
        return ASRSettings(min_file_size_bytes=1024, max_file_size_bytes=4096)

    def test_accepts_supported_upload(self, settings):
        assert validate_upload(b"x" * 2048, "a.m4a", "audio/x-m4a", settings) == "a.m4a"
        assert validate_upload(b"x" * 2048, None, "application/octet-stream", settings) == "audio.mp3"

    @pytest.mark.parametrize("data,filename,content_type,status", [
        (None, "a.mp3", "audio/mpeg", 400),
        (b"", "a.mp3", "audio/mpeg", 400),
        (b"x" * 10, "a.mp3", "audio/mpeg", 400),
        (b"x" * 5000, "a.mp3", "audio/mpeg", 413),
        (b"x" * 2048, "a.mp3", "text/plain", 400),
        (b"x" * 2048, "a.txt", "audio/mpeg", 400),
    ])
    def test_rejects_bad_upload(self, settings, data, filename, content_type, status):
        with pytest.raises(ValidationError) as info:
            validate_upload(data, filename, content_type, settings)
        assert info.value.status_code == status

    def test_part_numbers(self):
        validate_part_numbers(None, None)
        validate_part_numbers(2, 3)
        for index, total in [(1, None), (3, 3), (-1, 2), (0, 0)]:
            with pytest.raises(ValidationError):
                validate_part_numbers(index, total)

    def test_language(self):
        assert validate_language(None) is None
        assert validate_language("  ") is None
        assert validate_language(" EN ") == "en"
        with pytest.raises(ValidationError) as info:
            validate_language("english")
        assert info.value.status_code == 400


class TestTranscriptionEngine:
    @pytest.mark.asyncio
    async def test_whisper_chunk(self):
        raw = dict(VERBOSE_RAW, segments=[
            {"id": 0, "start": 0.0, "end": 2.0, "text": "a"},
            {"id": 1, "start": 1.0, "end": 3.0, "text": "b"},
        ])
        engine = TranscriptionEngine(ASRSettings(), sdk_client=FakeSdkClient(response=raw))
        transcript = await engine.transcribe_chunk(
            chunk(chunk_index=1, total_chunks=3), model="whisper-1", multipart=True,
        )
        assert transcript.response_format == ResponseFormat.verbose_json
        assert [s.start for s in transcript.segments] == [0.0, 2.0]
        assert transcript.warnings
        assert transcript.validation_errors == []
        assert transcript.part_index == 1
        assert transcript.total_parts == 3
        assert transcript.metadata.duration_s == 118.0
        assert transcript.metadata.file_size_bytes == 2048
        assert transcript.metadata.model == "whisper-1"

    @pytest.mark.asyncio
    async def test_text_only_model_uses_requested_language(self):
        engine = TranscriptionEngine(ASRSettings(), sdk_client=FakeSdkClient(response={"text": "hola"}))
        transcript = await engine.transcribe_chunk(
            chunk(estimated_duration_s=30.0), model="gpt-4o-transcribe", language="ES",
        )
        assert transcript.metadata.language == "es"
        assert transcript.metadata.duration_s == 30.0
        assert transcript.segments[0].end == 30.0
        assert transcript.part_index is None

    @pytest.mark.asyncio
    async def test_diarize_on_azure_keeps_overlaps(self):
        def handler(request):
            return httpx.Response(200, json=DIARIZED_RAW)

        http_client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        engine = TranscriptionEngine(ASRSettings(**AZURE), sdk_client=FakeSdkClient(), http_client=http_client)
        transcript = await engine.transcribe_chunk(chunk(), model="gpt-4o-transcribe-diarize")
        assert transcript.response_format == ResponseFormat.diarized_json
        assert [s.speaker for s in transcript.segments] == ["A", "Speaker 3"]
        assert transcript.segments[1].start == 2.0

    def test_missing_credentials(self):
        engine = TranscriptionEngine(ASRSettings(openai_api_key="", azure_endpoint=""))
        with pytest.raises(ConfigurationError):
            engine.transport_for("whisper-1")
