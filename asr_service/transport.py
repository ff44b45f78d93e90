"""Provider transports.

Two ways to reach the speech-to-text provider:

* :class:`SdkTransport` goes through the ``openai`` SDK (OpenAI or Azure
  OpenAI) and is used for every model except diarize models on Azure.
* :class:`DirectTransport` posts multipart form data straight to the Azure
  REST endpoint, because ``diarized_json`` with ``chunking_strategy=auto`` has
  to be requested that way there. Diarizing long audio is slow, so each call
  gets its own explicit deadline.

Both replace the user's filename with a random one before sending, and both
translate failures into the typed errors from :mod:`common.errors`.
"""

from __future__ import annotations

import asyncio
import logging
import mimetypes
from typing import Any, Protocol

import httpx
import openai
from openai import AsyncAzureOpenAI, AsyncOpenAI

from asr_service.formats import is_diarize_model
from asr_service.models import ProviderPayload
from common.config import ASRSettings
from common.errors import (
    ConfigurationError,
    FatalProviderError,
    ProviderErrorKind,
    ProviderTimeoutError,
    TransientProviderError,
    classify_http_status,
)
from common.privacy import hash_filename, obfuscate_filename, redact
from common.schemas import AudioChunk, ResponseFormat

logger = logging.getLogger(__name__)


class ProviderTransport(Protocol):
    async def transcribe(
        self,
        chunk: AudioChunk,
        *,
        model: str,
        response_format: ResponseFormat,
        language: str | None = None,
    ) -> ProviderPayload: ...


def _content_type(chunk: AudioChunk, upload_name: str) -> str:
    return chunk.content_type or mimetypes.guess_type(upload_name)[0] or "application/octet-stream"


def _to_dict(response: Any) -> dict[str, Any]:
    if isinstance(response, dict):
        return response
    if isinstance(response, str):
        return {"text": response}
    if hasattr(response, "model_dump"):
        return response.model_dump()
    return dict(response)


def build_sdk_client(settings: ASRSettings) -> AsyncOpenAI:
    if settings.using_azure:
        if not settings.azure_api_key:
            raise ConfigurationError("ASR_AZURE_API_KEY is required when ASR_AZURE_ENDPOINT is set")
        logger.info("Initialized Azure OpenAI transcription client (api_version=%s)", settings.azure_api_version)
        return AsyncAzureOpenAI(
            api_key=settings.azure_api_key,
            azure_endpoint=settings.azure_endpoint,
            api_version=settings.azure_api_version,
            timeout=settings.sdk_timeout_s,
            max_retries=0,
        )
    if not settings.openai_api_key:
        raise ConfigurationError("ASR_OPENAI_API_KEY or ASR_AZURE_ENDPOINT/ASR_AZURE_API_KEY must be set")
    logger.info("Initialized OpenAI transcription client")
    # retries are owned by RetryController
    return AsyncOpenAI(api_key=settings.openai_api_key, timeout=settings.sdk_timeout_s, max_retries=0)


class SdkTransport:
    def __init__(self, client: AsyncOpenAI):
        self.client = client

    async def transcribe(
        self,
        chunk: AudioChunk,
        *,
        model: str,
        response_format: ResponseFormat,
        language: str | None = None,
    ) -> ProviderPayload:
        upload_name = obfuscate_filename(chunk.filename)
        params: dict[str, Any] = {
            "file": (upload_name, chunk.data, _content_type(chunk, upload_name)),
            "model": model,
            "response_format": response_format.value,
        }
        if language:
            params["language"] = language
        if response_format == ResponseFormat.verbose_json:
            params["timestamp_granularities"] = ["segment"]

        logger.debug(
            "SDK transcription call: file=%s model=%s format=%s",
            hash_filename(chunk.filename), model, response_format.value,
        )
        try:
            response = await self.client.audio.transcriptions.create(**params)
        except openai.APITimeoutError as exc:
            raise TransientProviderError(f"Provider request timed out: {exc}", ProviderErrorKind.timeout) from exc
        except openai.APIConnectionError as exc:
            raise TransientProviderError(f"Network error: {exc}", ProviderErrorKind.network) from exc
        except openai.APIStatusError as exc:
            raise classify_http_status(exc.status_code, _status_detail(exc)) from exc

        return ProviderPayload(raw=_to_dict(response), response_format=response_format)


def _status_detail(exc: openai.APIStatusError) -> str:
    body = exc.body
    if isinstance(body, dict):
        error = body.get("error", body)
        if isinstance(error, dict):
            message = error.get("message")
            param = error.get("param")
            if param and message and str(param) not in str(message):
                return f"{message} (param: {param})"
            if message:
                return str(message)
    return exc.message


class DirectTransport:
    def __init__(self, settings: ASRSettings, client: httpx.AsyncClient | None = None):
        if not settings.azure_endpoint or not settings.azure_api_key:
            raise ConfigurationError("Azure credentials requested but Azure OpenAI is not configured")
        self.endpoint = settings.azure_endpoint.rstrip("/")
        self.api_key = settings.azure_api_key
        self.api_version = settings.azure_diarize_api_version
        self.timeout_s = settings.diarize_timeout_s
        self._client = client

    def url_for(self, model: str) -> str:
        return (
            f"{self.endpoint}/openai/deployments/{model}/audio/transcriptions"
            f"?api-version={self.api_version}"
        )

    async def transcribe(
        self,
        chunk: AudioChunk,
        *,
        model: str,
        response_format: ResponseFormat = ResponseFormat.diarized_json,
        language: str | None = None,
    ) -> ProviderPayload:
        url = self.url_for(model)
        upload_name = obfuscate_filename(chunk.filename)
        data = {
            "model": model,
            "response_format": ResponseFormat.diarized_json.value,
            "chunking_strategy": "auto",
        }
        if language:
            data["language"] = language
        files = {"file": (upload_name, chunk.data, _content_type(chunk, upload_name))}

        logger.debug(
            "Calling Azure REST API directly for diarize: url=%s model=%s api_version=%s",
            redact(url, self.api_key), model, self.api_version,
        )
        # total deadline per call; httpx timeouts only bound each read or write
        try:
            if self._client is not None:
                resp = await asyncio.wait_for(self._post(self._client, url, data, files), self.timeout_s)
            else:
                async with httpx.AsyncClient() as client:
                    resp = await asyncio.wait_for(self._post(client, url, data, files), self.timeout_s)
        except (httpx.TimeoutException, asyncio.TimeoutError) as exc:
            raise ProviderTimeoutError(
                f"Diarization API timeout after {self.timeout_s:g} seconds"
            ) from exc
        except httpx.TransportError as exc:
            raise TransientProviderError(f"Network error: {exc}", ProviderErrorKind.network) from exc

        if resp.status_code >= 400:
            detail = resp.text
            logger.error("Azure REST API error: status=%d detail=%s", resp.status_code, redact(detail, self.api_key))
            raise classify_http_status(resp.status_code, detail)

        try:
            payload = resp.json()
        except ValueError as exc:
            raise FatalProviderError("Provider returned invalid JSON", ProviderErrorKind.unknown, resp.status_code) from exc
        if not isinstance(payload, dict):
            raise FatalProviderError("Provider returned an unexpected payload", ProviderErrorKind.unknown, resp.status_code)

        segments = payload.get("segments")
        logger.debug(
            "Azure REST API success: segments=%d text_length=%d",
            len(segments) if isinstance(segments, list) else 0,
            len(payload.get("text") or ""),
        )
        return ProviderPayload(raw=payload, response_format=ResponseFormat.diarized_json)

    async def _post(self, client: httpx.AsyncClient, url: str, data: dict, files: dict) -> httpx.Response:
        return await client.post(
            url,
            data=data,
            files=files,
            headers={"api-key": self.api_key},
            timeout=httpx.Timeout(self.timeout_s),
        )


def uses_direct_transport(model: str, settings: ASRSettings) -> bool:
    return is_diarize_model(model) and settings.using_azure
