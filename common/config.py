from pydantic_settings import BaseSettings


class GatewaySettings(BaseSettings):
    host: str = "0.0.0.0"
    port: int = 8000
    asr_url: str = "http://asr:8001"
    max_sessions: int = 10
    max_concurrent_uploads: int = 4
    connect_timeout_s: float = 10.0
    # None: wait for the ASR service to finish its retries; cancellation goes through RequestContext
    upload_timeout_s: float | None = None
    progress_interval_s: float = 0.1
    default_model: str | None = None
    log_level: str = "INFO"

    model_config = {"env_prefix": "GATEWAY_"}


class ASRSettings(BaseSettings):
    host: str = "0.0.0.0"
    port: int = 8001
    openai_api_key: str = ""
    azure_endpoint: str = ""
    azure_api_key: str = ""
    azure_api_version: str = "2025-03-01-preview"
    azure_diarize_api_version: str = "2025-03-01-preview"
    default_model: str = "whisper-1"
    max_retries: int = 3
    retry_base_delay_s: float = 1.0
    diarize_timeout_s: float = 300.0
    sdk_timeout_s: float = 600.0
    overlap_epsilon: float = 0.05
    min_segment_duration: float = 0.001
    max_file_size_bytes: int = 25 * 1024 * 1024
    min_file_size_bytes: int = 1024
    log_level: str = "INFO"

    model_config = {"env_prefix": "ASR_"}

    @property
    def using_azure(self) -> bool:
        return bool(self.azure_endpoint)
