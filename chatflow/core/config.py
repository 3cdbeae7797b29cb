from typing import Optional
from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    # Application
    ENVIRONMENT: str = "development"
    PROJECT_NAME: str = "Chatflow Engine"

    # Logging
    LOG_LEVEL: str = "INFO"
    LOG_FORMAT: str = "json"

    # LLM Configuration
    OLLAMA_HOST: str = "http://localhost:11434"
    OLLAMA_MODEL: str = "llama2:7b-chat"
    OLLAMA_TEMPERATURE: float = 0.7
    OLLAMA_MAX_TOKENS: int = 2048
    OLLAMA_TIMEOUT: int = 30
    OLLAMA_KEEP_ALIVE: str = "24h"

    # Flow execution
    FLOW_NODE_DELAY_MS: int = 700
    FLOW_VOICE_ENABLED: bool = False

    # TTS Configuration
    TTS_ENABLED: bool = True
    TTS_DEFAULT_VOICE: str = "Spanish_Kind-heartedGirl"
    TTS_RATE: float = 1.0
    TTS_MS_PER_CHARACTER: int = 80
    TTS_MIN_FALLBACK_MS: int = 2000
    TTS_MIN_WATCHDOG_MS: int = 5000
    TTS_API_URL: str = "https://api.elevenlabs.io/v1"
    TTS_API_KEY: Optional[str] = None
    TTS_MODEL_ID: str = "eleven_multilingual_v2"

    # Audio capture
    AUDIO_SAMPLE_RATE: int = 16000
    AUDIO_MAX_RECORDING_SECONDS: int = 30
    AUDIO_FFT_SIZE: int = 2048

    @field_validator("LOG_FORMAT")
    @classmethod
    def validate_log_format(cls, v: str) -> str:
        if v not in ("json", "text"):
            raise ValueError("LOG_FORMAT must be 'json' or 'text'")
        return v

    @field_validator("TTS_RATE")
    @classmethod
    def clamp_tts_rate(cls, v: float) -> float:
        return min(2.0, max(0.5, v))

    @field_validator("FLOW_NODE_DELAY_MS", "AUDIO_MAX_RECORDING_SECONDS", "AUDIO_FFT_SIZE")
    @classmethod
    def non_negative(cls, v: int) -> int:
        if v < 0:
            raise ValueError("value must not be negative")
        return v

    model_config = SettingsConfigDict(env_file=".env", case_sensitive=True, extra="ignore")


settings = Settings()
