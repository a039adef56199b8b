from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field

class Settings(BaseSettings):
	gemini_api_key: str | None = Field(default=None, validation_alias="GEMINI_API_KEY")
	# Provider can be "vertex" (Vertex AI Express) or "ai_studio" (Generative Language API)
	gemini_provider: str = Field(default="ai_studio", validation_alias="GEMINI_PROVIDER")
	# Content generation (reading/listening scripts, writing/speaking tasks)
	gemini_model: str = Field(default="gemini-3-flash-preview", validation_alias="GEMINI_MODEL")
	# Grading of writing/speaking submissions
	gemini_model_evaluation: str = Field(default="gemini-3-flash-preview", validation_alias="GEMINI_MODEL_EVALUATION")
	# Speech synthesis for the listening module
	gemini_model_tts: str = Field(default="gemini-2.5-flash-preview-tts", validation_alias="GEMINI_MODEL_TTS")
	gemini_tts_voice: str = Field(default="Kore", validation_alias="GEMINI_TTS_VOICE")
	gemini_timeout_seconds: float = Field(default=30, validation_alias="GEMINI_TIMEOUT_SECONDS")
	# Vertex configuration
	vertex_region: str = Field(default="us-central1", validation_alias="GEMINI_VERTEX_REGION")
	vertex_project: str | None = Field(default=None, validation_alias="GEMINI_VERTEX_PROJECT")

	# Retry policy applied to every remote call
	retry_max_attempts: int = Field(default=3, ge=1, validation_alias="RETRY_MAX_ATTEMPTS")
	retry_base_delay_ms: int = Field(default=1500, ge=0, validation_alias="RETRY_BASE_DELAY_MS")

	# Synthesized speech is 16-bit mono PCM
	audio_sample_rate: int = Field(default=24000, gt=0, validation_alias="AUDIO_SAMPLE_RATE")
	audio_silence_seconds: float = Field(default=2.0, ge=0, validation_alias="AUDIO_SILENCE_SECONDS")

	# Exam being simulated
	exam_language: str = Field(default="German", validation_alias="EXAM_LANGUAGE")
	exam_level: str = Field(default="A1", validation_alias="EXAM_LEVEL")
	# Word announcing each part in the listening audio ("Teil 1. Dialogue. ...")
	listening_part_label: str = Field(default="Teil", validation_alias="LISTENING_PART_LABEL")

	# Result sink (e.g. a Google Apps Script web app). Unset disables submission.
	results_webhook_url: str | None = Field(default=None, validation_alias="RESULTS_WEBHOOK_URL")
	default_user_language: str = Field(default="Malayalam", validation_alias="DEFAULT_USER_LANGUAGE")

	log_level: str = Field(default="INFO", validation_alias="LOG_LEVEL")
	log_file: str | None = Field(default=None, validation_alias="LOG_FILE")

	# pydantic-settings v2 style config
	model_config = SettingsConfigDict(env_file=".env", extra="ignore")

settings = Settings()
