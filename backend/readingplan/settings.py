from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field

class Settings(BaseSettings):
	gemini_api_key: str | None = Field(default=None, validation_alias="GEMINI_API_KEY")
	# Provider can be "vertex" (Vertex AI Express) or "ai_studio" (Generative Language API)
	gemini_provider: str = Field(default="ai_studio", validation_alias="GEMINI_PROVIDER")
	gemini_model: str = Field(default="gemini-2.5-flash", validation_alias="GEMINI_MODEL")
	# Optional: cheaper model for per-activity content
	gemini_model_activities: str | None = Field(default=None, validation_alias="GEMINI_MODEL_ACTIVITIES")
	vertex_region: str = Field(default="us-central1", validation_alias="GEMINI_VERTEX_REGION")
	vertex_project: str | None = Field(default=None, validation_alias="GEMINI_VERTEX_PROJECT")

	# OpenRouter fallback configuration (optional)
	openrouter_api_key: str | None = Field(default=None, validation_alias="OPENROUTER_API_KEY")
	openrouter_model: str = Field(default="x-ai/grok-4-fast:free", validation_alias="OPENROUTER_MODEL")
	openrouter_base_url: str = Field(default="https://openrouter.ai/api/v1/chat/completions", validation_alias="OPENROUTER_BASE_URL")
	openrouter_referer: str = Field(default="https://localhost", validation_alias="OPENROUTER_HTTP_REFERER")
	openrouter_title: str = Field(default="Reading Plans", validation_alias="OPENROUTER_TITLE")

	# Auth
	jwt_secret_key: str = Field(default="change-me", validation_alias="JWT_SECRET_KEY")
	jwt_algorithm: str = Field(default="HS256", validation_alias="JWT_ALGORITHM")
	access_token_expire_minutes: int = Field(default=120, validation_alias="ACCESS_TOKEN_EXPIRE_MINUTES")

	# Database
	database_url: str | None = Field(default=None, validation_alias="DATABASE_URL")

	log_level: str = Field(default="INFO", validation_alias="LOG_LEVEL")

	# Scoring: sessions shorter than this are rejected as INVALID_ATTEMPT
	min_reading_seconds: float = Field(default=10.0, validation_alias="MIN_READING_SECONDS")

	# Content generation
	generation_timeout_seconds: float = Field(default=30.0, validation_alias="GENERATION_TIMEOUT_SECONDS")
	generation_max_attempts: int = Field(default=3, validation_alias="GENERATION_MAX_ATTEMPTS")
	generation_backoff_min_seconds: float = Field(default=1.0, validation_alias="GENERATION_BACKOFF_MIN_SECONDS")
	generation_backoff_max_seconds: float = Field(default=8.0, validation_alias="GENERATION_BACKOFF_MAX_SECONDS")
	# Reservation held by the single generator of a cache key
	generation_lease_seconds: int = Field(default=180, validation_alias="GENERATION_LEASE_SECONDS")
	# How long a second requester waits on somebody else's generation before answering "pending"
	generation_wait_seconds: float = Field(default=45.0, validation_alias="GENERATION_WAIT_SECONDS")
	generation_poll_seconds: float = Field(default=0.5, validation_alias="GENERATION_POLL_SECONDS")
	use_fallback_templates: bool = Field(default=True, validation_alias="USE_FALLBACK_TEMPLATES")
	# 0 disables expiry
	content_ttl_hours: int = Field(default=24, validation_alias="CONTENT_TTL_HOURS")

	cleanup_retention_days: int = Field(default=7, validation_alias="CLEANUP_RETENTION_DAYS")

	# pydantic-settings v2 style config
	model_config = SettingsConfigDict(env_file=".env", extra="ignore")

settings = Settings()
