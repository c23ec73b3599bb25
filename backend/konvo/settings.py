from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field

class Settings(BaseSettings):
	# Both the chat model and the judge model are reached through an OpenAI-compatible endpoint
	gemini_api_key: str | None = Field(default=None, validation_alias="GEMINI_API_KEY")
	llm_base_url: str = Field(default="https://generativelanguage.googleapis.com/v1beta/openai", validation_alias="LLM_BASE_URL")
	chat_model: str = Field(default="gemini-2.5-flash", validation_alias="CHAT_MODEL")
	judge_model: str = Field(default="gemini-2.5-flash", validation_alias="JUDGE_MODEL")
	llm_timeout_seconds: float = Field(default=60.0, validation_alias="LLM_TIMEOUT_SECONDS")

	# OpenRouter fallback configuration (optional, judge calls only)
	openrouter_api_key: str | None = Field(default=None, validation_alias="OPENROUTER_API_KEY")
	openrouter_model: str = Field(default="openai/gpt-4o-mini", validation_alias="OPENROUTER_MODEL")
	openrouter_base_url: str = Field(default="https://openrouter.ai/api/v1/chat/completions", validation_alias="OPENROUTER_BASE_URL")
	openrouter_referer: str = Field(default="https://localhost", validation_alias="OPENROUTER_HTTP_REFERER")
	openrouter_title: str = Field(default="Konvo Assessments", validation_alias="OPENROUTER_TITLE")

	# Identity tokens are issued by the external auth service; we only verify them
	jwt_secret_key: str = Field(default="change-me", validation_alias="JWT_SECRET_KEY")
	jwt_algorithm: str = Field(default="HS256", validation_alias="JWT_ALGORITHM")

	# Assignments that do not say otherwise allow a single attempt
	default_max_attempts: int = Field(default=1, validation_alias="DEFAULT_MAX_ATTEMPTS")
	# Optimistic write retries against the submissions table
	write_retries: int = Field(default=3, validation_alias="SUBMISSION_WRITE_RETRIES")

	log_level: str = Field(default="INFO", validation_alias="LOG_LEVEL")

	# Database
	database_url: str | None = Field(default=None, validation_alias="DATABASE_URL")

	# pydantic-settings v2 style config
	model_config = SettingsConfigDict(env_file=".env", extra="ignore")

settings = Settings()
