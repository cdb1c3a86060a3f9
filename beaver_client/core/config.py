"""
Configuration Settings.

This module defines the client configuration using Pydantic's BaseSettings.
It automatically loads all configuration from environment variables and .env file
without explicit dotenv loading.
"""

from typing import Optional
from urllib.parse import urlsplit, urlunsplit

from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict

# =====================================================================
# LLM Provider Configuration Models
# =====================================================================


class OpenAIConfig(BaseModel):
    """OpenAI API configuration."""

    api_key: Optional[str] = Field(
        default=None, alias="OPENAI_API_KEY", description="User's own OpenAI API key (BYOK)"
    )

    model_config = {"populate_by_name": True}


class AnthropicConfig(BaseModel):
    """Anthropic API configuration."""

    api_key: Optional[str] = Field(
        default=None, alias="ANTHROPIC_API_KEY", description="User's own Anthropic API key (BYOK)"
    )

    model_config = {"populate_by_name": True}


class GoogleConfig(BaseModel):
    """Google API configuration."""

    api_key: Optional[str] = Field(
        default=None, alias="GOOGLE_API_KEY", description="User's own Google API key (BYOK)"
    )

    model_config = {"populate_by_name": True}


class LoggingConfig(BaseModel):
    """Logging configuration."""

    level: str = Field(default="INFO", alias="BEAVER_LOG_LEVEL", description="Console log level")
    format: str = Field(default="detailed", alias="BEAVER_LOG_FORMAT", description="simple, detailed or json")
    file_dir: str = Field(default="logs", alias="BEAVER_LOG_FILE_DIR", description="Directory for the log file")
    enable_file: bool = Field(
        default=False, alias="BEAVER_ENABLE_FILE_LOGGING", description="Also write DEBUG logs to a file"
    )

    model_config = {"populate_by_name": True}


# =====================================================================
# Main Settings Class
# =====================================================================


class Settings(BaseSettings):
    """
    Client settings model.

    All properties are automatically bound from environment variables and .env file.
    Pydantic's BaseSettings handles dotenv loading automatically via model_config.
    """

    # =====================================================================
    # Pydantic Configuration
    # =====================================================================
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        case_sensitive=True,
        populate_by_name=True,
    )

    # =====================================================================
    # Backend Configuration
    # =====================================================================
    api_base_url: str = Field(
        default="https://api.beaverapp.ai",
        description="HTTP base URL of the backend; the WebSocket URL is derived from it",
        alias="BEAVER_API_BASE_URL",
    )
    agent_run_path: str = Field(
        default="/api/v1/agents/beaver/run",
        description="Path of the agent-run WebSocket endpoint",
        alias="BEAVER_AGENT_RUN_PATH",
    )
    connect_timeout: float = Field(
        default=30.0,
        description="Seconds to wait for the WebSocket handshake",
        alias="BEAVER_CONNECT_TIMEOUT",
    )
    request_timeout: float = Field(
        default=30.0,
        description="Seconds to wait for REST API responses",
        alias="BEAVER_REQUEST_TIMEOUT",
    )
    custom_instructions: Optional[str] = Field(
        default=None,
        description="Extra system instructions sent with every run",
        alias="BEAVER_CUSTOM_INSTRUCTIONS",
    )
    frontend_version: Optional[str] = Field(
        default=None,
        description="Client version reported to the backend",
        alias="BEAVER_FRONTEND_VERSION",
    )

    # =====================================================================
    # Logging Configuration
    # =====================================================================
    log_level: str = Field(default="INFO", alias="BEAVER_LOG_LEVEL")
    log_format: str = Field(default="detailed", alias="BEAVER_LOG_FORMAT")
    log_file_dir: str = Field(default="logs", alias="BEAVER_LOG_FILE_DIR")
    enable_file_logging: bool = Field(default=False, alias="BEAVER_ENABLE_FILE_LOGGING")

    # =====================================================================
    # Provider Keys (BYOK)
    # =====================================================================
    openai_api_key: Optional[str] = Field(default=None, alias="OPENAI_API_KEY")
    anthropic_api_key: Optional[str] = Field(default=None, alias="ANTHROPIC_API_KEY")
    google_api_key: Optional[str] = Field(default=None, alias="GOOGLE_API_KEY")

    # =====================================================================
    # Computed Properties (Grouped Configurations)
    # =====================================================================

    @property
    def openai(self) -> OpenAIConfig:
        """Get OpenAI configuration from environment variables."""
        return OpenAIConfig.model_validate(self.model_dump(by_alias=True))

    @property
    def anthropic(self) -> AnthropicConfig:
        """Get Anthropic configuration from environment variables."""
        return AnthropicConfig.model_validate(self.model_dump(by_alias=True))

    @property
    def google(self) -> GoogleConfig:
        """Get Google configuration from environment variables."""
        return GoogleConfig.model_validate(self.model_dump(by_alias=True))

    @property
    def logging(self) -> LoggingConfig:
        """Get logging configuration from environment variables."""
        return LoggingConfig.model_validate(self.model_dump(by_alias=True))

    def provider_api_key(self, provider: Optional[str]) -> Optional[str]:
        """Return the user's own key for ``provider`` (openai, anthropic or google), if configured."""
        groups = {"openai": self.openai, "anthropic": self.anthropic, "google": self.google}
        group = groups.get((provider or "").lower())
        return group.api_key if group else None

    @property
    def websocket_url(self) -> str:
        """
        WebSocket URL of the agent-run endpoint.

        ``http`` maps to ``ws`` and ``https`` to ``wss``; any path on the base URL is
        replaced by ``agent_run_path``.
        """
        parts = urlsplit(self.api_base_url)
        scheme = "wss" if parts.scheme == "https" else "ws"
        return urlunsplit((scheme, parts.netloc, self.agent_run_path, "", ""))


settings = Settings()
