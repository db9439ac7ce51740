"""
Contact Enrichment Configuration Settings
"""
from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        populate_by_name=True,
    )

    # Server
    port: int = Field(default=8000, alias="ENRICH_PORT")
    host: str = Field(default="0.0.0.0", alias="ENRICH_HOST")

    # API Keys (no prefix - standard env var names)
    anthropic_api_key: str = Field(default="", alias="ANTHROPIC_API_KEY")
    google_api_key: str = Field(default="", alias="GOOGLE_API_KEY")

    # LLM provider selection
    llm_provider: str = Field(
        default="anthropic",
        alias="LLM_PROVIDER",
        description="Backing LLM provider: 'anthropic' or 'gemini'"
    )
    claude_model: str = Field(default="claude-sonnet-4-5-20250929", alias="CLAUDE_MODEL")
    # Model used while the agent is calling tools; falls back to claude_model
    claude_tool_model: str = Field(default="", alias="CLAUDE_TOOL_MODEL")
    gemini_model: str = Field(default="gemini-2.5-pro", alias="GEMINI_MODEL")
    gemini_tool_model: str = Field(default="", alias="GEMINI_TOOL_MODEL")
    llm_max_tokens: int = Field(default=4096, alias="ENRICH_LLM_MAX_TOKENS")

    # MCP tool service
    mcp_server_url: str = Field(default="", alias="MCP_SERVER_URL")
    mcp_server_api_key: str = Field(default="", alias="MCP_SERVER_API_KEY")
    mcp_auth_type: str = Field(
        default="basic",
        alias="MCP_AUTH_TYPE",
        description="How the API key is sent: basic | bearer | custom (X-API-Key)"
    )
    mcp_keep_alive: bool = Field(
        default=True,
        alias="MCP_KEEP_ALIVE",
        description="Keep the tool-service session open when no request holds it"
    )

    # Agent loop tuning
    max_tool_rounds: int = Field(default=10, alias="ENRICH_MAX_TOOL_ROUNDS")
    tool_result_max_chars: int = Field(default=2000, alias="ENRICH_TOOL_RESULT_MAX_CHARS")
    tool_call_delay_seconds: float = Field(default=0.5, alias="ENRICH_TOOL_CALL_DELAY")
    history_limit: int = Field(default=6, alias="ENRICH_HISTORY_LIMIT")
    history_keep_recent: int = Field(default=4, alias="ENRICH_HISTORY_KEEP_RECENT")
    final_answer_min_chars: int = Field(default=50, alias="ENRICH_FINAL_ANSWER_MIN_CHARS")

    # Rate limiting (LLM calls)
    min_call_interval_seconds: float = Field(default=2.0, alias="ENRICH_MIN_CALL_INTERVAL")
    llm_max_attempts: int = Field(default=3, alias="ENRICH_LLM_MAX_ATTEMPTS")
    llm_max_backoff_seconds: float = Field(default=30.0, alias="ENRICH_LLM_MAX_BACKOFF")

    # Reconciliation
    batch_size: int = Field(
        default=45,
        alias="ENRICH_BATCH_SIZE",
        description="Identifiers / person ids per auto-resolve or gap-fill call"
    )
    export_timeout_seconds: float = Field(default=30.0, alias="ENRICH_EXPORT_TIMEOUT")
    request_timeout_seconds: float = Field(
        default=600.0,
        alias="ENRICH_REQUEST_TIMEOUT",
        description="Upper bound for one /enrich request (agent loop + reconciliation)"
    )

    @property
    def tool_model(self) -> str:
        """Model used during tool-use rounds for the configured provider."""
        if self.llm_provider == "gemini":
            return self.gemini_tool_model or self.gemini_model
        return self.claude_tool_model or self.claude_model

    @property
    def final_model(self) -> str:
        """Default (stronger) model used for the final-answer pass."""
        if self.llm_provider == "gemini":
            return self.gemini_model
        return self.claude_model

    @property
    def mcp_configured(self) -> bool:
        """Check if the tool service is configured."""
        return bool(self.mcp_server_url)

    @property
    def mcp_headers(self) -> dict[str, str]:
        """Auth headers for the tool service based on MCP_AUTH_TYPE."""
        if not self.mcp_server_api_key:
            return {}
        if self.mcp_auth_type == "bearer":
            return {"Authorization": f"Bearer {self.mcp_server_api_key}"}
        if self.mcp_auth_type == "custom":
            return {"X-API-Key": self.mcp_server_api_key}
        return {"Authorization": f"Basic {self.mcp_server_api_key}"}


settings = Settings()
