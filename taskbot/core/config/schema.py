"""TaskBot configuration schema — YAML + Pydantic + env override."""

from __future__ import annotations

from pathlib import Path

from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


# ════════════════════════════════════════════════════════════
# SUB-CONFIGS (nested BaseModel)
# ════════════════════════════════════════════════════════════


class ProviderConfig(BaseModel):
    """Single LLM provider."""

    api_key: str = ""
    api_base: str | None = None


class ProvidersConfig(BaseModel):
    """LLM providers (LiteLLM multi-provider)."""

    anthropic: ProviderConfig = Field(default_factory=ProviderConfig)
    openai: ProviderConfig = Field(default_factory=ProviderConfig)
    openrouter: ProviderConfig = Field(default_factory=ProviderConfig)
    deepseek: ProviderConfig = Field(default_factory=ProviderConfig)
    groq: ProviderConfig = Field(default_factory=ProviderConfig)
    gemini: ProviderConfig = Field(default_factory=ProviderConfig)
    perplexity: ProviderConfig = Field(default_factory=ProviderConfig)


class PersonaConfig(BaseModel):
    """Agent persona definition (tone, language, constraints)."""

    name: str = "TaskBot"
    tone: str = ""
    language: str = ""
    constraints: list[str] = Field(default_factory=list)


class AssistantConfig(BaseModel):
    """Main assistant (assistant.*)."""

    name: str = "TaskBot"
    model: str = "openai/gpt-4o"
    temperature: float = 0.7
    max_tokens: int = 4096
    system_prompt: str | None = None
    persona: PersonaConfig = Field(default_factory=PersonaConfig)


class EmbeddingConfig(BaseModel):
    """Embedding model used for semantic search over tasks, projects and memories."""

    enabled: bool = True
    model: str = "text-embedding-3-small"


class ResearchConfig(BaseModel):
    """Web research tool. Empty model disables the tool."""

    model: str = "perplexity/sonar"
    temperature: float = 0.2


class MailConfig(BaseModel):
    """Outbound email (Resend HTTP API). Empty api_key disables email tools."""

    api_key: str = ""
    from_address: str = ""
    base_url: str = "https://api.resend.com"
    timeout_s: float = 30.0


# Background
class DispatcherConfig(BaseModel):
    """Due-job polling, retries and circuit breaker."""

    enabled: bool = True
    poll_interval_s: int = 60
    due_batch_size: int = 50
    claim_ttl_s: int = 900
    execution_timeout_s: int = 7200
    max_attempts: int = 3
    retry_backoff_s: float = 2.0
    failure_threshold: int = 3
    agent_task_concurrency: int = 5
    webhook_timeout_s: float = 30.0


class TaskWorkerConfig(BaseModel):
    """Agent-assigned task processing."""

    enabled: bool = True
    sweep_interval_s: int = 300
    batch_size: int = 5
    per_agent_concurrency: int = 3
    lock_ttl_minutes: int = 30
    related_threshold: float = 0.65


class ProjectWorkConfig(BaseModel):
    """Multi-task project work sessions."""

    concurrency: int = 2
    max_tasks: int = 10
    cooldown_s: float = 5.0


class EmailWorkerConfig(BaseModel):
    """Inbound email processing."""

    match_count: int = 15
    match_threshold: float = 0.6


class StepLimitsConfig(BaseModel):
    """Maximum model invocations per agent run, by trigger channel."""

    chat: int = 5
    job: int = 25
    email: int = 15
    project: int = 15
    task: int = 25


class BackgroundConfig(BaseModel):
    default_timezone: str = "America/New_York"
    dispatcher: DispatcherConfig = Field(default_factory=DispatcherConfig)
    task_worker: TaskWorkerConfig = Field(default_factory=TaskWorkerConfig)
    project_work: ProjectWorkConfig = Field(default_factory=ProjectWorkConfig)
    email: EmailWorkerConfig = Field(default_factory=EmailWorkerConfig)
    step_limits: StepLimitsConfig = Field(default_factory=StepLimitsConfig)


# Activity / automatic bug reports
class BugReportConfig(BaseModel):
    enabled: bool = True
    max_per_hour: int = 5
    dedup_window_minutes: int = 60


# Database
class DatabaseConfig(BaseModel):
    path: str = "data/taskbot.db"


# ════════════════════════════════════════════════════════════
# ROOT CONFIG (BaseSettings — env + .env support)
# ════════════════════════════════════════════════════════════


class Config(BaseSettings):
    """
    Root configuration.

    Priority: env vars > .env > YAML (init kwargs) > defaults

    Env override examples:
        TASKBOT_ASSISTANT__MODEL=anthropic/claude-sonnet-4-5-20250929
        TASKBOT_DATABASE__PATH=data/prod.db
        TASKBOT_BACKGROUND__DISPATCHER__FAILURE_THRESHOLD=5
    """

    model_config = SettingsConfigDict(
        env_prefix="TASKBOT_",
        env_nested_delimiter="__",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    @classmethod
    def settings_customise_sources(
        cls, settings_cls, init_settings, env_settings, dotenv_settings, file_secret_settings
    ):
        # YAML arrives as init kwargs; env must still win over it
        return env_settings, dotenv_settings, init_settings, file_secret_settings

    assistant: AssistantConfig = Field(default_factory=AssistantConfig)
    providers: ProvidersConfig = Field(default_factory=ProvidersConfig)
    embedding: EmbeddingConfig = Field(default_factory=EmbeddingConfig)
    research: ResearchConfig = Field(default_factory=ResearchConfig)
    mail: MailConfig = Field(default_factory=MailConfig)
    background: BackgroundConfig = Field(default_factory=BackgroundConfig)
    bug_reports: BugReportConfig = Field(default_factory=BugReportConfig)
    database: DatabaseConfig = Field(default_factory=DatabaseConfig)

    # ── Computed properties ─────────────────────────────────

    @property
    def db_path(self) -> Path:
        return Path(self.database.path)

    @property
    def mail_enabled(self) -> bool:
        """True when an outbound mail key and sender are configured."""
        return bool(self.mail.api_key and self.mail.from_address)

    # ── Provider helpers ────────────────────────────────────

    def get_api_key(self, model: str | None = None) -> str | None:
        """Get API key for model name. Falls back to first available."""
        model_name = (model or self.assistant.model).lower()

        keyword_map: dict[str, ProviderConfig] = {
            "anthropic": self.providers.anthropic,
            "claude": self.providers.anthropic,
            "openai": self.providers.openai,
            "gpt": self.providers.openai,
            "openrouter": self.providers.openrouter,
            "deepseek": self.providers.deepseek,
            "groq": self.providers.groq,
            "gemini": self.providers.gemini,
            "perplexity": self.providers.perplexity,
        }
        for keyword, provider in keyword_map.items():
            if keyword in model_name and provider.api_key:
                return provider.api_key

        # Fallback: first key found
        for name in ProvidersConfig.model_fields:
            p = getattr(self.providers, name)
            if isinstance(p, ProviderConfig) and p.api_key:
                return p.api_key
        return None

    def get_api_base(self, model: str | None = None) -> str | None:
        """Get API base URL for model name."""
        model_name = (model or self.assistant.model).lower()
        if "openrouter" in model_name:
            return self.providers.openrouter.api_base or "https://openrouter.ai/api/v1"
        for name in ProvidersConfig.model_fields:
            p = getattr(self.providers, name)
            if isinstance(p, ProviderConfig) and name in model_name and p.api_base:
                return p.api_base
        return None
