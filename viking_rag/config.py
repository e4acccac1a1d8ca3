"""Configuration management for Viking RAG."""

import os
from pathlib import Path

import yaml
from dotenv import dotenv_values
from pydantic import BaseModel, Field
from pydantic_settings import (
    BaseSettings,
    PydanticBaseSettingsSource,
    SettingsConfigDict,
)


# Paths
DEFAULT_CONFIG_PATH = Path("~/.viking-rag/config.yaml").expanduser()
DEFAULT_CACHE_DIR = "~/.viking-rag/cache"
LOCAL_CONFIG_FILENAME = "config.yaml"


class StorageConfig(BaseModel):
    """Durable cache location."""

    cache_dir: str = DEFAULT_CACHE_DIR


class EmbeddingsConfig(BaseModel):
    """Embedding engine configuration.

    Remote mode is only attempted when both ``provider`` and ``api_key``
    are set; otherwise the local model is used.
    """

    provider: str = ""
    api_key: str = ""
    base_url: str = ""
    model: str = ""
    local_model: str = "all-MiniLM-L6-v2"
    device: str = ""
    batch_size: int = 20
    concurrency: int = 3
    request_interval_ms: int = 100
    save_every: int = 50
    request_timeout_seconds: float = 30.0
    batch_timeout_seconds: float = 60.0


class ContextConfig(BaseModel):
    """Tiered context and LLM description configuration."""

    flush_every: int = 50
    llm_provider: str = ""
    llm_api_key: str = ""
    llm_base_url: str = ""
    llm_model: str = ""
    llm_concurrency: int = 3
    llm_delay_ms: int = 200
    llm_max_content_chars: int = 4000


class MemoryConfig(BaseModel):
    """Session memory configuration."""

    max_prompt_tokens: int = 500


class CompressionConfig(BaseModel):
    """Conversation history compression configuration."""

    keep_recent_count: int = 3
    max_history_length: int = 8
    threshold: float = 0.6
    target_usage: float = 0.3


class WorkspaceConfig(BaseModel):
    """Workspace scanning configuration."""

    include_extensions: list[str] = [
        ".py", ".pyw", ".js", ".jsx", ".mjs", ".cjs", ".ts", ".tsx",
        ".go", ".rs", ".java", ".kt", ".scala", ".c", ".h", ".cpp",
        ".sh", ".bash", ".zsh",
        ".json", ".yaml", ".yml", ".toml", ".ini", ".cfg",
        ".md", ".mdx", ".txt", ".rst",
    ]
    exclude_dirs: list[str] = [
        ".git", ".hg", ".svn", "node_modules", "__pycache__",
        ".venv", "venv", "dist", "build", ".viking-rag",
    ]
    max_file_bytes: int = 1_048_576
    max_files: int = 5000


class LoggingConfig(BaseModel):
    """Logging configuration."""

    level: str = "INFO"
    format: str = "console"


class Config(BaseSettings):
    """Main configuration for Viking RAG."""

    storage: StorageConfig = Field(default_factory=StorageConfig)
    embeddings: EmbeddingsConfig = Field(default_factory=EmbeddingsConfig)
    context: ContextConfig = Field(default_factory=ContextConfig)
    memory: MemoryConfig = Field(default_factory=MemoryConfig)
    compression: CompressionConfig = Field(default_factory=CompressionConfig)
    workspace: WorkspaceConfig = Field(default_factory=WorkspaceConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    model_config = SettingsConfigDict(
        env_prefix="VIKING_",
        env_file=".env",
        env_nested_delimiter="__",
        extra="ignore",
    )

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        # Environment beats YAML values passed as init kwargs.
        return env_settings, dotenv_settings, init_settings, file_secret_settings

    @classmethod
    def resolve_default_config_path(cls) -> Path:
        """Resolve default config path with local-first precedence."""
        local_path = Path.cwd() / LOCAL_CONFIG_FILENAME
        if local_path.exists():
            return local_path
        return DEFAULT_CONFIG_PATH

    @classmethod
    def from_yaml(cls, path: Path | str | None = None) -> "Config":
        """Load configuration from YAML file."""
        config_path = Path(path).expanduser() if path else cls.resolve_default_config_path()

        if not config_path.exists():
            return cls()

        with open(config_path, encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}

        return cls(**data)

    @classmethod
    def load(cls, path: Path | str | None = None) -> "Config":
        """Load configuration, preferring env vars over YAML."""
        config = cls.from_yaml(path)
        config._apply_provider_key_fallbacks()
        return config

    def _apply_provider_key_fallbacks(self) -> None:
        """Fill empty API keys from ``<PROVIDER>_API_KEY`` (env, then .env)."""
        dotenv_file = Path.cwd() / ".env"
        dotenv = dotenv_values(dotenv_file) if dotenv_file.exists() else {}

        def lookup(provider: str) -> str:
            name = f"{provider.strip().upper().replace('-', '_')}_API_KEY"
            return str(os.environ.get(name) or dotenv.get(name) or "").strip()

        if self.embeddings.provider and not self.embeddings.api_key:
            self.embeddings.api_key = lookup(self.embeddings.provider)
        if self.context.llm_provider and not self.context.llm_api_key:
            self.context.llm_api_key = lookup(self.context.llm_provider)

    def save(self, path: Path | str | None = None) -> None:
        """Save configuration to YAML file."""
        config_path = Path(path) if path else DEFAULT_CONFIG_PATH
        config_path.parent.mkdir(parents=True, exist_ok=True)

        data = self.model_dump(exclude_none=True)

        with open(config_path, "w", encoding="utf-8") as f:
            yaml.safe_dump(data, f, default_flow_style=False, sort_keys=False)

    def resolved_cache_dir(self, runtime_base: Path | str | None = None) -> Path:
        """Resolve cache dir, anchoring relative paths to runtime base/cwd."""
        raw = Path(self.storage.cache_dir).expanduser()
        if raw.is_absolute():
            return raw.resolve()
        anchor = Path(runtime_base).expanduser().resolve() if runtime_base is not None else Path.cwd().resolve()
        return (anchor / raw).resolve()


# Global config instance
_config: Config | None = None


def get_config() -> Config:
    """Get the global configuration instance."""
    global _config
    if _config is None:
        _config = Config.load()
    return _config


def set_config(config: Config) -> None:
    """Set the global configuration instance."""
    global _config
    _config = config
