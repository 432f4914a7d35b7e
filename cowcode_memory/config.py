"""Configuration management for the cowcode memory index."""

from pathlib import Path
from typing import Literal

import yaml
from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, PydanticBaseSettingsSource, SettingsConfigDict


# Paths
DEFAULT_STATE_DIR = Path("~/.cowcode").expanduser()
DEFAULT_CONFIG_PATH = DEFAULT_STATE_DIR / "config.yaml"
DEFAULT_WORKSPACE_PATH = DEFAULT_STATE_DIR / "workspace"
DEFAULT_INDEX_PATH = DEFAULT_STATE_DIR / "memory" / "index.db"
LOCAL_CONFIG_FILENAME = "config.yaml"

DEFAULT_FILESYSTEM_EXCLUDE_DIRS = [
    ".git",
    "node_modules",
    ".cowcode",
    "__pycache__",
    ".venv",
    "venv",
    ".next",
    ".cache",
    ".tox",
    "dist",
    "build",
    "Pods",
    ".dart_tool",
    "target",
    "vendor",
    "bower_components",
    ".gradle",
    ".idea",
    ".vscode",
]


class EmbeddingConfig(BaseModel):
    """Embedding service configuration."""

    provider: Literal["openai", "local_hash"] = "openai"
    base_url: str = "https://api.openai.com/v1"
    api_key: str = ""
    model: str = "text-embedding-3-small"
    timeout_seconds: int = 60
    truncate_chars: int = 8000
    local_dimensions: int = 256


class ChunkingConfig(BaseModel):
    """Note chunking configuration."""

    chunk_chars: int = 600
    chunk_overlap_chars: int = 80


class SearchConfig(BaseModel):
    """Search defaults."""

    max_results: int = 6
    min_score: float = 0.0


class FilesystemConfig(BaseModel):
    """Filesystem indexer configuration."""

    root: str = ""
    max_depth: int = 8
    exclude_dirs: list[str] = Field(default_factory=lambda: list(DEFAULT_FILESYSTEM_EXCLUDE_DIRS))
    include_hidden: bool = False
    embed_batch_size: int = 1


class MemoryConfig(BaseModel):
    """Memory index configuration."""

    enabled: bool = True
    workspace_path: str = str(DEFAULT_WORKSPACE_PATH)
    index_path: str = str(DEFAULT_INDEX_PATH)
    embedding: EmbeddingConfig = Field(default_factory=EmbeddingConfig)
    chunking: ChunkingConfig = Field(default_factory=ChunkingConfig)
    search: SearchConfig = Field(default_factory=SearchConfig)
    filesystem: FilesystemConfig = Field(default_factory=FilesystemConfig)

    def resolved_workspace_path(self) -> Path:
        """Workspace root all source and read paths are resolved against."""
        return Path(self.workspace_path).expanduser().resolve()

    def resolved_index_path(self) -> Path:
        return Path(self.index_path).expanduser()


class LoggingConfig(BaseModel):
    """Logging configuration."""

    level: str = "INFO"
    format: str = "console"


class Config(BaseSettings):
    """Main configuration for the memory index."""

    memory: MemoryConfig = Field(default_factory=MemoryConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    model_config = SettingsConfigDict(
        env_prefix="COWCODE_",
        env_file=".env",
        env_nested_delimiter="__",
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
        """Environment and .env win over values read from YAML."""
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

        with open(config_path) as f:
            data = yaml.safe_load(f) or {}

        return cls(**data)

    @classmethod
    def load(cls) -> "Config":
        """Load configuration from YAML; env vars are applied by pydantic-settings."""
        return cls.from_yaml()

    def save(self, path: Path | str | None = None) -> None:
        """Save configuration to YAML file."""
        config_path = Path(path) if path else DEFAULT_CONFIG_PATH
        config_path.parent.mkdir(parents=True, exist_ok=True)

        data = self.model_dump(exclude_none=True)

        with open(config_path, "w") as f:
            yaml.dump(data, f, default_flow_style=False, sort_keys=False)


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
