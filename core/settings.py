"""Application settings models and YAML loader"""
import logging
from pathlib import Path
from typing import Dict, List, Optional, Union

import yaml
from pydantic import BaseModel, Field, ValidationError

from engines.protocol import ModelInfo

logger = logging.getLogger(__name__)


class ProviderSettings(BaseModel):
    """Model provider for the SDK engine (API endpoint + credentials via env)"""
    id: str
    alias: Optional[str] = None
    env: Dict[str, str] = Field(default_factory=dict)
    models: List[ModelInfo] = Field(default_factory=list)


class ClaudeSettings(BaseModel):
    default_model: str = "sonnet"
    permission_mode: str = "acceptEdits"
    max_turns: Optional[int] = None
    allowed_tools: List[str] = Field(default_factory=lambda: [
        "Write", "Read", "Edit", "Glob", "Bash", "Task",
        "WebFetch", "WebSearch", "TodoWrite", "Grep",
    ])
    timeout: float = 600.0
    models_timeout: float = 10.0
    model_cache_ttl: float = 300.0
    providers: List[ProviderSettings] = Field(default_factory=list)
    default_provider: Optional[str] = None

    def get_provider(self, provider_id: Optional[str] = None) -> Optional[ProviderSettings]:
        """Look up a provider by id, falling back to the default provider"""
        wanted = provider_id or self.default_provider
        for provider in self.providers:
            if provider.id == wanted:
                return provider
        if provider_id is None and self.providers:
            return self.providers[0]
        return None


class CursorSettings(BaseModel):
    cli_path: Optional[str] = None
    default_model: str = "sonnet-4.5"
    timeout: float = 600.0
    models_timeout: float = 10.0
    model_cache_ttl: float = 300.0
    models: List[ModelInfo] = Field(default_factory=list)
    stale_session_age: float = 1800.0


class LavsSettings(BaseModel):
    agents_dirs: List[str] = Field(default_factory=lambda: ["agents"])
    default_timeout_ms: int = 30000
    rate_limit_max_requests: int = 60
    rate_limit_window_ms: int = 60000
    cleanup_interval: float = 300.0


class AppSettings(BaseModel):
    """Complete application configuration"""
    log_level: str = "INFO"
    default_engine: str = "claude"
    claude: ClaudeSettings = Field(default_factory=ClaudeSettings)
    cursor: CursorSettings = Field(default_factory=CursorSettings)
    lavs: LavsSettings = Field(default_factory=LavsSettings)


def load_settings(path: Optional[Union[str, Path]] = None) -> AppSettings:
    """Load settings from a YAML file; defaults when no path is given"""
    if path is None:
        return AppSettings()

    path = Path(path)
    logger.info(f"Loading settings from {path}")

    try:
        with open(path) as f:
            data = yaml.safe_load(f) or {}
    except (OSError, yaml.YAMLError) as e:
        raise ValueError(f"Cannot read settings file {path}: {e}") from e

    if not isinstance(data, dict):
        raise ValueError(f"Settings file {path} must contain a mapping")

    try:
        settings = AppSettings(**data)
    except ValidationError as e:
        raise ValueError(f"Invalid settings in {path}: {e}") from e

    logger.info(f"Settings loaded (default engine: {settings.default_engine})")
    return settings
