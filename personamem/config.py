"""Configuration management for personamem.

Loads YAML settings (settings.yaml) and environment variables (.env)
into a typed Config object. Property getters provide safe access with
sensible defaults for every subsystem: LLM provider, storage, memory
engine, conversation summarization, maintenance scheduling, logging.

Key classes:
    Config: Central configuration manager.

Key functions:
    get_config: Singleton accessor for the global Config instance.
"""

import os
from pathlib import Path
from typing import Optional
from urllib.parse import urlparse

import structlog
import yaml
from dotenv import load_dotenv

logger = structlog.get_logger("personamem")


class Config:
    """Central configuration manager for personamem.

    Loads settings.yaml and .env from the config directory and exposes
    typed property accessors. Read-only after __init__.

    Args:
        config_dir: Path to the config directory. Defaults to
            ``<repo_root>/config/``.
    """

    def __init__(self, config_dir: Optional[Path] = None):
        if config_dir is None:
            config_dir = Path(__file__).parent.parent / "config"
        self.config_dir = config_dir

        env_file = config_dir / ".env"
        if env_file.exists():
            load_dotenv(env_file)

        self.settings = self._load_yaml("settings.yaml")

    def _load_yaml(self, filename: str) -> dict:
        """Load a YAML configuration file."""
        filepath = self.config_dir / filename
        if filepath.exists():
            with open(filepath, "r") as f:
                return yaml.safe_load(f) or {}
        return {}

    def _section(self, name: str) -> dict:
        section = self.settings.get(name, {})
        if not isinstance(section, dict):
            logger.error("config_section_invalid_type", section=name,
                         type=type(section).__name__)
            return {}
        return section

    def validate(self):
        """Validate critical settings at startup.

        Logs warnings/errors but does not raise -- the service starts in
        degraded mode (extraction and summarization return empty results
        when the LLM is unreachable).
        """
        if not self.llm_api_key:
            logger.warning("llm_api_key_missing",
                           msg="Extraction and summarization will be skipped")

        parsed = urlparse(self.llm_api_url)
        if parsed.scheme != "https" or not parsed.hostname:
            logger.error("config_invalid_value", key="llm.api_url",
                         value=self.llm_api_url, valid="https URL")

        for key, value in (
            ("memory.max_relevant", self.memory_max_relevant),
            ("conversation.summary_window", self.summary_window),
            ("storage.max_conflict_retries", self.storage_max_conflict_retries),
        ):
            if not isinstance(value, int) or value < 1:
                logger.error("config_invalid_value", key=key, value=value, valid=">= 1")

    # LLM provider configuration (any OpenAI-compatible endpoint)
    @property
    def llm_api_url(self) -> str:
        """Chat completions URL. Env var PERSONAMEM_API_URL takes precedence."""
        return (
            os.environ.get("PERSONAMEM_API_URL")
            or self._section("llm").get("api_url", "https://api.openai.com/v1/chat/completions")
        )

    @property
    def llm_api_key(self) -> str:
        """Return the API key for the provider.

        Priority:
        1. Explicit api_key_env setting -> read that env var
        2. PERSONAMEM_API_KEY
        3. OPENAI_API_KEY
        """
        api_key_env = self._section("llm").get("api_key_env")
        if api_key_env:
            key = os.environ.get(api_key_env, "")
            if not key:
                logger.warning("config_api_key_env_empty", env_var=api_key_env)
            return key
        return os.environ.get("PERSONAMEM_API_KEY") or os.environ.get("OPENAI_API_KEY", "")

    @property
    def llm_model(self) -> str:
        """Model for extraction and summarization calls."""
        return self._section("llm").get("model", "gpt-4-turbo-preview")

    @property
    def llm_search_model(self) -> str:
        """Cheaper model used for the semantic-search fallback."""
        return self._section("llm").get("search_model", "gpt-3.5-turbo")

    @property
    def llm_extraction_timeout(self) -> float:
        """Seconds before a memory extraction call is abandoned."""
        return float(self._section("llm").get("extraction_timeout", 20))

    @property
    def llm_summary_timeout(self) -> float:
        """Seconds before a conversation summary call is abandoned."""
        return float(self._section("llm").get("summary_timeout", 45))

    @property
    def llm_search_timeout(self) -> float:
        """Seconds before a semantic-search fallback call is abandoned."""
        return float(self._section("llm").get("search_timeout", 10))

    # Storage configuration
    @property
    def database_path(self) -> Path:
        """SQLite document store path. Env var PERSONAMEM_DB_PATH takes precedence."""
        configured = os.environ.get("PERSONAMEM_DB_PATH") or self._section("storage").get("path")
        if configured:
            return Path(configured).expanduser()
        return Path(__file__).parent.parent / "data" / "personamem.db"

    @property
    def storage_max_conflict_retries(self) -> int:
        """Compare-and-swap retries before a write conflict is surfaced."""
        return self._section("storage").get("max_conflict_retries", 3)

    # Memory engine configuration
    @property
    def memory_max_relevant(self) -> int:
        """Memories returned for prompt context (default 15)."""
        return self._section("memory").get("max_relevant", 15)

    @property
    def memory_negative_examples(self) -> int:
        """Existing memories shown to the extractor as "don't re-extract"."""
        return self._section("memory").get("negative_examples", 5)

    @property
    def memory_semantic_fallback_min(self) -> int:
        """Text-search result count below which the LLM fallback runs."""
        return self._section("memory").get("semantic_fallback_min", 5)

    @property
    def memory_max_context_chars(self) -> int:
        """Character budget for the memory context section of a prompt."""
        return self._section("memory").get("max_context_chars", 6000)

    # Conversation configuration
    @property
    def summary_window(self) -> int:
        """Messages per auto-summary; also the summarization cadence."""
        return self._section("conversation").get("summary_window", 20)

    @property
    def background_task_timeout(self) -> float:
        """Outer timeout for fire-and-forget extraction/summary tasks."""
        return float(self._section("conversation").get("background_task_timeout", 90))

    # Maintenance configuration
    @property
    def maintenance_enabled(self) -> bool:
        """Whether the decay/merge job runs in this process."""
        return self._section("maintenance").get("enabled", True)

    @property
    def maintenance_interval(self) -> int:
        """Seconds between maintenance passes (default daily)."""
        return self._section("maintenance").get("interval", 86400)

    # Logging configuration
    @property
    def log_dir(self) -> Path:
        """Get log directory path."""
        configured = self.settings.get("log_dir")
        if configured:
            return Path(configured).expanduser()
        return Path(__file__).parent.parent / "logs"

    @property
    def logging_level(self) -> str:
        """Global log level (default INFO). Controls console and combined file."""
        return self._section("logging").get("level", "INFO")

    @property
    def logging_subsystem_levels(self) -> dict:
        """Per-subsystem log level overrides. E.g. {"memory": "DEBUG"}."""
        return self._section("logging").get("subsystem_levels", {})

    @property
    def logging_max_file_size_mb(self) -> int:
        """Max size per log file in MB before rotation (default 10)."""
        return self._section("logging").get("max_file_size_mb", 10)

    @property
    def logging_backup_count(self) -> int:
        """Number of rotated log files to keep (default 5)."""
        return self._section("logging").get("backup_count", 5)


# Global config instance
_config: Optional[Config] = None


def get_config() -> Config:
    """Get or create the global config instance."""
    global _config
    if _config is None:
        _config = Config()
    return _config
