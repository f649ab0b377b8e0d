"""Configuration for Stream Status.

A `Config` is built once at process start with `Config.load()` and handed
to every component; nothing else reads the environment.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

from .errors import ValidationError

VERSION = "0.1.0"

_DEFAULT_CONFIG_PATH = "~/.stream-status/config.yaml"
_DEFAULT_CACHE_ROOT = "~/.cache/stream-status"

# Model prefix → env var name for API key
_MODEL_ENV_KEYS = {
    "anthropic": "ANTHROPIC_API_KEY",
    "claude": "ANTHROPIC_API_KEY",
    "openai": "OPENAI_API_KEY",
    "gpt": "OPENAI_API_KEY",
    "deepseek": "DEEPSEEK_API_KEY",
    "gemini": "GEMINI_API_KEY",
    "groq": "GROQ_API_KEY",
}

_FALSE_VALUES = ("false", "0", "no", "off")


@dataclass
class Config:
    # Project
    project_root: str = "."
    worktree_root: Optional[str] = None
    main_branch: str = "main"
    push_remote: str = "origin"

    # Storage
    cache_root: str = _DEFAULT_CACHE_ROOT
    db_path: Optional[str] = None

    # API server
    api_host: str = "127.0.0.1"
    api_port: Optional[int] = None
    api_enabled: bool = True
    default_port: int = 3001
    port_attempts: int = 10
    health_path: str = "/api/stats"
    health_timeout: float = 2.0

    log_level: str = "INFO"

    # LLM (summary worker)
    llm_model: str = "anthropic/claude-haiku-4-5-20251001"
    llm_timeout: float = 60.0
    api_key: Optional[str] = None

    @classmethod
    def load(cls, path: Optional[str] = None) -> Config:
        """Load config from YAML file, then apply environment overrides."""
        data = _read_yaml(_config_path(path))

        cfg = cls(project_root=os.getcwd())

        for key in ("project_root", "worktree_root", "main_branch", "push_remote",
                    "cache_root", "db_path", "api_host", "health_path",
                    "log_level", "llm_model", "api_key"):
            if data.get(key) is not None:
                setattr(cfg, key, str(data[key]))
        for key in ("api_port", "default_port", "port_attempts"):
            if data.get(key) is not None:
                setattr(cfg, key, int(data[key]))
        for key in ("health_timeout", "llm_timeout"):
            if data.get(key) is not None:
                setattr(cfg, key, float(data[key]))
        if "api_enabled" in data:
            cfg.api_enabled = bool(data["api_enabled"])

        # Environment overrides
        if env_root := os.getenv("PROJECT_ROOT"):
            cfg.project_root = env_root
        if env_wt := os.getenv("WORKTREE_ROOT"):
            cfg.worktree_root = env_wt
        if env_db := os.getenv("DATABASE_PATH"):
            cfg.db_path = env_db
        if env_cache := os.getenv("STREAMSTATUS_CACHE_ROOT"):
            cfg.cache_root = env_cache
        if env_branch := os.getenv("MAIN_BRANCH"):
            cfg.main_branch = env_branch
        if env_host := os.getenv("API_HOST"):
            cfg.api_host = env_host
        if env_port := os.getenv("API_PORT"):
            try:
                cfg.api_port = int(env_port)
            except ValueError:
                raise ValidationError("API_PORT", f"not an integer: {env_port!r}")
        if env_enabled := os.getenv("API_ENABLED"):
            cfg.api_enabled = env_enabled.strip().lower() not in _FALSE_VALUES
        if env_level := os.getenv("STREAMSTATUS_LOG_LEVEL"):
            cfg.log_level = env_level
        if env_model := os.getenv("STREAMSTATUS_LLM_MODEL"):
            cfg.llm_model = env_model
        if env_key := os.getenv("STREAMSTATUS_API_KEY"):
            cfg.api_key = env_key

        return cfg

    @staticmethod
    def set_config(key: str, value: Any, path: Optional[str] = None) -> None:
        """Persist a single key into the YAML config file."""
        config_path = _config_path(path)
        data = _read_yaml(config_path)
        data[key] = value
        config_path.parent.mkdir(parents=True, exist_ok=True)
        with open(config_path, "w") as f:
            yaml.safe_dump(data, f, default_flow_style=False, sort_keys=True)

    # ── Derived paths ─────────────────────────────────────────────────────

    @property
    def resolved_project_root(self) -> Path:
        return Path(self.project_root).expanduser().resolve()

    @property
    def project_name(self) -> str:
        return self.resolved_project_root.name

    @property
    def resolved_worktree_root(self) -> Path:
        if self.worktree_root:
            return Path(self.worktree_root).expanduser()
        root = self.resolved_project_root
        return root.parent / f"{self.project_name}-worktrees"

    @property
    def project_storage_dir(self) -> Path:
        return Path(self.cache_root).expanduser() / "projects" / self.project_name

    @property
    def resolved_db_path(self) -> Path:
        if self.db_path:
            return Path(self.db_path).expanduser()
        return self.project_storage_dir / "streams.db"

    @property
    def lock_file_path(self) -> Path:
        return self.project_storage_dir / ".api-server.lock"

    def validate(self) -> None:
        if not self.project_root:
            raise ValidationError("project_root", "is required")
        if not self.project_name:
            raise ValidationError("project_root", "project name could not be determined")
        if self.api_port is not None and not 1 <= self.api_port <= 65535:
            raise ValidationError("api_port", f"{self.api_port} must be between 1-65535")
        if self.port_attempts < 1:
            raise ValidationError("port_attempts", "must be >= 1")

    # ── LLM keys ──────────────────────────────────────────────────────────

    def inject_api_key(self) -> None:
        """Export api_key under the env var name litellm expects for the model."""
        if not self.api_key:
            return

        env_var = self._env_var_for_model()
        if env_var:
            os.environ.setdefault(env_var, self.api_key.strip())

    def _env_var_for_model(self) -> Optional[str]:
        model_lower = self.llm_model.lower()
        for keyword, env_var in _MODEL_ENV_KEYS.items():
            if keyword in model_lower:
                return env_var
        return None

    def check_api_key(self) -> Optional[str]:
        """Return None if an API key is available, else an error message."""
        env_var = self._env_var_for_model()
        if not env_var:
            return f"Unknown provider for model '{self.llm_model}'"
        if self.api_key or os.getenv(env_var):
            return None
        return f"Missing API key: set 'api_key' in config.yaml or export {env_var}"

    def as_dict(self) -> Dict[str, Any]:
        return {
            "project_root": str(self.resolved_project_root),
            "project_name": self.project_name,
            "worktree_root": str(self.resolved_worktree_root),
            "db_path": str(self.resolved_db_path),
            "lock_file_path": str(self.lock_file_path),
            "api_port": self.api_port,
            "api_enabled": self.api_enabled,
            "main_branch": self.main_branch,
            "llm_model": self.llm_model,
        }


def _config_path(path: Optional[str]) -> Path:
    return Path(
        path or os.getenv("STREAMSTATUS_CONFIG", _DEFAULT_CONFIG_PATH)
    ).expanduser()


def _read_yaml(config_path: Path) -> Dict[str, Any]:
    if not config_path.exists():
        return {}
    with open(config_path) as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        raise ValidationError("config", f"{config_path} must contain a mapping")
    return data
