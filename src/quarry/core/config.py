"""Configuration manager: defaults, persisted JSON settings and environment overrides."""

import json
import logging
import os
from pathlib import Path
from typing import Any, Dict, Optional

from dotenv import load_dotenv

from .embeddings import EmbeddingConfig

# Load environment variables
load_dotenv()

logger = logging.getLogger(__name__)

ENV_PREFIX = "QUARRY_"
EMBED_BACKENDS = ("local", "openai")
FUSION_NORMALIZATIONS = ("max", "rrf")

DEFAULT_CONFIG: Dict[str, Any] = {
    "index_dir": "./quarry_index",
    "embed_backend": "local",
    "local_embedding_model": "all-MiniLM-L6-v2",
    "openai_embedding_model": "text-embedding-3-small",
    "embed_batch_size": 32,
    "embed_device": "cpu",
    "default_limit": 10,
    "max_workers": 4,
    "search_timeout": 60.0,
    "fusion_normalization": "max",
    "rrf_k": 60,
    "log_level": "INFO",
    "json_logs": False,
}


def _coerce(value: str, default: Any) -> Any:
    """Convert an environment string to the type of the default value."""
    if isinstance(default, bool):
        return value.strip().lower() in ("1", "true", "yes", "on")
    if isinstance(default, int):
        return int(value)
    if isinstance(default, float):
        return float(value)
    return value


class QuarryConfigManager:
    """Manage quarry configuration settings with persistence."""

    def __init__(self, config_dir: str = "./config"):
        self.config_dir = Path(config_dir)
        self.config_file = self.config_dir / "quarry.json"
        self.config = self._load_config()

    def _load_config(self) -> Dict[str, Any]:
        """Merge defaults, the config file and QUARRY_* environment variables."""
        config = dict(DEFAULT_CONFIG)

        if self.config_file.exists():
            try:
                with open(self.config_file, "r") as f:
                    config.update(json.load(f))
                logger.info("Configuration loaded from file")
            except (OSError, json.JSONDecodeError) as e:
                logger.warning(f"Failed to load config file: {e}, using defaults")

        for key, default in DEFAULT_CONFIG.items():
            raw = os.getenv(ENV_PREFIX + key.upper())
            if raw is None:
                continue
            try:
                config[key] = _coerce(raw, default)
            except ValueError:
                logger.warning(f"Ignoring invalid {ENV_PREFIX}{key.upper()}={raw!r}")

        return config

    def _save_config(self) -> None:
        self.config_dir.mkdir(parents=True, exist_ok=True)
        with open(self.config_file, "w") as f:
            json.dump(self.config, f, indent=2)
        logger.info("Configuration saved to file")

    def get(self, key: str, default: Any = None) -> Any:
        """Get configuration value."""
        return self.config.get(key, default)

    def set(self, key: str, value: Any, persist: bool = True) -> None:
        """Set configuration value; strings are converted to the key's type."""
        if key not in DEFAULT_CONFIG:
            raise KeyError(f"Unknown configuration key: {key}")
        if isinstance(value, str):
            value = _coerce(value, DEFAULT_CONFIG[key])
        self.config[key] = value

        if persist:
            self._save_config()

        logger.info(f"Set {key} = {value}")

    def reset(self, key: str, persist: bool = True) -> None:
        """Reset configuration value to default."""
        if key not in DEFAULT_CONFIG:
            raise KeyError(f"Unknown configuration key: {key}")
        self.set(key, DEFAULT_CONFIG[key], persist)

    def get_all(self) -> Dict[str, Any]:
        """Get all configuration values."""
        return self.config.copy()

    def validate(self) -> Dict[str, Any]:
        """Validate current configuration."""
        validation = {
            "valid": True,
            "issues": [],
            "warnings": [],
        }

        if self.get("embed_backend") not in EMBED_BACKENDS:
            validation["issues"].append(
                f"embed_backend must be one of {', '.join(EMBED_BACKENDS)}"
            )
        if self.get("fusion_normalization") not in FUSION_NORMALIZATIONS:
            validation["issues"].append(
                f"fusion_normalization must be one of {', '.join(FUSION_NORMALIZATIONS)}"
            )

        for key in ("embed_batch_size", "default_limit", "max_workers", "rrf_k"):
            value = self.get(key)
            if not isinstance(value, int) or isinstance(value, bool) or value < 1:
                validation["issues"].append(f"{key} must be a positive integer")

        timeout = self.get("search_timeout")
        if not isinstance(timeout, (int, float)) or timeout <= 0:
            validation["issues"].append("search_timeout must be a positive number")

        if self.get("embed_backend") == "openai" and not os.getenv("OPENAI_API_KEY"):
            validation["warnings"].append("OPENAI_API_KEY not set (required for the openai backend)")

        index_dir = Path(self.get("index_dir", ""))
        if not index_dir.exists():
            validation["warnings"].append(f"Index directory not found: {index_dir}")

        validation["valid"] = not validation["issues"]
        return validation

    def embedding_config(self) -> EmbeddingConfig:
        """Embedding settings derived from this configuration."""
        return EmbeddingConfig(
            backend=self.get("embed_backend"),
            local_model=self.get("local_embedding_model"),
            openai_model=self.get("openai_embedding_model"),
            batch_size=self.get("embed_batch_size"),
            device=self.get("embed_device"),
            openai_api_key=os.getenv("OPENAI_API_KEY"),
        )


def get_config_manager(config_dir: Optional[str] = None) -> QuarryConfigManager:
    """Get a configuration manager for QUARRY_CONFIG_DIR (default ./config)."""
    config_dir = config_dir or os.getenv("QUARRY_CONFIG_DIR", "./config")
    return QuarryConfigManager(config_dir)


__all__ = [
    "DEFAULT_CONFIG",
    "EMBED_BACKENDS",
    "FUSION_NORMALIZATIONS",
    "QuarryConfigManager",
    "get_config_manager",
]
