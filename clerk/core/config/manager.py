"""
ConfigManager: dynamic, dot-notation configuration access for Clerk.

Purpose
-------
- Provide hierarchical, dot-notation access to tunable engine settings
  (lockout thresholds, cache TTLs, sync interval, geo lookup, default rank).
- Back configuration with YAML defaults from the ``config/`` directory plus
  in-process runtime overrides.

Responsibilities
----------------
- Load and deep-merge every YAML file under ``Config.CONFIG_DIR``.
- Serve reads from an in-memory map, falling back to YAML defaults and then
  to the caller's default.
- Apply runtime overrides (admin tooling, tests) without touching YAML.

Non-Responsibilities
--------------------
- Environment/static settings (see ``clerk.core.config.config.Config``).
- Persisting overrides; they live for the lifetime of the process.

Design Notes
------------
- Every call site passes its own default, so a missing ``config/`` directory
  leaves the engine fully functional.
- ``get`` never raises; lookup problems are logged and resolved to defaults.

Dependencies
------------
- PyYAML (``yaml.safe_load``)
- ``clerk.core.logging.logger.get_logger``
"""

from __future__ import annotations

import asyncio
import copy
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, MutableMapping, Optional

import yaml

from clerk.core.config.config import Config
from clerk.core.logging.logger import get_logger

logger = get_logger(__name__)

_MISSING = object()


@dataclass
class ConfigMetrics:
    gets: int = 0
    hits: int = 0
    fallback_to_defaults: int = 0
    misses: int = 0
    overrides_applied: int = 0
    yaml_files_loaded: int = 0


class ConfigManager:
    """
    Engine configuration with YAML defaults and runtime overrides.

    Examples
    --------
    >>> ConfigManager.get("auth.lockout.permanent_after", 20)
    20
    >>> ConfigManager.set_override("sync.auto_sync", "5m")
    """

    _defaults: Dict[str, Any] = {}
    _cache: Dict[str, Any] = {}
    _initialized: bool = False
    _init_lock: asyncio.Lock = asyncio.Lock()
    _metrics: ConfigMetrics = ConfigMetrics()

    # =========================================================================
    # YAML LOADING
    # =========================================================================

    @staticmethod
    def _deep_merge_dict(
        target: MutableMapping[str, Any],
        source: MutableMapping[str, Any],
    ) -> None:
        """Recursively merge `source` into `target` (in-place)."""
        for key, value in source.items():
            if isinstance(value, dict) and isinstance(target.get(key), dict):
                ConfigManager._deep_merge_dict(target[key], value)
            else:
                target[key] = copy.deepcopy(value)

    @classmethod
    def _load_yaml_configs(cls, config_dir: Optional[Path] = None) -> None:
        config_dir = Path(config_dir or Config.CONFIG_DIR)
        if not config_dir.exists():
            logger.warning(
                "Config directory not found; using built-in defaults only",
                extra={"config_dir": str(config_dir)},
            )
            return

        yaml_files = sorted(config_dir.rglob("*.yaml")) + sorted(config_dir.rglob("*.yml"))
        for yaml_file in yaml_files:
            try:
                with yaml_file.open("r", encoding="utf-8") as handle:
                    data = yaml.safe_load(handle)
            except (OSError, yaml.YAMLError) as exc:
                logger.warning(
                    "Failed to load YAML config",
                    extra={
                        "file": str(yaml_file),
                        "error": str(exc),
                        "error_type": type(exc).__name__,
                    },
                )
                continue

            if isinstance(data, dict):
                cls._deep_merge_dict(cls._defaults, data)
                cls._metrics.yaml_files_loaded += 1
                logger.debug("Loaded YAML config", extra={"file": str(yaml_file)})
            elif data is not None:
                logger.warning(
                    "Ignoring non-dict YAML root object",
                    extra={"file": str(yaml_file), "root_type": type(data).__name__},
                )

    # =========================================================================
    # LIFECYCLE
    # =========================================================================

    @classmethod
    async def initialize(cls, config_dir: Optional[Path] = None) -> None:
        """Load YAML defaults (idempotent)."""
        async with cls._init_lock:
            if cls._initialized:
                return
            cls._load_defaults(config_dir)

    @classmethod
    def _load_defaults(cls, config_dir: Optional[Path] = None) -> None:
        cls._defaults = {}
        cls._load_yaml_configs(config_dir)
        cls._cache = copy.deepcopy(cls._defaults)
        cls._initialized = True
        logger.info(
            "ConfigManager initialized",
            extra={
                "yaml_file_count": cls._metrics.yaml_files_loaded,
                "top_level_keys": sorted(cls._cache),
            },
        )

    @classmethod
    def reset(cls) -> None:
        """Drop all loaded values and overrides."""
        cls._defaults = {}
        cls._cache = {}
        cls._initialized = False
        cls._metrics = ConfigMetrics()

    # =========================================================================
    # READS
    # =========================================================================

    @staticmethod
    def _traverse(root: Dict[str, Any], key: str) -> Any:
        value: Any = root
        for part in key.split("."):
            if not isinstance(value, dict) or part not in value:
                return _MISSING
            value = value[part]
        return value

    @classmethod
    def get(cls, key: str, default: Any = None) -> Any:
        """
        Retrieve a configuration value by dot-notation path.

        Resolution order: runtime cache (defaults + overrides), YAML defaults,
        then ``default``. A ``None`` stored value resolves to ``default``.
        """
        cls._metrics.gets += 1

        if not cls._initialized:
            logger.debug("ConfigManager read before initialization; loading defaults")
            cls._load_defaults()

        value = cls._traverse(cls._cache, key)
        if value is not _MISSING and value is not None:
            cls._metrics.hits += 1
            return value

        fallback = cls._traverse(cls._defaults, key)
        if fallback is not _MISSING and fallback is not None:
            cls._metrics.fallback_to_defaults += 1
            return fallback

        cls._metrics.misses += 1
        return default

    # =========================================================================
    # OVERRIDES
    # =========================================================================

    @classmethod
    def set_override(cls, key: str, value: Any) -> None:
        """Set an in-process override for a dot-notation key."""
        if not cls._initialized:
            cls._load_defaults()

        parts = key.split(".")
        node = cls._cache
        for part in parts[:-1]:
            child = node.get(part)
            if not isinstance(child, dict):
                child = {}
                node[part] = child
            node = child
        node[parts[-1]] = value
        cls._metrics.overrides_applied += 1
        logger.info("Config override applied", extra={"config_key": key})

    @classmethod
    def clear_overrides(cls) -> None:
        cls._cache = copy.deepcopy(cls._defaults)

    @classmethod
    def get_metrics(cls) -> Dict[str, Any]:
        return {
            "gets": cls._metrics.gets,
            "hits": cls._metrics.hits,
            "fallback_to_defaults": cls._metrics.fallback_to_defaults,
            "misses": cls._metrics.misses,
            "overrides_applied": cls._metrics.overrides_applied,
            "yaml_files_loaded": cls._metrics.yaml_files_loaded,
        }
