"""YAML configuration loader.

Loads a single YAML file layered over the TASKDECK_* environment
defaults. Every section is optional.

Example YAML:
    engine:
      max_concurrency: 3
      default_provider: claude
      default_model: sonnet
      session_timeout_seconds: 3600
      inactivity_timeout_seconds: 600
      transcript_dir: ~/.taskdeck/transcripts

    providers:
      claude:
        command: claude
        models:
          fast: claude-haiku-4-5-20251001
        allowed_tools: [Read, Grep, Glob, Edit, Write, Bash]
      cursor:
        command: cursor-agent
        api_key_env: CURSOR_API_KEY
        min_version: "2025.9.0"
      opencode:
        enabled: false

    projects:
      webapp:
        root: ~/src/webapp
        max_concurrency: 2
"""
from __future__ import annotations

import logging
from dataclasses import fields
from pathlib import Path
from typing import Any

import yaml

from .config import EngineConfig, ProjectSettings, ProviderSettings
from .models import ProviderKind

logger = logging.getLogger(__name__)

_FLOAT_KEYS = {
    "session_timeout_seconds",
    "inactivity_timeout_seconds",
    "cancel_grace_seconds",
    "worktree_lock_timeout_seconds",
    "provider_probe_ttl_seconds",
    "provider_probe_timeout_seconds",
}
_INT_KEYS = {"max_concurrency", "max_turns"}
_STR_KEYS = {
    "default_provider",
    "default_model",
    "worktree_dir",
    "transcript_dir",
    "log_level",
}


def load_yaml_config(
    path: str | Path,
    base: EngineConfig | None = None,
) -> EngineConfig:
    """Load and parse a YAML config file.

    Values from *path* override those of *base* (``EngineConfig.from_env()``
    when omitted). Raises ``ValueError`` for invalid values, and lets
    ``FileNotFoundError`` / ``yaml.YAMLError`` propagate after logging.
    """
    path = Path(path).expanduser()
    logger.info(
        "load_yaml_config: attempting to load config from %s (exists=%s)",
        path, path.exists(),
    )
    try:
        with open(path) as f:
            raw = yaml.safe_load(f) or {}
    except FileNotFoundError:
        logger.error(
            "load_yaml_config: config file not found at %s (absolute path: %s)",
            path, path.absolute(),
        )
        raise
    except yaml.YAMLError as exc:
        logger.error("load_yaml_config: YAML parse error in %s: %s", path, exc)
        raise

    if not isinstance(raw, dict):
        raise ValueError(f"{path}: top level must be a mapping")

    top_sections = sorted(raw.keys())
    logger.info(
        "Parsed YAML config %s: sections: %s",
        path.name, ", ".join(top_sections) if top_sections else "(empty)",
    )

    config = base if base is not None else EngineConfig.from_env()
    _apply_engine_section(config, raw.get("engine") or {})

    for name, cfg in (raw.get("providers") or {}).items():
        config.providers[str(name)] = _parse_provider(str(name), cfg or {})

    for project_id, cfg in (raw.get("projects") or {}).items():
        config.projects[str(project_id)] = _parse_project(
            str(project_id), cfg or {}, path.parent,
        )

    config.validate()
    logger.info(
        "load_yaml_config: %d provider override(s), %d project(s)",
        len(config.providers), len(config.projects),
    )
    return config


def _apply_engine_section(config: EngineConfig, engine_raw: dict[str, Any]) -> None:
    known = {f.name for f in fields(EngineConfig)}
    for key, value in engine_raw.items():
        if key not in known or key in {"providers", "projects", "event_callback"}:
            logger.warning("load_yaml_config: ignoring unknown engine key %r", key)
            continue
        if key in _FLOAT_KEYS:
            value = float(value)
        elif key in _INT_KEYS:
            value = int(value)
        elif key in _STR_KEYS and value is not None:
            value = str(value)
        setattr(config, key, value)


def _parse_provider(name: str, cfg: dict[str, Any]) -> ProviderSettings:
    if name not in {k.value for k in ProviderKind}:
        raise ValueError(
            f"providers.{name}: unknown provider "
            f"(expected one of {', '.join(k.value for k in ProviderKind)})"
        )
    models = cfg.get("models") or {}
    if isinstance(models, list):
        # A bare list only declares supported ids.
        models = {str(m): str(m) for m in models}
    allowed_tools = cfg.get("allowed_tools")
    min_version = cfg.get("min_version")
    return ProviderSettings(
        command=cfg.get("command"),
        api_key_env=cfg.get("api_key_env"),
        models={str(k): str(v) for k, v in models.items()},
        allowed_tools=list(allowed_tools) if allowed_tools is not None else None,
        min_version=str(min_version) if min_version is not None else None,
        enabled=bool(cfg.get("enabled", True)),
    )


def _parse_project(
    project_id: str, cfg: dict[str, Any], config_dir: Path,
) -> ProjectSettings:
    root = cfg.get("root")
    if not root:
        raise ValueError(f"projects.{project_id}: 'root' is required")
    root_path = Path(str(root)).expanduser()
    if not root_path.is_absolute():
        root_path = (config_dir / root_path).resolve()
    max_concurrency = cfg.get("max_concurrency")
    return ProjectSettings(
        root=str(root_path),
        max_concurrency=int(max_concurrency) if max_concurrency is not None else None,
    )
