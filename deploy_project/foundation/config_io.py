"""Locating and reading `config/config.yaml`, plus plain YAML descriptor files."""

from __future__ import annotations

import os
from collections.abc import Mapping
from pathlib import Path
from typing import Any

import yaml

CONFIG_ENV_VAR = "DEPLOY_PROJECT_CONFIG"
BASE_CONFIG_NAME = "config.yaml"
LOCAL_OVERLAY_NAME = "config.local.yaml"
REPO_MARKERS = ("pyproject.toml", ".git")


def find_repo_root(start: str | os.PathLike[str] | None = None) -> str:
    start_path = Path(start or os.getcwd()).resolve()
    if start_path.is_file():
        start_path = start_path.parent

    for candidate in (start_path, *start_path.parents):
        if any((candidate / marker).exists() for marker in REPO_MARKERS):
            return str(candidate)

    raise FileNotFoundError(f"Cannot locate repo root: no {' or '.join(REPO_MARKERS)} above {start_path}")


def load_yaml_mapping(path: str | os.PathLike[str]) -> dict[str, Any]:
    """Load a YAML file that must contain a single mapping (or be empty)."""

    with open(path, "r", encoding="utf-8") as handle:
        try:
            payload = yaml.safe_load(handle)
        except yaml.YAMLError as exc:
            raise ValueError(f"Invalid YAML in {path}: {exc}") from exc

    if payload is None:
        return {}
    if not isinstance(payload, Mapping):
        raise ValueError(f"YAML document must be a mapping: {path}")
    return dict(payload)


def merge_overlay(base: Mapping[str, Any], overlay: Mapping[str, Any], *, path: str = "") -> dict[str, Any]:
    """
    Apply `overlay` on top of `base`.

    Sections present in both merge key by key; any other value is replaced.
    A section can be cleared with `null` but not replaced by a scalar or list.
    """

    merged = dict(base)
    for key, value in overlay.items():
        where = f"{path}.{key}" if path else str(key)
        current = merged.get(key)
        if isinstance(current, Mapping) and isinstance(value, Mapping):
            merged[key] = merge_overlay(current, value, path=where)
        elif isinstance(current, Mapping) and value is not None:
            raise ValueError(
                f"Invalid config overlay merge at {where}: a {type(value).__name__} cannot replace a section"
            )
        else:
            merged[key] = value
    return merged


def load_config(
    *,
    config_path: str | None = None,
    env_var: str = CONFIG_ENV_VAR,
    config_rel_path: str = "config",
    start_dir: str | None = None,
) -> tuple[dict[str, Any], dict[str, Any]]:
    """
    Load configuration settings from YAML.

    An explicit `config_path` (or the env var) loads exactly one file. Otherwise
    `<repo_root>/config/config.yaml` is loaded and `config.local.yaml` next to
    it, when present, is merged on top.

    Returns `(cfg, meta)`; `meta` records which files were read.
    """

    if config_path is not None:
        explicit, mode = str(config_path).strip(), "explicit"
    else:
        explicit, mode = (os.environ.get(env_var, "").strip() if env_var else ""), "env"

    if explicit:
        resolved = os.path.abspath(os.path.expandvars(os.path.expanduser(explicit)))
        meta = {"mode": mode, "paths": [resolved], "env_var": env_var, "repo_root": None}
        return load_yaml_mapping(resolved), meta

    repo_root = None if os.path.isabs(config_rel_path) else find_repo_root(start_dir)
    config_dir = Path(config_rel_path) if repo_root is None else Path(repo_root) / config_rel_path

    base_path = config_dir / BASE_CONFIG_NAME
    if not base_path.is_file():
        raise FileNotFoundError(f"Missing base config file: {base_path}")
    cfg = load_yaml_mapping(base_path)
    paths = [str(base_path.resolve())]

    overlay_path = config_dir / LOCAL_OVERLAY_NAME
    if overlay_path.is_file():
        cfg = merge_overlay(cfg, load_yaml_mapping(overlay_path))
        paths.append(str(overlay_path.resolve()))

    meta = {
        "mode": "base+local" if len(paths) > 1 else "base",
        "paths": paths,
        "env_var": env_var,
        "repo_root": repo_root,
    }
    return cfg, meta
