# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/kubestrap/config/loader.py

import logging
import os
from pathlib import Path

import yaml
from pydantic import ValidationError

from ..errors import ConfigError
from .models import KubestrapConfig

log = logging.getLogger("kubestrap")


def _load_yaml(path: Path) -> dict:
    """Load a YAML file, expanding ${ENV_VAR} references."""
    try:
        raw = path.read_text()
    except OSError as e:
        raise ConfigError(f"Cannot read config file {path}: {e}") from e
    expanded = os.path.expandvars(raw)
    try:
        data = yaml.safe_load(expanded) or {}
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {path}: {e}") from e
    if not isinstance(data, dict):
        raise ConfigError(f"{path} must contain a mapping at the top level")
    return data


def load_config(path: str | Path) -> KubestrapConfig:
    """
    Load and validate a kubestrap YAML config.

    Relative ``state_file`` and ``steps_file`` paths are resolved against the
    directory holding the config so that runs are reproducible regardless of
    the caller's working directory.
    """
    path = Path(path)
    data = _load_yaml(path)
    log.debug("Loaded config from %s", path)

    try:
        cfg = KubestrapConfig.model_validate(data)
    except ValidationError as e:
        raise ConfigError(f"Invalid config {path}:\n{e}") from e

    base = path.resolve().parent
    updates = {}
    if not cfg.state_file.is_absolute():
        updates["state_file"] = base / cfg.state_file
    if cfg.steps_file is not None and not cfg.steps_file.is_absolute():
        updates["steps_file"] = base / cfg.steps_file
    if updates:
        cfg = cfg.model_copy(update=updates)
    return cfg
