# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/kubestrap/steps/catalog.py
from __future__ import annotations

import logging
from importlib import resources
from pathlib import Path
from typing import Dict, List, Optional, Set

import yaml
from pydantic import TypeAdapter, ValidationError

from ..errors import ConfigError
from .models import Step

log = logging.getLogger("kubestrap")

_STEPS = TypeAdapter(List[Step])


def _read_default() -> str:
    return resources.files("kubestrap.steps").joinpath("bootstrap.yaml").read_text(encoding="utf-8")


def parse_steps(data: object, origin: str = "<steps>") -> List[Step]:
    """
    Validate a list of step mappings.

    Checks, in order: schema, unique ids, and that every ``requires`` entry
    names a known step in the same or an earlier phase.
    """
    if isinstance(data, dict):
        data = data.get("steps", [])
    try:
        steps = _STEPS.validate_python(data or [])
    except ValidationError as e:
        raise ConfigError(f"Invalid step catalog {origin}:\n{e}") from e

    ids: Set[str] = set()
    for s in steps:
        if s.id in ids:
            raise ConfigError(f"Duplicate step id '{s.id}' in {origin}")
        ids.add(s.id)

    idx = by_id(steps)
    for s in steps:
        for r in s.requires:
            if r not in idx:
                raise ConfigError(f"Step '{s.id}' requires unknown step '{r}'")
            if idx[r].phase.index > s.phase.index:
                raise ConfigError(
                    f"Step '{s.id}' ({s.phase.value}) requires '{r}' from later phase {idx[r].phase.value}"
                )
    return steps


def load_catalog(path: Optional[Path] = None) -> List[Step]:
    """Load a step catalog from ``path`` or the packaged kubeadm bootstrap."""
    if path is None:
        origin, text = "bootstrap.yaml", _read_default()
    else:
        origin = str(path)
        try:
            text = Path(path).read_text(encoding="utf-8")
        except OSError as e:
            raise ConfigError(f"Cannot read step catalog {path}: {e}") from e
    try:
        data = yaml.safe_load(text)
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in step catalog {origin}: {e}") from e
    steps = parse_steps(data, origin)
    log.debug("Loaded %d steps from %s", len(steps), origin)
    return steps


def by_id(steps: List[Step]) -> Dict[str, Step]:
    return {s.id: s for s in steps}
