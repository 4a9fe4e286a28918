# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

from __future__ import annotations

from typing import Any, Mapping, TypeVar

from jinja2 import Environment, StrictUndefined
from jinja2.exceptions import TemplateError
from pydantic import BaseModel

from ..errors import ConfigError

M = TypeVar("M", bound=BaseModel)


class TemplateRenderer:
    """Renders ``{{ var }}`` references inside step definitions."""

    def __init__(self, variables: Mapping[str, Any]):
        self.env = Environment(autoescape=False, undefined=StrictUndefined, keep_trailing_newline=True)
        self.variables = dict(variables)

    def render_text(self, text: str, extra: Mapping[str, Any] | None = None) -> str:
        if "{{" not in text and "{%" not in text:
            return text
        ctx = {**self.variables, **(extra or {})}
        try:
            return self.env.from_string(text).render(**ctx)
        except TemplateError as e:
            raise ConfigError(f"Cannot render template {text!r}: {e}") from e

    def render_value(self, value: Any, extra: Mapping[str, Any] | None = None) -> Any:
        if isinstance(value, str):
            return self.render_text(value, extra)
        if isinstance(value, list):
            return [self.render_value(v, extra) for v in value]
        if isinstance(value, dict):
            return {k: self.render_value(v, extra) for k, v in value.items()}
        return value

    def render_model(self, model: M, extra: Mapping[str, Any] | None = None) -> M:
        data = model.model_dump(mode="json")
        return type(model).model_validate(self.render_value(data, extra))
