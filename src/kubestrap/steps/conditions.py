# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/kubestrap/steps/conditions.py
"""
Post-conditions: observable host state proving a step is done.

Each condition renders to a shell probe; exit status 0 means satisfied.
"""
from __future__ import annotations

import shlex
from typing import Annotated, List, Literal, Union

from pydantic import BaseModel, ConfigDict, Field


class _Condition(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    def probe(self) -> str:  # pragma: no cover - abstract
        raise NotImplementedError


class PackageInstalled(_Condition):
    kind: Literal["package-installed"] = "package-installed"
    packages: List[str]

    def probe(self) -> str:
        return " && ".join(
            f"dpkg-query -W -f='${{Status}}' {shlex.quote(p)} 2>/dev/null | grep -q 'install ok installed'"
            for p in self.packages
        )


class FileContains(_Condition):
    kind: Literal["file-contains"] = "file-contains"
    path: str
    lines: List[str]

    def probe(self) -> str:
        path = shlex.quote(self.path)
        checks = [f"test -f {path}"]
        checks += [f"grep -qxF -- {shlex.quote(ln)} {path}" for ln in self.lines]
        return " && ".join(checks)


class FileExists(_Condition):
    kind: Literal["file-exists"] = "file-exists"
    path: str

    def probe(self) -> str:
        return f"test -e {shlex.quote(self.path)}"


class ServiceActive(_Condition):
    kind: Literal["service-active"] = "service-active"
    service: str

    def probe(self) -> str:
        return f"systemctl is-active --quiet {shlex.quote(self.service)}"


class ServiceEnabled(_Condition):
    kind: Literal["service-enabled"] = "service-enabled"
    service: str

    def probe(self) -> str:
        return f"systemctl is-enabled --quiet {shlex.quote(self.service)}"


class CommandSucceeds(_Condition):
    kind: Literal["command-succeeds"] = "command-succeeds"
    command: str

    def probe(self) -> str:
        return self.command


PostCondition = Annotated[
    Union[PackageInstalled, FileContains, FileExists, ServiceActive, ServiceEnabled, CommandSucceeds],
    Field(discriminator="kind"),
]
