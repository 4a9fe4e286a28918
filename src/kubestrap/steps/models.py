# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/kubestrap/steps/models.py
from __future__ import annotations

import shlex
from typing import Annotated, List, Literal, Optional, Tuple, Union

from pydantic import BaseModel, ConfigDict, Field

from ..deploy.phases import Phase
from ..inventory.registry import Role
from .conditions import (
    FileContains,
    FileExists,
    PackageInstalled,
    PostCondition,
    ServiceActive as ServiceIsActive,
    ServiceEnabled,
)


def _all_roles() -> List[Role]:
    return [Role.CONTROL_PLANE, Role.WORKER]


class _Step(BaseModel):
    """
    One idempotent provisioning action. Immutable once loaded.

    ``requires`` names steps (by id) that must be satisfied on the same host
    before this one may run.
    """
    model_config = ConfigDict(frozen=True, extra="forbid")

    id: str
    phase: Phase
    roles: List[Role] = Field(default_factory=_all_roles)
    requires: List[str] = Field(default_factory=list)
    description: str = ""
    sudo: bool = True
    timeout: Optional[float] = None

    def applies_to(self, role: Role) -> bool:
        return role in self.roles

    def postcondition(self) -> PostCondition:  # pragma: no cover - abstract
        raise NotImplementedError

    def uploads(self) -> List[Tuple[str, str, int]]:
        """(content, remote_path, mode) triples pushed before ``commands``."""
        return []

    def commands(self) -> List[str]:  # pragma: no cover - abstract
        raise NotImplementedError


class PackagePresent(_Step):
    kind: Literal["package-present"] = "package-present"
    packages: List[str]
    update_cache: bool = True
    hold: bool = False

    def postcondition(self) -> PostCondition:
        return PackageInstalled(packages=self.packages)

    def commands(self) -> List[str]:
        pkgs = " ".join(shlex.quote(p) for p in self.packages)
        cmds = []
        if self.update_cache:
            cmds.append("apt-get update -y")
        cmds.append(f"DEBIAN_FRONTEND=noninteractive apt-get install -y {pkgs}")
        if self.hold:
            cmds.append(f"apt-mark hold {pkgs}")
        return cmds


class FileBlockPresent(_Step):
    """Keep a marker-delimited block of lines in a file."""
    kind: Literal["file-block-present"] = "file-block-present"
    path: str
    block: str
    marker: str = "kubestrap"
    mode: int = 0o644
    then_run: Optional[str] = None

    @property
    def lines(self) -> List[str]:
        return [ln for ln in self.block.splitlines() if ln.strip()]

    @property
    def staging_path(self) -> str:
        return f"/tmp/.kubestrap.{self.id}.block"

    def postcondition(self) -> PostCondition:
        return FileContains(path=self.path, lines=self.lines)

    def uploads(self) -> List[Tuple[str, str, int]]:
        body = "\n".join(self.lines)
        content = f"# BEGIN {self.marker}\n{body}\n# END {self.marker}\n"
        return [(content, self.staging_path, 0o600)]

    def commands(self) -> List[str]:
        path = shlex.quote(self.path)
        staging = shlex.quote(self.staging_path)
        begin = f"# BEGIN {self.marker}".replace("/", r"\/")
        end = f"# END {self.marker}".replace("/", r"\/")
        cmds = [
            f"install -d $(dirname {path})",
            f"touch {path}",
            f"chmod {oct(self.mode)[2:]} {path}",
            f"sed -i {shlex.quote(f'/^{begin}$/,/^{end}$/d')} {path}",
            f"cat {staging} >> {path}",
            f"rm -f {staging}",
        ]
        if self.then_run:
            cmds.append(self.then_run)
        return cmds


class ServiceActive(_Step):
    kind: Literal["service-active"] = "service-active"
    service: str
    # "enabled" only enables at boot (kubelet crash-loops until kubeadm runs)
    state: Literal["active", "enabled"] = "active"

    def postcondition(self) -> PostCondition:
        if self.state == "enabled":
            return ServiceEnabled(service=self.service)
        return ServiceIsActive(service=self.service)

    def commands(self) -> List[str]:
        svc = shlex.quote(self.service)
        if self.state == "enabled":
            return ["systemctl daemon-reload", f"systemctl enable {svc}"]
        return ["systemctl daemon-reload", f"systemctl enable --now {svc}"]


class CommandWithGuard(_Step):
    kind: Literal["command-with-guard"] = "command-with-guard"
    command: Union[str, List[str]]
    guard: PostCondition

    def postcondition(self) -> PostCondition:
        return self.guard

    def commands(self) -> List[str]:
        if isinstance(self.command, str):
            return [self.command]
        return list(self.command)


class ClusterJoin(_Step):
    """
    Admit a worker into the cluster. Executed through the join coordinator,
    never as a plain command.
    """
    kind: Literal["cluster-join"] = "cluster-join"
    roles: List[Role] = Field(default_factory=lambda: [Role.WORKER])
    marker: str = "/etc/kubernetes/kubelet.conf"

    def postcondition(self) -> PostCondition:
        return FileExists(path=self.marker)

    def commands(self) -> List[str]:
        return []


Step = Annotated[
    Union[PackagePresent, FileBlockPresent, ServiceActive, CommandWithGuard, ClusterJoin],
    Field(discriminator="kind"),
]
