# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/kubestrap/inventory/registry.py
from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Dict, Iterable, List, Mapping, Optional, Sequence, Union

from pydantic import ValidationError

from ..config.models import ConnectionSpec, HostSpec
from ..errors import ConfigError, TopologyError

log = logging.getLogger("kubestrap")


class Role(str, Enum):
    CONTROL_PLANE = "control-plane"
    WORKER = "worker"


@dataclass
class Host:
    """
    A machine the orchestrator drives. Only ``reachable`` changes after load,
    and only through :meth:`HostRegistry.probe`.
    """
    id: str
    address: str
    role: Role
    connection: ConnectionSpec
    node_name: str
    reachable: Optional[bool] = None

    def __str__(self) -> str:
        return self.id


class HostRegistry:
    def __init__(self, hosts: Sequence[Host]):
        self._hosts: List[Host] = list(hosts)
        self._by_id: Dict[str, Host] = {h.id: h for h in self._hosts}

    # ---------- loading ----------

    @classmethod
    def load(
        cls,
        source: Mapping[str, Union[str, HostSpec, Mapping, Iterable[Union[str, HostSpec, Mapping]]]],
        default_connection: Optional[ConnectionSpec] = None,
    ) -> "HostRegistry":
        """
        Build a registry from an inventory mapping of role -> host descriptors.
        A role may name a single descriptor instead of a list.

        Raises ConfigError on unknown roles or duplicate identifiers and
        TopologyError unless exactly one control-plane host is declared.
        """
        default_connection = default_connection or ConnectionSpec()
        valid_roles = {r.value for r in Role}
        hosts: List[Host] = []
        seen: set[str] = set()

        for role_name, entries in source.items():
            if role_name not in valid_roles:
                raise ConfigError(
                    f"Unknown role '{role_name}' in inventory. "
                    f"Valid roles: {', '.join(sorted(valid_roles))}"
                )
            role = Role(role_name)
            if isinstance(entries, (str, HostSpec, Mapping)):
                entries = [entries]
            for raw in entries or []:
                spec = _to_spec(raw)
                host_id = spec.name or spec.address
                if host_id in seen:
                    raise ConfigError(f"Duplicate host identifier '{host_id}' in inventory")
                seen.add(host_id)
                hosts.append(
                    Host(
                        id=host_id,
                        address=spec.address,
                        role=role,
                        connection=spec.connection or default_connection,
                        node_name=spec.node_name or host_id,
                    )
                )

        control_planes = [h for h in hosts if h.role is Role.CONTROL_PLANE]
        if len(control_planes) != 1:
            raise TopologyError(
                f"Exactly one '{Role.CONTROL_PLANE.value}' host is required, "
                f"found {len(control_planes)}"
            )

        log.debug("Loaded %d hosts (control-plane=%s)", len(hosts), control_planes[0].id)
        return cls(hosts)

    # ---------- queries ----------

    @property
    def hosts(self) -> List[Host]:
        return list(self._hosts)

    @property
    def control_plane(self) -> Host:
        return self.filter(Role.CONTROL_PLANE)[0]

    def get(self, host_id: str) -> Host:
        try:
            return self._by_id[host_id]
        except KeyError:
            raise ConfigError(f"Unknown host '{host_id}'") from None

    def filter(self, role: Union[Role, str]) -> List[Host]:
        """Hosts holding ``role``, in declaration order."""
        role = Role(role)
        return [h for h in self._hosts if h.role is role]

    def select(self, host_ids: Optional[Iterable[str]] = None) -> List[Host]:
        """
        Hosts named by ``host_ids`` (ids or addresses), in declaration order.
        ``None`` selects every host.
        """
        if host_ids is None:
            return self.hosts
        wanted = set(host_ids)
        known = set(self._by_id) | {h.address for h in self._hosts}
        unknown = wanted - known
        if unknown:
            raise ConfigError(f"Unknown hosts in filter: {', '.join(sorted(unknown))}")
        return [h for h in self._hosts if h.id in wanted or h.address in wanted]

    def probe(self, prober: Callable[[Host], bool], hosts: Optional[Iterable[Host]] = None) -> List[Host]:
        """Refresh ``reachable`` for ``hosts`` (default: all). Returns the unreachable ones."""
        down = []
        for host in hosts if hosts is not None else self._hosts:
            host.reachable = bool(prober(host))
            if not host.reachable:
                log.warning("[%s] host is not reachable at %s:%d", host.id, host.address, host.connection.port)
                down.append(host)
        return down

    def __iter__(self):
        return iter(self._hosts)

    def __len__(self) -> int:
        return len(self._hosts)


def _to_spec(raw: Union[str, HostSpec, Mapping]) -> HostSpec:
    if isinstance(raw, HostSpec):
        return raw
    if isinstance(raw, str):
        return HostSpec(address=raw)
    try:
        return HostSpec.model_validate(raw)
    except ValidationError as e:
        raise ConfigError(f"Invalid host descriptor {raw!r}: {e}") from e
