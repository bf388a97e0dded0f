"""Decides whether Top SQL is collected and records the topology's instances."""

from __future__ import annotations

import logging
import time
from collections.abc import Iterable
from dataclasses import dataclass

from topsqlkit.store import COMPONENT_TIDB, COMPONENT_TIKV, InstanceItem

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class Component:
    """A cluster component as reported by the topology."""

    name: str
    ip: str = ""
    port: int = 0
    status_port: int = 0


class SubscriberController:
    """Tracks the Top SQL switch and the current topology for a store."""

    def __init__(self, store) -> None:
        self.store = store
        self._enabled = False
        self.components: list[Component] = []

    def name(self) -> str:
        return "Top SQL"

    def is_enabled(self) -> bool:
        return self._enabled

    def update_variable(self, enable_top_sql: bool) -> None:
        self._enabled = bool(enable_top_sql)

    def update_topology(self, components: Iterable[Component]) -> None:
        """Remember the topology and, when enabled, store its instances."""
        self.components = list(components)
        if self._enabled:
            try:
                self.store_topology()
            except Exception as exc:  # the store's failure must not stop topology updates
                log.warning("failed to store topology: %s", exc)

    def store_topology(self) -> None:
        """Write one instance point per TiDB and TiKV component, stamped now."""
        if not self.components:
            return
        now = int(time.time())
        items = []
        for component in self.components:
            if component.name == COMPONENT_TIDB:
                address = f"{component.ip}:{component.status_port}"
            elif component.name == COMPONENT_TIKV:
                address = f"{component.ip}:{component.port}"
            else:
                continue
            items.append(InstanceItem(instance=address, instance_type=component.name, timestamp_sec=now))
        self.store.instances(items)