"""Port allocation for development servers."""

from __future__ import annotations

from collections.abc import Iterable

from branchpod.models import ServerProcess
from branchpod.storage.registry_store import RegistryStore


def used_ports(entries: Iterable[ServerProcess]) -> set[int]:
    """Ports held by entries with status starting or running."""
    return {entry.port for entry in entries if entry.is_active}


def lowest_free_port(base: int, taken: set[int]) -> int:
    port = base
    while port in taken:
        port += 1
    return port


class PortAllocator:
    """Chooses the lowest free port >= a base, from the registry's view.

    Advisory only: nothing is reserved between allocation and spawn, so two
    concurrent starts for different branches can pick the same port.
    Callers already holding a loaded registry pass its entries to avoid a
    second read.
    """

    def __init__(self, store: RegistryStore) -> None:
        self._store = store

    async def _entries(self, entries: Iterable[ServerProcess] | None) -> Iterable[ServerProcess]:
        if entries is not None:
            return entries
        return await self._store.all_entries()

    async def next_free_port(
        self, base: int, entries: Iterable[ServerProcess] | None = None
    ) -> int:
        return lowest_free_port(base, used_ports(await self._entries(entries)))

    async def is_free(self, port: int, entries: Iterable[ServerProcess] | None = None) -> bool:
        return port not in used_ports(await self._entries(entries))
