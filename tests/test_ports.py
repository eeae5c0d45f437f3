"""Tests for port allocation."""

from pathlib import Path

import pytest

from branchpod.models import ServerProcess, ServerStatus
from branchpod.ports import PortAllocator, lowest_free_port, used_ports
from branchpod.storage import RegistryStore


def entry(branch: str, port: int, status: ServerStatus) -> ServerProcess:
    return ServerProcess(
        project="acme", branch=branch, port=port, pid=1, status=status, command="x"
    )


def test_used_ports_only_counts_active_entries() -> None:
    entries = [
        entry("a", 3200, ServerStatus.RUNNING),
        entry("b", 3201, ServerStatus.STARTING),
        entry("c", 3202, ServerStatus.STOPPED),
        entry("d", 3203, ServerStatus.ERROR),
    ]
    assert used_ports(entries) == {3200, 3201}


def test_lowest_free_port_skips_taken() -> None:
    assert lowest_free_port(3200, set()) == 3200
    assert lowest_free_port(3200, {3200, 3201, 3203}) == 3202
    assert lowest_free_port(3200, {3100, 3199}) == 3200


class TestPortAllocator:
    @pytest.mark.asyncio
    async def test_next_free_port_reads_registry(self, tmp_path: Path) -> None:
        store = RegistryStore(tmp_path / "servers.json")
        await store.save(
            {
                "acme": [entry("a", 3200, ServerStatus.RUNNING)],
                "other": [entry("b", 3201, ServerStatus.STARTING)],
            }
        )
        allocator = PortAllocator(store)

        assert await allocator.next_free_port(3200) == 3202
        assert await allocator.is_free(3200) is False
        assert await allocator.is_free(3202) is True

    @pytest.mark.asyncio
    async def test_stopped_ports_are_reused(self, tmp_path: Path) -> None:
        store = RegistryStore(tmp_path / "servers.json")
        await store.save({"acme": [entry("a", 3200, ServerStatus.STOPPED)]})

        assert await PortAllocator(store).next_free_port(3200) == 3200

    @pytest.mark.asyncio
    async def test_explicit_entries_skip_the_store(self, tmp_path: Path) -> None:
        allocator = PortAllocator(RegistryStore(tmp_path / "servers.json"))
        entries = [entry("a", 3200, ServerStatus.RUNNING)]

        assert await allocator.next_free_port(3200, entries) == 3201
