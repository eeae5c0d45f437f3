"""File-backed registry of development server entries.

The registry is best-effort state, not a ledger: a missing or corrupt file
reads as empty, and write failures are logged rather than raised. It is the
only state assumed to survive an orchestrator restart.
"""

from __future__ import annotations

import asyncio
import json
import os
import tempfile
from pathlib import Path
from typing import Any

import structlog
from pydantic import ValidationError

from branchpod.errors import PersistenceError
from branchpod.models import ServerProcess

logger = structlog.get_logger()

Registry = dict[str, list[ServerProcess]]


class RegistryStore:
    """JSON file store keyed by project, holding one entry per branch.

    No locking is done here: callers serialize read-modify-write cycles per
    project.
    """

    def __init__(self, path: str | Path) -> None:
        self._path = Path(path)

    @property
    def path(self) -> Path:
        return self._path

    async def load(self) -> Registry:
        """Load every project's entries; never raises."""
        return await asyncio.to_thread(self._read)

    async def save(self, registry: Registry) -> None:
        """Persist the whole registry; failures are logged and swallowed."""
        try:
            await asyncio.to_thread(self._write, registry)
        except PersistenceError as e:
            logger.warning("Failed to persist server registry", path=str(self._path), error=str(e))

    async def project_entries(self, project: str) -> list[ServerProcess]:
        registry = await self.load()
        return list(registry.get(project, []))

    async def all_entries(self) -> list[ServerProcess]:
        registry = await self.load()
        return [entry for entries in registry.values() for entry in entries]

    def _read(self) -> Registry:
        try:
            raw = self._path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return {}
        except OSError as e:
            logger.warning("Server registry unreadable", path=str(self._path), error=str(e))
            return {}
        except UnicodeDecodeError as e:
            logger.warning("Server registry corrupt, starting empty", path=str(self._path), error=str(e))
            return {}

        try:
            data: Any = json.loads(raw)
        except json.JSONDecodeError as e:
            logger.warning("Server registry corrupt, starting empty", path=str(self._path), error=str(e))
            return {}

        if not isinstance(data, dict):
            logger.warning("Server registry has unexpected shape", path=str(self._path))
            return {}

        registry: Registry = {}
        for project, entries in data.items():
            if not isinstance(entries, list):
                continue
            parsed: list[ServerProcess] = []
            for item in entries:
                try:
                    parsed.append(ServerProcess.model_validate(item))
                except ValidationError:
                    logger.debug("Skipping invalid registry entry", project=project)
            registry[str(project)] = parsed
        return registry

    def _write(self, registry: Registry) -> None:
        payload = {
            project: [entry.model_dump(mode="json") for entry in entries]
            for project, entries in registry.items()
        }
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(
                dir=self._path.parent, prefix=f".{self._path.name}.", suffix=".tmp"
            )
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as f:
                    json.dump(payload, f, indent=2)
                os.replace(tmp_name, self._path)
            except BaseException:
                Path(tmp_name).unlink(missing_ok=True)
                raise
        except OSError as e:
            raise PersistenceError(str(e)) from e
