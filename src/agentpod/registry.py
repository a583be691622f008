"""
Binding registry shared with the gateway.

The gateway reads one JSON document listing the active agents and their
channel bindings. This module owns every mutation of that document:

- read-modify-write under an in-process asyncio.Lock plus an advisory
  fcntl lock on ``<path>.lock`` so separate API processes do not interleave;
- persisted by writing ``<path>.tmp`` and atomically replacing the original,
  so the gateway never observes a partial file;
- keys this module does not manage are carried through untouched;
- every effective mutation schedules a debounced gateway reload.
"""

import asyncio
import contextlib
import fcntl
import json
import os
from collections.abc import Callable, Iterator
from pathlib import Path
from typing import Any

import structlog

from .errors import AgentAlreadyExists, ConfigWriteFailure
from .models import BindingEntry
from .reload import ReloadDebouncer

logger = structlog.get_logger(__name__)

Document = dict[str, Any]


def _skeleton() -> Document:
    return {"agents": {"defaults": {}, "list": []}, "bindings": []}


def _normalize(doc: Document) -> Document:
    agents = doc.setdefault("agents", {})
    agents.setdefault("defaults", {})
    agents.setdefault("list", [])
    doc.setdefault("bindings", [])
    return doc


class ConfigRegistry:
    """Agent/binding entries in the gateway's config document."""

    def __init__(self, path: str | Path, debouncer: ReloadDebouncer | None = None):
        self.path = Path(path)
        self.lock_path = self.path.with_name(self.path.name + ".lock")
        self.tmp_path = self.path.with_name(self.path.name + ".tmp")
        self.debouncer = debouncer
        self._lock = asyncio.Lock()

    # ------------------------------------------------------------------
    # mutations
    # ------------------------------------------------------------------

    async def add_agent(self, entry: BindingEntry) -> None:
        """Add an agent and its binding. Raises AgentAlreadyExists on duplicates."""

        def apply(doc: Document) -> bool:
            if any(a.get("id") == entry.agent_id for a in doc["agents"]["list"]):
                raise AgentAlreadyExists(entry.agent_id)
            doc["agents"]["list"].append(entry.to_agent())
            doc["bindings"].append(entry.to_binding())
            return True

        await self._mutate(apply)
        logger.info(
            "registry_agent_added",
            agent_id=entry.agent_id,
            workspace=entry.workspace_path,
        )

    async def remove_agent(self, agent_id: str) -> bool:
        """Remove an agent and its bindings. Absent ids are a no-op."""

        def apply(doc: Document) -> bool:
            agents = doc["agents"]["list"]
            bindings = doc["bindings"]
            kept_agents = [a for a in agents if a.get("id") != agent_id]
            kept_bindings = [b for b in bindings if b.get("agentId") != agent_id]
            if len(kept_agents) == len(agents) and len(kept_bindings) == len(bindings):
                return False
            doc["agents"]["list"] = kept_agents
            doc["bindings"] = kept_bindings
            return True

        removed = await self._mutate(apply)
        if removed:
            logger.info("registry_agent_removed", agent_id=agent_id)
        else:
            logger.debug("registry_agent_absent", agent_id=agent_id)
        return removed

    # ------------------------------------------------------------------
    # reads
    # ------------------------------------------------------------------

    async def exists(self, agent_id: str) -> bool:
        doc = await asyncio.to_thread(self._read)
        return any(a.get("id") == agent_id for a in doc["agents"]["list"])

    async def get(self, agent_id: str) -> BindingEntry | None:
        doc = await asyncio.to_thread(self._read)
        return self._entries(doc).get(agent_id)

    async def list_agents(self) -> list[BindingEntry]:
        doc = await asyncio.to_thread(self._read)
        return list(self._entries(doc).values())

    async def count(self) -> int:
        doc = await asyncio.to_thread(self._read)
        return len(doc["agents"]["list"])

    @staticmethod
    def _entries(doc: Document) -> dict[str, BindingEntry]:
        bindings = {b.get("agentId"): b for b in doc["bindings"]}
        return {
            agent["id"]: BindingEntry.from_document(agent, bindings.get(agent["id"]))
            for agent in doc["agents"]["list"]
            if "id" in agent
        }

    # ------------------------------------------------------------------
    # disk
    # ------------------------------------------------------------------

    async def _mutate(self, apply: Callable[[Document], bool]) -> bool:
        async with self._lock:
            changed = await asyncio.to_thread(self._mutate_blocking, apply)
        if changed and self.debouncer is not None:
            self.debouncer.schedule()
        return changed

    def _mutate_blocking(self, apply: Callable[[Document], bool]) -> bool:
        with self._file_lock():
            doc = self._read()
            if not apply(doc):
                return False
            self._write(doc)
            return True

    @contextlib.contextmanager
    def _file_lock(self) -> Iterator[None]:
        try:
            self.lock_path.parent.mkdir(parents=True, exist_ok=True)
            fh = open(self.lock_path, "a")
        except OSError as e:
            raise ConfigWriteFailure(str(self.lock_path), e) from e
        with fh:
            fcntl.flock(fh.fileno(), fcntl.LOCK_EX)
            try:
                yield
            finally:
                fcntl.flock(fh.fileno(), fcntl.LOCK_UN)

    def _read(self) -> Document:
        try:
            text = self.path.read_text()
        except FileNotFoundError:
            return _skeleton()
        except OSError as e:
            raise ConfigWriteFailure(str(self.path), e) from e

        try:
            doc = json.loads(text)
        except json.JSONDecodeError as e:
            raise ConfigWriteFailure(str(self.path), e) from e
        if not isinstance(doc, dict):
            raise ConfigWriteFailure(str(self.path), ValueError("not a JSON object"))
        return _normalize(doc)

    def _write(self, doc: Document) -> None:
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with open(self.tmp_path, "w") as fh:
                json.dump(doc, fh, indent=2)
                fh.flush()
                os.fsync(fh.fileno())
            os.replace(self.tmp_path, self.path)
        except OSError as e:
            with contextlib.suppress(OSError):
                self.tmp_path.unlink()
            logger.error("registry_write_failed", path=str(self.path), error=str(e))
            raise ConfigWriteFailure(str(self.path), e) from e
