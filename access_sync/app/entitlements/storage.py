"""Persistence backends shared by every execution context on one device."""
from __future__ import annotations

import asyncio
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Awaitable, Callable, Dict, List, Optional, Protocol

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StorageChange:
    """Raised to watchers whenever a namespace's payload is replaced."""

    namespace: str
    old_payload: Optional[str]
    new_payload: Optional[str]
    origin: Optional[str] = None


StorageWatcher = Callable[[StorageChange], None]


class StorageBackend(Protocol):
    """Durable string storage keyed by namespace, observable across contexts."""

    def read(self, namespace: str) -> Optional[str]:
        ...

    def write(self, namespace: str, payload: Optional[str], *, origin: Optional[str] = None) -> None:
        ...

    def watch(self, watcher: StorageWatcher) -> Callable[[], None]:
        ...


class _WatcherRegistry:
    def __init__(self) -> None:
        self._watchers: List[StorageWatcher] = []

    def add(self, watcher: StorageWatcher) -> Callable[[], None]:
        self._watchers.append(watcher)

        def _remove() -> None:
            try:
                self._watchers.remove(watcher)
            except ValueError:
                pass

        return _remove

    def notify(self, change: StorageChange) -> None:
        for watcher in list(self._watchers):
            try:
                watcher(change)
            except Exception:
                logger.exception(
                    "Storage watcher failed",
                    extra={"storage_namespace": change.namespace},
                )


class InMemoryStorage:
    """Process-local storage; share one instance between stores to model tabs."""

    def __init__(self) -> None:
        self._payloads: Dict[str, str] = {}
        self._watchers = _WatcherRegistry()

    def read(self, namespace: str) -> Optional[str]:
        return self._payloads.get(namespace)

    def write(self, namespace: str, payload: Optional[str], *, origin: Optional[str] = None) -> None:
        old_payload = self._payloads.get(namespace)
        if payload is None:
            self._payloads.pop(namespace, None)
        else:
            self._payloads[namespace] = payload
        if old_payload == payload:
            return
        self._watchers.notify(
            StorageChange(
                namespace=namespace,
                old_payload=old_payload,
                new_payload=payload,
                origin=origin,
            )
        )

    def watch(self, watcher: StorageWatcher) -> Callable[[], None]:
        return self._watchers.add(watcher)

    def clear(self) -> None:
        self._payloads.clear()


class JsonFileStorage:
    """Stores each namespace as ``<directory>/<namespace>.json``.

    Writes are atomic (temp file + replace). Changes made by other processes
    are discovered by :meth:`poll_changes`, which :meth:`watch_changes` runs on
    an interval; writes made through this instance never notify its own
    watchers, mirroring how browsers deliver storage events only to other tabs.
    """

    def __init__(self, directory: Path) -> None:
        self._directory = Path(directory)
        self._watchers = _WatcherRegistry()
        self._last_seen: Dict[str, Optional[str]] = {}

    def _path(self, namespace: str) -> Path:
        return self._directory / f"{namespace}.json"

    def _read_file(self, namespace: str) -> Optional[str]:
        path = self._path(namespace)
        if not path.exists():
            return None
        try:
            return path.read_text(encoding="utf-8-sig")
        except OSError:
            logger.warning(
                "Failed to read persisted namespace",
                extra={"storage_namespace": namespace, "storage_path": str(path)},
            )
            return None

    def read(self, namespace: str) -> Optional[str]:
        payload = self._read_file(namespace)
        # foreign changes stay pending until poll_changes reports them
        self._last_seen.setdefault(namespace, payload)
        return payload

    def write(self, namespace: str, payload: Optional[str], *, origin: Optional[str] = None) -> None:
        if namespace in self._last_seen:
            self._sync(namespace)
        path = self._path(namespace)
        if payload is None:
            if path.exists():
                path.unlink()
        else:
            path.parent.mkdir(parents=True, exist_ok=True)
            tmp = path.with_suffix(f".{os.getpid()}.tmp")
            with tmp.open("w", encoding="utf-8") as fh:
                fh.write(payload)
            tmp.replace(path)
        self._last_seen[namespace] = payload

    def watch(self, watcher: StorageWatcher) -> Callable[[], None]:
        return self._watchers.add(watcher)

    def poll_changes(self) -> int:
        """Notify watchers about namespaces rewritten by other processes."""

        return sum(1 for namespace in list(self._last_seen) if self._sync(namespace))

    def _sync(self, namespace: str) -> bool:
        previous = self._last_seen.get(namespace)
        current = self._read_file(namespace)
        if current == previous:
            return False
        self._last_seen[namespace] = current
        self._watchers.notify(StorageChange(namespace=namespace, old_payload=previous, new_payload=current))
        return True

    async def watch_changes(
        self,
        interval_seconds: float,
        *,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        while True:
            await sleep(interval_seconds)
            self.poll_changes()
