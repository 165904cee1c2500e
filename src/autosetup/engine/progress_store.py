"""AutoSetup Progress Store — local-first step status with debounced remote sync.

Local writes are synchronous and authoritative for the UI.  Remote writes are
a best-effort side channel: saves are coalesced per step and flushed at most
once per debounce window (500 ms by default) on a worker thread.  A failed
flush is logged and the entries stay queued for the next cycle, up to
``max_retries`` cycles, after which they are dropped from the queue (the
local copy is kept).

On load, a non-empty remote progress set replaces the local cache outright
and is written back locally as a cache refresh.

Cache keys mirror the widget's browser storage keys::

    autosetup_progress_<configId>        {stepId: {status, completed_at?, skipped_at?}}
    autosetup_branch_choices_<configId>  {stepId: branchId}
    autosetup_client_id                  "<uuid4>"
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import uuid
from pathlib import Path
from typing import Any, Protocol

from autosetup.engine.api_client import TourApiClient
from autosetup.engine.errors import ProgressSyncFailed
from autosetup.engine.tour import PENDING, ProgressEntry
from autosetup.models import (
    CHOICES_KEY_PREFIX,
    CLIENT_ID_KEY,
    PROGRESS_KEY_PREFIX,
    SYNC_DEBOUNCE_MS,
    SYNC_MAX_RETRIES,
)

logger = logging.getLogger("autosetup.engine.progress_store")


# ---------------------------------------------------------------------------
# Local key-value primitives
# ---------------------------------------------------------------------------


class LocalCache(Protocol):
    """Synchronous key-value store holding JSON-serializable values."""

    def get(self, key: str) -> Any | None: ...

    def set(self, key: str, value: Any) -> None: ...

    def delete(self, key: str) -> None: ...


class MemoryCache:
    """Process-local cache; nothing survives a restart."""

    def __init__(self) -> None:
        self.data: dict[str, Any] = {}

    def get(self, key: str) -> Any | None:
        return self.data.get(key)

    def set(self, key: str, value: Any) -> None:
        self.data[key] = value

    def delete(self, key: str) -> None:
        self.data.pop(key, None)


class JsonFileCache:
    """A single JSON file holding every key (a stand-in for ``localStorage``)."""

    def __init__(self, path: Path) -> None:
        self.path = Path(path)
        self._data: dict[str, Any] | None = None

    def _load(self) -> dict[str, Any]:
        if self._data is None:
            self._data = {}
            if self.path.exists():
                try:
                    raw = json.loads(self.path.read_text(encoding="utf-8"))
                except (OSError, ValueError) as exc:
                    logger.warning("Ignoring unreadable cache %s: %s", self.path, exc)
                else:
                    if isinstance(raw, dict):
                        self._data = raw
        return self._data

    def _write(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.path.with_suffix(self.path.suffix + ".tmp")
        tmp.write_text(json.dumps(self._load(), indent=2, sort_keys=True), encoding="utf-8")
        os.replace(tmp, self.path)

    def get(self, key: str) -> Any | None:
        return self._load().get(key)

    def set(self, key: str, value: Any) -> None:
        self._load()[key] = value
        self._write()

    def delete(self, key: str) -> None:
        if self._load().pop(key, None) is not None:
            self._write()


def client_id_for(cache: LocalCache) -> str:
    """Return the persisted anonymous client id, minting one on first use."""
    existing = cache.get(CLIENT_ID_KEY)
    if isinstance(existing, str) and existing:
        return existing
    minted = str(uuid.uuid4())
    cache.set(CLIENT_ID_KEY, minted)
    return minted


# ---------------------------------------------------------------------------
# Progress store
# ---------------------------------------------------------------------------


class ProgressStore:
    """Per (client, configuration) progress and branch choices."""

    def __init__(
        self,
        config_id: str,
        api_key: str = "",
        cache: LocalCache | None = None,
        client: TourApiClient | None = None,
        client_id: str | None = None,
        debounce_ms: int = SYNC_DEBOUNCE_MS,
        max_retries: int = SYNC_MAX_RETRIES,
    ) -> None:
        self.config_id = config_id
        self._api_key = api_key
        self._cache: LocalCache = cache if cache is not None else MemoryCache()
        self._client = client
        self.client_id = client_id or client_id_for(self._cache)
        self._debounce_s = debounce_ms / 1000
        self._max_retries = max_retries

        self.progress: dict[str, ProgressEntry] = {}
        self.branch_choices: dict[str, str] = {}

        self._pending: dict[str, ProgressEntry] = {}
        self._pending_choices: dict[str, str] = {}
        self._attempts: dict[str, int] = {}
        self._timer: asyncio.TimerHandle | None = None
        self._flush_task: asyncio.Task | None = None

    @property
    def progress_key(self) -> str:
        return PROGRESS_KEY_PREFIX + self.config_id

    @property
    def choices_key(self) -> str:
        return CHOICES_KEY_PREFIX + self.config_id

    @property
    def pending_count(self) -> int:
        return len(self._pending) + len(self._pending_choices)

    # -- Load ----------------------------------------------------------------

    def load(
        self,
        remote_progress: dict[str, ProgressEntry] | None = None,
        remote_choices: dict[str, str] | None = None,
    ) -> dict[str, ProgressEntry]:
        """Merge remote state over the local cache and return the progress map.

        Remote wins whenever it has anything at all; otherwise the local cache
        is used as-is.
        """
        self.progress.clear()
        if remote_progress:
            self.progress.update(remote_progress)
            self._persist_progress()
            logger.debug("Loaded %d progress entries from remote", len(remote_progress))
        else:
            local = self._cache.get(self.progress_key) or {}
            for step_id, data in local.items():
                if isinstance(data, dict):
                    self.progress[step_id] = ProgressEntry.from_dict(step_id, data)
            logger.debug("Loaded %d progress entries from local cache", len(self.progress))

        self.branch_choices.clear()
        if remote_choices:
            self.branch_choices.update(remote_choices)
            self._persist_choices()
        else:
            local_choices = self._cache.get(self.choices_key) or {}
            self.branch_choices.update({str(k): str(v) for k, v in local_choices.items() if v})
        return self.progress

    # -- Writes --------------------------------------------------------------

    def save(self, step_id: str, status: str) -> ProgressEntry:
        """Record ``status`` for ``step_id`` locally and queue a remote write."""
        entry = ProgressEntry.stamped(step_id, status)
        self.progress[step_id] = entry
        self._persist_progress()
        self._queue(entry)
        return entry

    def save_branch_choice(self, step_id: str, branch_id: str) -> None:
        self.branch_choices[step_id] = branch_id
        self._persist_choices()
        self._pending_choices[step_id] = branch_id
        self._attempts.pop(f"choice:{step_id}", None)
        self._schedule()

    def clear(self, step_ids: list[str] | None = None) -> None:
        """Forget progress and choices for ``step_ids`` (or everything).

        Cleared steps are synced to the remote store as ``pending``.
        """
        targets = list(self.progress) if step_ids is None else list(step_ids)
        for step_id in targets:
            had_progress = self.progress.pop(step_id, None) is not None
            self.branch_choices.pop(step_id, None)
            self._pending_choices.pop(step_id, None)
            if had_progress:
                self._queue(ProgressEntry(step_id=step_id, status=PENDING))
        if step_ids is None:
            self.branch_choices.clear()
        self._persist_progress()
        self._persist_choices()

    def _persist_progress(self) -> None:
        self._cache.set(self.progress_key, {k: v.to_dict() for k, v in self.progress.items()})

    def _persist_choices(self) -> None:
        self._cache.set(self.choices_key, dict(self.branch_choices))

    # -- Remote sync ---------------------------------------------------------

    def _queue(self, entry: ProgressEntry) -> None:
        self._pending[entry.step_id] = entry
        self._attempts.pop(entry.step_id, None)
        self._schedule()

    def _schedule(self) -> None:
        if self._client is None:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.debug("No running event loop; %d write(s) wait for flush()", self.pending_count)
            return
        if self._timer is not None:
            self._timer.cancel()
        self._timer = loop.call_later(self._debounce_s, self._start_flush)

    def _start_flush(self) -> None:
        self._timer = None
        if self._flush_task is not None and not self._flush_task.done():
            # A flush is in flight; whatever it misses goes out on the next cycle
            self._schedule()
            return
        self._flush_task = asyncio.get_running_loop().create_task(self.flush())

    async def flush(self) -> int:
        """Push every queued write now.  Returns how many succeeded."""
        if self._client is None:
            self._pending.clear()
            self._pending_choices.clear()
            return 0

        entries, self._pending = self._pending, {}
        choices, self._pending_choices = self._pending_choices, {}
        synced = 0
        requeue = False

        for step_id, entry in entries.items():
            try:
                await asyncio.to_thread(self._client.save_progress, self.client_id, self.config_id, self._api_key, entry)
            except ProgressSyncFailed as exc:
                requeue |= self._retry(step_id, exc, lambda: self._pending.setdefault(step_id, entry))
            else:
                self._attempts.pop(step_id, None)
                synced += 1

        for step_id, branch_id in choices.items():
            key = f"choice:{step_id}"
            try:
                await asyncio.to_thread(self._client.save_branch_choice, self.client_id, self.config_id, step_id, branch_id)
            except ProgressSyncFailed as exc:
                requeue |= self._retry(key, exc, lambda: self._pending_choices.setdefault(step_id, branch_id))
            else:
                self._attempts.pop(key, None)
                synced += 1

        if requeue:
            self._schedule()
        return synced

    def _retry(self, key: str, exc: Exception, requeue: Any) -> bool:
        attempts = self._attempts.get(key, 0) + 1
        if attempts >= self._max_retries:
            self._attempts.pop(key, None)
            logger.warning("Giving up syncing %s after %d attempts: %s", key, attempts, exc)
            return False
        self._attempts[key] = attempts
        logger.warning("Progress sync failed for %s (attempt %d/%d): %s", key, attempts, self._max_retries, exc)
        requeue()
        return True

    async def close(self) -> None:
        """Cancel the debounce timer and push anything still queued."""
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        if self._flush_task is not None and not self._flush_task.done():
            await self._flush_task
        if self.pending_count:
            await self.flush()
        if self._timer is not None:
            # Whatever failed above stays in the local cache only
            self._timer.cancel()
            self._timer = None
