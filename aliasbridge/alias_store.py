# aliasbridge/alias_store.py
# -----------------------------------------------------------------------------
# Alias table (identifier -> display name) with write-through JSON persistence.
#
# Every successful mutation rewrites the whole table once: temp file, fsync,
# os.replace. If the write fails, the in-memory table is restored to what it
# was before the call and AliasStoreError is raised, so memory never runs
# ahead of disk. Change listeners fire once per successful mutating call,
# after the write, with a copy of the full table.
#
# Mutations are expected to run in worker threads (asyncio.to_thread), hence
# the RLock around the read-modify-persist sequence. Readers never take the
# lock: they see `_view`, a copy swapped in only after a write succeeded.
# -----------------------------------------------------------------------------

from __future__ import annotations

import json
import logging
import os
import tempfile
import threading
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Optional

log = logging.getLogger("aliasbridge.store")

ChangeListener = Callable[[Dict[str, str]], None]

_MISSING = object()


class AliasStoreError(RuntimeError):
    """The alias table could not be persisted; memory was rolled back."""


def _unique(identifiers: Iterable[str]) -> List[str]:
    # batch commands treat their identifiers as a set, first occurrence wins
    return list(dict.fromkeys(str(i) for i in identifiers))


class AliasStore:
    def __init__(self, path: str | os.PathLike[str]):
        self.path = Path(path)
        self._lock = threading.RLock()
        self._aliases: Dict[str, str] = {}
        self._view: Dict[str, str] = {}
        self._listeners: List[ChangeListener] = []

    # ------------------------------------------------------------------
    # Loading
    # ------------------------------------------------------------------

    def load(self) -> Dict[str, str]:
        """
        Load the table from disk, creating an empty one on first run.

        A file that cannot be read or parsed is moved aside to
        `<name>.corrupt` and the table starts empty. Failure to create the
        initial file raises AliasStoreError (nothing can be persisted then).
        """
        with self._lock:
            if not self.path.exists():
                self._install({})
                try:
                    self.path.parent.mkdir(parents=True, exist_ok=True)
                    self._write({})
                except OSError as e:
                    raise AliasStoreError(f"cannot create {self.path}: {e}") from e
                log.info("Created empty alias table at %s", self.path)
                return {}

            try:
                raw = json.loads(self.path.read_text(encoding="utf-8"))
            except (OSError, ValueError) as e:
                log.error("Failed to read alias table %s: %s", self.path, e)
                self._quarantine()
                self._install({})
                return {}

            if not isinstance(raw, dict):
                log.error("Alias table %s must hold a JSON object, not %s", self.path, type(raw).__name__)
                self._quarantine()
                self._install({})
                return {}

            table: Dict[str, str] = {}
            for key, value in raw.items():
                if isinstance(value, str):
                    table[str(key)] = value
                else:
                    log.warning("Dropping non-string alias for %r: %r", key, value)
            self._install(table)
            log.info("Loaded %d alias(es) from %s", len(table), self.path)
            return dict(table)

    def _quarantine(self) -> None:
        bad = self.path.with_name(self.path.name + ".corrupt")
        try:
            os.replace(self.path, bad)
            log.warning("Moved unreadable alias table to %s", bad)
        except OSError as e:
            log.error("Could not move unreadable alias table aside: %s", e)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def _install(self, table: Dict[str, str]) -> None:
        self._aliases = dict(table)
        self._view = dict(table)

    def get(self, identifier: str) -> Optional[str]:
        return self._view.get(identifier)

    def snapshot(self) -> Dict[str, str]:
        return dict(self._view)

    def __len__(self) -> int:
        return len(self._view)

    def __contains__(self, identifier: object) -> bool:
        return identifier in self._view

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def assign(self, identifier: str, name: str) -> None:
        """Insert or overwrite one alias. Raises AliasStoreError if the write fails."""
        self._commit({str(identifier): str(name)})
        log.info("Saved %s -> %s", identifier, name)

    def assign_batch(self, identifiers: Iterable[str], name: str) -> None:
        """Give every identifier the same alias; all-or-nothing."""
        ids = _unique(identifiers)
        if not ids:
            raise ValueError("assign_batch needs at least one identifier")
        self._commit({i: str(name) for i in ids})
        log.info("Saved batch: %d identifier(s) -> %s", len(ids), name)

    def remove(self, identifier: str) -> bool:
        """Delete one alias. Returns False (and writes nothing) if it was absent."""
        return self.remove_batch([identifier])

    def remove_batch(self, identifiers: Iterable[str]) -> bool:
        """Delete every listed alias that exists. True iff at least one existed."""
        with self._lock:
            present = [i for i in _unique(identifiers) if i in self._aliases]
            if not present:
                return False
            self._commit({i: None for i in present})
        log.info("Removed %d alias(es)", len(present))
        return True

    def _commit(self, updates: Dict[str, Optional[str]]) -> None:
        """Apply updates (None = delete), persist once, roll back on failure, notify."""
        with self._lock:
            previous = {k: self._aliases.get(k, _MISSING) for k in updates}
            for key, value in updates.items():
                if value is None:
                    self._aliases.pop(key, None)
                else:
                    self._aliases[key] = value

            try:
                self._write(self._aliases)
            except OSError as e:
                for key, old in previous.items():
                    if old is _MISSING:
                        self._aliases.pop(key, None)
                    else:
                        self._aliases[key] = old  # type: ignore[assignment]
                log.error("Could not persist alias table to %s: %s", self.path, e)
                raise AliasStoreError(str(e)) from e

            self._view = dict(self._aliases)
            self._notify(self._view)

    def _write(self, table: Dict[str, str]) -> None:
        """Atomic replace: readers see the old file or the new one, never a partial one."""
        fd, tmp_path = tempfile.mkstemp(
            dir=str(self.path.parent), prefix=f".{self.path.name}.", suffix=".tmp"
        )
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                json.dump(table, fh, ensure_ascii=False, indent=2)
                fh.flush()
                os.fsync(fh.fileno())
            os.replace(tmp_path, self.path)
        except BaseException:
            if os.path.exists(tmp_path):
                os.remove(tmp_path)
            raise

    # ------------------------------------------------------------------
    # Change notification
    # ------------------------------------------------------------------

    def on_change(self, listener: ChangeListener) -> None:
        with self._lock:
            self._listeners.append(listener)

    def remove_listener(self, listener: ChangeListener) -> None:
        with self._lock:
            if listener in self._listeners:
                self._listeners.remove(listener)

    def _notify(self, table: Dict[str, str]) -> None:
        for listener in list(self._listeners):
            try:
                listener(dict(table))
            except Exception:
                # the write already succeeded; a bad listener must not undo it
                log.exception("Alias change listener failed")
