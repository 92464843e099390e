#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
script_state.py

Durable key/value properties and the single script-wide lock.

- Properties hold the per-level batch cursors, clear-once flags and the batch size.
  They live on disk (JSON) so separate invocations resume where the last one stopped.
- The lock serialises every job that writes to the master. It is an advisory
  lock file created exclusively; a file older than stale_after seconds is taken
  over (its holder crashed without releasing).
"""

from __future__ import annotations

import json
import logging
import os
import time
import uuid
from contextlib import contextmanager
from pathlib import Path
from typing import Dict, Iterator, Optional, Protocol

from campus_config import ConfigurationError


class LockBusyError(Exception):
    """Another run holds the lock; retry later."""


class PropertyStore(Protocol):
    def get(self, key: str) -> Optional[str]: ...

    def set(self, key: str, value: str) -> None: ...

    def delete(self, key: str) -> None: ...


class MemoryPropertyStore:
    def __init__(self, initial: Optional[Dict[str, str]] = None) -> None:
        self._data: Dict[str, str] = dict(initial or {})

    def get(self, key: str) -> Optional[str]:
        return self._data.get(key)

    def set(self, key: str, value: str) -> None:
        self._data[key] = str(value)

    def delete(self, key: str) -> None:
        self._data.pop(key, None)

    def as_dict(self) -> Dict[str, str]:
        return dict(self._data)


class JsonPropertyStore:
    """
    File-backed properties. Re-read on every call; writes go through a temp file + rename.
    """

    def __init__(self, path: Path) -> None:
        self.path = Path(path)

    def _load(self) -> Dict[str, str]:
        if not self.path.exists():
            return {}
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            raise ConfigurationError(f"State file {self.path} is unreadable: {e}") from e
        if not isinstance(data, dict):
            raise ConfigurationError(
                f"State file {self.path} is unreadable: expected a JSON object, got {type(data).__name__}"
            )
        return {str(k): str(v) for k, v in data.items()}

    def _dump(self, data: Dict[str, str]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.path.with_name(self.path.name + ".tmp")
        with open(tmp, "w", encoding="utf-8") as f:
            json.dump(data, f, ensure_ascii=False, indent=2, sort_keys=True)
        os.replace(tmp, self.path)

    def get(self, key: str) -> Optional[str]:
        return self._load().get(key)

    def set(self, key: str, value: str) -> None:
        data = self._load()
        data[key] = str(value)
        self._dump(data)

    def delete(self, key: str) -> None:
        data = self._load()
        if key in data:
            del data[key]
            self._dump(data)

    def as_dict(self) -> Dict[str, str]:
        return self._load()


class ScriptLock:
    """
    Global advisory lock backed by an exclusively created file.

    The file carries a per-instance token (pid + uuid). Release and stale takeover
    only remove the file while it still carries the token they checked, so a holder
    whose lock was taken over never deletes the new holder's file.

    Example:
        >>> lock = ScriptLock(Path(".consolidation.lock"))
        >>> with lock.hold(timeout=30):
        ...     pass  # read-modify-write the master
    """

    def __init__(
        self,
        path: Path,
        stale_after: float = 600.0,
        poll_interval: float = 0.1,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.path = Path(path)
        self.stale_after = stale_after
        self.poll_interval = poll_interval
        self.logger = logger or logging.getLogger("campus_consolidation")
        self._held = False
        self._token: Optional[str] = None

    @property
    def held(self) -> bool:
        return self._held

    def _read_token(self, path: Path) -> Optional[str]:
        try:
            with open(path, "r", encoding="utf-8") as f:
                return f.read().strip()
        except FileNotFoundError:
            return None

    def _try_create(self) -> bool:
        token = f"{os.getpid()} {uuid.uuid4().hex}"
        try:
            fd = os.open(self.path, os.O_CREAT | os.O_EXCL | os.O_WRONLY)
        except FileExistsError:
            return False
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(token + "\n")
        self._token = token
        return True

    def _remove_if_token(self, expected: Optional[str]) -> bool:
        """
        Move the lock file aside (atomic, one mover wins) and delete it only when it
        carries the expected token; otherwise put it back.
        """
        aside = self.path.with_name(f"{self.path.name}.{uuid.uuid4().hex}")
        try:
            os.rename(self.path, aside)
        except FileNotFoundError:
            return False

        if self._read_token(aside) == expected:
            aside.unlink()
            return True

        try:
            os.link(aside, self.path)
        except FileExistsError:
            self.logger.warning(f"Lock {self.path} was re-created while being checked; dropping the moved copy")
        aside.unlink()
        return False

    def _break_if_stale(self) -> None:
        token = self._read_token(self.path)
        try:
            age = time.time() - self.path.stat().st_mtime
        except FileNotFoundError:
            return
        if age <= self.stale_after:
            return
        if self._remove_if_token(token):
            self.logger.warning(f"Removed stale lock {self.path} (age={age:.0f}s, holder={token})")

    def acquire(self, timeout: float) -> bool:
        if self._held:
            raise RuntimeError(f"Lock {self.path} is already held by this process")
        self.path.parent.mkdir(parents=True, exist_ok=True)
        deadline = time.monotonic() + max(0.0, timeout)
        while True:
            if self._try_create():
                self._held = True
                self.logger.debug(f"Acquired lock {self.path}")
                return True
            self._break_if_stale()
            if time.monotonic() >= deadline:
                return False
            time.sleep(self.poll_interval)

    def release(self) -> None:
        if not self._held:
            return
        if self._remove_if_token(self._token):
            self.logger.debug(f"Released lock {self.path}")
        else:
            self.logger.warning(f"Lock {self.path} was taken over by another run before release; left in place")
        self._held = False
        self._token = None

    @contextmanager
    def hold(self, timeout: float) -> Iterator["ScriptLock"]:
        if not self.acquire(timeout):
            raise LockBusyError(f"Another run is in progress (lock {self.path}); try again later.")
        try:
            yield self
        finally:
            self.release()
