"""Namespaced key/value settings persisted to a JSON file."""

from __future__ import annotations

import json
import os
import tempfile
import threading
from pathlib import Path
from typing import Any, Union

Value = Union[str, int, float, bool]

_ALLOWED_TYPES = (str, int, float, bool)


class Preferences:
    """A small persistent store of settings grouped into namespaces.

    With ``path`` set to None the values live in memory only; otherwise
    every change is written straight back to the file.
    """

    def __init__(self, path: str | os.PathLike[str] | None = None) -> None:
        self._path = Path(path) if path is not None else None
        self._lock = threading.Lock()
        self._data: dict[str, dict[str, Value]] = {}
        if self._path is not None and self._path.exists():
            with self._path.open(encoding="utf-8") as fh:
                loaded = json.load(fh)
            if not isinstance(loaded, dict):
                raise ValueError(f"settings file {self._path} does not hold an object")
            self._data = {
                str(ns): dict(values)
                for ns, values in loaded.items()
                if isinstance(values, dict)
            }

    def get(self, namespace: str, key: str, default: Any = None) -> Any:
        """Return the stored value, or ``default`` when there is none."""
        with self._lock:
            return self._data.get(namespace, {}).get(key, default)

    def put(self, namespace: str, key: str, value: Value) -> None:
        """Store ``value`` under ``key`` and persist it."""
        if not isinstance(value, _ALLOWED_TYPES):
            raise TypeError(f"cannot store value of type {type(value).__name__}")
        with self._lock:
            self._data.setdefault(namespace, {})[key] = value
            self._save()

    def clear(self, namespace: str) -> None:
        """Remove every key in ``namespace``."""
        with self._lock:
            if self._data.pop(namespace, None) is not None:
                self._save()

    def _save(self) -> None:
        if self._path is None:
            return
        self._path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(dir=self._path.parent, suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                json.dump(self._data, fh, indent=2, sort_keys=True)
            os.replace(tmp_name, self._path)
        except BaseException:
            try:
                os.unlink(tmp_name)
            except FileNotFoundError:
                pass
            raise