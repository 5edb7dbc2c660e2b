"""Crash-safe JSON key/value store for persisted app state.

The store keeps a full snapshot file plus an append-only journal next to it.
Every ``set`` is appended to the journal immediately, so flags such as
"was tracking before termination" survive a process kill even when no
``flush`` happened. ``flush`` rewrites the snapshot atomically and clears
the journal.

The journal is compacted into the snapshot as soon as it grows past
``journal_limit_bytes``. A value rewritten over and over (the live-session
autosave) therefore never accumulates on disk.

Example: ``state.json`` -> ``state.journal.jsonl``
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Iterator

logger = logging.getLogger(__name__)

DEFAULT_JOURNAL_LIMIT_BYTES = 1_000_000

_MISSING = object()


def _read_snapshot(path: Path) -> dict[str, Any]:
    if not path.exists():
        return {}
    raw = path.read_text(encoding="utf-8").strip()
    if not raw:
        return {}
    try:
        snapshot = json.loads(raw)
    except json.JSONDecodeError:
        broken = path.with_suffix(path.suffix + ".broken")
        broken.write_text(raw, encoding="utf-8")
        logger.warning("State file %s is corrupted; saved a copy to %s", path, broken)
        return {}
    if not isinstance(snapshot, dict):
        logger.warning("State file %s does not hold a JSON object; ignoring it", path)
        return {}
    return snapshot


def _journal_records(path: Path) -> Iterator[dict[str, Any]]:
    """Yield well-formed journal records; a torn last line is skipped."""

    with path.open("r", encoding="utf-8") as fh:
        for raw in fh:
            raw = raw.strip()
            if not raw:
                continue
            try:
                record = json.loads(raw)
            except json.JSONDecodeError:
                continue
            if isinstance(record, dict) and isinstance(record.get("k"), str):
                yield record


class JsonStateStore:
    """A small JSON document persisted on disk (key -> JSON value)."""

    def __init__(self, path: str | Path, *, journal_limit_bytes: int = DEFAULT_JOURNAL_LIMIT_BYTES) -> None:
        if journal_limit_bytes <= 0:
            raise ValueError("journal_limit_bytes must be > 0")
        self._path = Path(path)
        self._journal_path = self._path.with_name(self._path.stem + ".journal.jsonl")
        self._journal_limit = journal_limit_bytes
        self._journal_bytes = 0
        self._data: dict[str, Any] = {}
        self._loaded = False

    @property
    def path(self) -> Path:
        return self._path

    @property
    def journal_path(self) -> Path:
        return self._journal_path

    def load(self) -> None:
        """Read the snapshot and replay the journal on top (once)."""

        if self._loaded:
            return
        self._data = _read_snapshot(self._path)
        if self._journal_path.exists():
            try:
                for record in _journal_records(self._journal_path):
                    if record.get("d"):
                        self._data.pop(record["k"], None)
                    else:
                        self._data[record["k"]] = record.get("v")
                self._journal_bytes = self._journal_path.stat().st_size
            except OSError:
                logger.warning("Cannot read journal %s; continuing with the snapshot only", self._journal_path)
        self._loaded = True

    def get(self, key: str, default: Any = None) -> Any:
        self.load()
        return self._data.get(key, default)

    def set(self, key: str, value: Any) -> None:
        self.load()
        self._data[key] = value
        self._journal({"k": key, "v": value})

    def delete(self, key: str) -> None:
        self.load()
        if self._data.pop(key, _MISSING) is not _MISSING:
            self._journal({"k": key, "v": None, "d": True})

    def keys(self) -> list[str]:
        self.load()
        return list(self._data)

    def flush(self) -> None:
        """Write the full snapshot (via a temp file + rename) and drop the journal."""

        self.load()
        self._path.parent.mkdir(parents=True, exist_ok=True)
        staging = self._path.with_name(self._path.name + ".tmp")
        staging.write_text(json.dumps(self._data, ensure_ascii=False, indent=2), encoding="utf-8")
        staging.replace(self._path)
        try:
            self._journal_path.unlink(missing_ok=True)
        except OSError:
            logger.warning("Cannot remove journal %s; it will be replayed again", self._journal_path)
            return
        self._journal_bytes = 0

    def _journal(self, record: dict[str, Any]) -> None:
        line = (json.dumps(record, ensure_ascii=False) + "\n").encode("utf-8")
        self._journal_path.parent.mkdir(parents=True, exist_ok=True)
        with self._journal_path.open("ab") as fh:
            fh.write(line)
        self._journal_bytes += len(line)
        if self._journal_bytes > self._journal_limit:
            logger.debug("Journal %s reached %d bytes; compacting", self._journal_path, self._journal_bytes)
            self.flush()
