from __future__ import annotations

import json
import os
import time
from contextlib import contextmanager
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from specloop.errors import StateError


class RetryStateStore:
    """File-backed retry counters keyed by (spec name, stage).

    Counters live in ``<state_dir>/retry.json`` so that a restarted process
    continues with the budget the previous one left behind. Every write goes
    through a lock file and an atomic rename.
    """

    SCHEMA_VERSION = 1
    FILE_NAME = "retry.json"

    def __init__(self, state_dir: Path) -> None:
        self.state_dir = Path(state_dir)
        self.state_file = self.state_dir / self.FILE_NAME
        self.lock_file = self.state_dir / ".retry.lock"

    @staticmethod
    def _utcnow_iso() -> str:
        return datetime.now(UTC).replace(microsecond=0).isoformat()

    @staticmethod
    def key(spec_name: str, stage: str) -> str:
        return f"{spec_name}:{stage}"

    def _lock_holder_alive(self) -> bool:
        """False when the lock file names a process that no longer exists."""
        try:
            pid = int(self.lock_file.read_text(encoding="utf-8").strip())
        except FileNotFoundError:
            return False
        except ValueError:
            # The holder has created the file but not written its pid yet.
            return True
        try:
            os.kill(pid, 0)
        except ProcessLookupError:
            return False
        except PermissionError:
            pass
        return True

    @contextmanager
    def _state_lock(self, timeout_seconds: float = 3.0):
        self.state_dir.mkdir(parents=True, exist_ok=True)
        start = time.monotonic()
        while True:
            try:
                fd = os.open(self.lock_file, os.O_CREAT | os.O_EXCL | os.O_WRONLY)
                os.write(fd, str(os.getpid()).encode("utf-8"))
                os.close(fd)
                break
            except FileExistsError as exc:
                if not self._lock_holder_alive():
                    self.lock_file.unlink(missing_ok=True)
                    continue
                if time.monotonic() - start > timeout_seconds:
                    raise StateError(f"Timed out waiting for retry state lock: {self.lock_file}") from exc
                time.sleep(0.02)

        try:
            yield
        finally:
            try:
                self.lock_file.unlink()
            except FileNotFoundError:
                pass

    def _read_retries(self) -> dict[str, dict[str, Any]]:
        if not self.state_file.exists():
            return {}
        try:
            payload = json.loads(self.state_file.read_text(encoding="utf-8"))
        except json.JSONDecodeError:
            # A corrupted file starts over from an empty store.
            return {}
        if not isinstance(payload, dict):
            return {}
        data = payload.get("data", payload)
        retries = data.get("retries", {}) if isinstance(data, dict) else {}
        if not isinstance(retries, dict):
            return {}
        return {key: value for key, value in retries.items() if isinstance(value, dict)}

    def _write_retries(self, retries: dict[str, dict[str, Any]]) -> None:
        envelope = {
            "schema_version": self.SCHEMA_VERSION,
            "updated_at": self._utcnow_iso(),
            "data": {"retries": retries},
        }
        tmp_path = self.state_file.with_suffix(".json.tmp")
        try:
            tmp_path.write_text(
                json.dumps(envelope, ensure_ascii=False, indent=2), encoding="utf-8"
            )
            os.replace(tmp_path, self.state_file)
        except OSError as exc:
            raise StateError(f"Failed to write retry state: {exc}") from exc

    def get(self, spec_name: str, stage: str) -> int:
        entry = self._read_retries().get(self.key(spec_name, stage))
        if entry is None:
            return 0
        try:
            return max(0, int(entry.get("count", 0)))
        except (TypeError, ValueError):
            return 0

    def increment(self, spec_name: str, stage: str) -> int:
        with self._state_lock():
            retries = self._read_retries()
            key = self.key(spec_name, stage)
            entry = retries.get(key, {})
            try:
                count = max(0, int(entry.get("count", 0)))
            except (TypeError, ValueError):
                count = 0
            count += 1
            retries[key] = {
                "spec_name": spec_name,
                "stage": stage,
                "count": count,
                "last_attempt": self._utcnow_iso(),
            }
            self._write_retries(retries)
            return count

    def reset(self, spec_name: str, stage: str) -> None:
        with self._state_lock():
            retries = self._read_retries()
            key = self.key(spec_name, stage)
            if key not in retries:
                return
            retries[key] = {
                "spec_name": spec_name,
                "stage": stage,
                "count": 0,
                "last_attempt": None,
            }
            self._write_retries(retries)

    def reset_spec(self, spec_name: str) -> int:
        """Reset every stage counter that belongs to ``spec_name``."""
        with self._state_lock():
            retries = self._read_retries()
            touched = 0
            for entry in retries.values():
                if entry.get("spec_name") == spec_name and entry.get("count"):
                    entry["count"] = 0
                    entry["last_attempt"] = None
                    touched += 1
            if touched:
                self._write_retries(retries)
            return touched

    def entries(self) -> list[dict[str, Any]]:
        entries = list(self._read_retries().values())
        entries.sort(key=lambda item: (str(item.get("spec_name", "")), str(item.get("stage", ""))))
        return entries
