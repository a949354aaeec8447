"""
Board Snapshots - JSON files holding an account's stages and cards.

The snapshot store:
- Keeps one file per account under a data directory
- Writes atomically (temp file + rename)
- Is optional: without a data dir the repository is memory-only

Snapshots are a convenience for running the service standalone.
They are not a replay log: a snapshot is the latest state only.
"""

from __future__ import annotations
import hashlib
import json
import logging
import os
import tempfile
import time
from pathlib import Path
from typing import Any


logger = logging.getLogger(__name__)

SNAPSHOT_VERSION = 1


class BoardSnapshotStore:
    """
    File-based snapshot storage.

    Usage:
        store = BoardSnapshotStore(data_dir="~/.stageflow/boards")
        store.save("acme", {"stages": [...], "cards": [...]})
        data = store.load("acme")
    """

    def __init__(self, data_dir: str | Path | None = None):
        if data_dir is None:
            data_dir = Path.home() / ".stageflow" / "boards"
        self.data_dir = Path(data_dir).expanduser()
        self.data_dir.mkdir(parents=True, exist_ok=True)

    def load(self, account_id: str) -> dict[str, Any] | None:
        """
        Load an account's snapshot.

        Returns None if there is none. An unreadable file is logged and
        treated as missing so the account starts empty.
        """
        path = self._get_path(account_id)
        if not path.exists():
            return None
        try:
            with open(path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as exc:
            logger.warning("[stageflow] unreadable snapshot %s: %s", path, exc)
            return None
        if data.get("version") != SNAPSHOT_VERSION:
            logger.warning(
                "[stageflow] snapshot %s has version %r, expected %d",
                path, data.get("version"), SNAPSHOT_VERSION,
            )
            return None
        return data

    def save(self, account_id: str, data: dict[str, Any]):
        """Write an account's snapshot, replacing the previous one."""
        path = self._get_path(account_id)
        payload = {
            "version": SNAPSHOT_VERSION,
            "account_id": account_id,
            "saved_at": time.time(),
            **data,
        }
        # One temp file per write; concurrent saves never share it
        with tempfile.NamedTemporaryFile(
            "w", dir=self.data_dir, suffix=".json.tmp", delete=False, encoding="utf-8"
        ) as f:
            tmp_path = f.name
            try:
                json.dump(payload, f, indent=2)
            except Exception:
                f.close()
                os.unlink(tmp_path)
                raise
        try:
            os.replace(tmp_path, path)
        except OSError:
            Path(tmp_path).unlink(missing_ok=True)
            raise

    def delete(self, account_id: str):
        self._get_path(account_id).unlink(missing_ok=True)

    def list_accounts(self) -> list[str]:
        """List account ids that have a snapshot."""
        accounts = []
        for path in sorted(self.data_dir.glob("*.json")):
            try:
                with open(path, "r", encoding="utf-8") as f:
                    accounts.append(json.load(f).get("account_id", path.stem))
            except (OSError, json.JSONDecodeError):
                continue
        return accounts

    def _get_path(self, account_id: str) -> Path:
        """
        Get file path for an account.

        Account ids are hashed so any string is a safe file name.
        """
        digest = hashlib.sha256(str(account_id).encode("utf-8")).hexdigest()[:16]
        return self.data_dir / f"{digest}.json"
