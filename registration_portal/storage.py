"""Persistence for registration records."""
from __future__ import annotations

import json
import logging
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, List, Optional

from .models import RegistrationRecord, RegistrationStatus, normalize_email


logger = logging.getLogger(__name__)


class DuplicateEmailError(ValueError):
    """Raised when a record with the same Google email already exists."""


class RegistrationStore:
    """Thread-safe JSON-backed table of registration records.

    Email uniqueness is checked under the store lock, so concurrent inserts of
    the same address cannot both succeed.
    """

    def __init__(self, path: Path) -> None:
        self.path = path
        self._lock = threading.Lock()
        self._records: Dict[int, RegistrationRecord] = {}
        self._next_id = 1
        self._load()

    # ------------------------------------------------------------------ #
    # Persistence                                                        #
    # ------------------------------------------------------------------ #
    def _load(self) -> None:
        if not self.path.exists():
            self.path.parent.mkdir(parents=True, exist_ok=True)
            self._records = {}
            return
        with self.path.open("r", encoding="utf-8") as handle:
            payload = json.load(handle) or {}
        self._records = {}
        for entry in payload.get("users") or []:
            record = RegistrationRecord.from_dict(entry)
            self._records[record.id] = record
        highest = max(self._records, default=0)
        self._next_id = max(int(payload.get("next_id") or 1), highest + 1)

    def _save(self) -> None:
        payload = {
            "next_id": self._next_id,
            "users": [record.to_dict() for record in sorted(self._records.values(), key=lambda r: r.id)],
        }
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.path.with_suffix(".tmp")
        with tmp_path.open("w", encoding="utf-8") as handle:
            json.dump(payload, handle, indent=2)
        tmp_path.replace(self.path)

    # ------------------------------------------------------------------ #
    # Queries                                                            #
    # ------------------------------------------------------------------ #
    def get(self, record_id: int) -> Optional[RegistrationRecord]:
        with self._lock:
            record = self._records.get(record_id)
            return self._copy(record) if record else None

    def get_by_email(self, google_email: str) -> Optional[RegistrationRecord]:
        target = normalize_email(google_email)
        with self._lock:
            for record in self._records.values():
                if normalize_email(record.google_email) == target:
                    return self._copy(record)
        return None

    def list(self, status: Optional[RegistrationStatus] = None) -> List[RegistrationRecord]:
        with self._lock:
            records = [
                self._copy(record)
                for record in self._records.values()
                if status is None or record.status == status
            ]
        records.sort(key=lambda record: (record.created_at, record.id))
        return records

    # ------------------------------------------------------------------ #
    # Mutations                                                          #
    # ------------------------------------------------------------------ #
    def add(self, google_email: str) -> RegistrationRecord:
        cleaned = google_email.strip()
        target = normalize_email(cleaned)
        with self._lock:
            if any(normalize_email(record.google_email) == target for record in self._records.values()):
                raise DuplicateEmailError(cleaned)
            record = RegistrationRecord(
                id=self._next_id,
                google_email=cleaned,
                status=RegistrationStatus.PENDING,
                created_at=datetime.now(timezone.utc),
            )
            self._records[record.id] = record
            self._next_id += 1
            self._save()
            logger.debug("Stored registration %s for %s", record.id, cleaned)
            return self._copy(record)

    def update(self, record: RegistrationRecord) -> None:
        """Replace the stored record with the supplied copy."""

        with self._lock:
            if record.id not in self._records:
                raise KeyError(record.id)
            self._records[record.id] = self._copy(record)
            self._save()

    def delete(self, record_id: int) -> bool:
        with self._lock:
            if self._records.pop(record_id, None) is None:
                return False
            self._save()
            return True

    @staticmethod
    def _copy(record: RegistrationRecord) -> RegistrationRecord:
        return RegistrationRecord.from_dict(record.to_dict())


__all__ = ["DuplicateEmailError", "RegistrationStore"]
