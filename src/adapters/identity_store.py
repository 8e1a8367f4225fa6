"""File-based identity store for the device fingerprint and session artifact.

Reads never fail loudly: a missing or unparsable file is reported as absent
so the login engine can regenerate. Writes go to a temp file in the same
directory and are renamed into place, so a crash never leaves half a file.
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
from dataclasses import asdict
from datetime import datetime, timezone
from typing import Any, Optional

from core.errors import PersistenceError
from core.models import DeviceFingerprint, SessionArtifact

LOGGER = logging.getLogger(__name__)


def _read_json(path: str) -> Optional[Any]:
    try:
        with open(path, "r", encoding="utf-8") as handle:
            return json.load(handle)
    except FileNotFoundError:
        return None
    except (OSError, ValueError) as exc:
        LOGGER.warning("Ignoring unreadable %s: %s", path, exc)
        return None


def write_json_atomic(path: str, payload: Any) -> None:
    """Write JSON via temp file + rename; raise PersistenceError on failure."""

    directory = os.path.dirname(os.path.abspath(path))
    try:
        os.makedirs(directory, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(prefix=".tmp-", suffix=".json", dir=directory)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                json.dump(payload, handle, indent=2)
                handle.flush()
                os.fsync(handle.fileno())
            os.replace(tmp_path, path)
        except BaseException:
            if os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise
    except (OSError, TypeError, ValueError) as exc:
        raise PersistenceError(f"Could not write {path}: {exc}") from exc


class FileIdentityStore:
    """Satisfies IdentityStorePort with three JSON files."""

    def __init__(self, device_path: str, session_path: str, cookies_path: str) -> None:
        self._device_path = device_path
        self._session_path = session_path
        self._cookies_path = cookies_path

    def load_device(self, account_id: str) -> Optional[DeviceFingerprint]:
        data = _read_json(self._device_path)
        if not isinstance(data, dict):
            return None
        if data.get("account_id") != account_id:
            LOGGER.warning("Device file belongs to another account; regenerating")
            return None
        try:
            device = DeviceFingerprint(**data)
        except TypeError as exc:
            LOGGER.warning("Malformed device file: %s", exc)
            return None
        LOGGER.info("Loaded persistent device for %s", account_id)
        return device

    def save_device(self, account_id: str, device: DeviceFingerprint) -> None:
        payload = asdict(device)
        payload["account_id"] = account_id
        write_json_atomic(self._device_path, payload)
        LOGGER.info("Saved device fingerprint for %s", account_id)

    def load_session(self) -> Optional[SessionArtifact]:
        data = _read_json(self._session_path)
        if not isinstance(data, dict) or not isinstance(data.get("data"), dict):
            return None
        saved_at = None
        if data.get("saved_at"):
            try:
                saved_at = datetime.fromisoformat(data["saved_at"])
            except (TypeError, ValueError):
                saved_at = None
        return SessionArtifact(data=data["data"], saved_at=saved_at)

    def save_session(self, artifact: SessionArtifact) -> None:
        saved_at = artifact.saved_at or datetime.now(timezone.utc)
        write_json_atomic(self._session_path, {"saved_at": saved_at.isoformat(), "data": artifact.data})
        LOGGER.info("Session saved to %s", self._session_path)

    def load_cookies(self) -> Optional[list[dict]]:
        """Browser cookie export: a list of {name, value, domain, ...}."""

        data = _read_json(self._cookies_path)
        if not isinstance(data, list):
            return None
        cookies = [item for item in data if isinstance(item, dict) and item.get("name")]
        return cookies or None
