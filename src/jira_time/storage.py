# SPDX-License-Identifier: LGPL-3.0-only
# Copyright (c) 2026 Mirrowel

"""
Credential storage.

Holds the single credential record as one JSON file. Every save replaces the
whole file atomically (write to temp, then rename) so concurrent writers can
never leave a record mixing fields from two different token responses.
"""

import json
import logging
import os
import tempfile
import threading
from pathlib import Path
from typing import Any, Dict, Optional, Union

lib_logger = logging.getLogger("jira_time")


class CredentialStore:
    """
    Durable key-value record for the current token state.

    Absence of the file is the normal logged-out state, not an error.
    """

    def __init__(self, file_path: Union[str, Path]):
        self.file_path = Path(file_path)
        self._lock = threading.Lock()

    def exists(self) -> bool:
        return self.file_path.exists()

    def load(self) -> Optional[Dict[str, Any]]:
        """Return the stored record, or None if missing, empty or unreadable."""
        try:
            content = self.file_path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        except OSError as e:
            lib_logger.error(f"Failed to read credential file '{self.file_path}': {e}")
            return None

        if not content.strip():
            return None

        try:
            data = json.loads(content)
        except json.JSONDecodeError as e:
            lib_logger.error(f"Failed to parse JSON from '{self.file_path}': {e}")
            return None

        if not isinstance(data, dict):
            lib_logger.error(
                f"Credential file '{self.file_path}' does not hold a JSON object"
            )
            return None
        return data

    def save(self, data: Dict[str, Any]) -> bool:
        """Atomically replace the stored record. Returns True on success."""
        with self._lock:
            parent_dir = self.file_path.parent
            tmp_fd = None
            tmp_path = None
            try:
                parent_dir.mkdir(parents=True, exist_ok=True)
                tmp_fd, tmp_path = tempfile.mkstemp(
                    dir=parent_dir, prefix=".tmp_", suffix=".json", text=True
                )

                with os.fdopen(tmp_fd, "w", encoding="utf-8") as f:
                    tmp_fd = None
                    json.dump(data, f, indent=2)
                    f.flush()
                    os.fsync(f.fileno())

                try:
                    os.chmod(tmp_path, 0o600)
                except OSError:
                    # Not supported everywhere (e.g. some Windows filesystems)
                    lib_logger.debug(f"Could not restrict permissions on '{tmp_path}'")

                os.replace(tmp_path, self.file_path)
                tmp_path = None

                lib_logger.debug(f"Saved credentials to '{self.file_path}' (atomic write).")
                return True

            except OSError as e:
                lib_logger.error(f"Failed to save credentials to '{self.file_path}': {e}")
                return False
            finally:
                if tmp_fd is not None:
                    os.close(tmp_fd)
                if tmp_path and os.path.exists(tmp_path):
                    os.unlink(tmp_path)

    def delete(self) -> bool:
        """Remove the record unconditionally. True if a file was removed."""
        with self._lock:
            try:
                self.file_path.unlink()
            except FileNotFoundError:
                return False
            lib_logger.info(f"Deleted credential file: {self.file_path}")
            return True
