"""
Buffer Store module for the persisted bulk buffer.

This module provides HMAC-protected storage for the bulk buffer so queued
reports survive a restart, ensuring data integrity and detecting tampering.
"""

import hashlib
import hmac
import json
import os
from datetime import datetime, timezone
from pathlib import Path

from .exceptions import PersistenceError, TamperingError
from .models import BufferEntry


class BufferStore:
    """
    Persistent bulk buffer storage with HMAC protection.

    The file holds the version, an ordered list of ``[ip, entry]`` pairs,
    the last update time and an HMAC-SHA256 over those fields. Writes go
    to a temporary file which then replaces the original.
    """

    VERSION = 1

    def __init__(self, file_path: Path, hmac_secret: str) -> None:
        """
        Initialize the buffer store.

        Args:
            file_path: Path to the buffer file (JSON format)
            hmac_secret: Secret key for HMAC computation
        """
        self._file_path = file_path
        self._hmac_secret = hmac_secret.encode("utf-8")

    @property
    def file_path(self) -> Path:
        """Get the buffer file path."""
        return self._file_path

    def load(self) -> dict[str, BufferEntry]:
        """
        Load the buffer from file and validate its HMAC.

        Returns:
            Ordered mapping of IP to BufferEntry; empty if the file doesn't exist

        Raises:
            TamperingError: If HMAC validation fails
            PersistenceError: If file cannot be read or parsed
        """
        if not self._file_path.exists():
            return {}

        try:
            with open(self._file_path, "r", encoding="utf-8") as f:
                raw_data = json.load(f)
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            raise PersistenceError(
                code="parse_error",
                message=f"Failed to parse buffer file: {e}",
                details={"file_path": str(self._file_path)},
            ) from e
        except OSError as e:
            raise PersistenceError(
                code="io_error",
                message=f"Failed to read buffer file: {e}",
                details={"file_path": str(self._file_path)},
            ) from e

        if not isinstance(raw_data, dict):
            raise PersistenceError(
                code="parse_error",
                message="Buffer file does not contain an object",
                details={"file_path": str(self._file_path)},
            )

        stored_hmac = raw_data.get("hmac", "")
        data_for_hmac = {
            "version": raw_data.get("version"),
            "entries": raw_data.get("entries", []),
            "last_updated": raw_data.get("last_updated"),
        }
        computed_hmac = self.compute_hmac(data_for_hmac)

        if not self.validate_hmac(str(stored_hmac), computed_hmac):
            raise TamperingError(
                code="hmac_mismatch",
                message="HMAC validation failed - buffer file may have been tampered with",
                details={"file_path": str(self._file_path)},
            )

        mapping: dict[str, BufferEntry] = {}
        try:
            for ip, entry in data_for_hmac["entries"]:
                mapping[ip] = BufferEntry.from_dict(entry)
        except (KeyError, TypeError, ValueError) as e:
            raise PersistenceError(
                code="parse_error",
                message=f"Invalid buffer entry: {e}",
                details={"file_path": str(self._file_path)},
            ) from e

        return mapping

    def save(self, mapping: dict[str, BufferEntry]) -> None:
        """
        Save the buffer to file with HMAC protection.

        Args:
            mapping: Ordered mapping of IP to BufferEntry

        Raises:
            PersistenceError: If file cannot be written
        """
        data_for_hmac = {
            "version": self.VERSION,
            "entries": [[ip, entry.to_dict()] for ip, entry in mapping.items()],
            "last_updated": datetime.now(timezone.utc).isoformat(),
        }
        output_data = dict(data_for_hmac, hmac=self.compute_hmac(data_for_hmac))

        tmp_path = self._file_path.with_suffix(self._file_path.suffix + ".tmp")
        try:
            self._file_path.parent.mkdir(parents=True, exist_ok=True)
            with open(tmp_path, "w", encoding="utf-8") as f:
                json.dump(output_data, f, indent=2, sort_keys=True)
            os.replace(tmp_path, self._file_path)
        except OSError as e:
            raise PersistenceError(
                code="io_error",
                message=f"Failed to write buffer file: {e}",
                details={"file_path": str(self._file_path)},
            ) from e

    def compute_hmac(self, data: dict) -> str:
        """
        Compute HMAC-SHA256 over serialized data.

        Args:
            data: Dictionary to compute HMAC over

        Returns:
            Hexadecimal HMAC string
        """
        serialized = json.dumps(data, sort_keys=True, separators=(",", ":"))
        return hmac.new(
            self._hmac_secret,
            serialized.encode("utf-8"),
            hashlib.sha256,
        ).hexdigest()

    def validate_hmac(self, stored_hmac: str, computed_hmac: str) -> bool:
        """Validate HMAC using constant-time comparison."""
        return hmac.compare_digest(stored_hmac, computed_hmac)
