"""
Report History Store.

Durable append-only CSV log of report attempts. The history is read in full
at the start of each cycle to build a HistoryIndex for dedup and cooldown
checks, appended to after every reportable outcome, and rewritten only to
flip the "forwarded" flag. When the file grows past the configured size it
is reset to the header row.
"""

import csv
import io
import os
from datetime import datetime, timedelta
from pathlib import Path
from typing import Iterable, Optional

from .audit_logger import AuditLogger
from .enums import LogLevel, OutcomeStatus
from .exceptions import PersistenceError
from .models import Event, ReportRecord, format_timestamp, parse_timestamp


HEADER = [
    "Timestamp",
    "CF RayID",
    "IP",
    "Country",
    "Hostname",
    "Endpoint",
    "User-Agent",
    "Action taken",
    "Status",
    "Forwarded",
]


class ReportHistoryStore:
    """
    CSV-backed report history.

    The file is created with a header row on first use. Rows with an
    unknown status or an unparseable timestamp are ignored on read.
    """

    COMPONENT = "history_store"

    def __init__(
        self,
        file_path: Path,
        max_bytes: int = 4 * 1024 * 1024,
        logger: Optional[AuditLogger] = None,
    ) -> None:
        """
        Initialize the history store.

        Args:
            file_path: Path of the CSV file
            max_bytes: Size above which the file is reset to its header
            logger: Optional audit logger
        """
        self._file_path = file_path
        self._max_bytes = max_bytes
        self._logger = logger

    @property
    def file_path(self) -> Path:
        return self._file_path

    def ensure_file(self) -> None:
        """
        Create the parent directory and the header row if missing.

        Raises:
            PersistenceError: If the directory or file cannot be created
        """
        if self._file_path.exists():
            return
        try:
            self._file_path.parent.mkdir(parents=True, exist_ok=True)
            self._write_rows([])
        except OSError as e:
            raise PersistenceError(
                code="io_error",
                message=f"Failed to create history file: {e}",
                details={"file_path": str(self._file_path)},
            ) from e

    def append_record(self, record: ReportRecord) -> None:
        """
        Append one record, truncating the file first if it is oversized.

        Raises:
            PersistenceError: If the file cannot be written
        """
        self.ensure_file()
        self.truncate_if_oversized()
        try:
            with open(self._file_path, "a", encoding="utf-8", newline="") as f:
                csv.writer(f).writerow(self._to_row(record))
        except OSError as e:
            raise PersistenceError(
                code="io_error",
                message=f"Failed to append to history file: {e}",
                details={"file_path": str(self._file_path)},
            ) from e

    def read_all(self) -> list[ReportRecord]:
        """
        Read every valid record, oldest first.

        Returns:
            List of records; empty if the file does not exist

        Raises:
            PersistenceError: If the file cannot be read
        """
        if not self._file_path.exists():
            return []
        try:
            # Undecodable bytes become U+FFFD and their rows are dropped below
            with open(self._file_path, "r", encoding="utf-8", errors="replace", newline="") as f:
                content = f.read()
        except OSError as e:
            raise PersistenceError(
                code="io_error",
                message=f"Failed to read history file: {e}",
                details={"file_path": str(self._file_path)},
            ) from e

        records = []
        ignored = 0
        reader = csv.reader(io.StringIO(content))
        next(reader, None)  # header
        for row in reader:
            if not row:
                continue
            record = self._from_row(row)
            if record is None:
                ignored += 1
            else:
                records.append(record)

        if ignored:
            self._log(LogLevel.DEBUG, f"Ignored {ignored} unreadable history rows")
        return records

    def truncate_if_oversized(self) -> bool:
        """
        Reset the file to its header row if it exceeds the size limit.

        Returns:
            True if the file was truncated

        Raises:
            PersistenceError: If the file cannot be rewritten
        """
        try:
            size = os.path.getsize(self._file_path)
        except FileNotFoundError:
            return False
        except OSError as e:
            raise PersistenceError(
                code="io_error",
                message=f"Failed to stat history file: {e}",
                details={"file_path": str(self._file_path)},
            ) from e

        if size <= self._max_bytes:
            return False

        try:
            self._write_rows([])
        except OSError as e:
            raise PersistenceError(
                code="io_error",
                message=f"Failed to truncate history file: {e}",
                details={"file_path": str(self._file_path)},
            ) from e

        self._log(
            LogLevel.WARN,
            f"History file exceeded {self._max_bytes} bytes and has been reset",
            {"size_bytes": size},
        )
        return True

    def mark_forwarded(self, ray_ids: Iterable[str]) -> int:
        """
        Flip the forwarded flag on every record with one of the given ray ids.

        Args:
            ray_ids: Correlation ids of forwarded records

        Returns:
            Number of rows updated

        Raises:
            PersistenceError: If the file cannot be rewritten
        """
        wanted = set(ray_ids)
        if not wanted:
            return 0

        records = self.read_all()
        updated = 0
        for record in records:
            if record.ray_id in wanted and not record.forwarded:
                record.forwarded = True
                updated += 1

        if updated:
            tmp_path = self._file_path.with_suffix(self._file_path.suffix + ".tmp")
            try:
                self._write_rows((self._to_row(r) for r in records), path=tmp_path)
                os.replace(tmp_path, self._file_path)
            except OSError as e:
                raise PersistenceError(
                    code="io_error",
                    message=f"Failed to update history file: {e}",
                    details={"file_path": str(self._file_path)},
                ) from e
        return updated

    def _write_rows(self, rows: Iterable[list[str]], path: Optional[Path] = None) -> None:
        with open(path or self._file_path, "w", encoding="utf-8", newline="") as f:
            writer = csv.writer(f)
            writer.writerow(HEADER)
            writer.writerows(rows)

    @staticmethod
    def _to_row(record: ReportRecord) -> list[str]:
        return [
            format_timestamp(record.timestamp),
            record.ray_id,
            record.ip,
            record.country,
            record.host,
            record.path,
            record.user_agent,
            record.action.upper(),
            record.status.value,
            "true" if record.forwarded else "false",
        ]

    @staticmethod
    def _from_row(row: list[str]) -> Optional[ReportRecord]:
        if len(row) < 9 or any("\ufffd" in cell for cell in row):
            return None
        try:
            timestamp = parse_timestamp(row[0])
            status = OutcomeStatus(row[8])
        except ValueError:
            return None
        return ReportRecord(
            timestamp=timestamp,
            ray_id=row[1],
            ip=row[2],
            country=row[3],
            host=row[4],
            path=row[5],
            user_agent=row[6],
            action=row[7],
            status=status,
            forwarded=len(row) > 9 and row[9].strip().lower() == "true",
        )

    def _log(self, level: LogLevel, message: str, data: Optional[dict] = None) -> None:
        if self._logger:
            self._logger.log(level, self.COMPONENT, message, data)


class HistoryIndex:
    """
    Lookup of the most recent handled record per IP and per ray id.

    Only records whose status counts as handled are indexed. Among records
    for the same key the latest timestamp wins.
    """

    def __init__(self, records: Iterable[ReportRecord] = ()) -> None:
        self._by_ip: dict[str, ReportRecord] = {}
        self._by_ray_id: dict[str, ReportRecord] = {}
        for record in records:
            self.add(record)

    def __len__(self) -> int:
        return len(self._by_ip)

    def add(self, record: ReportRecord) -> None:
        """Index a record if its status is handled and it is newer."""
        if not record.status.is_handled:
            return
        for index, key in ((self._by_ip, record.ip), (self._by_ray_id, record.ray_id)):
            if not key:
                continue
            current = index.get(key)
            if current is None or record.timestamp >= current.timestamp:
                index[key] = record

    def latest_for(self, ip: str, ray_id: str = "") -> Optional[ReportRecord]:
        """Return the most recent handled record matching the IP or ray id."""
        candidates = [
            record
            for record in (self._by_ip.get(ip), self._by_ray_id.get(ray_id) if ray_id else None)
            if record is not None
        ]
        if not candidates:
            return None
        return max(candidates, key=lambda r: r.timestamp)

    def reported_within(self, event: Event, now: datetime, cooldown: timedelta) -> bool:
        """True if the event's IP or ray id was handled less than ``cooldown`` ago."""
        latest = self.latest_for(event.client_ip, event.ray_id)
        return latest is not None and now - latest.timestamp < cooldown

