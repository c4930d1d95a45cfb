# datamodels/events.py
from __future__ import annotations
import json
import logging
import os
import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Mapping, Optional

from dateutil import parser as dt_parser

import constants
from infra.errors import ErrorCodes, EventLoadError

logger = logging.getLogger(__name__)


def normalize_timestamp(value: Any) -> Optional[datetime]:
    """Coerce a decoded timestamp into an aware UTC datetime, or None if unusable."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        ts = value
    elif isinstance(value, (int, float)) and not isinstance(value, bool):
        # epoch milliseconds, as the decoder emits them
        try:
            return datetime.fromtimestamp(value / 1000.0, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return None
    else:
        try:
            ts = dt_parser.parse(str(value))
        except (ValueError, OverflowError, TypeError):
            return None
    if ts.tzinfo is None:
        return ts.replace(tzinfo=timezone.utc)
    try:
        return ts.astimezone(timezone.utc)
    except OverflowError:
        return None


def _coerce_event_id(value: Any) -> Optional[int]:
    if value is None or isinstance(value, bool):
        return None
    try:
        return int(str(value).strip())
    except ValueError:
        return None


def _new_uid() -> str:
    return uuid.uuid4().hex


@dataclass(frozen=True, eq=False)
class LogEntry:
    """One decoded Windows event. Identity is the ingestion-minted uid."""
    timestamp: Optional[datetime] = None   # UTC, None if missing or invalid
    event_id: Optional[int] = None
    level: Optional[str] = None
    source: Optional[str] = None           # provider
    path: Optional[str] = None             # channel
    computer: Optional[str] = None
    message: str = ""
    raw_line: str = ""                     # XML payload as decoded
    event_data: Dict[str, str] = field(default_factory=dict)
    source_file: Optional[str] = None
    uid: str = field(default_factory=_new_uid)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, LogEntry):
            return NotImplemented
        return self.uid == other.uid

    def __hash__(self) -> int:
        return hash(self.uid)

    @classmethod
    def from_dict(cls, record: Mapping[str, Any], uid: Optional[str] = None) -> "LogEntry":
        """Build an entry from a decoder record. Accepts camelCase or snake_case keys."""
        def pick(*keys: str) -> Any:
            for key in keys:
                if key in record and record[key] is not None:
                    return record[key]
            return None

        event_data = pick("eventData", "event_data") or {}
        if not isinstance(event_data, Mapping):
            event_data = {}

        def text(value: Any) -> Optional[str]:
            return None if value is None else str(value)

        return cls(
            timestamp=normalize_timestamp(pick("timestamp", "ts")),
            event_id=_coerce_event_id(pick("eventId", "event_id", "EventID")),
            level=text(pick("level")),
            source=text(pick("source", "provider", "Provider")),
            path=text(pick("path", "channel", "Channel")),
            computer=text(pick("computer", "Computer")),
            message=text(pick("message")) or "",
            raw_line=text(pick("rawLine", "raw_line")) or "",
            event_data={str(k): str(v) for k, v in event_data.items() if v is not None},
            source_file=text(pick("sourceFile", "source_file")),
            uid=uid or _new_uid(),
        )


def ingest_records(records: Iterable[Mapping[str, Any]], source_file: Optional[str] = None) -> List[LogEntry]:
    """Turn decoder records into LogEntry objects with deterministic uids.

    Records that are not mappings are skipped with a warning.
    """
    tag = source_file or constants.DEFAULT_SOURCE_TAG
    out: List[LogEntry] = []
    for n, record in enumerate(records, start=1):
        if not isinstance(record, Mapping):
            logger.warning("Skipping non-object record #%d from %s", n, tag)
            continue
        entry = LogEntry.from_dict(record, uid=f"{tag}:{n}")
        if entry.source_file is None and source_file:
            entry = replace(entry, source_file=source_file)
        out.append(entry)
    return out


def load_entries(path: str) -> List[LogEntry]:
    """Load decoded events from a JSON array or JSON-lines file."""
    if not os.path.isfile(path):
        raise EventLoadError(f"Event file not found: {path}", ErrorCodes.EVENT_FILE_MISSING)
    try:
        with open(path, "r", encoding=constants.ENCODING_UTF8, errors="replace") as f:
            content = f.read()
    except OSError as e:
        raise EventLoadError(f"Failed to read event file {path}: {e}", ErrorCodes.EVENT_FILE_UNREADABLE) from e

    tag = os.path.basename(path)
    stripped = content.lstrip()
    if stripped.startswith("["):
        try:
            records = json.loads(stripped)
        except json.JSONDecodeError as e:
            raise EventLoadError(f"Invalid JSON array in {path}: {e}", ErrorCodes.EVENT_FILE_UNREADABLE) from e
        return ingest_records(records, source_file=tag)

    records = []
    for lineno, line in enumerate(content.splitlines(), start=1):
        if not line.strip():
            continue
        try:
            records.append(json.loads(line))
        except json.JSONDecodeError:
            logger.warning("Skipping unparseable line %d in %s", lineno, tag)
    return ingest_records(records, source_file=tag)
