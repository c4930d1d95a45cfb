# tests/conftest.py
# Shared factories for events and rules
import os
import sys
from datetime import datetime, timedelta, timezone
from xml.sax.saxutils import escape

import pytest

sys.path.append(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from datamodels.events import LogEntry  # noqa: E402
from detection.rule_loader import rule_from_dict  # noqa: E402

BASE_TIME = datetime(2024, 5, 1, 12, 0, 0, tzinfo=timezone.utc)
SYSMON = "Microsoft-Windows-Sysmon"
SYSMON_CHANNEL = "Microsoft-Windows-Sysmon/Operational"


def sysmon_xml(event_id, fields, computer="WS01"):
    data = "".join(f'<Data Name="{name}">{escape(str(value))}</Data>' for name, value in fields.items())
    return (
        '<Event xmlns="http://schemas.microsoft.com/win/2004/08/events/event">'
        f'<System><Provider Name="{SYSMON}"/><EventID>{event_id}</EventID>'
        f'<Computer>{computer}</Computer></System>'
        f'<EventData>{data}</EventData></Event>'
    )


def build_event(event_id=1, fields=None, uid=None, offset=0, computer="WS01",
                source=SYSMON, path=SYSMON_CHANNEL, event_data=None, raw_line=None, timestamp="offset"):
    """LogEntry with a Sysmon-shaped XML payload; offset is seconds after BASE_TIME."""
    fields = fields or {}
    if timestamp == "offset":
        timestamp = BASE_TIME + timedelta(seconds=offset)
    kwargs = dict(
        timestamp=timestamp,
        event_id=event_id,
        level="Information",
        source=source,
        path=path,
        computer=computer,
        raw_line=sysmon_xml(event_id, fields, computer) if raw_line is None else raw_line,
        event_data=dict(event_data or {}),
    )
    if uid is not None:
        kwargs["uid"] = uid
    return LogEntry(**kwargs)


def build_rule(rule_id="rule-1", **detection):
    data = {
        "id": rule_id,
        "title": detection.pop("title", rule_id.replace("-", " ").title()),
        "severity": detection.pop("severity", "high"),
        "tags": detection.pop("tags", []),
    }
    data.update(detection)
    return rule_from_dict(data)


@pytest.fixture
def make_event():
    return build_event


@pytest.fixture
def make_rule():
    return build_rule
