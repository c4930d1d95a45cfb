# detection/field_resolver.py
"""
Field extraction for decoded Windows events.

A field name is resolved by an ordered pipeline of extractors; the first one
that returns a value wins:

1. first-class LogEntry attributes (``message``, ``eventId``, ``source`` ...)
2. the fixed alias table (``Provider``, ``EventID``, ``Computer``)
3. the decoder's pre-parsed EventData map
4. two cheap regex shapes over the XML payload
5. a full XML parse over the EventData / UserData / System sections

Nothing in here raises on malformed payloads. An unresolvable field is None.
"""
from __future__ import annotations

import logging
import re
import xml.etree.ElementTree as ET
from functools import lru_cache
from typing import Any, Dict, Iterable, List, Optional, Tuple
from xml.sax.saxutils import unescape

import constants
from datamodels.events import LogEntry

logger = logging.getLogger(__name__)

_XML_ENTITIES = {"&quot;": '"', "&apos;": "'"}
_PARSE_FAILED = object()
# 4688 NewProcessId / ProcessId are PIDs, reused across hosts
_NUMERIC_PID = re.compile(r"^(?:0x[0-9a-fA-F]+|\d+)$")

# Field names that map straight onto LogEntry attributes
_ATTRIBUTES = {
    "timestamp": "timestamp",
    "eventId": "event_id",
    "event_id": "event_id",
    "level": "level",
    "source": "source",
    "path": "path",
    "computer": "computer",
    "message": "message",
    "rawLine": "raw_line",
    "raw_line": "raw_line",
    "sourceFile": "source_file",
    "source_file": "source_file",
}


class FieldCache:
    """Run-scoped memo of resolved fields and parsed payloads.

    Create one per matching pass; never share one across concurrent runs.
    """

    def __init__(self) -> None:
        self._values: Dict[Tuple[str, str], Any] = {}
        self._documents: Dict[str, Any] = {}
        self.hits = 0
        self.misses = 0

    def lookup(self, event: LogEntry, name: str) -> Tuple[bool, Any]:
        key = (event.uid, name)
        if key in self._values:
            self.hits += 1
            return True, self._values[key]
        self.misses += 1
        return False, None

    def store(self, event: LogEntry, name: str, value: Any) -> None:
        self._values[(event.uid, name)] = value

    def document(self, event: LogEntry) -> Optional[ET.Element]:
        doc = self._documents.get(event.uid)
        if doc is None:
            doc = _parse_payload(event.raw_line)
            self._documents[event.uid] = doc if doc is not None else _PARSE_FAILED
        return None if doc is _PARSE_FAILED else doc

    def clear(self) -> None:
        self._values.clear()
        self._documents.clear()


class FieldExtractor:
    """One resolution strategy. Returns None when it has nothing to say."""

    def extract(self, event: LogEntry, name: str, cache: Optional[FieldCache]) -> Any:
        raise NotImplementedError


class AttributeExtractor(FieldExtractor):
    def extract(self, event, name, cache):
        attr = _ATTRIBUTES.get(name)
        if attr is None:
            return None
        value = getattr(event, attr, None)
        return None if value == "" else value


class AliasExtractor(FieldExtractor):
    def __init__(self, aliases: Optional[Dict[str, str]] = None) -> None:
        self.aliases = dict(aliases or constants.FIELD_ALIASES)

    def extract(self, event, name, cache):
        attr = self.aliases.get(name)
        if attr is None:
            return None
        value = getattr(event, attr, None)
        return None if value == "" else value


class EventDataExtractor(FieldExtractor):
    def extract(self, event, name, cache):
        if not event.event_data:
            return None
        return event.event_data.get(name)


class PayloadRegexExtractor(FieldExtractor):
    """<Data Name="X">v</Data> first, then <X>v</X>."""

    def extract(self, event, name, cache):
        raw = event.raw_line
        if not raw or "<" not in raw:
            return None
        data_re, direct_re = _field_patterns(name)
        m = data_re.search(raw) or direct_re.search(raw)
        if m is None:
            return None
        return unescape(m.group(1), _XML_ENTITIES)


class PayloadXmlExtractor(FieldExtractor):
    """Full parse, searching EventData, UserData and System in that order."""

    def extract(self, event, name, cache):
        raw = event.raw_line
        if not raw or "<" not in raw:
            return None
        root = cache.document(event) if cache is not None else _parse_payload(raw)
        if root is None:
            return None
        return _lookup_sections(root, name)


DEFAULT_PIPELINE: List[FieldExtractor] = [
    AttributeExtractor(),
    AliasExtractor(),
    EventDataExtractor(),
    PayloadRegexExtractor(),
    PayloadXmlExtractor(),
]


def resolve_field(event: LogEntry, name: str, cache: Optional[FieldCache] = None,
                  pipeline: Optional[Iterable[FieldExtractor]] = None) -> Any:
    """Return the value of a named field on an event, or None if absent."""
    if cache is not None:
        found, value = cache.lookup(event, name)
        if found:
            return value

    value = None
    for extractor in (pipeline or DEFAULT_PIPELINE):
        value = extractor.extract(event, name, cache)
        if value is not None:
            break

    if cache is not None:
        cache.store(event, name, value)
    return value


# === Process identity helpers ===

def _first_field(event: LogEntry, names: Iterable[str], cache: Optional[FieldCache]) -> Optional[str]:
    for name in names:
        value = resolve_field(event, name, cache)
        if value is not None and str(value).strip():
            return str(value).strip()
    return None


def process_guid(event: LogEntry, cache: Optional[FieldCache] = None) -> Optional[str]:
    """Per-launch process identifier (ProcessGuid, or NewProcessId on 4688)."""
    return _first_field(event, constants.PROCESS_GUID_FIELDS, cache)


def parent_process_guid(event: LogEntry, cache: Optional[FieldCache] = None) -> Optional[str]:
    parent = _first_field(event, constants.PARENT_GUID_FIELDS, cache)
    if parent is None and event.event_id == constants.EID_SECURITY_PROCESS_CREATE:
        # on 4688 the creator is ProcessId
        parent = _first_field(event, ["ProcessId"], cache)
    return parent


def target_process_guid(event: LogEntry, cache: Optional[FieldCache] = None) -> Optional[str]:
    """Accessed process on a process-access event."""
    return _first_field(event, constants.TARGET_GUID_FIELDS, cache)


def scoped_process_id(event: LogEntry, value: Optional[str]) -> Optional[str]:
    """Qualify numeric process ids with the host; GUIDs are globally unique already."""
    if value is None:
        return None
    if event.computer and _NUMERIC_PID.match(value):
        return f"{event.computer}/{value.lower()}"
    return value


def process_key(event: LogEntry, cache: Optional[FieldCache] = None) -> Optional[str]:
    return scoped_process_id(event, process_guid(event, cache))


def parent_process_key(event: LogEntry, cache: Optional[FieldCache] = None) -> Optional[str]:
    return scoped_process_id(event, parent_process_guid(event, cache))


def target_process_key(event: LogEntry, cache: Optional[FieldCache] = None) -> Optional[str]:
    return scoped_process_id(event, target_process_guid(event, cache))


def process_image(event: LogEntry, cache: Optional[FieldCache] = None) -> Optional[str]:
    return _first_field(event, constants.PROCESS_IMAGE_FIELDS, cache)


def executable_name(path: Optional[str]) -> Optional[str]:
    """Lowercased file name of a Windows or POSIX path."""
    if not path:
        return None
    name = re.split(r"[\\/]", path.strip())[-1].strip().lower()
    return name or None


def process_name(event: LogEntry, cache: Optional[FieldCache] = None) -> Optional[str]:
    return executable_name(process_image(event, cache))


# === Payload internals ===

@lru_cache(maxsize=1024)
def _field_patterns(name: str) -> Tuple[re.Pattern, re.Pattern]:
    escaped = re.escape(name)
    data_re = re.compile(
        r"<Data\s+[^>]*\bName=[\"']" + escaped + r"[\"'][^>]*(?<!/)>(.*?)</Data>",
        re.DOTALL,
    )
    direct_re = re.compile(
        r"<" + escaped + r">(.*?)</" + escaped + r">",
        re.DOTALL,
    )
    return data_re, direct_re


def _parse_payload(raw: str) -> Optional[ET.Element]:
    if not raw or "<" not in raw:
        return None
    try:
        return ET.fromstring(raw.strip())
    except (ET.ParseError, ValueError) as e:
        logger.debug("Unparseable event payload: %s", e)
        return None


def _local(tag: Any) -> str:
    if not isinstance(tag, str):
        return ""
    return tag.rsplit("}", 1)[-1]


def _lookup_sections(root: ET.Element, name: str) -> Optional[str]:
    sections: Dict[str, ET.Element] = {}
    for el in root.iter():
        tag = _local(el.tag)
        if tag in constants.PAYLOAD_SECTIONS and tag not in sections:
            sections[tag] = el

    event_data = sections.get("EventData")
    if event_data is not None:
        for el in event_data.iter():
            if _local(el.tag) == "Data" and el.get("Name") == name and el.text:
                return el.text
        for el in event_data.iter():
            if el is not event_data and _local(el.tag) == name and el.text:
                return el.text

    user_data = sections.get("UserData")
    if user_data is not None:
        for el in user_data.iter():
            if el is not user_data and _local(el.tag) == name and el.text:
                return el.text

    system = sections.get("System")
    if system is not None:
        for el in system.iter():
            if el is not system and _local(el.tag) == name:
                value = el.text or el.get("SystemTime")
                if value:
                    return value
    return None
