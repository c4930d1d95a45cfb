# analysis/storyline.py
from __future__ import annotations
from typing import Dict, List, Optional

import constants
from datamodels.events import LogEntry
from datamodels.results import CorrelatedChain, StoryStep
from detection.field_resolver import FieldCache, executable_name, process_name, resolve_field


def _shorten(text: str, limit: int, keep_tail: bool = False) -> str:
    if len(text) <= limit:
        return text
    if keep_tail:
        return "..." + text[-limit:]
    return text[:limit] + "..."


def _select_events(chain: CorrelatedChain, max_steps: int, neighbor_span: int) -> List[LogEntry]:
    """Matched events plus their neighbours, capped; the first events if nothing matched."""
    events = list(chain.events)
    matched = chain.matched_uids
    picked = set()
    for pos, event in enumerate(events):
        if event.uid in matched:
            for i in range(max(0, pos - neighbor_span), min(len(events) - 1, pos + neighbor_span) + 1):
                picked.add(i)
    if not picked:
        return events[:max_steps]
    return [events[i] for i in sorted(picked)[:max_steps]]


def describe_event(event: LogEntry, cache: Optional[FieldCache] = None) -> Dict[str, str]:
    """One-line narrative for an event based on its Sysmon event type."""
    def get(name: str) -> Optional[str]:
        value = resolve_field(event, name, cache)
        return str(value) if value is not None and str(value) else None

    image = get("Image")
    proc = process_name(event, cache)
    summary = ""
    detail = ""
    eid = event.event_id

    if eid in constants.PROCESS_CREATE_IDS:
        summary = f"{proc} executed" if proc else "Process created"
        parent = executable_name(get("ParentImage") or get("ParentProcessName"))
        if parent:
            summary += f" by {parent}"
        command_line = get("CommandLine")
        if command_line and command_line != image:
            detail = _shorten(command_line, constants.STORY_DETAIL_LENGTH)
    elif eid == constants.EID_NETWORK_CONNECT:
        summary = f"{proc} connected to network" if proc else "Network connection"
        dest_ip = get("DestinationIp")
        if dest_ip:
            dest_port = get("DestinationPort")
            detail = f"{dest_ip}:{dest_port}" if dest_port else dest_ip
    elif eid == constants.EID_IMAGE_LOAD:
        dll = executable_name(get("ImageLoaded"))
        if dll:
            summary = f"{proc} loaded {dll}" if proc else f"Loaded {dll}"
        else:
            summary = "DLL/module loaded"
    elif eid == constants.EID_PROCESS_ACCESS:
        summary = f"{proc} accessed another process" if proc else "Process access"
        target = executable_name(get("TargetImage"))
        if target:
            detail = target
    elif eid == constants.EID_FILE_CREATE:
        target = get("TargetFilename")
        if target:
            name = executable_name(target)
            summary = f"{proc} created {name}" if proc else f"Created {name}"
            detail = _shorten(target, 60, keep_tail=True) if len(target) > 60 else ""
        else:
            summary = "File created"
    elif eid in constants.EID_REGISTRY_EVENTS:
        target = get("TargetObject")
        if target:
            summary = f"{proc} modified registry" if proc else "Registry modified"
            detail = _shorten(target.split("\\")[-1], 40, keep_tail=True)
        else:
            summary = "Registry activity"
    elif eid == constants.EID_DNS_QUERY:
        summary = f"{proc} performed DNS query" if proc else "DNS query"
        detail = get("QueryName") or ""
    elif eid == constants.EID_FILE_DELETE:
        target = get("TargetFilename")
        if target:
            name = executable_name(target)
            summary = f"{proc} deleted {name}" if proc else f"Deleted {name}"
        else:
            summary = "File deleted"
    else:
        summary = f"{proc} (Event {eid})" if proc else f"Event {eid}"

    user = get("User") or get("SubjectUserName")
    if user and user != "N/A" and "SYSTEM" not in user:
        account = user.split("\\")[-1]
        summary += f" [{account}]"

    return {"summary": summary, "detail": detail}


def build_storyline(chain: CorrelatedChain, max_steps: int = constants.MAX_STORY_STEPS,
                    neighbor_span: int = constants.STORY_NEIGHBOR_SPAN) -> List[StoryStep]:
    """Readable step list for a chain, centred on its detections."""
    cache = FieldCache()
    steps: List[StoryStep] = []
    for event in _select_events(chain, max_steps, neighbor_span):
        rules = tuple(dict.fromkeys(m.rule.title for m in chain.sigma_matches if m.event.uid == event.uid))
        text = describe_event(event, cache)
        steps.append(StoryStep(
            time=event.timestamp,
            summary=text["summary"],
            detail=text["detail"],
            has_match=bool(rules),
            matched_rules=rules,
        ))
    return steps
