# analysis/correlation.py
"""
Correlation of flagged events into analyst-readable chains.

Anchors are events referenced by at least one SigmaMatch. Every other event
joins an anchor's chain only through an affinity:

- process identity: shared per-launch id, a declared parent id whose
  process also appears in the input, or the target of a process access;
- otherwise host + time window around an anchor;
- otherwise top-level image name + time window around an anchor.

Affinities are edges in an undirected networkx graph; its connected
components containing an anchor become chains. Time-window affinities link
each event to the contiguous run of anchors inside its window, and a
next-unlinked pointer keeps the total number of anchor-to-anchor edges
linear in the number of anchors.
"""
from __future__ import annotations
import bisect
import logging
from collections import Counter, defaultdict
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, Hashable, List, Mapping, Optional, Sequence, Tuple

import networkx as nx

import constants
from datamodels.events import LogEntry
from datamodels.results import CorrelatedChain, CorrelationStats, EventRelationship, SigmaMatch
from datamodels.rules import Severity
from detection.field_resolver import FieldCache, parent_process_key, process_key, process_name, target_process_key
from utils.performance import performance_monitor

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[int, int], None]
CancelCheck = Callable[[], bool]

_UTC_MIN = datetime.min.replace(tzinfo=timezone.utc)
_UTC_MAX = datetime.max.replace(tzinfo=timezone.utc)


def valid_timestamp(event: LogEntry) -> Optional[datetime]:
    """The event's timestamp as an aware UTC datetime, or None if missing/invalid."""
    ts = event.timestamp
    if not isinstance(ts, datetime):
        return None
    if ts.tzinfo is None:
        return ts.replace(tzinfo=timezone.utc)
    return ts


@dataclass
class _EventFacts:
    index: int
    event: LogEntry
    ts: Optional[datetime]
    guid: Optional[str]
    parent_guid: Optional[str]
    target_guid: Optional[str]
    host: Optional[str]
    process: Optional[str]


@dataclass
class _ChainDraft:
    seq: int
    members: List[_EventFacts]
    matches: List[SigmaMatch]
    severity: Severity = Severity.INFO
    score: int = 0
    hosts: Tuple[str, ...] = ()
    processes: Tuple[str, ...] = ()
    start: Optional[datetime] = None
    end: Optional[datetime] = None
    duration_ms: int = 0
    summary: str = ""
    relationships: List[EventRelationship] = field(default_factory=list)


def _window_bounds(ts: datetime, window: timedelta) -> Tuple[datetime, datetime]:
    """ts -/+ window, clamped to the representable datetime range."""
    try:
        start = ts - window
    except OverflowError:
        start = _UTC_MIN
    try:
        end = ts + window
    except OverflowError:
        end = _UTC_MAX
    return start, end


class _AnchorTimeline:
    """Anchors sharing a host (or image name), sorted by time."""

    def __init__(self, entries: List[Tuple[datetime, int]]):
        entries.sort()
        self.times = [t for t, _ in entries]
        self.indices = [i for _, i in entries]
        # _next[k] == k while anchors k and k+1 are not yet linked
        self._next = list(range(len(entries)))

    def _find(self, k: int) -> int:
        root = k
        while self._next[root] != root:
            root = self._next[root]
        while self._next[k] != root:
            self._next[k], k = root, self._next[k]
        return root

    def link(self, graph: nx.Graph, node: Hashable, ts: datetime, window: timedelta) -> None:
        start, end = _window_bounds(ts, window)
        lo = bisect.bisect_left(self.times, start)
        hi = bisect.bisect_right(self.times, end) - 1
        if lo > hi:
            return
        first = ("event", self.indices[lo])
        if first != node:
            graph.add_edge(node, first)
        k = self._find(lo)
        while k < hi:
            graph.add_edge(("event", self.indices[k]), ("event", self.indices[k + 1]))
            self._next[k] = k + 1
            k = self._find(k + 1)


class _Checkpoints:
    def __init__(self, on_progress: Optional[ProgressCallback], should_cancel: Optional[CancelCheck]):
        self.on_progress = on_progress
        self.should_cancel = should_cancel

    def reach(self, step: int) -> bool:
        """Report progress; True means the caller asked to stop."""
        if self.on_progress is not None:
            self.on_progress(step, constants.PROGRESS_CHECKPOINTS)
        if self.should_cancel is not None and self.should_cancel():
            logger.warning("Correlation cancelled at checkpoint %d/%d, returning partial result",
                           step, constants.PROGRESS_CHECKPOINTS)
            return True
        return False


def _chronological_key(facts: _EventFacts) -> Tuple[bool, datetime, int]:
    return (facts.ts is None, facts.ts or _UTC_MIN, facts.index)


def _collect_inputs(events: Sequence[LogEntry], matches_by_rule: Mapping[str, Sequence[SigmaMatch]]):
    universe: List[LogEntry] = []
    position: Dict[str, int] = {}
    for event in events:
        if event.uid not in position:
            position[event.uid] = len(universe)
            universe.append(event)

    matches_by_uid: Dict[str, List[SigmaMatch]] = defaultdict(list)
    seen = set()
    for matches in matches_by_rule.values():
        for match in matches:
            key = (match.rule.id, match.event.uid)
            if key in seen:
                continue
            seen.add(key)
            matches_by_uid[match.event.uid].append(match)
            if match.event.uid not in position:
                logger.debug("Matched event %s missing from event list, adding it", match.event.uid)
                position[match.event.uid] = len(universe)
                universe.append(match.event)
    return universe, matches_by_uid


def _build_affinity_graph(facts: List[_EventFacts], anchors: List[int], window: timedelta) -> nx.Graph:
    graph = nx.Graph()
    for idx in anchors:
        graph.add_node(("event", idx))

    # (a) process identity
    known_guids = {f.guid for f in facts if f.guid}
    for f in facts:
        if f.target_guid and f.target_guid != f.guid and f.target_guid in known_guids:
            graph.add_edge(("event", f.index), ("proc", f.target_guid))
        if not f.guid:
            continue
        graph.add_edge(("event", f.index), ("proc", f.guid))
        if f.parent_guid and f.parent_guid != f.guid and f.parent_guid in known_guids:
            graph.add_edge(("proc", f.guid), ("proc", f.parent_guid))

    # (b) host + window, (c) image name + window
    by_host: Dict[str, List[Tuple[datetime, int]]] = defaultdict(list)
    by_process: Dict[str, List[Tuple[datetime, int]]] = defaultdict(list)
    for idx in anchors:
        f = facts[idx]
        if f.ts is None:
            continue
        if f.host:
            by_host[f.host].append((f.ts, idx))
        if f.process:
            by_process[f.process].append((f.ts, idx))
    host_lines = {host: _AnchorTimeline(entries) for host, entries in by_host.items()}
    process_lines = {name: _AnchorTimeline(entries) for name, entries in by_process.items()}

    for f in facts:
        if f.guid or f.ts is None:
            continue
        if f.host:
            line = host_lines.get(f.host)
        elif f.process:
            line = process_lines.get(f.process)
        else:
            line = None
        if line is not None:
            line.link(graph, ("event", f.index), f.ts, window)
    return graph


def find_relationships(members: Sequence[_EventFacts]) -> List[EventRelationship]:
    """Typed links between chain members that share process identity."""
    by_guid: Dict[str, List[_EventFacts]] = defaultdict(list)
    for f in members:
        if f.guid:
            by_guid[f.guid].append(f)

    def rel(source: _EventFacts, target: _EventFacts, kind: str, field_name: str,
            confidence: float = 1.0) -> EventRelationship:
        return EventRelationship(source.event.uid, target.event.uid, kind, field_name, confidence)

    order = {f.index: pos for pos, f in enumerate(members)}
    out: List[EventRelationship] = []
    for pos, f in enumerate(members):
        eid = f.event.event_id
        if eid in constants.PROCESS_CREATE_IDS and f.parent_guid:
            out.extend(rel(p, f, constants.REL_PROCESS_SPAWN, "ParentProcessGuid")
                       for p in by_guid.get(f.parent_guid, ()) if p is not f)
        if eid == constants.EID_PROCESS_ACCESS and f.target_guid:
            out.extend(rel(f, t, constants.REL_PROCESS_ACCESS, "TargetProcessGuid",
                           constants.PROCESS_ACCESS_CONFIDENCE)
                       for t in by_guid.get(f.target_guid, ()) if t is not f)
        if not f.guid:
            continue
        same = by_guid[f.guid]
        out.extend(rel(o, f, constants.REL_SAME_PROCESS, "ProcessGuid")
                   for o in same if order[o.index] < pos)

        if eid == constants.EID_NETWORK_CONNECT:
            kind = constants.REL_NETWORK_CONNECTION
        elif eid in constants.FILE_OPERATION_IDS:
            kind = constants.REL_FILE_OPERATION
        elif eid in constants.EID_REGISTRY_EVENTS:
            kind = constants.REL_REGISTRY_OPERATION
        else:
            continue
        out.extend(rel(o, f, kind, "ProcessGuid")
                   for o in same if o is not f and o.event.event_id in constants.PROCESS_CREATE_IDS)
    return out


def score_chain(events: Sequence[LogEntry], matches: Sequence[SigmaMatch],
                hosts: Sequence[str], processes: Sequence[str]) -> int:
    """Threat score: weighted detections, chain size, behaviours and diversity."""
    score = sum(constants.SEVERITY_WEIGHTS[Severity.parse(m.rule.severity).label] for m in matches)
    score += min(len(events) * constants.EVENT_COUNT_WEIGHT, constants.EVENT_COUNT_CAP)

    event_ids = {e.event_id for e in events if e.event_id is not None}
    if event_ids & set(constants.PROCESS_CREATE_IDS) and constants.EID_NETWORK_CONNECT in event_ids:
        score += constants.PROCESS_NETWORK_BONUS
    if constants.EID_CREATE_REMOTE_THREAD in event_ids:
        score += constants.REMOTE_THREAD_BONUS
    if constants.EID_PROCESS_ACCESS in event_ids:
        score += constants.PROCESS_ACCESS_BONUS

    score += min(max(len(hosts) - 1, 0) * constants.EXTRA_HOST_WEIGHT, constants.EXTRA_HOST_CAP)
    score += min(max(len(processes) - 1, 0) * constants.EXTRA_PROCESS_WEIGHT, constants.EXTRA_PROCESS_CAP)
    techniques = {t for m in matches for t in m.rule.techniques}
    score += min(len(techniques) * constants.TECHNIQUE_WEIGHT, constants.TECHNIQUE_CAP)
    return score


def summarize_chain(events: Sequence[LogEntry], matches: Sequence[SigmaMatch], processes: Sequence[str]) -> str:
    """Short display-only narrative built from the dominant rule and observed actions."""
    parts: List[str] = []

    if matches:
        counts = Counter(m.rule.id for m in matches)
        rules = {m.rule.id: m.rule for m in matches}
        dominant = min(rules.values(), key=lambda r: (-int(r.severity), -counts[r.id], r.title, r.id))
        label = dominant.title
        if len(rules) > 1:
            label += f" (+{len(rules) - 1} more)"
        parts.append(label)

    if processes:
        shown = ", ".join(processes[:3])
        parts.append(f"Processes: {shown}{'...' if len(processes) > 3 else ''}")

    event_ids = {e.event_id for e in events}
    actions: List[str] = []
    if event_ids & set(constants.PROCESS_CREATE_IDS):
        actions.append("spawned")
    if constants.EID_NETWORK_CONNECT in event_ids:
        actions.append("connected")
    if constants.EID_FILE_CREATE in event_ids:
        actions.append("created files")
    if constants.EID_REGISTRY_SET in event_ids:
        actions.append("modified registry")
    if constants.EID_CREATE_REMOTE_THREAD in event_ids:
        actions.append("injected")
    if actions:
        parts.append(f"Actions: {', '.join(actions)}")

    return " | ".join(parts) or f"{len(events)} related events"


def _measure(draft: _ChainDraft) -> None:
    events = [f.event for f in draft.members]
    hosts = sorted({f.host for f in draft.members if f.host})
    processes = sorted({f.process for f in draft.members if f.process})
    stamps = [f.ts for f in draft.members if f.ts is not None]

    draft.hosts = tuple(hosts)
    draft.processes = tuple(processes)
    if stamps:
        draft.start, draft.end = min(stamps), max(stamps)
        draft.duration_ms = int((draft.end - draft.start).total_seconds() * 1000)
    draft.severity = max((Severity.parse(m.rule.severity) for m in draft.matches), default=Severity.INFO)
    draft.score = score_chain(events, draft.matches, hosts, processes)
    draft.relationships = find_relationships(draft.members)


def _finalize(drafts: List[_ChainDraft]) -> List[CorrelatedChain]:
    ordered = sorted(drafts, key=lambda d: (-d.score, d.seq))
    return [
        CorrelatedChain(
            id=f"{constants.CHAIN_ID_PREFIX}{d.seq}",
            events=tuple(f.event for f in d.members),
            severity=d.severity,
            score=d.score,
            duration_ms=d.duration_ms,
            start_time=d.start,
            end_time=d.end,
            summary=d.summary,
            involved_hosts=d.hosts,
            involved_processes=d.processes,
            sigma_matches=tuple(d.matches),
            relationships=tuple(d.relationships),
        )
        for d in ordered
    ]


def correlate(events: Sequence[LogEntry],
              matches_by_rule: Mapping[str, Sequence[SigmaMatch]],
              on_progress: Optional[ProgressCallback] = None,
              should_cancel: Optional[CancelCheck] = None,
              window_seconds: int = constants.CORRELATION_WINDOW_SECONDS,
              min_chain_events: int = constants.MIN_CHAIN_EVENTS) -> List[CorrelatedChain]:
    """Group matched and related events into scored chains, most severe first.

    on_progress(current, total) fires at five fixed checkpoints, all five
    even when there is nothing to correlate. If
    should_cancel() returns True at a checkpoint, the chains built so far are
    returned (none before checkpoint 4, unsummarized at checkpoint 4).
    """
    checkpoints = _Checkpoints(on_progress, should_cancel)
    universe, matches_by_uid = _collect_inputs(events, matches_by_rule)

    # 1. anchors
    anchors = [i for i, ev in enumerate(universe) if ev.uid in matches_by_uid]
    if not anchors:
        logger.warning("No SIGMA matches found; correlation requires detections")
        for step in range(1, constants.PROGRESS_CHECKPOINTS + 1):
            if checkpoints.reach(step):
                break
        return []
    logger.info("Correlating %d events around %d anchors", len(universe), len(anchors))
    if checkpoints.reach(1):
        return []

    with performance_monitor.monitor_operation("correlate", len(universe)):
        # 2. affinity grouping
        cache = FieldCache()
        facts = [
            _EventFacts(
                index=i,
                event=ev,
                ts=valid_timestamp(ev),
                guid=process_key(ev, cache),
                parent_guid=parent_process_key(ev, cache),
                target_guid=target_process_key(ev, cache) if ev.event_id == constants.EID_PROCESS_ACCESS else None,
                host=ev.computer or None,
                process=process_name(ev, cache),
            )
            for i, ev in enumerate(universe)
        ]
        graph = _build_affinity_graph(facts, anchors, timedelta(seconds=window_seconds))
        if checkpoints.reach(2):
            return []

        # 3. merge into chains
        anchor_set = set(anchors)
        groups: List[List[int]] = []
        for component in nx.connected_components(graph):
            members = [node[1] for node in component if node[0] == "event"]
            if len(members) < min_chain_events or anchor_set.isdisjoint(members):
                continue
            groups.append(members)
        groups.sort(key=min)

        drafts: List[_ChainDraft] = []
        for seq, members in enumerate(groups):
            member_facts = sorted((facts[i] for i in members), key=_chronological_key)
            chain_matches = [m for f in member_facts for m in matches_by_uid.get(f.event.uid, ())]
            drafts.append(_ChainDraft(seq=seq, members=member_facts, matches=chain_matches))
        if checkpoints.reach(3):
            return []

        # 4. metrics, severity and score
        for draft in drafts:
            _measure(draft)
        if checkpoints.reach(4):
            return _finalize(drafts)

        # 5. summaries
        for draft in drafts:
            draft.summary = summarize_chain([f.event for f in draft.members], draft.matches, _first_seen(draft))
        chains = _finalize(drafts)

    logger.info("Built %d chains from %d anchors", len(chains), len(anchors))
    checkpoints.reach(5)
    return chains


def _first_seen(draft: _ChainDraft) -> List[str]:
    return list(dict.fromkeys(f.process for f in draft.members if f.process))


def correlation_stats(chains: Sequence[CorrelatedChain]) -> CorrelationStats:
    """Aggregate chain counts for summary views and reports."""
    by_severity = {label: 0 for label in constants.SEVERITY_ORDER}
    for chain in chains:
        by_severity[chain.severity.label] += 1
    total_events = sum(len(c.events) for c in chains)
    return CorrelationStats(
        total_chains=len(chains),
        by_severity=by_severity,
        avg_chain_length=total_events / len(chains) if chains else 0.0,
        longest_chain=max((len(c.events) for c in chains), default=0),
        total_events_correlated=total_events,
        chains_with_sigma=sum(1 for c in chains if c.sigma_matches),
    )
