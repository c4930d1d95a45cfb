# detection/matcher.py
from __future__ import annotations
import logging
from collections import defaultdict
from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Optional, Sequence

import constants
from datamodels.events import LogEntry
from datamodels.results import DetectionStats, FieldMatch, SigmaMatch
from datamodels.rules import ContainsPredicate, DetectionRule, EqualsPredicate, Severity
from detection.field_resolver import FieldCache, resolve_field
from utils.performance import BatchProcessor, performance_monitor

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class _PredicateResult:
    matched: bool
    field: str = ""
    value: Optional[str] = None


def truncate_value(value: str, max_length: int = constants.MAX_EVIDENCE_LENGTH) -> str:
    """Truncate long values for display"""
    if len(value) <= max_length:
        return value
    return value[:max_length] + constants.EVIDENCE_ELLIPSIS


def _evaluate_contains(event: LogEntry, pred: ContainsPredicate, cache: Optional[FieldCache]) -> _PredicateResult:
    value = resolve_field(event, pred.field, cache)
    if value is None:
        return _PredicateResult(False)
    text = str(value)
    if not text:
        return _PredicateResult(False)

    haystack = text.lower()
    hits = [needle.lower() in haystack for needle in pred.values]
    if pred.operator == constants.OPERATOR_ALL:
        matched = bool(hits) and all(hits)
    else:
        matched = any(hits)
    if not matched:
        return _PredicateResult(False)
    return _PredicateResult(True, pred.field, truncate_value(text))


def _values_equal(actual: Any, expected: Any) -> bool:
    if type(actual) is type(expected):
        return actual == expected
    # payload values are text; compare representations when the types differ
    return str(actual) == str(expected)


def _evaluate_equals(event: LogEntry, pred: EqualsPredicate, cache: Optional[FieldCache]) -> _PredicateResult:
    value = resolve_field(event, pred.field, cache)
    if value is None or not _values_equal(value, pred.value):
        return _PredicateResult(False)
    return _PredicateResult(True, pred.field, truncate_value(str(value)))


def evaluate_rule(event: LogEntry, rule: DetectionRule, cache: Optional[FieldCache] = None) -> Optional[SigmaMatch]:
    """Match a single event against a single rule. Returns None on rejection."""
    matched_fields: List[str] = []
    evidence: List[FieldMatch] = []

    # EventID filter
    if rule.event_ids:
        if event.event_id is None or event.event_id not in rule.event_ids:
            return None
        matched_fields.append("EventID")
        evidence.append(FieldMatch("EventID", str(event.event_id)))

    # Provider filter
    if rule.providers:
        source = event.source or ""
        if not any(p in source for p in rule.providers):
            return None
        matched_fields.append("Provider")
        evidence.append(FieldMatch("Provider", truncate_value(source)))

    # Channel filter
    if rule.channels:
        channel = event.path or ""
        if not any(c in channel for c in rule.channels):
            return None
        matched_fields.append("Channel")
        evidence.append(FieldMatch("Channel", truncate_value(channel)))

    # Every predicate runs so evidence lists exactly the ones that matched
    results = [_evaluate_contains(event, p, cache) for p in rule.contains]
    results += [_evaluate_equals(event, p, cache) for p in rule.equals]

    if results:
        if rule.logic == constants.LOGIC_OR:
            accepted = any(r.matched for r in results)
        else:
            accepted = all(r.matched for r in results)
        if not accepted:
            return None

    for r in results:
        if r.matched:
            matched_fields.append(r.field)
            evidence.append(FieldMatch(r.field, r.value or ""))

    return SigmaMatch(
        rule=rule,
        event=event,
        matched_fields=tuple(dict.fromkeys(matched_fields)),
        field_matches=tuple(evidence),
    )


def match_event(event: LogEntry, rules: Sequence[DetectionRule], cache: Optional[FieldCache] = None) -> List[SigmaMatch]:
    """Match a single event against all rules, in rule order."""
    matches: List[SigmaMatch] = []
    for rule in rules:
        match = evaluate_rule(event, rule, cache)
        if match is not None:
            matches.append(match)
    return matches


class RuleIndex:
    """Rules bucketed by target event id; rules without ids apply to every event.

    candidates() preserves the input rule order, so indexed evaluation
    yields exactly what a linear scan would.
    """

    def __init__(self, rules: Sequence[DetectionRule]):
        self.rules = list(rules)
        self._wildcard: List[int] = []
        self._by_event_id: Dict[int, List[int]] = defaultdict(list)
        for pos, rule in enumerate(self.rules):
            if rule.event_ids:
                for eid in set(rule.event_ids):
                    self._by_event_id[eid].append(pos)
            else:
                self._wildcard.append(pos)
        self._merged: Dict[Optional[int], List[DetectionRule]] = {}

    def candidates(self, event_id: Optional[int]) -> List[DetectionRule]:
        cached = self._merged.get(event_id)
        if cached is None:
            positions = list(self._wildcard)
            if event_id is not None:
                positions.extend(self._by_event_id.get(event_id, ()))
            cached = [self.rules[p] for p in sorted(positions)]
            self._merged[event_id] = cached
        return cached


def _match_batch(events: Sequence[LogEntry], index: RuleIndex) -> List[SigmaMatch]:
    cache = FieldCache()
    out: List[SigmaMatch] = []
    for event in events:
        out.extend(match_event(event, index.candidates(event.event_id), cache))
    return out


def match_all(events: Sequence[LogEntry], rules: Sequence[DetectionRule],
              batch_size: Optional[int] = None, max_workers: Optional[int] = None) -> Dict[str, List[SigmaMatch]]:
    """Match all events against all rules. Returns matches grouped by rule id.

    Keys follow rule order and rules without matches are omitted. With a
    batch_size the events are sharded over a thread pool; the merged result
    is identical to the sequential one.
    """
    index = RuleIndex(rules)
    events = list(events)

    with performance_monitor.monitor_operation("match_all", len(events)):
        if batch_size and len(events) > batch_size:
            processor = BatchProcessor(batch_size=batch_size, max_workers=max_workers)
            partials = processor.map_batches(events, lambda batch: _match_batch(batch, index))
        else:
            partials = [_match_batch(events, index)]

    grouped: Dict[str, List[SigmaMatch]] = {rule.id: [] for rule in index.rules}
    for partial in partials:
        for match in partial:
            grouped[match.rule.id].append(match)

    result = {rule_id: matches for rule_id, matches in grouped.items() if matches}
    logger.info("Matched %d events against %d rules: %d rules fired, %d matches",
                len(events), len(index.rules), len(result), sum(len(m) for m in result.values()))
    return result


def detection_stats(matches_by_rule: Mapping[str, Sequence[SigmaMatch]], total_rules: Optional[int] = None) -> DetectionStats:
    """Aggregate counts for a results view: rules fired, matches, matches by severity."""
    by_severity = {label: 0 for label in constants.SEVERITY_ORDER}
    matched_rules = 0
    total_matches = 0
    for matches in matches_by_rule.values():
        if not matches:
            continue
        matched_rules += 1
        total_matches += len(matches)
        for match in matches:
            by_severity[Severity.parse(match.rule.severity).label] += 1
    return DetectionStats(
        total_rules=total_rules if total_rules is not None else len(matches_by_rule),
        matched_rules=matched_rules,
        total_matches=total_matches,
        by_severity=by_severity,
    )

