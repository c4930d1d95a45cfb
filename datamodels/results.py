# datamodels/results.py
from __future__ import annotations
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Optional, Tuple

from datamodels.events import LogEntry
from datamodels.rules import DetectionRule, Severity


@dataclass(frozen=True)
class FieldMatch:
    field: str
    value: str


@dataclass(frozen=True)
class SigmaMatch:
    rule: DetectionRule
    event: LogEntry
    matched_fields: Tuple[str, ...]        # deduplicated, first-seen order
    field_matches: Tuple[FieldMatch, ...]  # evidence, values truncated


@dataclass(frozen=True)
class EventRelationship:
    """Typed, directed link between two events of a chain."""
    source_uid: str
    target_uid: str
    kind: str                              # constants.REL_*
    field: str
    confidence: float = 1.0


@dataclass(frozen=True)
class CorrelatedChain:
    id: str
    events: Tuple[LogEntry, ...]           # chronological, missing timestamps last
    severity: Severity
    score: int
    duration_ms: int
    start_time: Optional[datetime]
    end_time: Optional[datetime]
    summary: str
    involved_hosts: Tuple[str, ...]
    involved_processes: Tuple[str, ...]
    sigma_matches: Tuple[SigmaMatch, ...]
    relationships: Tuple[EventRelationship, ...] = ()

    @property
    def matched_uids(self) -> frozenset:
        return frozenset(m.event.uid for m in self.sigma_matches)


@dataclass
class ProcessNode:
    """Chain-scoped process tree node. Mutable while the tree is assembled."""
    key: str
    label: str
    events: List[LogEntry] = field(default_factory=list)
    has_match: bool = False
    children: List["ProcessNode"] = field(default_factory=list)
    depth: int = 0
    parent_key: Optional[str] = None


@dataclass(frozen=True)
class DetectionStats:
    total_rules: int
    matched_rules: int
    total_matches: int
    by_severity: Dict[str, int]


@dataclass(frozen=True)
class CorrelationStats:
    total_chains: int
    by_severity: Dict[str, int]
    avg_chain_length: float
    longest_chain: int
    total_events_correlated: int
    chains_with_sigma: int


@dataclass(frozen=True)
class StoryStep:
    time: Optional[datetime]
    summary: str
    detail: str
    has_match: bool
    matched_rules: Tuple[str, ...]
