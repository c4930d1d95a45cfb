"""detection package

Field resolution, rule evaluation and rule loading.
"""

from __future__ import annotations

from detection.field_resolver import FieldCache, resolve_field
from detection.matcher import detection_stats, match_all, match_event
from detection.rule_loader import load_builtin_rules, load_rules, rule_from_dict

__all__ = [
    "FieldCache",
    "resolve_field",
    "match_event",
    "match_all",
    "detection_stats",
    "load_rules",
    "load_builtin_rules",
    "rule_from_dict",
]
