# detection/rule_loader.py
"""Load detection rules from YAML/JSON files into DetectionRule objects.

This is the validation edge: malformed rules are rejected here so the
matcher can assume well-formed input.
"""
from __future__ import annotations
import logging
import os
from typing import Any, Dict, List, Mapping, Sequence, Tuple

import constants
from datamodels.rules import ContainsPredicate, DetectionRule, EqualsPredicate, Severity
from infra.config import load_structured_file
from infra.errors import ConfigError, ErrorCodes, RuleLoadError

logger = logging.getLogger(__name__)

BUILTIN_RULES_PATH = os.path.join(os.path.dirname(os.path.abspath(__file__)), "builtin_rules.yml")


def _as_tuple(value: Any) -> Tuple[Any, ...]:
    if value is None:
        return ()
    if isinstance(value, (list, tuple)):
        return tuple(value)
    return (value,)


def _fail(rule_id: str, reason: str) -> RuleLoadError:
    return RuleLoadError(f"Rule {rule_id!r}: {reason}", ErrorCodes.RULE_MALFORMED)


def rule_from_dict(data: Mapping[str, Any]) -> DetectionRule:
    """Build a DetectionRule from the simple rule schema.

    Accepts the detection block nested under ``detection`` or inline.
    """
    if not isinstance(data, Mapping):
        raise RuleLoadError("Rule entry must be a mapping", ErrorCodes.RULE_MALFORMED)

    rule_id = str(data.get("id") or "").strip()
    if not rule_id:
        raise RuleLoadError("Rule is missing an id", ErrorCodes.RULE_MALFORMED)
    title = str(data.get("title") or "").strip()
    if not title:
        raise _fail(rule_id, "missing title")

    detection = data.get("detection", data)
    if not isinstance(detection, Mapping):
        raise _fail(rule_id, "detection must be a mapping")

    try:
        severity = Severity.parse(data.get("severity", data.get("level")))
    except ValueError as e:
        raise _fail(rule_id, str(e)) from e

    try:
        event_ids = tuple(int(eid) for eid in _as_tuple(detection.get("eventId", detection.get("event_ids"))))
    except (TypeError, ValueError) as e:
        raise _fail(rule_id, "eventId must be an integer or list of integers") from e

    logic = str(detection.get("logic", constants.LOGIC_AND)).lower()
    if logic not in (constants.LOGIC_AND, constants.LOGIC_OR):
        raise _fail(rule_id, f"logic must be 'and' or 'or', got {logic!r}")

    contains: List[ContainsPredicate] = []
    for cond in _as_tuple(detection.get("contains")):
        if not isinstance(cond, Mapping) or not cond.get("field"):
            raise _fail(rule_id, "contains entries need a field")
        values = tuple(str(v) for v in _as_tuple(cond.get("values")))
        if not values:
            raise _fail(rule_id, f"contains on {cond.get('field')!r} has no values")
        operator = str(cond.get("operator", constants.OPERATOR_ANY)).lower()
        if operator not in (constants.OPERATOR_ANY, constants.OPERATOR_ALL):
            raise _fail(rule_id, f"operator must be 'any' or 'all', got {operator!r}")
        contains.append(ContainsPredicate(field=str(cond["field"]), values=values, operator=operator))

    equals: List[EqualsPredicate] = []
    for cond in _as_tuple(detection.get("equals")):
        if not isinstance(cond, Mapping) or not cond.get("field") or "value" not in cond:
            raise _fail(rule_id, "equals entries need a field and a value")
        equals.append(EqualsPredicate(field=str(cond["field"]), value=cond["value"]))

    return DetectionRule(
        id=rule_id,
        title=title,
        severity=severity,
        event_ids=event_ids,
        providers=tuple(str(p) for p in _as_tuple(detection.get("provider", detection.get("providers")))),
        channels=tuple(str(c) for c in _as_tuple(detection.get("channel", detection.get("channels")))),
        contains=tuple(contains),
        equals=tuple(equals),
        logic=logic,
        description=str(data.get("description") or ""),
        tags=tuple(str(t) for t in _as_tuple(data.get("tags"))),
        references=tuple(str(r) for r in _as_tuple(data.get("references"))),
        author=str(data.get("author") or ""),
    )


def rules_from_list(entries: Sequence[Mapping[str, Any]]) -> List[DetectionRule]:
    rules: List[DetectionRule] = []
    seen: Dict[str, int] = {}
    for pos, entry in enumerate(entries):
        rule = rule_from_dict(entry)
        if rule.id in seen:
            raise RuleLoadError(
                f"Duplicate rule id {rule.id!r} at positions {seen[rule.id]} and {pos}",
                ErrorCodes.RULE_DUPLICATE_ID,
            )
        seen[rule.id] = pos
        rules.append(rule)
    return rules


def load_rules(path: str) -> List[DetectionRule]:
    """Load a YAML or JSON file holding a list of rules, or a mapping with a ``rules`` key."""
    if not os.path.isfile(path):
        raise RuleLoadError(f"Rule file not found: {path}", ErrorCodes.RULE_FILE_MISSING)
    ext = os.path.splitext(path)[1].lower()
    if ext not in constants.SUPPORTED_RULE_EXTENSIONS:
        logger.warning("Unexpected rule file extension %s, parsing as YAML", ext)

    try:
        data = load_structured_file(path)
    except ConfigError as e:
        raise RuleLoadError(e.message, ErrorCodes.RULE_FILE_UNREADABLE) from e

    if isinstance(data, Mapping) and "rules" in data:
        data = data["rules"]
    if data is None:
        data = []
    if not isinstance(data, list):
        raise RuleLoadError(f"{path} must contain a list of rules", ErrorCodes.RULE_MALFORMED)

    rules = rules_from_list(data)
    logger.info("Loaded %d rules from %s", len(rules), path)
    return rules


def load_builtin_rules() -> List[DetectionRule]:
    """The curated rule set shipped with the package."""
    return load_rules(BUILTIN_RULES_PATH)
