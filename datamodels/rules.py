# datamodels/rules.py
from __future__ import annotations
import re
from dataclasses import dataclass
from enum import IntEnum
from typing import Tuple, Union

import constants

_TECHNIQUE_TAG = re.compile(r"^attack\.t\d{4}(?:\.\d{3})?$", re.IGNORECASE)


class Severity(IntEnum):
    """Rule severity; integer order lets max() pick the worst."""
    INFO = 0
    LOW = 1
    MEDIUM = 2
    HIGH = 3
    CRITICAL = 4

    @property
    def label(self) -> str:
        return self.name.lower()

    @classmethod
    def parse(cls, value: Union[str, "Severity", None]) -> "Severity":
        if isinstance(value, Severity):
            return value
        key = str(value or constants.DEFAULT_SEVERITY).strip().lower()
        if key == "informational":
            key = "info"
        try:
            return cls[key.upper()]
        except KeyError:
            raise ValueError(f"Unknown severity: {value!r}") from None


@dataclass(frozen=True)
class ContainsPredicate:
    field: str
    values: Tuple[str, ...]
    operator: str = constants.OPERATOR_ANY   # "any" | "all"


@dataclass(frozen=True)
class EqualsPredicate:
    field: str
    value: Union[str, int]


@dataclass(frozen=True)
class DetectionRule:
    id: str
    title: str
    severity: Severity = Severity.INFO
    event_ids: Tuple[int, ...] = ()
    providers: Tuple[str, ...] = ()
    channels: Tuple[str, ...] = ()
    contains: Tuple[ContainsPredicate, ...] = ()
    equals: Tuple[EqualsPredicate, ...] = ()
    logic: str = constants.LOGIC_AND        # "and" | "or"
    description: str = ""
    tags: Tuple[str, ...] = ()
    references: Tuple[str, ...] = ()
    author: str = ""

    @property
    def has_predicates(self) -> bool:
        return bool(self.contains or self.equals)

    @property
    def techniques(self) -> Tuple[str, ...]:
        """ATT&CK technique tags such as attack.t1059.001"""
        return tuple(t.lower() for t in self.tags if _TECHNIQUE_TAG.match(t))
