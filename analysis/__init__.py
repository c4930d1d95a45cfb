"""analysis package

Expose the correlation helpers used by callers, while keeping submodules
(correlation, process_tree, storyline) importable on their own.
"""

from __future__ import annotations

from analysis.correlation import correlate, correlation_stats
from analysis.process_tree import build_process_tree, flatten_tree
from analysis.storyline import build_storyline

__all__ = [
    "correlate",
    "correlation_stats",
    "build_process_tree",
    "flatten_tree",
    "build_storyline",
]
