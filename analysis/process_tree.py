# analysis/process_tree.py
from __future__ import annotations
import logging
from functools import cmp_to_key
from typing import Dict, Iterator, List, Optional, Sequence

import constants
from datamodels.events import LogEntry
from datamodels.results import CorrelatedChain, ProcessNode
from detection.field_resolver import FieldCache, parent_process_key, process_key, process_name

logger = logging.getLogger(__name__)


def _earliest(node: ProcessNode):
    stamps = [e.timestamp for e in node.events if e.timestamp is not None]
    if not stamps:
        return None
    try:
        return min(stamps)
    except TypeError:
        return stamps[0]


def _compare_nodes(a: ProcessNode, b: ProcessNode) -> int:
    """Earliest event first; nodes without timestamps last; incomparable means equal."""
    ta, tb = _earliest(a), _earliest(b)
    if ta is None and tb is None:
        return 0
    if ta is None:
        return 1
    if tb is None:
        return -1
    try:
        if ta < tb:
            return -1
        if tb < ta:
            return 1
    except TypeError:
        pass
    return 0


_node_order = cmp_to_key(_compare_nodes)


def build_process_tree(chain: CorrelatedChain, events: Optional[Sequence[LogEntry]] = None,
                       max_depth: int = constants.MAX_PROCESS_TREE_DEPTH) -> List[ProcessNode]:
    """Reconstruct the process ancestry forest of a chain.

    Events carrying a process id merge into one node per id and hang under
    their parent's node when the parent is part of the chain. Events without
    one group by executable name into root-level nodes. ``events`` defaults
    to the whole chain.
    """
    events = list(chain.events if events is None else events)
    matched = chain.matched_uids
    cache = FieldCache()

    # arena: every node indexed by key, in first-seen order
    arena: Dict[str, ProcessNode] = {}
    for event in events:
        guid = process_key(event, cache)
        name = process_name(event, cache) or f"Event {event.event_id}"
        key = f"proc:{guid}" if guid else f"name:{name}"
        node = arena.get(key)
        if node is None:
            node = ProcessNode(key=key, label=name)
            if guid:
                parent = parent_process_key(event, cache)
                node.parent_key = f"proc:{parent}" if parent else None
            arena[key] = node
        elif guid and node.parent_key is None:
            parent = parent_process_key(event, cache)
            node.parent_key = f"proc:{parent}" if parent else None
        node.events.append(event)
        if event.uid in matched:
            node.has_match = True

    roots: List[ProcessNode] = []
    for node in arena.values():
        parent = arena.get(node.parent_key) if node.parent_key else None
        if parent is None or parent is node:
            node.parent_key = None
            roots.append(node)
        else:
            parent.children.append(node)

    visited: set = set()
    roots.sort(key=_node_order)
    for root in roots:
        _assign_depths(root, visited, max_depth)

    # nodes stranded in a parent cycle never hang off a root; promote them
    for node in arena.values():
        if node.key in visited:
            continue
        logger.warning("Cyclic parent reference at %s (%s), promoting to root", node.key, node.label)
        owner = arena.get(node.parent_key) if node.parent_key else None
        if owner is not None and node in owner.children:
            owner.children.remove(node)
        node.parent_key = None
        roots.append(node)
        _assign_depths(node, visited, max_depth)

    roots.sort(key=_node_order)
    return roots


def _assign_depths(root: ProcessNode, visited: set, max_depth: int) -> None:
    """Top-down depth assignment with an explicit stack and a depth ceiling."""
    stack = [(root, 0)]
    while stack:
        node, depth = stack.pop()
        visited.add(node.key)
        node.depth = depth

        kept: List[ProcessNode] = []
        for child in sorted(node.children, key=_node_order):
            if child.key in visited:
                logger.warning("Dropping repeated edge %s -> %s", node.key, child.key)
                continue
            kept.append(child)
        if kept and depth >= max_depth:
            logger.warning("Maximum process tree depth (%d) exceeded under %s, truncating %d branch(es)",
                           max_depth, node.label, len(kept))
            for child in kept:
                _mark_subtree(child, visited)
            kept = []
        node.children = kept
        for child in reversed(kept):
            visited.add(child.key)
            stack.append((child, depth + 1))


def _mark_subtree(node: ProcessNode, visited: set) -> None:
    stack = [node]
    while stack:
        current = stack.pop()
        if current.key in visited:
            continue
        visited.add(current.key)
        stack.extend(current.children)


def flatten_tree(roots: Sequence[ProcessNode]) -> Iterator[ProcessNode]:
    """Pre-order walk for display, each node once."""
    seen = set()
    stack = list(reversed(roots))
    while stack:
        node = stack.pop()
        if node.key in seen:
            continue
        seen.add(node.key)
        yield node
        stack.extend(reversed(node.children))
