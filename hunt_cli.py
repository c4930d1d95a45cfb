#!/usr/bin/env python3
"""
hunt_cli.py - Run SIGMA-style detections and correlation over decoded events.

Reads a JSON / JSON-lines export from an EVTX decoder, matches it against a
rule file (and/or the built-in rules), correlates the detections into chains
and prints a text report or a JSON document.
"""
from __future__ import annotations

import argparse
import json
import logging
import sys
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Dict, List, Optional, Sequence

from dotenv import find_dotenv, load_dotenv

import constants
from analysis.correlation import correlate, correlation_stats
from analysis.process_tree import build_process_tree, flatten_tree
from analysis.storyline import build_storyline
from datamodels.events import load_entries
from datamodels.results import CorrelatedChain
from detection.matcher import detection_stats, match_all
from detection.rule_loader import load_builtin_rules, load_rules
from infra.config import load_settings
from infra.errors import HuntError
from infra.logging_setup import get_file_logger, setup_logging

logger = logging.getLogger("hunt_cli")


def build_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(prog="sigma-hunt", description="SIGMA detection and event correlation")
    ap.add_argument("events", help="Decoded events (JSON array or JSON lines)")
    ap.add_argument("--rules", help="Rule file (YAML or JSON)")
    ap.add_argument("--builtin", action="store_true", help="Include the built-in rule set")
    ap.add_argument("--config", help="Optional YAML/JSON settings file")
    ap.add_argument("--window", type=int, default=None, help="Correlation window in seconds")
    ap.add_argument("--json", action="store_true", help="Emit a JSON document instead of text")
    ap.add_argument("--log-level", default=None, help="Logging level (default from LOG_LEVEL)")
    return ap


def _iso(value) -> Optional[str]:
    return value.isoformat() if value is not None else None


def chain_to_dict(chain: CorrelatedChain, max_depth: int = constants.MAX_PROCESS_TREE_DEPTH) -> Dict[str, Any]:
    tree = build_process_tree(chain, max_depth=max_depth)
    return {
        "id": chain.id,
        "severity": chain.severity.label,
        "score": chain.score,
        "summary": chain.summary,
        "start_time": _iso(chain.start_time),
        "end_time": _iso(chain.end_time),
        "duration_ms": chain.duration_ms,
        "hosts": list(chain.involved_hosts),
        "processes": list(chain.involved_processes),
        "events": [e.uid for e in chain.events],
        "detections": [
            {
                "rule_id": m.rule.id,
                "title": m.rule.title,
                "severity": m.rule.severity.label,
                "event": m.event.uid,
                "matched_fields": list(m.matched_fields),
            }
            for m in chain.sigma_matches
        ],
        "relationships": [
            {
                "source": r.source_uid,
                "target": r.target_uid,
                "kind": r.kind,
                "field": r.field,
                "confidence": r.confidence,
            }
            for r in chain.relationships
        ],
        "process_tree": [
            {"label": node.label, "depth": node.depth, "events": len(node.events), "has_match": node.has_match}
            for node in flatten_tree(tree)
        ],
    }


def _print_report(stats, chains: Sequence[CorrelatedChain], out, max_depth: int = constants.MAX_PROCESS_TREE_DEPTH) -> None:
    print(f"Rules fired: {stats.matched_rules}/{stats.total_rules}, detections: {stats.total_matches}", file=out)
    print("By severity: " + ", ".join(f"{k}={v}" for k, v in stats.by_severity.items()), file=out)
    print(f"Chains: {len(chains)}", file=out)
    for chain in chains:
        print("", file=out)
        print(f"[{chain.severity.label.upper()}] {chain.id} score={chain.score} events={len(chain.events)}", file=out)
        print(f"  {chain.summary}", file=out)
        if chain.involved_hosts:
            print(f"  Hosts: {', '.join(chain.involved_hosts)}", file=out)
        for node in flatten_tree(build_process_tree(chain, max_depth=max_depth)):
            marker = "!" if node.has_match else ">"
            print(f"  {'  ' * node.depth}{marker} {node.label} ({len(node.events)})", file=out)
        for step in build_storyline(chain):
            flag = "*" if step.has_match else "-"
            print(f"    {flag} {_iso(step.time) or '?'} {step.summary}", file=out)


def run(argv: Optional[List[str]] = None, out=None) -> int:
    out = out or sys.stdout
    args = build_parser().parse_args(argv)

    # .env never overrides variables already exported
    load_dotenv(find_dotenv(usecwd=True))

    try:
        settings = load_settings(args.config)
        setup_logging(args.log_level or settings.log_level)
        run_logger = get_file_logger("cli", settings.log_dir) if settings.log_dir else logger

        events = load_entries(args.events)
        rules = []
        if args.builtin:
            rules.extend(load_builtin_rules())
        rules_path = args.rules or settings.rules_path
        if rules_path:
            rules.extend(load_rules(rules_path))
        if not rules:
            run_logger.warning("No rules given; use --rules or --builtin")
    except HuntError as e:
        logger.error("%s", e)
        return 2

    matches = match_all(events, rules, batch_size=settings.batch_size or None)
    stats = detection_stats(matches, total_rules=len(rules))

    def on_progress(current: int, total: int) -> None:
        run_logger.info("Correlation progress %d/%d", current, total)

    window = args.window if args.window is not None else settings.correlation_window_seconds
    # correlate is synchronous; keep it off the calling thread
    with ThreadPoolExecutor(max_workers=1) as pool:
        future = pool.submit(
            correlate, events, matches, on_progress,
            window_seconds=window, min_chain_events=settings.min_chain_events,
        )
        chains = future.result()

    if args.json:
        document = {
            "detections": {
                "total_rules": stats.total_rules,
                "matched_rules": stats.matched_rules,
                "total_matches": stats.total_matches,
                "by_severity": stats.by_severity,
            },
            "correlation": correlation_stats(chains).__dict__,
            "chains": [chain_to_dict(c, settings.max_tree_depth) for c in chains],
        }
        json.dump(document, out, indent=2)
        out.write("\n")
    else:
        _print_report(stats, chains, out, settings.max_tree_depth)
    return 0


def main() -> None:
    sys.exit(run())


if __name__ == "__main__":
    main()
