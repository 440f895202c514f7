"""
Cycle status reporting: log summaries and JSON export.
"""

import json
import logging
from dataclasses import asdict
from datetime import datetime
from typing import Dict

from models import CycleReport, NodeUpgradeState

logger = logging.getLogger(__name__)


def format_duration(seconds: float) -> str:
    """Format duration in human-readable format."""
    if seconds < 60:
        return f"{seconds:.1f}s"
    elif seconds < 3600:
        mins = int(seconds // 60)
        secs = seconds % 60
        return f"{mins}m {secs:.0f}s"
    else:
        hours = int(seconds // 3600)
        mins = int((seconds % 3600) // 60)
        secs = seconds % 60
        return f"{hours}h {mins}m {secs:.0f}s"


def print_report(report: CycleReport) -> None:
    """Log a cycle report."""
    logger.info("=" * 70)
    logger.info("UPGRADE CYCLE REPORT")
    logger.info("=" * 70)

    if report.end_time is not None:
        logger.info(
            f"Cycle duration:  {format_duration(report.end_time - report.start_time)}"
        )
    if report.error_message:
        logger.error(f"Cycle aborted:   {report.error_message}")

    logger.info("")
    logger.info("NODES BY STATE")
    logger.info("-" * 40)
    for state in NodeUpgradeState:
        count = report.state_counts.get(state.value, 0)
        if count:
            logger.info(f"{state.value:25s}: {count}")

    steps = [r for r in report.results if r.status not in ("pending", "detected")]
    if steps:
        logger.info("")
        logger.info("STEPS THIS CYCLE")
        logger.info("-" * 40)
        logger.info(f"{'Node':<25} {'Transition':<45} {'Status'}")
        logger.info("-" * 70)
        for r in steps:
            src = r.from_state.value if r.from_state else "-"
            dst = r.to_state.value if r.to_state else "-"
            logger.info(f"{r.node_name:<25} {src + ' -> ' + dst:<45} {r.status}")

    if report.failed_nodes:
        logger.info("")
        logger.info("FAILED NODES (cleared manually with --clear-node)")
        logger.info("-" * 40)
        for name, error in report.failed_nodes.items():
            error = (error[:60] + "...") if len(error) > 60 else error
            logger.info(f"{name:<25} {error}")

    if report.skipped_nodes:
        logger.info("")
        logger.info("SKIPPED NODES")
        logger.info("-" * 40)
        for name in report.skipped_nodes:
            logger.info(f"  {name}")

    logger.info("")
    logger.info(f"Next cycle in {report.requeue_after:.0f}s")
    logger.info("=" * 70)


def report_to_dict(report: CycleReport) -> Dict:
    """Convert a report to plain JSON-serialisable data."""
    return {
        "start_time": datetime.fromtimestamp(report.start_time).isoformat(),
        "end_time": (
            datetime.fromtimestamp(report.end_time).isoformat()
            if report.end_time
            else None
        ),
        "stable": report.stable,
        "state_counts": report.state_counts,
        "failed_nodes": report.failed_nodes,
        "skipped_nodes": report.skipped_nodes,
        "requeue_after": report.requeue_after,
        "error_message": report.error_message,
        "results": [
            dict(
                asdict(r),
                from_state=r.from_state.value if r.from_state else None,
                to_state=r.to_state.value if r.to_state else None,
            )
            for r in report.results
        ],
    }


def export_report_json(report: CycleReport, filename: str) -> None:
    """Export a report to a JSON file for external status surfaces."""
    with open(filename, "w") as f:
        json.dump(report_to_dict(report), f, indent=2)
    logger.debug(f"Cycle report exported to: {filename}")
