"""
Flat run reports for display or for feeding a later teardown/update run.
"""

from collections import OrderedDict
from typing import Any, Dict, List


def build_report(result) -> Dict[str, Any]:
    """
    Build a flat report from an ApplyResult or TeardownResult.

    Args:
        result: Result returned by ApplyExecutor.apply or ApplyExecutor.destroy

    Returns:
        Dictionary with status, one row per resource, and failure details
    """
    failed = result.failed_descriptor
    report: Dict[str, Any] = {
        "run_id": result.run_id,
        "command": result.command,
        "status": result.status,
        "resources": [resource.to_dict() for resource in result.resources],
        "failed": None,
    }

    if failed is not None or result.error is not None:
        report["failed"] = {
            "key": failed.key if failed else None,
            "kind": failed.kind.value if failed else None,
            "name": failed.name if failed else None,
            "error": str(result.error) if result.error else None,
            "error_type": type(result.error).__name__ if result.error else None,
            "hint": getattr(result.error, "hint", "") or None,
        }

    if hasattr(result, "skipped"):
        report["skipped"] = [descriptor.key for descriptor in result.skipped]

    return report


def summarize_ids(result) -> Dict[str, List[str]]:
    """Group resource ids by kind, in plan order."""
    summary: Dict[str, List[str]] = OrderedDict()
    for resource in result.resources:
        summary.setdefault(resource.descriptor.kind.value, []).append(resource.resource_id)
    return summary


def format_report(report: Dict[str, Any]) -> str:
    """Render a report as a plain-text table."""
    rows = report.get("resources", [])
    lines = [f"Status: {report.get('status', 'unknown')}"]

    if rows:
        headers = ("KEY", "RESOURCE ID", "ACTION", "ATTEMPTS")
        table = [(r["key"], r["resource_id"], r["action"], str(r["attempts"])) for r in rows]
        widths = [max(len(h), *(len(row[i]) for row in table)) for i, h in enumerate(headers)]
        lines.append("")
        lines.append("  ".join(h.ljust(w) for h, w in zip(headers, widths)))
        for row in table:
            lines.append("  ".join(cell.ljust(w) for cell, w in zip(row, widths)))

    skipped = report.get("skipped")
    if skipped:
        lines.append("")
        lines.append(f"Skipped (not found): {', '.join(skipped)}")

    failed = report.get("failed")
    if failed:
        lines.append("")
        if failed.get("key"):
            lines.append(f"Failed at: {failed['key']}")
        lines.append(f"Error: {failed.get('error')}")
        if failed.get("hint"):
            lines.append(f"Hint: {failed['hint']}")

    return "\n".join(lines)


def format_plan(plan) -> str:
    """Render a plan as numbered steps."""
    width = len(str(len(plan)))
    lines = []
    for step, descriptor in enumerate(plan, start=1):
        deps = ", ".join(sorted(descriptor.depends_on)) or "-"
        lines.append(f"{str(step).rjust(width)}. {descriptor.key:<40} after: {deps}")
    return "\n".join(lines)
