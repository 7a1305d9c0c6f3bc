"""
State management for provisioning runs.

Each run gets its own directory under ``$VPCPLAN_HOME`` holding the resolved
configuration, the plan, the final report and the event log.
"""

import json
import os
import shutil
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

from .ids import is_valid_run_id


def get_vpcplan_home() -> Path:
    """
    Get the vpcplan home directory.

    Returns:
        Path: vpcplan home directory
    """
    home = os.environ.get("VPCPLAN_HOME", ".vpcplan")
    return Path(home).resolve()


def get_run_dir(run_id: str) -> Path:
    """
    Get the directory for a specific run.

    Args:
        run_id: Run ID
        
    Returns:
        Path: Run directory
        
    Raises:
        ValueError: If run ID is invalid
    """
    if not is_valid_run_id(run_id):
        raise ValueError(f"Invalid run ID: {run_id}")

    return get_vpcplan_home() / run_id


def create_run_dir(run_id: str) -> Path:
    """Create the run directory and return its path."""
    run_dir = get_run_dir(run_id)
    run_dir.mkdir(parents=True, exist_ok=True)
    return run_dir


def _write_json(run_id: str, filename: str, data: Dict[str, Any]) -> None:
    with open(get_run_dir(run_id) / filename, "w") as f:
        json.dump(data, f, indent=2, default=str)


def _read_json(run_id: str, filename: str) -> Optional[Dict[str, Any]]:
    path = get_run_dir(run_id) / filename
    if not path.exists():
        return None
    with open(path, "r") as f:
        return json.load(f)


def write_config_json(run_id: str, config: Dict[str, Any], command: str) -> None:
    """
    Write the resolved configuration the run was started with.

    Args:
        run_id: Run ID
        config: Resolved configuration as a plain dict
        command: "apply" or "destroy"
    """
    _write_json(run_id, "config.json", {
        "command": command,
        "config": config,
        "created_at": datetime.now().isoformat(),
    })


def read_config_json(run_id: str) -> Dict[str, Any]:
    """
    Read the configuration a run was started with.

    Raises:
        FileNotFoundError: If config.json doesn't exist
    """
    data = _read_json(run_id, "config.json")
    if data is None:
        raise FileNotFoundError(f"Run {run_id} not found")
    return data


def write_plan_json(run_id: str, plan: Dict[str, Any]) -> None:
    _write_json(run_id, "plan.json", plan)


def read_plan_json(run_id: str) -> Optional[Dict[str, Any]]:
    return _read_json(run_id, "plan.json")


def write_report_json(run_id: str, report: Dict[str, Any]) -> None:
    """
    Write the apply/destroy report.

    Args:
        run_id: Run ID
        report: Report from vpcplan.report.build_report
    """
    _write_json(run_id, "report.json", report)


def read_report_json(run_id: str) -> Optional[Dict[str, Any]]:
    """
    Read the report of a run.

    Returns:
        Dict: Report or None if the run has not finished
    """
    return _read_json(run_id, "report.json")


def list_runs() -> List[str]:
    """
    List all run IDs.

    Returns:
        List of run IDs, most recent first
    """
    home = get_vpcplan_home()

    if not home.exists():
        return []

    runs = []
    for item in home.iterdir():
        if item.is_dir() and is_valid_run_id(item.name):
            runs.append(item.name)

    return sorted(runs, reverse=True)


def run_exists(run_id: str) -> bool:
    run_dir = get_run_dir(run_id)
    return run_dir.exists() and (run_dir / "config.json").exists()


def cleanup_run(run_id: str) -> None:
    """Remove a run directory and all its contents."""
    run_dir = get_run_dir(run_id)

    if run_dir.exists():
        shutil.rmtree(run_dir)
