"""Path utilities for megparcel.

This module provides helper functions for constructing BIDS-style filenames
for the pipeline outputs and resolving per-subject input templates.
"""

from pathlib import Path
from typing import Any, Dict, Optional

from megparcel.utils.config import get_task_name


def get_derivatives_root(config: Dict[str, Any]) -> Path:
    """Get derivatives root directory.

    Args:
        config: Configuration dictionary.

    Returns:
        Path to derivatives directory.
    """
    return Path(config["paths"]["derivatives"])


def get_bids_basename(
    subject: str,
    session: Optional[str] = None,
    task: Optional[str] = None,
    run: Optional[str] = None,
    space: Optional[str] = None,
    description: Optional[str] = None,
    suffix: Optional[str] = None,
) -> str:
    """Construct BIDS-compliant filename (without extension).

    Args:
        subject: Subject ID (without 'sub-' prefix).
        session: Optional session ID (without 'ses-' prefix).
        task: Optional task name (without 'task-' prefix).
        run: Optional run ID (without 'run-' prefix).
        space: Optional space label (without 'space-' prefix).
        description: Optional description label (without 'desc-' prefix).
        suffix: Optional suffix (e.g., 'sources', 'timeseries').

    Returns:
        BIDS-compliant basename.

    Example:
        >>> get_bids_basename('01', task='rest', description='lcmv', suffix='sources')
        'sub-01_task-rest_desc-lcmv_sources'
    """
    parts = [f"sub-{subject}"]

    if session:
        parts.append(f"ses-{session}")
    if task:
        parts.append(f"task-{task}")
    if run:
        parts.append(f"run-{run}")
    if space:
        parts.append(f"space-{space}")
    if description:
        parts.append(f"desc-{description}")
    if suffix:
        parts.append(suffix)

    return "_".join(parts)


def get_subject_output_dir(config: Dict[str, Any], subject: str) -> Path:
    """Directory holding the LCMV outputs of one subject."""
    return get_derivatives_root(config) / "lcmv" / f"sub-{subject}"


def get_source_estimate_path(config: Dict[str, Any], subject: str) -> Path:
    """Path of the averaged source estimate bundle (filters, power, grid)."""
    basename = get_bids_basename(
        subject, task=get_task_name(config), description="lcmv", suffix="sources"
    )
    return get_subject_output_dir(config, subject) / f"{basename}.npz"


def get_parcel_timeseries_path(config: Dict[str, Any], subject: str) -> Path:
    """Path of the trial x parcel x time array, the final pipeline output."""
    atlas_name = config["dataset"].get("atlas_name", "atlas")
    basename = get_bids_basename(
        subject, task=get_task_name(config), space=atlas_name, suffix="timeseries"
    )
    return get_subject_output_dir(config, subject) / f"{basename}.npz"


def get_sidecar_path(artifact_path: Path) -> Path:
    """JSON sidecar next to an ``.npz`` artifact."""
    return artifact_path.with_name(artifact_path.name.replace(".npz", "_params.json"))


def get_input_paths(config: Dict[str, Any], subject: str) -> Dict[str, Optional[Path]]:
    """Resolve the per-subject input templates from the ``inputs`` section.

    Args:
        config: Configuration dictionary.
        subject: Subject ID (without 'sub-' prefix).

    Returns:
        Dictionary mapping input names to paths. Optional inputs that are not
        configured map to None.
    """
    paths = {}
    for key, template in config["inputs"].items():
        paths[key] = Path(str(template).format(subject=subject)) if template else None
    return paths


def get_log_path(config: Dict[str, Any], log_name: str, stage: str) -> Path:
    """Get path to log file.

    Args:
        config: Configuration dictionary.
        log_name: Name of the log file (without extension).
        stage: Pipeline stage (e.g., 'source_reconstruction').

    Returns:
        Path to log file.
    """
    log_dir = Path(config["paths"]["logs"]) / stage

    if not log_name.endswith(".log"):
        log_name = f"{log_name}.log"

    return log_dir / log_name
