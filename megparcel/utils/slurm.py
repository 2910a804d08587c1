"""SLURM job submission utilities for HPC execution.

This module provides helper functions for submitting one source
reconstruction job per subject, each with its own wall-clock and memory
budget, and for reporting jobs that ran out of those budgets back to the
caller so they can be resubmitted with a larger one.
"""

import json
import logging
import re
import subprocess
from pathlib import Path
from typing import Dict, List, Optional, Tuple

from jinja2 import Environment, FileSystemLoader

from megparcel.utils.errors import ResourceExhaustion

logger = logging.getLogger(__name__)

# sacct states meaning the job hit its budget rather than failing on its own
RESOURCE_STATES = {"TIMEOUT", "OUT_OF_MEMORY", "DEADLINE"}

_MEM_UNITS = {"K": 1.0 / 1024, "M": 1.0, "G": 1024.0, "T": 1024.0 * 1024}


def get_slurm_template_dir() -> Path:
    """Get path to SLURM templates directory."""
    project_root = Path(__file__).parent.parent.parent
    template_dir = project_root / "slurm" / "templates"

    if not template_dir.exists():
        raise FileNotFoundError(f"SLURM template directory not found: {template_dir}")

    return template_dir


def render_slurm_script(
    template_name: str,
    context: Dict,
    output_path: Optional[Path] = None,
    template_dir: Optional[Path] = None,
) -> str:
    """Render a SLURM job script from a Jinja2 template.

    Args:
        template_name: Name of template file (e.g., "source_reconstruction.sh.j2")
        context: Dictionary of variables to pass to template
        output_path: Optional path to save rendered script
        template_dir: Directory holding the templates (defaults to slurm/templates)

    Returns:
        Rendered script as string

    Examples:
        >>> script = render_slurm_script(
        ...     "source_reconstruction.sh.j2",
        ...     {"subject": "04", "cpus": 4, "mem": "16G", "time": "02:00:00"}
        ... )
    """
    env = Environment(
        loader=FileSystemLoader(str(template_dir or get_slurm_template_dir())),
        trim_blocks=True,
        lstrip_blocks=True,
    )
    script = env.get_template(template_name).render(**context)

    if output_path:
        output_path.parent.mkdir(parents=True, exist_ok=True)
        output_path.write_text(script)
        logger.debug(f"Rendered SLURM script saved to: {output_path}")

    return script


def submit_slurm_job(
    script_path: Path,
    job_name: Optional[str] = None,
    dependencies: Optional[List[str]] = None,
    dry_run: bool = False,
) -> Optional[str]:
    """Submit a SLURM job script using sbatch.

    Args:
        script_path: Path to SLURM script file
        job_name: Optional job name (overrides script's #SBATCH --job-name)
        dependencies: Optional list of job IDs this job depends on
        dry_run: If True, print command without submitting

    Returns:
        Job ID as string, or None if dry_run=True or submission failed
    """
    if not script_path.exists():
        raise FileNotFoundError(f"SLURM script not found: {script_path}")

    cmd = ["sbatch"]

    if job_name:
        cmd.extend(["--job-name", job_name])

    if dependencies:
        cmd.extend(["--dependency", f"afterok:{':'.join(dependencies)}"])

    cmd.append(str(script_path))

    cmd_str = " ".join(cmd)
    logger.info(f"Submitting SLURM job: {cmd_str}")

    if dry_run:
        print(f"[DRY RUN] Would submit: {cmd_str}")
        return None

    try:
        result = subprocess.run(cmd, capture_output=True, text=True, check=True)
    except subprocess.CalledProcessError as e:
        logger.error(f"Failed to submit job: {e.stderr}")
        print(f"✗ Job submission failed: {e.stderr}")
        return None

    # "Submitted batch job 12345"
    job_id = result.stdout.strip().split()[-1]
    logger.info(f"Job submitted successfully: {job_id}")
    print(f"✓ Submitted job {job_id}: {script_path.name}")

    return job_id


def check_job_status(job_id: str) -> Optional[Dict]:
    """Check status of a SLURM job.

    Args:
        job_id: Job ID to check

    Returns:
        Dictionary with job info (state, elapsed time, peak memory), or None
        if the job is unknown to sacct
    """
    cmd = [
        "sacct",
        "-j", job_id,
        "--format=JobID,JobName,State,ExitCode,Elapsed,MaxRSS",
        "--noheader",
        "--parsable2",
    ]

    try:
        result = subprocess.run(cmd, capture_output=True, text=True, check=True)
    except subprocess.CalledProcessError:
        logger.warning(f"Could not get status for job {job_id}")
        return None

    return parse_sacct_line(result.stdout.strip().split("\n")[0])


def parse_sacct_line(line: str) -> Optional[Dict]:
    """Parse one ``--parsable2`` sacct line (the main job, not a step)."""
    if not line:
        return None

    fields = line.split("|")
    if len(fields) < 6:
        return None

    return {
        "JobID": fields[0],
        "JobName": fields[1],
        "State": fields[2],
        "ExitCode": fields[3],
        "Elapsed": fields[4],
        "MaxRSS": fields[5],
    }


def raise_for_job_state(status: Dict) -> None:
    """Raise ResourceExhaustion when a finished job ran out of its budget.

    Args:
        status: Job status dictionary as returned by check_job_status

    Raises:
        ResourceExhaustion: If the job state is TIMEOUT, OUT_OF_MEMORY or DEADLINE
    """
    # "CANCELLED by 1234" -> "CANCELLED"
    state = status["State"].split()[0].upper()
    if state in RESOURCE_STATES:
        raise ResourceExhaustion(
            f"Job {status['JobID']} ({status['JobName']}) ended with {state} "
            f"after {status['Elapsed']}"
        )


def _parse_time_seconds(time_str: str) -> int:
    """Parse SLURM time strings: MM:SS, HH:MM:SS, D-HH:MM:SS."""
    days = 0
    if "-" in time_str:
        day_part, time_str = time_str.split("-", 1)
        days = int(day_part)
    parts = [int(p) for p in time_str.split(":")]
    while len(parts) < 3:
        parts.insert(0, 0)
    hours, minutes, seconds = parts
    return ((days * 24 + hours) * 60 + minutes) * 60 + seconds


def _format_time(seconds: int) -> str:
    days, remainder = divmod(int(seconds), 86400)
    hours, remainder = divmod(remainder, 3600)
    minutes, seconds = divmod(remainder, 60)
    clock = f"{hours:02d}:{minutes:02d}:{seconds:02d}"
    return f"{days}-{clock}" if days else clock


def _parse_mem_mb(mem: str) -> float:
    match = re.fullmatch(r"(\d+(?:\.\d+)?)([KMGT]?)B?", mem.strip().upper())
    if match is None:
        raise ValueError(f"Cannot parse SLURM memory value: {mem}")
    value, unit = match.groups()
    return float(value) * _MEM_UNITS[unit or "M"]


def scale_budget(
    time: str,
    mem: str,
    time_factor: float = 1.5,
    mem_factor: float = 1.5,
) -> Tuple[str, str]:
    """Return an enlarged (time, mem) budget for resubmitting an exhausted job.

    Examples:
        >>> scale_budget("02:00:00", "16G", time_factor=1.5, mem_factor=2)
        ('03:00:00', '32G')
    """
    new_time = _format_time(int(round(_parse_time_seconds(time) * time_factor)))
    new_mem_mb = _parse_mem_mb(mem) * mem_factor
    if new_mem_mb >= 1024 and new_mem_mb % 1024 == 0:
        new_mem = f"{int(new_mem_mb // 1024)}G"
    else:
        new_mem = f"{int(round(new_mem_mb))}M"
    return new_time, new_mem


def save_job_manifest(
    job_ids: List[str],
    manifest_path: Path,
    metadata: Optional[Dict] = None,
) -> None:
    """Save list of submitted job IDs to a manifest file.

    Args:
        job_ids: List of SLURM job IDs
        manifest_path: Path to save manifest JSON
        metadata: Optional additional metadata (subjects, budgets, seed)
    """
    manifest = {
        "job_ids": job_ids,
        "num_jobs": len(job_ids),
    }

    if metadata:
        manifest["metadata"] = metadata

    manifest_path.parent.mkdir(parents=True, exist_ok=True)
    with open(manifest_path, "w") as f:
        json.dump(manifest, f, indent=2)

    logger.info(f"Saved job manifest: {manifest_path}")
    print(f"✓ Saved job manifest: {manifest_path}")


def load_job_manifest(manifest_path: Path) -> Dict:
    """Load a job manifest file.

    Args:
        manifest_path: Path to manifest JSON file

    Returns:
        Dictionary with job_ids and metadata
    """
    if not manifest_path.exists():
        raise FileNotFoundError(f"Manifest not found: {manifest_path}")

    with open(manifest_path, "r") as f:
        return json.load(f)
