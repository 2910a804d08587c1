"""Input data validation utilities for megparcel.

This module checks that every per-subject input and the shared atlas exist
before any pipeline stage is run, and prints a summary table.
"""

import argparse
import logging
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from rich.console import Console
from rich.table import Table

from megparcel.utils.config import get_subjects, load_config
from megparcel.utils.paths import get_input_paths, get_parcel_timeseries_path

logger = logging.getLogger(__name__)
console = Console()

# Inputs that may be left empty in config.yaml
OPTIONAL_INPUTS = {"noise_covariance", "mri"}

# Inputs shared by all subjects
SHARED_INPUTS = {"atlas", "atlas_labels"}


def find_missing_inputs(config: Dict[str, Any], subject: str) -> List[str]:
    """Return the names of required inputs whose files are missing."""
    missing = []
    for name, path in get_input_paths(config, subject).items():
        if path is None:
            if name not in OPTIONAL_INPUTS:
                missing.append(name)
            continue
        if not path.exists():
            missing.append(name)
    return missing


def check_subject_inputs(
    config: Dict[str, Any],
    subjects: Optional[List[str]] = None,
) -> Tuple[bool, Dict[str, Any]]:
    """Validate inputs for a set of subjects.

    Args:
        config: Configuration dictionary.
        subjects: Subject IDs to check. Defaults to every configured subject.

    Returns:
        Tuple containing:
        - valid: Whether every subject has all required inputs
        - report: Dictionary with per-subject missing inputs and output status
    """
    if subjects is None:
        subjects = get_subjects(config)

    report = {"missing": {}, "done": [], "shared_missing": [], "errors": []}

    # The atlas is shared: check it once
    first = subjects[0] if subjects else "x"
    for name in SHARED_INPUTS:
        path = get_input_paths(config, first).get(name)
        if path is None or not path.exists():
            report["shared_missing"].append(name)
            report["errors"].append(f"Shared input missing: {name} ({path})")

    for subject in subjects:
        missing = [m for m in find_missing_inputs(config, subject) if m not in SHARED_INPUTS]
        report["missing"][subject] = missing
        if missing:
            report["errors"].append(f"sub-{subject}: missing {', '.join(missing)}")
        if get_parcel_timeseries_path(config, subject).exists():
            report["done"].append(subject)

    return len(report["errors"]) == 0, report


def print_validation_report(report: Dict[str, Any], verbose: bool = False) -> None:
    """Print validation report to console.

    Args:
        report: Validation report dictionary.
        verbose: Whether to list every error line.
    """
    console.print("\n[bold]Input Validation[/bold]")
    console.print("=" * 80)

    table = Table(title="Subject Inputs")
    table.add_column("Subject", style="cyan")
    table.add_column("Inputs", style="green")
    table.add_column("Output", justify="right")

    for subject, missing in sorted(report["missing"].items()):
        inputs_status = "✓ complete" if not missing else f"[red]✗ {', '.join(missing)}[/red]"
        output_status = "exists" if subject in report["done"] else "-"
        table.add_row(f"sub-{subject}", inputs_status, output_status)

    console.print(table)

    if report["shared_missing"]:
        console.print(f"[red]✗ Shared inputs missing: {', '.join(report['shared_missing'])}[/red]")

    if verbose and report["errors"]:
        console.print(f"\n[bold red]Errors ({len(report['errors'])}):[/bold red]")
        for error in report["errors"]:
            console.print(f"  ✗ {error}")

    console.print("=" * 80)
    if report["errors"]:
        console.print("[bold red]✗ Validation FAILED[/bold red]")
    else:
        console.print("[bold green]✓ Validation PASSED[/bold green]")


def main() -> int:
    """Main validation script."""
    parser = argparse.ArgumentParser(description="Validate megparcel input data")
    parser.add_argument(
        "--subjects",
        type=str,
        default=None,
        help="Space-separated subject IDs (default: all from config)",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Path to config.yaml",
    )
    parser.add_argument(
        "--verbose",
        "-v",
        action="store_true",
        help="Show detailed error listing",
    )
    args = parser.parse_args()

    try:
        config = load_config(str(args.config) if args.config else None)
    except Exception as e:
        console.print(f"[bold red]Error loading config:[/bold red] {e}")
        return 1

    subjects = args.subjects.split() if args.subjects else None
    is_valid, report = check_subject_inputs(config, subjects)
    print_validation_report(report, verbose=args.verbose)

    return 0 if is_valid else 1


if __name__ == "__main__":
    sys.exit(main())
