"""Run LCMV source reconstruction and atlas parcellation.

For every subject this computes beamformer filters from the band-passed
trial-averaged covariance, projects the atlas onto the source grid and saves
one timecourse per parcel and trial.

Outputs (derivatives/lcmv/sub-XX/):
- sub-XX_task-<task>_desc-lcmv_sources.npz: filters, power, averaged sources
- sub-XX_task-<task>_space-<atlas>_timeseries.npz: trials x parcels x time

Exit codes:
    0  all subjects processed or skipped
    1  at least one subject failed
    2  a subject exceeded its memory budget (resubmit with a larger budget)

Usage:
    # Single subject
    python -m megparcel.source_reconstruction.run_source_reconstruction --subject 04

    # Several subjects, shuffled with the configured seed
    python -m megparcel.source_reconstruction.run_source_reconstruction --subjects "04 05 06" --n-jobs 3
"""

import argparse
import logging
import sys
from functools import partial
from typing import List, Optional

from megparcel.source_reconstruction.pipeline import (
    PipelineParams,
    load_shared_context,
    process_subject,
)
from megparcel.utils.config import get_random_seed, get_subjects, load_config
from megparcel.utils.errors import MegParcelError, ResourceExhaustion
from megparcel.utils.jobs import SubjectJob, build_job_queue, run_local
from megparcel.utils.logging_config import log_provenance, setup_logging
from megparcel.utils.paths import get_log_path

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_RESOURCES = 2


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    """Parse command-line arguments."""
    parser = argparse.ArgumentParser(
        description="Run LCMV source reconstruction and parcellation",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )

    parser.add_argument(
        "--subject",
        type=str,
        help="Subject ID (e.g., '04'). Mutually exclusive with --subjects.",
    )

    parser.add_argument(
        "--subjects",
        type=str,
        help="Space-separated subject IDs. If neither --subject nor --subjects is given, all configured subjects are processed.",
    )

    parser.add_argument(
        "--config",
        type=str,
        default=None,
        help="Path to config.yaml (searched in standard locations by default)",
    )

    parser.add_argument(
        "--kappa",
        type=int,
        default=None,
        help="Use this regularization rank instead of selecting it from the eigenspectrum",
    )

    parser.add_argument(
        "--n-jobs",
        type=int,
        default=1,
        help="Number of subjects processed in parallel",
    )

    parser.add_argument(
        "--overwrite",
        action="store_true",
        help="Recompute subjects whose outputs already exist",
    )

    parser.add_argument(
        "--log-level",
        type=str,
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging level",
    )

    args = parser.parse_args(argv)

    if args.subject and args.subjects:
        parser.error("--subject and --subjects are mutually exclusive")

    return args


def _run_job(job: SubjectJob, config: dict, params: PipelineParams, context) -> int:
    """Process one job and map its outcome to an exit code."""
    logger = logging.getLogger(__name__)
    try:
        process_subject(job.subject, config, context=context, overwrite=job.overwrite, params=params)
    except ResourceExhaustion as e:
        logger.error(f"sub-{job.subject}: {e}", exc_info=True)
        return EXIT_RESOURCES
    except MegParcelError as e:
        logger.error(f"sub-{job.subject} failed: {e}", exc_info=True)
        return EXIT_FAILED
    except Exception as e:
        logger.error(f"sub-{job.subject} failed unexpectedly: {type(e).__name__}: {e}", exc_info=True)
        return EXIT_FAILED
    return EXIT_OK


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point."""
    args = parse_args(argv)

    # Load configuration
    try:
        config = load_config(args.config)
    except MegParcelError as e:
        print(f"ERROR: Failed to load configuration: {e}", file=sys.stderr)
        return EXIT_FAILED

    if args.subject:
        subjects = [args.subject]
    elif args.subjects:
        subjects = args.subjects.split()
    else:
        subjects = get_subjects(config)

    log_name = f"lcmv_sub-{subjects[0]}" if len(subjects) == 1 else "lcmv_batch"
    setup_logging(
        name=__name__,
        log_file=get_log_path(config, log_name, "source_reconstruction"),
        level=args.log_level,
        config=config,
    )
    logger = logging.getLogger(__name__)

    try:
        params = PipelineParams.from_config(config, kappa=args.kappa)
    except MegParcelError as e:
        logger.error(f"Invalid parameters: {e}")
        return EXIT_FAILED

    log_provenance(logger, "run_source_reconstruction", params.to_dict(), config)

    unknown = [s for s in subjects if s not in get_subjects(config)]
    if unknown:
        logger.warning(f"Subjects not listed in dataset.subjects: {', '.join(unknown)}")

    queue = build_job_queue(subjects, seed=get_random_seed(config), overwrite=args.overwrite)
    logger.info(f"Processing {len(queue)} subject(s): {', '.join(job.subject for job in queue)}")

    try:
        context = load_shared_context(config)
    except MemoryError:
        logger.error("Out of memory while loading the atlas", exc_info=True)
        return EXIT_RESOURCES
    except MegParcelError as e:
        logger.error(f"Failed to load shared inputs: {e}", exc_info=True)
        return EXIT_FAILED
    except Exception as e:
        logger.error(f"Failed to load shared inputs: {type(e).__name__}: {e}", exc_info=True)
        return EXIT_FAILED

    codes = run_local(
        queue,
        partial(_run_job, config=config, params=params, context=context),
        n_jobs=args.n_jobs,
    )

    failed = [job.subject for job, code in zip(queue, codes) if code != EXIT_OK]

    # Summary
    logger.info("=" * 80)
    logger.info(f"Completed: {len(queue) - len(failed)}/{len(queue)} subjects")
    if failed:
        logger.warning(f"Failed subjects: {', '.join(failed)}")
    logger.info("=" * 80)

    if EXIT_RESOURCES in codes:
        return EXIT_RESOURCES
    return EXIT_FAILED if failed else EXIT_OK


if __name__ == "__main__":
    sys.exit(main())
