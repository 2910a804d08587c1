"""Subject job queue.

The queue is built once from the subject list, permuted with a seeded shuffle
(so repeated submissions spread subjects over nodes the same way) and never
mutated afterwards. Job order is a scheduling choice only; nothing downstream
depends on it.
"""

import logging
import random
from dataclasses import dataclass
from typing import Any, Callable, Iterable, List, Optional, Tuple

from joblib import Parallel, delayed

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SubjectJob:
    """One independent unit of work: a single subject's full pipeline."""
    subject: str
    overwrite: bool = False
    time: Optional[str] = None
    mem: Optional[str] = None

    @property
    def name(self) -> str:
        return f"lcmv_sub-{self.subject}"


def build_job_queue(
    subjects: Iterable[str],
    seed: Optional[int] = 42,
    overwrite: bool = False,
    time: Optional[str] = None,
    mem: Optional[str] = None,
) -> Tuple[SubjectJob, ...]:
    """Build the immutable, shuffled job queue.

    Args:
        subjects: Subject IDs. Duplicates are dropped, first occurrence wins.
        seed: Seed for the shuffle. None keeps the given order.
        overwrite: Whether jobs recompute existing outputs.
        time: Wall-clock budget per job (SLURM time string).
        mem: Memory budget per job (SLURM memory string).

    Returns:
        Tuple of SubjectJob.
    """
    unique_subjects = list(dict.fromkeys(str(s) for s in subjects))

    if seed is not None:
        random.Random(seed).shuffle(unique_subjects)

    queue = tuple(
        SubjectJob(subject=s, overwrite=overwrite, time=time, mem=mem)
        for s in unique_subjects
    )
    logger.debug(f"Job queue (seed={seed}): {[job.subject for job in queue]}")
    return queue


def run_local(
    queue: Tuple[SubjectJob, ...],
    worker: Callable[[SubjectJob], Any],
    n_jobs: int = 1,
) -> List[Any]:
    """Run every job of the queue on this machine.

    Jobs share no mutable state; with ``n_jobs > 1`` they run in separate
    joblib worker processes. Results come back in queue order.

    Args:
        queue: Job queue from build_job_queue.
        worker: Callable executing one job.
        n_jobs: Number of parallel workers.

    Returns:
        List of worker results.
    """
    logger.info(f"Running {len(queue)} job(s) locally with n_jobs={n_jobs}")
    return Parallel(n_jobs=n_jobs)(delayed(worker)(job) for job in queue)
