"""Per-subject LCMV source reconstruction and parcellation.

Each subject runs the stages strictly in order, every stage fully
materialised before the next one starts:

1. align head model, source grid and sensors to template space
2. band-pass filter and estimate covariances
3. select kappa
4. build the leadfield
5. compute LCMV filters and the averaged source estimate
6. project the atlas onto the grid
7. reduce trials to parcel timecourses

Subjects are independent; the only thing they share is a read-only
SharedContext holding the atlas.
"""

import logging
import time
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

import numpy as np

from megparcel.source_reconstruction import io
from megparcel.source_reconstruction.alignment import (
    align_head_model,
    align_sensor_geometry,
    align_source_model,
)
from megparcel.source_reconstruction.atlas import INTERPOLATION_METHODS, project_atlas
from megparcel.source_reconstruction.beamformer import WEIGHT_NORMS, lcmv
from megparcel.source_reconstruction.conditioning import condition
from megparcel.source_reconstruction.data import (
    AffineTransform,
    Atlas,
    HeadModel,
    ParcelTimeseries,
    SensorData,
    SourceEstimate,
    SourceModel,
)
from megparcel.source_reconstruction.leadfield import build_leadfield
from megparcel.source_reconstruction.parcellation import METHODS, parcellate
from megparcel.source_reconstruction.regularization import DEFAULT_THRESHOLD, select_kappa
from megparcel.utils.config import get_task_name
from megparcel.utils.errors import ConfigurationError, ResourceExhaustion
from megparcel.utils.logging_config import get_git_hash
from megparcel.utils.paths import (
    get_input_paths,
    get_parcel_timeseries_path,
    get_source_estimate_path,
)

logger = logging.getLogger(__name__)

N_STAGES = 7


@dataclass(frozen=True)
class PipelineParams:
    """Validated source reconstruction parameters."""
    l_freq: float = 1.0
    h_freq: float = 80.0
    lambda_: float = 5.0
    reduce_rank: int = 2
    normalize_leadfield: bool = True
    fixed_orientation: bool = True
    weight_norm: Optional[str] = "unit-noise-gain"
    kappa: Optional[int] = None
    kappa_threshold: float = DEFAULT_THRESHOLD
    atlas_interpolation: str = "nearest"
    parcellation_method: str = "pca"
    n_jobs: int = 1

    def __post_init__(self):
        if not 0 < self.l_freq < self.h_freq:
            raise ConfigurationError(f"Invalid bandpass [{self.l_freq}, {self.h_freq}]")
        if self.lambda_ < 0:
            raise ConfigurationError(f"lambda must be non-negative, got {self.lambda_}")
        if self.reduce_rank not in (1, 2, 3):
            raise ConfigurationError(f"reduce_rank must be 1, 2 or 3, got {self.reduce_rank}")
        if self.weight_norm not in WEIGHT_NORMS:
            raise ConfigurationError(f"Unsupported weight_norm: {self.weight_norm}")
        if self.kappa is not None and self.kappa < 1:
            raise ConfigurationError(f"kappa must be positive, got {self.kappa}")
        if self.atlas_interpolation not in INTERPOLATION_METHODS:
            raise ConfigurationError(f"Unsupported atlas_interpolation: {self.atlas_interpolation}")
        if self.parcellation_method not in METHODS:
            raise ConfigurationError(f"Unsupported parcellation_method: {self.parcellation_method}")

    @classmethod
    def from_config(cls, config: Dict[str, Any], kappa: Optional[int] = None) -> "PipelineParams":
        """Build parameters from the ``source_reconstruction`` config section.

        Args:
            config: Configuration dictionary.
            kappa: Explicit kappa overriding the configured one.
        """
        src = config["source_reconstruction"]
        bandpass = src.get("bandpass", [1.0, 80.0])
        if not isinstance(bandpass, (list, tuple)) or len(bandpass) != 2:
            raise ConfigurationError(f"source_reconstruction.bandpass must be [low, high], got {bandpass}")

        weight_norm = src.get("weight_norm", "unit-noise-gain")
        if weight_norm in ("none", "None"):
            weight_norm = None

        if kappa is None:
            kappa = src.get("kappa")

        return cls(
            l_freq=float(bandpass[0]),
            h_freq=float(bandpass[1]),
            lambda_=float(src.get("lambda", 5.0)),
            reduce_rank=int(src.get("reduce_rank", 2)),
            normalize_leadfield=bool(src.get("normalize_leadfield", True)),
            fixed_orientation=bool(src.get("fixed_orientation", True)),
            weight_norm=weight_norm,
            kappa=None if kappa is None else int(kappa),
            kappa_threshold=float(src.get("kappa_threshold", DEFAULT_THRESHOLD)),
            atlas_interpolation=src.get("atlas_interpolation", "nearest"),
            parcellation_method=src.get("parcellation_method", "pca"),
            n_jobs=int(config.get("computing", {}).get("n_jobs", 1)),
        )

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class SharedContext:
    """Read-only data shared by every subject run."""
    atlas: Atlas


@dataclass(frozen=True)
class SubjectInputs:
    sensor_data: SensorData
    transform: AffineTransform
    head_model: HeadModel
    source_model: SourceModel
    noise_covariance: Optional[np.ndarray] = None


@dataclass(frozen=True)
class SubjectResult:
    subject: str
    estimate: SourceEstimate
    parcels: ParcelTimeseries
    kappa: int
    timings: Dict[str, float] = field(default_factory=dict)


def load_shared_context(config: Dict[str, Any]) -> SharedContext:
    """Load the atlas once for all subjects."""
    inputs = config["inputs"]
    dataset = config["dataset"]
    atlas = io.read_atlas(
        Path(inputs["atlas"]),
        Path(inputs["atlas_labels"]),
        coordsys=dataset.get("template_coordsys", "mni"),
        scale=float(dataset.get("atlas_scale", 1.0)),
    )
    return SharedContext(atlas=atlas)


def load_subject_inputs(config: Dict[str, Any], subject: str) -> SubjectInputs:
    """Read every per-subject input named in the ``inputs`` section."""
    paths = get_input_paths(config, subject)
    dataset = config["dataset"]
    return SubjectInputs(
        sensor_data=io.read_sensor_data(paths["sensor_data"]),
        transform=io.read_transform(
            paths["transform"],
            from_coordsys=dataset.get("subject_coordsys", "head"),
            to_coordsys=dataset.get("template_coordsys", "mni"),
        ),
        head_model=io.read_head_model(paths["head_model"]),
        source_model=io.read_source_model(paths["source_model"]),
        noise_covariance=io.read_noise_covariance(paths.get("noise_covariance")),
    )


class _StageTimer:
    """Times and logs consecutive pipeline stages."""

    def __init__(self):
        self.timings = {}
        self._index = 0

    def start(self, name: str, message: str) -> None:
        self._index += 1
        self._name = name
        self._t0 = time.perf_counter()
        logger.info(f"[{self._index}/{N_STAGES}] {message}")

    def stop(self) -> None:
        self.timings[self._name] = round(time.perf_counter() - self._t0, 3)


def run_subject(
    subject: str,
    inputs: SubjectInputs,
    context: SharedContext,
    params: PipelineParams,
) -> SubjectResult:
    """Run all seven stages for one subject.

    Args:
        subject: Subject ID, used for logging.
        inputs: Loaded subject inputs.
        context: Shared read-only context.
        params: Source reconstruction parameters.

    Returns:
        SubjectResult with the source estimate and parcel timeseries.
    """
    sensor_data = inputs.sensor_data
    if sensor_data.geometry is None:
        raise ConfigurationError(f"sub-{subject}: sensor data carries no sensor geometry")

    timer = _StageTimer()

    timer.start("alignment", f"Aligning geometry to '{inputs.transform.to_coordsys}'...")
    head_model = align_head_model(inputs.head_model, inputs.transform)
    source_model = align_source_model(inputs.source_model, inputs.transform)
    geometry = align_sensor_geometry(sensor_data.geometry, inputs.transform)
    timer.stop()

    timer.start("conditioning", f"Filtering to [{params.l_freq}, {params.h_freq}] Hz...")
    conditioned = condition(sensor_data, params.l_freq, params.h_freq)
    timer.stop()

    timer.start("kappa", "Selecting regularization rank...")
    if params.kappa is not None:
        kappa = params.kappa
        logger.info(f"Using configured kappa={kappa}")
    else:
        kappa = select_kappa(conditioned.average_covariance, params.kappa_threshold)
    timer.stop()

    timer.start("leadfield", "Building leadfield...")
    leadfield = build_leadfield(
        head_model,
        source_model,
        geometry,
        rank=params.reduce_rank,
        normalize=params.normalize_leadfield,
        kappa=kappa,
        n_jobs=params.n_jobs,
    )
    timer.stop()

    timer.start("beamformer", "Computing LCMV filters...")
    estimate = lcmv(
        leadfield,
        conditioned,
        kappa,
        lambda_=params.lambda_,
        fixed_orientation=params.fixed_orientation,
        weight_norm=params.weight_norm,
        noise_covariance=inputs.noise_covariance,
        orientation_priors=source_model.orientations,
    )
    timer.stop()

    timer.start("atlas", "Projecting atlas onto the source grid...")
    assignment = project_atlas(context.atlas, source_model, method=params.atlas_interpolation)
    timer.stop()

    timer.start("parcellation", f"Parcellating trials ({params.parcellation_method})...")
    parcels = parcellate(conditioned.filtered, estimate, assignment, method=params.parcellation_method)
    timer.stop()

    return SubjectResult(
        subject=subject,
        estimate=estimate,
        parcels=parcels,
        kappa=kappa,
        timings=timer.timings,
    )


def is_complete(config: Dict[str, Any], subject: str) -> bool:
    """True when the subject's final artifact already exists."""
    return get_parcel_timeseries_path(config, subject).exists()


def save_result(config: Dict[str, Any], result: SubjectResult, params: PipelineParams) -> Tuple[Path, Path]:
    """Write both artifacts of a subject, all-or-nothing."""
    subject = result.subject
    sources_path = get_source_estimate_path(config, subject)
    parcels_path = get_parcel_timeseries_path(config, subject)

    metadata = {
        "subject": subject,
        "task": get_task_name(config),
        "kappa": result.kappa,
        "parameters": params.to_dict(),
        "timings": result.timings,
        "git_hash": get_git_hash(),
    }
    sources_meta = dict(
        metadata,
        n_points=result.estimate.n_points,
        n_orient=result.estimate.n_orient,
        coordsys=result.estimate.coordsys,
    )
    parcels_meta = dict(
        metadata,
        n_trials=int(result.parcels.data.shape[0]),
        n_parcels=len(result.parcels.parcel_labels),
        sfreq=result.parcels.sfreq,
        parcellation_method=result.parcels.method,
        parcel_names=list(result.parcels.parcel_names),
    )

    # The parcel timeseries is written last; its presence marks a complete subject
    io.write_artifacts([
        (sources_path, io.source_estimate_arrays(result.estimate), sources_meta),
        (parcels_path, io.parcel_timeseries_arrays(result.parcels), parcels_meta),
    ])
    return sources_path, parcels_path


def process_subject(
    subject: str,
    config: Dict[str, Any],
    context: Optional[SharedContext] = None,
    overwrite: bool = False,
    params: Optional[PipelineParams] = None,
) -> str:
    """Load, run and save one subject.

    Args:
        subject: Subject ID (without 'sub-' prefix).
        config: Configuration dictionary.
        context: Shared context. Loaded here when None.
        overwrite: Recompute even when outputs exist.
        params: Parameters. Built from config when None.

    Returns:
        "skipped" when outputs already existed, "done" otherwise.

    Raises:
        MegParcelError: On any stage failure. Nothing is written in that case.
    """
    if not overwrite and is_complete(config, subject):
        logger.info(f"sub-{subject}: output exists, skipping ({get_parcel_timeseries_path(config, subject)})")
        return "skipped"

    if params is None:
        params = PipelineParams.from_config(config)

    logger.info("=" * 80)
    logger.info(f"Processing sub-{subject}")
    logger.info("=" * 80)

    try:
        if context is None:
            context = load_shared_context(config)
        inputs = load_subject_inputs(config, subject)
        result = run_subject(subject, inputs, context, params)
    except MemoryError as e:
        raise ResourceExhaustion(f"sub-{subject}: out of memory") from e

    sources_path, parcels_path = save_result(config, result, params)
    logger.info(f"Saved source estimate: {sources_path}")
    logger.info(f"Saved parcel timeseries: {parcels_path}")
    logger.info(f"✓ Successfully processed sub-{subject} (kappa={result.kappa})")
    return "done"
