"""Shared synthetic fixtures: sphere head, sensor helmet, grids and an atlas."""

from pathlib import Path

import nibabel as nib
import numpy as np
import pytest
import yaml

from megparcel.source_reconstruction.data import (
    Atlas,
    HeadModel,
    SensorGeometry,
    SourceModel,
)
from megparcel.source_reconstruction.leadfield import compute_dipole_field

HEAD_RADIUS = 0.09
HELMET_RADIUS = 0.12


def make_helmet(n_sensors: int = 48, radius: float = HELMET_RADIUS, coordsys: str = "head") -> SensorGeometry:
    """Radial magnetometers spread over the upper hemisphere (Fibonacci lattice)."""
    idx = np.arange(n_sensors) + 0.5
    z = 1.0 - idx / n_sensors * 0.9
    azimuth = np.pi * (1 + 5 ** 0.5) * idx
    rho = np.sqrt(1 - z ** 2)
    directions = np.column_stack([rho * np.cos(azimuth), rho * np.sin(azimuth), z])
    return SensorGeometry(
        labels=[f"MEG{i:03d}" for i in range(n_sensors)],
        coil_positions=radius * directions,
        coil_orientations=directions,
        coordsys=coordsys,
    )


def make_grid(spacing: float = 0.02, radius: float = 0.07, coordsys: str = "head") -> SourceModel:
    """Regular grid inside the upper part of the sphere, away from its centre."""
    axis = np.arange(-radius, radius + 1e-9, spacing)
    points = np.array(np.meshgrid(axis, axis, axis, indexing="ij")).reshape(3, -1).T
    dist = np.linalg.norm(points, axis=1)
    keep = (dist <= radius) & (dist > 0.015) & (points[:, 2] > 0)
    return SourceModel(positions=points[keep], coordsys=coordsys)


def make_atlas(coordsys: str = "mni") -> Atlas:
    """Two hemispheric parcels (x < 0 -> 1, x >= 0 -> 2) inside an 8 cm ball."""
    shape = (20, 20, 20)
    affine = np.diag([0.01, 0.01, 0.01, 1.0])
    affine[:3, 3] = -0.095
    ijk = np.indices(shape).reshape(3, -1).T
    xyz = ijk * 0.01 - 0.095
    labels = np.where(xyz[:, 0] < 0, 1, 2)
    labels[np.linalg.norm(xyz, axis=1) > 0.08] = 0
    return Atlas(
        labels=labels.reshape(shape),
        affine=affine,
        label_names={1: "Left", 2: "Right"},
        coordsys=coordsys,
    )


def simulate_trials(geometry, head_model, positions, moments, n_trials=3, n_times=400,
                    sfreq=200.0, noise=0.05, seed=0):
    """Sensor data from dipoles with band-limited random waveforms plus white noise."""
    rng = np.random.default_rng(seed)
    t = np.arange(n_times) / sfreq
    data = np.zeros((n_trials, geometry.n_channels, n_times))
    for position, moment in zip(positions, moments):
        gain = compute_dipole_field(head_model, geometry, position) @ moment
        for trial in range(n_trials):
            freq = rng.uniform(8, 12)
            waveform = np.sin(2 * np.pi * freq * t + rng.uniform(0, 2 * np.pi))
            data[trial] += np.outer(gain, waveform)
    scale = data.std()
    data += noise * scale * rng.standard_normal(data.shape)
    return data


@pytest.fixture
def sphere_head():
    return HeadModel(kind="singlesphere", origin=np.zeros(3), radius=HEAD_RADIUS, coordsys="head")


@pytest.fixture
def helmet():
    return make_helmet()


@pytest.fixture
def grid():
    return make_grid()


@pytest.fixture
def atlas():
    return make_atlas()


@pytest.fixture
def rng():
    return np.random.default_rng(42)


@pytest.fixture
def dataset(tmp_path, sphere_head):
    """On-disk inputs for one subject plus a matching configuration dictionary."""
    data_root = tmp_path / "data"
    anat = data_root / "sub-01" / "anat"
    meg = data_root / "sub-01" / "meg"
    atlas_dir = data_root / "atlas"
    for directory in (anat, meg, atlas_dir):
        directory.mkdir(parents=True)

    geometry = make_helmet(32)
    sources = [np.array([-0.03, 0.01, 0.05]), np.array([0.03, -0.01, 0.05])]
    moments = [np.array([1e-8, 0.0, 0.0]), np.array([0.0, 1e-8, 0.0])]
    data = simulate_trials(geometry, sphere_head, sources, moments)

    np.savez(
        meg / "sub-01_task-rest_sensors.npz",
        data=data,
        sfreq=200.0,
        labels=np.array(geometry.labels),
        coil_positions=geometry.coil_positions,
        coil_orientations=geometry.coil_orientations,
        coordsys="head",
    )
    np.savetxt(anat / "sub-01_trans.txt", np.eye(4))
    np.savez(anat / "sub-01_headmodel.npz", kind="singlesphere", origin=np.zeros(3), radius=HEAD_RADIUS)
    np.savez(anat / "sub-01_sourcemodel.npz", positions=make_grid(0.025).positions)

    atlas = make_atlas()
    nib.save(nib.Nifti1Image(atlas.labels.astype(np.int16), atlas.affine), atlas_dir / "atlas.nii.gz")
    (atlas_dir / "labels.txt").write_text("# index name\n1 Left\n2 Right\n")

    config = {
        "paths": {
            "data_root": str(data_root),
            "derivatives": str(data_root / "derivatives"),
            "logs": str(tmp_path / "logs"),
        },
        "dataset": {
            "task_name": "rest",
            "subjects": ["01"],
            "atlas_name": "hemi",
            "subject_coordsys": "head",
            "template_coordsys": "mni",
            "atlas_scale": 1.0,
        },
        "inputs": {
            "sensor_data": str(data_root / "sub-{subject}" / "meg" / "sub-{subject}_task-rest_sensors.npz"),
            "transform": str(data_root / "sub-{subject}" / "anat" / "sub-{subject}_trans.txt"),
            "head_model": str(data_root / "sub-{subject}" / "anat" / "sub-{subject}_headmodel.npz"),
            "source_model": str(data_root / "sub-{subject}" / "anat" / "sub-{subject}_sourcemodel.npz"),
            "noise_covariance": "",
            "atlas": str(atlas_dir / "atlas.nii.gz"),
            "atlas_labels": str(atlas_dir / "labels.txt"),
        },
        "source_reconstruction": {
            "bandpass": [1, 40],
            "lambda": 5,
            "reduce_rank": 2,
            "normalize_leadfield": True,
            "fixed_orientation": True,
            "weight_norm": "unit-noise-gain",
            "kappa": 8,
            "kappa_threshold": 5,
            "atlas_interpolation": "nearest",
            "parcellation_method": "pca",
        },
        "computing": {"n_jobs": 1, "slurm": {"enabled": False}},
        "logging": {"level": "INFO"},
        "reproducibility": {"random_seed": 42},
    }
    return config


@pytest.fixture
def config_file(tmp_path, dataset) -> Path:
    path = tmp_path / "config.yaml"
    with open(path, "w") as f:
        yaml.safe_dump(dataset, f)
    return path
