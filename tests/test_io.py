"""Tests for input readers and artifact writers."""

import json

import mne
import numpy as np
import pytest
from mne.transforms import Transform, apply_trans

from megparcel.source_reconstruction import io
from megparcel.source_reconstruction.alignment import (
    align_head_model,
    align_sensor_geometry,
    align_source_model,
)
from megparcel.source_reconstruction.data import (
    AffineTransform,
    Atlas,
    HeadModel,
    SensorGeometry,
    SourceModel,
)
from megparcel.source_reconstruction.leadfield import build_leadfield, compute_dipole_field
from megparcel.utils.errors import ArtifactIOError, ConfigurationError
from megparcel.utils.paths import get_input_paths, get_sidecar_path

from conftest import make_helmet


def test_readers_load_subject_inputs(dataset):
    paths = get_input_paths(dataset, "01")

    sensor_data = io.read_sensor_data(paths["sensor_data"])
    assert sensor_data.data.shape == (3, 32, 400)
    assert sensor_data.geometry.labels == sensor_data.labels

    transform = io.read_transform(paths["transform"], "head", "mni")
    np.testing.assert_array_equal(transform.matrix, np.eye(4))

    head = io.read_head_model(paths["head_model"])
    assert head.kind == "singlesphere"
    assert head.radius == pytest.approx(0.09)
    assert head.coordsys == "head"

    source = io.read_source_model(paths["source_model"])
    assert source.orientations is None
    assert source.positions.shape[1] == 3


def test_atlas_reader(dataset):
    atlas = io.read_atlas(dataset["inputs"]["atlas"], dataset["inputs"]["atlas_labels"], scale=1.0)
    assert atlas.labels.shape == (20, 20, 20)
    assert atlas.label_names == {1: "Left", 2: "Right"}
    assert set(np.unique(atlas.labels)) == {0, 1, 2}


def test_atlas_scale_applies_to_affine(dataset):
    atlas = io.read_atlas(dataset["inputs"]["atlas"], dataset["inputs"]["atlas_labels"], scale=1000.0)
    assert atlas.affine[0, 0] == pytest.approx(10.0)
    assert atlas.affine[3, 3] == 1.0


def test_missing_input_raises(tmp_path):
    with pytest.raises(ConfigurationError):
        io.read_head_model(tmp_path / "nothing.npz")


def test_unsupported_sensor_format(tmp_path):
    path = tmp_path / "data.csv"
    path.write_text("1,2,3")
    with pytest.raises(ConfigurationError):
        io.read_sensor_data(path)


def test_corrupt_artifact_raises_io_error(tmp_path):
    path = tmp_path / "broken.npz"
    path.write_bytes(b"not a zip file")
    with pytest.raises(ArtifactIOError):
        io.read_source_model(path)


def test_bad_label_table(tmp_path):
    path = tmp_path / "labels.txt"
    path.write_text("one Left\n")
    with pytest.raises(ConfigurationError):
        io.read_label_table(path)


def test_write_artifacts_writes_sidecars(tmp_path):
    first = tmp_path / "out" / "a.npz"
    second = tmp_path / "out" / "b.npz"
    written = io.write_artifacts([
        (first, {"x": np.arange(3)}, {"kappa": np.int64(4)}),
        (second, {"y": np.ones(2)}, {"sfreq": np.float32(100.0)}),
    ])

    assert written[-1] == second
    with np.load(first) as npz:
        np.testing.assert_array_equal(npz["x"], [0, 1, 2])
    with open(get_sidecar_path(second)) as f:
        assert json.load(f) == {"sfreq": 100.0}
    assert sorted(p.name for p in (tmp_path / "out").iterdir()) == [
        "a.npz", "a_params.json", "b.npz", "b_params.json",
    ]


def test_unserialisable_metadata_writes_nothing(tmp_path):
    path = tmp_path / "out" / "a.npz"
    with pytest.raises(ArtifactIOError):
        io.write_artifacts([(path, {"x": np.arange(3)}, {"bad": object()})])
    assert list((tmp_path / "out").iterdir()) == []


def _write_fif_epochs(path, n_sites=16, bad=None, coil_type=None):
    """Epochs with a magnetometer and a planar gradiometer at every helmet site."""
    helmet = make_helmet(n_sites)
    names, types, locs = [], [], []
    for i, (position, ez) in enumerate(zip(helmet.coil_positions, helmet.coil_orientations)):
        ex = np.cross([0.0, 1.0, 0.0], ez)
        ex /= np.linalg.norm(ex)
        ey = np.cross(ez, ex)
        loc = np.concatenate([position, ex, ey, ez])
        names += [f"MEG{i:03d}1", f"MEG{i:03d}2"]
        types += ["mag", "grad"]
        locs += [loc, loc]

    info = mne.create_info(names, sfreq=200.0, ch_types=types)
    for ch, loc in zip(info["chs"], locs):
        ch["loc"] = loc
    if coil_type is not None:
        info["chs"][0]["coil_type"] = coil_type
    angle = np.deg2rad(10.0)
    dev_head = np.eye(4)
    dev_head[:2, :2] = [[np.cos(angle), -np.sin(angle)], [np.sin(angle), np.cos(angle)]]
    dev_head[:3, 3] = [0.0, 0.005, -0.01]
    info["dev_head_t"] = Transform("meg", "head", dev_head)
    if bad is not None:
        info["bads"] = [bad]

    data = 1e-12 * np.random.default_rng(0).standard_normal((3, len(names), 100))
    mne.EpochsArray(data, info, verbose=False).save(path, overwrite=True, verbose=False)
    return info


def _mne_reference_fields(info, positions, labels):
    src = mne.setup_volume_source_space(
        pos=dict(rr=positions, nn=np.tile([0.0, 0.0, 1.0], (len(positions), 1))), verbose=False
    )
    sphere = mne.make_sphere_model(r0=(0.0, 0.0, 0.0), head_radius=None, verbose=False)
    fwd = mne.make_forward_solution(info, trans=None, src=src, bem=sphere, eeg=False, verbose=False)
    rows = [list(fwd["sol"]["row_names"]).index(label) for label in labels]
    return fwd["sol"]["data"][rows].reshape(len(labels), len(positions), 3).transpose(1, 0, 2)


def _full_fields(leadfield):
    return leadfield.matrices @ np.transpose(leadfield.bases, (0, 2, 1))


GRID_POINTS = np.array([[0.02, 0.0, 0.05], [-0.03, 0.02, 0.04], [0.0, -0.02, 0.06]])


def test_fif_reader_keeps_meg_channels_and_info(tmp_path):
    path = tmp_path / "sub-01_task-rest-epo.fif"
    info = _write_fif_epochs(path, bad="MEG0032")

    sensor_data = io.read_sensor_data(path)

    assert sensor_data.data.shape == (3, 31, 100)
    assert "MEG0032" not in sensor_data.labels
    assert sensor_data.geometry.info is not None
    expected = apply_trans(info["dev_head_t"], info["chs"][0]["loc"][:3])
    np.testing.assert_allclose(sensor_data.geometry.coil_positions[0], expected)


def test_fif_leadfield_matches_mne_forward(tmp_path, sphere_head):
    path = tmp_path / "sub-01_task-rest-epo.fif"
    info = _write_fif_epochs(path, bad="MEG0032")
    geometry = io.read_sensor_data(path).geometry
    source = SourceModel(positions=GRID_POINTS)

    leadfield = build_leadfield(sphere_head, source, geometry, rank=2, normalize=False)

    reference = _mne_reference_fields(info, GRID_POINTS, geometry.labels)
    full = _full_fields(leadfield)
    np.testing.assert_allclose(full, reference, atol=1e-6 * np.abs(reference).max())

    # Magnetometers agree with the point-coil Sarvas field; gradiometers do not
    mags = [i for i, label in enumerate(geometry.labels) if label.endswith("1")]
    point_coils = SensorGeometry(
        labels=[geometry.labels[i] for i in mags],
        coil_positions=geometry.coil_positions[mags],
        coil_orientations=geometry.coil_orientations[mags],
    )
    for p, position in enumerate(GRID_POINTS):
        point_field = compute_dipole_field(sphere_head, point_coils, position)
        for axis in range(2):
            assert abs(np.corrcoef(point_field[:, axis], full[p][mags, axis])[0, 1]) > 0.99


def test_fif_leadfield_follows_alignment(tmp_path, sphere_head):
    path = tmp_path / "sub-01_task-rest-epo.fif"
    _write_fif_epochs(path)
    geometry = io.read_sensor_data(path).geometry
    source = SourceModel(positions=GRID_POINTS)

    angle = np.deg2rad(30.0)
    matrix = np.eye(4)
    matrix[:2, :2] = [[np.cos(angle), -np.sin(angle)], [np.sin(angle), np.cos(angle)]]
    matrix[:3, 3] = [0.01, -0.02, 0.03]
    transform = AffineTransform(matrix=matrix, from_coordsys="head", to_coordsys="mni")

    native = _full_fields(build_leadfield(sphere_head, source, geometry, rank=2, normalize=False))
    aligned = _full_fields(build_leadfield(
        align_head_model(sphere_head, transform),
        align_source_model(source, transform),
        align_sensor_geometry(geometry, transform),
        rank=2,
        normalize=False,
    ))

    # Moments rotate with the frame: L_mni = L_head @ R^T
    expected = native @ matrix[:3, :3].T
    np.testing.assert_allclose(aligned, expected, atol=1e-6 * np.abs(native).max())


def test_fif_unknown_coil_type_is_rejected(tmp_path, sphere_head):
    path = tmp_path / "sub-01_task-rest-epo.fif"
    _write_fif_epochs(path, coil_type=9999)
    geometry = io.read_sensor_data(path).geometry

    with pytest.raises(ConfigurationError, match="forward model"):
        build_leadfield(sphere_head, SourceModel(positions=GRID_POINTS), geometry)


def test_fif_geometry_needs_a_sphere(tmp_path):
    path = tmp_path / "sub-01_task-rest-epo.fif"
    _write_fif_epochs(path)
    geometry = io.read_sensor_data(path).geometry
    infinite = HeadModel(kind="infinite", origin=np.zeros(3), coordsys="head")

    with pytest.raises(ConfigurationError, match="singlesphere"):
        build_leadfield(infinite, SourceModel(positions=GRID_POINTS), geometry)


@pytest.mark.parametrize("scale", [0.0, -1.0])
def test_non_positive_atlas_scale_rejected(dataset, scale):
    with pytest.raises(ConfigurationError, match="atlas_scale"):
        io.read_atlas(dataset["inputs"]["atlas"], dataset["inputs"]["atlas_labels"], scale=scale)


def test_singular_atlas_affine_rejected():
    with pytest.raises(ConfigurationError, match="invertible"):
        Atlas(labels=np.ones((2, 2, 2)), affine=np.diag([0.01, 0.01, 0.0, 1.0]), label_names={1: "a"})
