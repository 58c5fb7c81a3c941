"""Pytest configuration and shared fixtures."""

import tempfile
from pathlib import Path

import nibabel as nib
import numpy as np
import pandas as pd
import pytest

from fixelstats.core.data_loader import FixelTemplate

X_AXIS = [1.0, 0.0, 0.0]
Y_AXIS = [0.0, 1.0, 0.0]

# Voxel -> fixel directions of the synthetic template (1 mm isotropic grid).
# A tract runs along x through voxels (0..7, 1, 1); a crossing tract runs
# along y through voxels (3, 0..2, 1).
FIXEL_LAYOUT = [((x, 1, 1), [X_AXIS, Y_AXIS] if x == 3 else [X_AXIS]) for x in range(8)] + [
    ((3, 0, 1), [Y_AXIS]),
    ((3, 2, 1), [Y_AXIS]),
]
GRID_SHAPE = (8, 3, 3)

# Fixel indices along the x tract, in order of x, and along the y tract
X_TRACT = [0, 1, 2, 3, 5, 6, 7, 8]
Y_TRACT = [9, 4, 10]

GROUP = np.array([0, 0, 0, 1, 1, 1], dtype=float)


def build_template_arrays(layout=FIXEL_LAYOUT, shape=GRID_SHAPE):
    """Build fixel index and directions arrays from a voxel layout."""
    index = np.zeros(shape + (2,), dtype=np.int32)
    directions = []
    for voxel, fixel_dirs in layout:
        index[voxel] = (len(fixel_dirs), len(directions))
        directions.extend(fixel_dirs)
    return index, np.asarray(directions, dtype=np.float32)


def write_fixel_data(path, values):
    """Save one value per fixel as a (N, 1, 1) NIfTI image."""
    values = np.asarray(values, dtype=np.float32).reshape(-1, 1, 1)
    nib.save(nib.Nifti1Image(values, np.eye(4)), str(path))


def straight_streamline(start, stop, n_points=5):
    """Streamline of equally spaced points between two positions."""
    return np.linspace(start, stop, n_points).astype(np.float32)


def write_tracks(path, streamlines):
    """Save streamlines as a track file (format from the extension)."""
    tractogram = nib.streamlines.Tractogram(streamlines, affine_to_rasmm=np.eye(4))
    nib.streamlines.save(tractogram, str(path))


@pytest.fixture
def temp_dir():
    """Create a temporary directory for tests."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def template():
    """Synthetic fixel template built in memory."""
    index, directions = build_template_arrays()
    return FixelTemplate(index, directions, np.eye(4))


@pytest.fixture
def sample_streamlines():
    """Streamlines following the x tract and the crossing y tract."""
    streamlines = []
    for offset in (-0.2, 0.0, 0.2):
        streamlines.append(straight_streamline([-0.4, 1.0 + offset, 1.0], [7.4, 1.0 + offset, 1.0]))
        streamlines.append(straight_streamline([3.0 + offset, -0.4, 1.0], [3.0 + offset, 2.4, 1.0]))
    return streamlines


@pytest.fixture
def fixel_dataset(temp_dir, sample_streamlines):
    """
    Complete synthetic fixel dataset on disk.

    Six subjects in two groups of three; the second group has higher values
    along the x tract.
    """
    fixel_dir = temp_dir / "template"
    fixel_dir.mkdir()

    index, directions = build_template_arrays()
    nib.save(nib.Nifti1Image(index, np.eye(4)), str(fixel_dir / "index.nii.gz"))
    nib.save(nib.Nifti1Image(directions[:, :, None], np.eye(4)), str(fixel_dir / "directions.nii.gz"))
    num_fixels = len(directions)

    rng = np.random.RandomState(0)
    data = np.empty((num_fixels, len(GROUP)))
    names = []
    for subject, group in enumerate(GROUP):
        values = 1.0 + 0.05 * rng.standard_normal(num_fixels)
        values[X_TRACT] += 0.5 * group
        data[:, subject] = values
        name = f"sub-{subject + 1:02d}.nii.gz"
        write_fixel_data(fixel_dir / name, values)
        names.append(name)

    subjects_file = temp_dir / "subjects.txt"
    subjects_file.write_text("\n".join(names) + "\n")

    design_file = temp_dir / "design.txt"
    np.savetxt(design_file, np.column_stack([np.ones(len(GROUP)), GROUP]), fmt="%g")

    contrast_file = temp_dir / "contrast.txt"
    contrast_file.write_text("0 1\n")

    tracks_file = temp_dir / "tracks.tck"
    write_tracks(tracks_file, sample_streamlines)

    return {
        "fixel_dir": fixel_dir,
        "subjects_file": subjects_file,
        "design_file": design_file,
        "contrast_file": contrast_file,
        "tracks_file": tracks_file,
        "output_dir": temp_dir / "output",
        "num_fixels": num_fixels,
        "num_subjects": len(GROUP),
        "data": data,
        "subject_names": names,
    }


@pytest.fixture
def sample_participants():
    """Create sample participant data."""
    return pd.DataFrame({
        "participant_id": ["sub-01", "sub-02", "sub-03", "sub-04", "sub-05", "sub-06"],
        "age": [25, 30, 28, 35, 22, 40],
        "group": ["patient", "control", "patient", "control", "patient", "control"],
        "sex": ["M", "F", "M", "F", "F", "M"],
    })
