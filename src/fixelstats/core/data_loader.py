"""
Data loader module for fixel-based analysis.

This module handles:
- Fixel template discovery (index and directions images)
- Subject list parsing
- Fixel data loading and validation against the template
- Smoothing of fixel data along fibre tracts
"""

import logging
import shutil
from pathlib import Path
from typing import Dict, List, Tuple, Union

import nibabel as nib
from nibabel.affines import apply_affine
import numpy as np
from scipy import sparse

logger = logging.getLogger(__name__)

NIFTI_EXTENSIONS = (".nii.gz", ".nii")


def _find_fixel_file(fixel_dir: Path, stem: str) -> Path:
    """Locate ``<stem>.nii[.gz]`` inside a fixel directory."""
    for ext in NIFTI_EXTENSIONS:
        candidate = fixel_dir / f"{stem}{ext}"
        if candidate.exists():
            return candidate
    raise FileNotFoundError(f"Could not find '{stem}' image in fixel directory: {fixel_dir}")


class FixelTemplate:
    """
    Immutable description of the template fixel set.

    Parameters
    ----------
    index : np.ndarray
        4D array ``(X, Y, Z, 2)`` holding, for each voxel, the number of
        fixels and the index of its first fixel.
    directions : np.ndarray
        Fixel directions, shape ``(n_fixels, 3)``.
    affine : np.ndarray
        Voxel to scanner (mm) transform of the index image.

    Attributes
    ----------
    num_fixels : int
        Number of fixels in the template.
    counts, offsets : np.ndarray
        3D arrays of per-voxel fixel counts and first-fixel offsets.
    positions : np.ndarray
        Scanner-space position of each fixel (centre of its voxel).
    directions : np.ndarray
        Unit direction of each fixel.
    voxel_sizes : np.ndarray
        Voxel dimensions in mm.
    """

    def __init__(self, index: np.ndarray, directions: np.ndarray, affine: np.ndarray):
        if index.ndim != 4 or index.shape[3] != 2:
            raise ValueError(f"Fixel index image must have shape (X, Y, Z, 2), got {index.shape}")

        directions = np.asarray(directions, dtype=np.float64)
        directions = directions.reshape(directions.shape[0], -1)
        if directions.shape[1] != 3:
            raise ValueError(f"Fixel directions must have shape (N, 3), got {directions.shape}")

        norms = np.linalg.norm(directions, axis=1, keepdims=True)
        norms[norms == 0] = 1.0

        self.counts = np.asarray(index[..., 0], dtype=np.int64)
        self.offsets = np.asarray(index[..., 1], dtype=np.int64)
        self.affine = np.array(affine, dtype=np.float64)
        self.directions = directions / norms
        self.num_fixels = int(self.directions.shape[0])
        self.voxel_sizes = np.sqrt(np.sum(self.affine[:3, :3] ** 2, axis=0))

        if int(self.counts.sum()) != self.num_fixels:
            raise ValueError(
                f"Fixel index image describes {int(self.counts.sum())} fixels "
                f"but directions image contains {self.num_fixels}"
            )

        self.positions = self._compute_positions()

        for array in (self.counts, self.offsets, self.affine, self.directions, self.positions):
            array.setflags(write=False)

    @classmethod
    def from_directory(cls, fixel_dir: Union[str, Path]) -> "FixelTemplate":
        """Load the template from the index and directions images of a fixel directory."""
        fixel_dir = Path(fixel_dir)
        index_img = nib.load(str(_find_fixel_file(fixel_dir, "index")))
        directions_img = nib.load(str(_find_fixel_file(fixel_dir, "directions")))
        index = np.asarray(index_img.dataobj).astype(np.int64)
        directions = np.asarray(directions_img.dataobj, dtype=np.float64)
        return cls(index, directions, index_img.affine)

    @property
    def shape(self) -> Tuple[int, int, int]:
        """Spatial shape of the index image."""
        return tuple(self.counts.shape)

    def _compute_positions(self) -> np.ndarray:
        voxels = np.argwhere(self.counts > 0)
        positions = np.zeros((self.num_fixels, 3))
        if len(voxels) == 0:
            return positions

        counts = self.counts[tuple(voxels.T)]
        offsets = self.offsets[tuple(voxels.T)]
        starts = np.cumsum(counts) - counts
        within = np.arange(counts.sum()) - np.repeat(starts, counts)
        fixel_ids = np.repeat(offsets, counts) + within

        world = apply_affine(self.affine, voxels)
        positions[fixel_ids] = np.repeat(world, counts, axis=0)
        return positions

    def fixels_in_voxel(self, voxel) -> range:
        """Return the range of fixel indices contained in a voxel."""
        x, y, z = (int(v) for v in voxel)
        offset = int(self.offsets[x, y, z])
        return range(offset, offset + int(self.counts[x, y, z]))

    def matches(self, data_shape: Tuple[int, ...]) -> bool:
        """Check whether a fixel data image shape corresponds to this template."""
        if len(data_shape) == 0 or data_shape[0] != self.num_fixels:
            return False
        return all(size == 1 for size in data_shape[1:])


class FixelDataLoader:
    """
    Loader for per-subject fixel data.

    Parameters
    ----------
    fixel_dir : str or Path
        Template fixel directory. Holds the index and directions images
        and the per-subject fixel data files.

    Attributes
    ----------
    fixel_dir : Path
        Template fixel directory.
    template : FixelTemplate
        The template fixel set.
    """

    def __init__(self, fixel_dir: Union[str, Path]):
        self.fixel_dir = Path(fixel_dir)

        if not self.fixel_dir.is_dir():
            raise FileNotFoundError(f"Fixel directory not found: {self.fixel_dir}")

        self.template = FixelTemplate.from_directory(self.fixel_dir)
        self._cache: Dict[str, np.ndarray] = {}

        logger.info(f"FixelDataLoader initialized with fixel directory: {self.fixel_dir}")
        logger.info(f"Number of fixels: {self.template.num_fixels}")

    def read_subject_list(self, subjects_file: Union[str, Path]) -> List[Path]:
        """
        Read a text file listing subject fixel data files.

        Parameters
        ----------
        subjects_file : str or Path
            One filename per line, relative to the fixel directory, in
            the same order as the design matrix rows.

        Returns
        -------
        list of Path
            Paths to the fixel data files.
        """
        subjects_file = Path(subjects_file)
        if not subjects_file.exists():
            raise FileNotFoundError(f"Subject list file not found: {subjects_file}")

        paths = []
        with open(subjects_file) as f:
            for line in f:
                name = line.strip()
                if not name or name.startswith("#"):
                    continue
                path = Path(name)
                if not path.is_absolute():
                    path = self.fixel_dir / path
                if not path.exists():
                    raise FileNotFoundError(f"Fixel data file not found: {path}")
                paths.append(path)

        if not paths:
            raise ValueError(f"No subjects listed in {subjects_file}")

        return paths

    def load_fixel_file(self, path: Union[str, Path], use_cache: bool = True) -> np.ndarray:
        """
        Load a fixel data file as a 1D array.

        Raises
        ------
        ValueError
            If the file does not match the template fixel layout.
        """
        key = str(path)
        if use_cache and key in self._cache:
            return self._cache[key]

        img = nib.load(key)
        if not self.template.matches(img.shape):
            raise ValueError(
                f"Fixel data file \"{path}\" does not match template fixel image "
                f"(shape {img.shape}, expected ({self.template.num_fixels}, 1, 1))"
            )
        values = np.asarray(img.dataobj, dtype=np.float64).reshape(-1)

        if use_cache:
            self._cache[key] = values
        return values

    def load_cohort(self, subjects_file: Union[str, Path]) -> Tuple[np.ndarray, List[Path]]:
        """
        Load the fixel data of every subject listed in a subject list file.

        Returns
        -------
        tuple of (np.ndarray, list of Path)
            Matrix of shape (n_fixels, n_subjects) and the files it was read from.
        """
        paths = self.read_subject_list(subjects_file)
        data = np.empty((self.template.num_fixels, len(paths)))
        for subject, path in enumerate(paths):
            data[:, subject] = self.load_fixel_file(path, use_cache=False)

        logger.info(f"Loaded fixel data for {len(paths)} subjects from {subjects_file}")
        return data, paths

    def load_element_columns(
        self,
        column_files: List[Union[str, Path]],
        num_subjects: int,
    ) -> Tuple[List[np.ndarray], bool]:
        """
        Load fixel-wise design matrix columns.

        Each column is described by a subject list file, validated in the
        same way as the main cohort.

        Returns
        -------
        tuple of (list of np.ndarray, bool)
            One (n_fixels, n_subjects) matrix per column, and whether any
            of them contains non-finite values.
        """
        columns = []
        nans_in_columns = False
        for column_file in column_files:
            values, paths = self.load_cohort(column_file)
            if len(paths) != num_subjects:
                raise ValueError(
                    f"Number of files in design matrix column file {column_file} ({len(paths)}) "
                    f"does not match number of subjects ({num_subjects})"
                )
            if not np.all(np.isfinite(values)):
                nans_in_columns = True
            columns.append(values)

        if columns:
            logger.info(f"Number of element-wise design matrix columns: {len(columns)}")
            if nans_in_columns:
                logger.info(
                    "Non-finite values detected in element-wise design matrix columns; "
                    "individual rows will be removed from fixel-wise design matrices accordingly"
                )
        return columns, nans_in_columns

    def copy_index_and_directions(self, output_dir: Union[str, Path]) -> None:
        """Copy the template index and directions images to an output fixel directory."""
        output_dir = Path(output_dir)
        output_dir.mkdir(parents=True, exist_ok=True)
        for stem in ("index", "directions"):
            source = _find_fixel_file(self.fixel_dir, stem)
            target = output_dir / source.name
            if source.resolve() != target.resolve():
                shutil.copyfile(source, target)
        logger.debug(f"Copied template index and directions to {output_dir}")

    def clear_cache(self) -> None:
        """Clear the fixel data cache."""
        self._cache.clear()


def smooth_fixel_data(
    data: np.ndarray,
    smoothing_weights: sparse.csr_matrix,
) -> Tuple[np.ndarray, bool]:
    """
    Smooth fixel data along fibre tracts.

    Each finite fixel value is replaced by the weighted mean of the finite
    values of its neighbours, with weights renormalized over the finite
    neighbours. Fixels whose own value is non-finite, or with no finite
    neighbour, become NaN.

    Parameters
    ----------
    data : np.ndarray
        Matrix of shape (n_fixels, n_subjects).
    smoothing_weights : scipy.sparse.csr_matrix
        Row-normalized smoothing weights, shape (n_fixels, n_fixels).

    Returns
    -------
    tuple of (np.ndarray, bool)
        Smoothed data and whether it contains non-finite values.
    """
    finite = np.isfinite(data)
    filled = np.where(finite, data, 0.0)

    numerator = np.asarray(smoothing_weights @ filled)
    denominator = np.asarray(smoothing_weights @ finite.astype(np.float64))

    smoothed = np.full(data.shape, np.nan)
    valid = finite & (denominator > 0)
    smoothed[valid] = numerator[valid] / denominator[valid]

    nans_in_data = not bool(np.all(valid))
    if nans_in_data:
        logger.info("Non-finite values present in data; rows will be removed from fixel-wise design matrices accordingly")
    return smoothed, nans_in_data
