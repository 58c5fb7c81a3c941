"""
Tractography input for fixel-fixel connectivity.

This module handles:
- Streaming streamlines from track files (via nibabel)
- Upsampling streamlines to sub-voxel spacing
- Mapping streamlines to sets of (voxel, mean tangent direction)
"""

import itertools
import logging
from pathlib import Path
from typing import Iterator, List, NamedTuple, Union

import nibabel as nib
from nibabel.affines import apply_affine
from nibabel.streamlines import Field
import numpy as np

from fixelstats.core.data_loader import FixelTemplate

logger = logging.getLogger(__name__)


class VoxelDirectionSet(NamedTuple):
    """Voxels traversed by one streamline with the unit mean tangent in each."""

    voxels: np.ndarray
    directions: np.ndarray

    def __len__(self) -> int:
        return len(self.voxels)


def _empty_set() -> VoxelDirectionSet:
    return VoxelDirectionSet(np.empty((0, 3), dtype=np.int64), np.empty((0, 3)))


class StreamlineSource:
    """
    Lazy sequential reader of a track file.

    Parameters
    ----------
    path : str or Path
        Track file in any format nibabel supports (``.tck``, ``.trk``, ...).

    Attributes
    ----------
    count : int
        Number of streamlines announced by the file header (0 if unknown).
    """

    def __init__(self, path: Union[str, Path]):
        self.path = Path(path)
        if not self.path.exists():
            raise FileNotFoundError(f"Track file not found: {self.path}")

        header = nib.streamlines.load(str(self.path), lazy_load=True).header
        self.count = self._read_count(header)

    @staticmethod
    def _read_count(header) -> int:
        for key in (Field.NB_STREAMLINES, "count"):
            value = header.get(key)
            if value is None:
                continue
            try:
                return int(value)
            except (TypeError, ValueError):
                continue
        return 0

    def __iter__(self) -> Iterator[np.ndarray]:
        tractogram = nib.streamlines.load(str(self.path), lazy_load=True)
        for streamline in tractogram.streamlines:
            yield np.asarray(streamline, dtype=np.float64)

    def batches(self, batch_size: int) -> Iterator[List[np.ndarray]]:
        """Yield successive lists of at most ``batch_size`` streamlines."""
        iterator = iter(self)
        while True:
            batch = list(itertools.islice(iterator, batch_size))
            if not batch:
                return
            yield batch


class TrackMapper:
    """
    Map streamlines to the voxels of the fixel template.

    Streamlines are upsampled so that consecutive points lie at most
    ``upsample_fraction`` times the smallest voxel size apart; tangents
    falling in the same voxel are summed and normalized.

    Parameters
    ----------
    template : FixelTemplate
        Template fixel set (provides the voxel grid).
    upsample_fraction : float
        Maximum sample spacing, as a fraction of the smallest voxel size.
    """

    def __init__(self, template: FixelTemplate, upsample_fraction: float = 0.333):
        self.template = template
        self.step = float(upsample_fraction * np.min(template.voxel_sizes))
        self._scanner2voxel = np.linalg.inv(template.affine)
        self._shape = np.asarray(template.shape)

    def upsample(self, points: np.ndarray) -> np.ndarray:
        """Linearly interpolate a streamline to the mapper's sample spacing."""
        segments = np.diff(points, axis=0)
        lengths = np.linalg.norm(segments, axis=1)
        n_sub = np.maximum(np.ceil(lengths / self.step).astype(np.int64), 1)

        segment_index = np.repeat(np.arange(len(segments)), n_sub)
        starts = np.cumsum(n_sub) - n_sub
        fraction = (np.arange(n_sub.sum()) - np.repeat(starts, n_sub)) / n_sub[segment_index]

        upsampled = points[segment_index] + fraction[:, None] * segments[segment_index]
        return np.vstack([upsampled, points[-1:]])

    def __call__(self, streamline: np.ndarray) -> VoxelDirectionSet:
        points = np.asarray(streamline, dtype=np.float64)
        if len(points) < 2:
            return _empty_set()

        points = self.upsample(points)
        tangents = np.gradient(points, axis=0)

        voxels = np.rint(apply_affine(self._scanner2voxel, points)).astype(np.int64)
        inside = np.all((voxels >= 0) & (voxels < self._shape), axis=1)
        voxels, tangents = voxels[inside], tangents[inside]
        if len(voxels) == 0:
            return _empty_set()

        unique, inverse = np.unique(voxels, axis=0, return_inverse=True)
        summed = np.zeros((len(unique), 3))
        np.add.at(summed, inverse.reshape(-1), tangents)

        norms = np.linalg.norm(summed, axis=1)
        keep = norms > 0
        return VoxelDirectionSet(unique[keep], summed[keep] / norms[keep, None])
