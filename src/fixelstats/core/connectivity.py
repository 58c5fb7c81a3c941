"""
Fixel-fixel connectivity module.

This module handles:
- Assignment of streamline segments to template fixels
- Accumulation of track density and fixel-pair streamline counts
- Normalization into CFE connectivity and smoothing weights
"""

import logging
import os
import threading
from concurrent.futures import FIRST_COMPLETED, ThreadPoolExecutor, wait
from typing import Iterable, List, Sequence, Tuple

import numpy as np
from scipy import sparse
from tqdm import tqdm

from fixelstats.core.data_loader import FixelTemplate
from fixelstats.core.tractography import StreamlineSource, TrackMapper, VoxelDirectionSet

logger = logging.getLogger(__name__)

# Ratio between a Gaussian's FWHM and its standard deviation
FWHM_TO_SIGMA = 2.3548

# Smoothing weights at or below this value are discarded
SMOOTHING_WEIGHT_FLOOR = 0.01

# Fixel pairs held as index arrays before conversion to a sparse matrix
MAX_PENDING_PAIRS = 1 << 22


def _resolve_workers(n_jobs: int) -> int:
    if n_jobs is None or n_jobs == 0:
        return 1
    if n_jobs < 0:
        return max(1, (os.cpu_count() or 1) + 1 + n_jobs)
    return n_jobs


class ConnectivityBuilder:
    """
    Accumulate fixel-fixel streamline counts from tractography.

    Parameters
    ----------
    template : FixelTemplate
        Template fixel set.
    angular_threshold : float
        Maximum angle (degrees) between a streamline tangent and a fixel
        direction for the streamline to be assigned to that fixel.

    Attributes
    ----------
    counts : scipy.sparse.csr_matrix
        Number of streamlines shared by each ordered fixel pair (i != j).
    tdi : np.ndarray
        Number of streamlines traversing each fixel.
    num_streamlines : int
        Number of streamlines processed so far.
    """

    def __init__(self, template: FixelTemplate, angular_threshold: float = 45.0):
        self.template = template
        self.angular_threshold = angular_threshold
        self._dp_threshold = float(np.cos(np.deg2rad(angular_threshold)))

        n = template.num_fixels
        self.counts = sparse.csr_matrix((n, n), dtype=np.int64)
        self.tdi = np.zeros(n, dtype=np.int64)
        self.num_streamlines = 0
        self._lock = threading.Lock()

    def assign_fixels(self, voxel_dirs: VoxelDirectionSet) -> np.ndarray:
        """
        Select, in each traversed voxel, the fixel best aligned with the tangent.

        Returns
        -------
        np.ndarray
            Sorted, unique fixel indices traversed by the streamline.
        """
        if len(voxel_dirs) == 0:
            return np.empty(0, dtype=np.int64)

        voxels = tuple(np.asarray(voxel_dirs.voxels).T)
        counts = self.template.counts[voxels]
        offsets = self.template.offsets[voxels]
        occupied = counts > 0
        if not np.any(occupied):
            return np.empty(0, dtype=np.int64)

        counts = counts[occupied]
        offsets = offsets[occupied]
        tangents = np.asarray(voxel_dirs.directions)[occupied]

        # One candidate row per (voxel, fixel in voxel)
        owner = np.repeat(np.arange(len(counts)), counts)
        starts = np.cumsum(counts) - counts
        candidates = np.repeat(offsets, counts) + (np.arange(counts.sum()) - np.repeat(starts, counts))
        dots = np.abs(np.sum(self.template.directions[candidates] * tangents[owner], axis=1))

        order = np.lexsort((-dots, owner))
        first = np.ones(len(order), dtype=bool)
        first[1:] = owner[order][1:] != owner[order][:-1]
        best = order[first]

        selected = candidates[best][dots[best] > self._dp_threshold]
        return np.unique(selected)

    def accumulate(
        self, fixel_sets: Iterable[np.ndarray]
    ) -> Tuple[sparse.csr_matrix, np.ndarray, int]:
        """
        Count fixel visits and fixel-pair co-occurrences for a group of streamlines.

        Returns a private accumulator ``(counts, tdi, num_streamlines)``; it
        does not modify the builder.
        """
        n = self.template.num_fixels
        tdi = np.zeros(n, dtype=np.int64)
        counts = sparse.csr_matrix((n, n), dtype=np.int64)
        rows: List[np.ndarray] = []
        cols: List[np.ndarray] = []
        pending = 0
        num_streamlines = 0

        def flush(counts: sparse.csr_matrix) -> sparse.csr_matrix:
            r = np.concatenate(rows)
            c = np.concatenate(cols)
            rows.clear()
            cols.clear()
            return counts + sparse.coo_matrix(
                (np.ones(len(r), dtype=np.int64), (r, c)), shape=(n, n)
            ).tocsr()

        for fixels in fixel_sets:
            num_streamlines += 1
            if len(fixels) == 0:
                continue
            tdi[fixels] += 1
            if len(fixels) > 1:
                r = np.repeat(fixels, len(fixels))
                c = np.tile(fixels, len(fixels))
                off_diagonal = r != c
                rows.append(r[off_diagonal])
                cols.append(c[off_diagonal])
                pending += len(fixels) * (len(fixels) - 1)
                if pending >= MAX_PENDING_PAIRS:
                    counts = flush(counts)
                    pending = 0

        if rows:
            counts = flush(counts)
        return counts, tdi, num_streamlines

    def merge(self, counts: sparse.csr_matrix, tdi: np.ndarray, num_streamlines: int) -> None:
        """Add a private accumulator into the builder's totals."""
        with self._lock:
            self.counts = self.counts + counts
            self.tdi += tdi
            self.num_streamlines += num_streamlines

    def process_streamlines(
        self, streamlines: Sequence[np.ndarray], mapper: TrackMapper
    ) -> Tuple[sparse.csr_matrix, np.ndarray, int]:
        """Map a batch of streamlines and accumulate it privately."""
        return self.accumulate(self.assign_fixels(mapper(s)) for s in streamlines)

    def run(
        self,
        source: StreamlineSource,
        mapper: TrackMapper,
        n_jobs: int = 1,
        batch_size: int = 1000,
        progress: bool = True,
    ) -> Tuple[sparse.csr_matrix, np.ndarray]:
        """
        Process every streamline of a track file.

        Batches are mapped by a pool of worker threads; each batch is
        accumulated privately then merged into the builder totals.

        Parameters
        ----------
        source : StreamlineSource
            Track file reader.
        mapper : TrackMapper
            Streamline to voxel mapper for the template.
        n_jobs : int
            Number of worker threads (-1 for all CPUs).
        batch_size : int
            Number of streamlines per batch.
        progress : bool
            Whether to display a progress bar.

        Returns
        -------
        tuple of (scipy.sparse.csr_matrix, np.ndarray)
            Raw pair counts and track density.
        """
        if source.count == 0:
            raise ValueError(f"Error in connectivity calculation: no streamlines in {source.path}")

        workers = _resolve_workers(n_jobs)
        max_pending = 2 * workers
        logger.info(f"Mapping {source.count} streamlines to fixels using {workers} thread(s)")

        with tqdm(total=source.count, desc="Computing fixel-fixel connectivity",
                  unit="streamline", disable=not progress) as bar:

            def _collect(futures) -> None:
                for future in futures:
                    counts, tdi, num_streamlines = future.result()
                    self.merge(counts, tdi, num_streamlines)
                    bar.update(num_streamlines)

            with ThreadPoolExecutor(max_workers=workers) as executor:
                pending = set()
                for batch in source.batches(batch_size):
                    pending.add(executor.submit(self.process_streamlines, batch, mapper))
                    if len(pending) >= max_pending:
                        done, pending = wait(pending, return_when=FIRST_COMPLETED)
                        _collect(done)
                _collect(pending)

        self.counts.sum_duplicates()
        logger.info(
            f"Processed {self.num_streamlines} streamlines; "
            f"{self.counts.nnz} non-zero fixel-fixel connections"
        )
        return self.counts, self.tdi


def normalize_connectivity(
    raw: sparse.spmatrix,
    tdi: np.ndarray,
    positions: np.ndarray,
    connectivity_threshold: float = 0.01,
    smoothing_fwhm: float = 10.0,
    cfe_c: float = 0.5,
    weight_floor: float = SMOOTHING_WEIGHT_FLOOR,
) -> Tuple[sparse.csr_matrix, sparse.csr_matrix]:
    """
    Turn raw streamline counts into CFE connectivity and smoothing weights.

    Parameters
    ----------
    raw : scipy.sparse matrix
        Streamline counts per ordered fixel pair, shape (n_fixels, n_fixels).
    tdi : np.ndarray
        Track density of each fixel.
    positions : np.ndarray
        Scanner-space position of each fixel (n_fixels, 3).
    connectivity_threshold : float
        Connectivity values below this threshold are discarded.
    smoothing_fwhm : float
        Full width at half maximum (mm) of the Gaussian smoothing kernel.
        0 disables smoothing.
    cfe_c : float
        Exponent applied to the retained connectivity values.
    weight_floor : float
        Smoothing weights at or below this value are discarded.

    Returns
    -------
    tuple of (scipy.sparse.csr_matrix, scipy.sparse.csr_matrix)
        Connectivity (self-entries set to 1) and row-normalized smoothing
        weights.
    """
    n = len(tdi)
    tdi = np.asarray(tdi, dtype=np.float64)
    positions = np.asarray(positions, dtype=np.float64)

    coo = sparse.coo_matrix(raw)
    coo.sum_duplicates()
    rows, cols = coo.row.astype(np.int64), coo.col.astype(np.int64)
    values = coo.data.astype(np.float64)

    valid = (rows != cols) & (tdi[rows] > 0)
    rows, cols, values = rows[valid], cols[valid], values[valid]

    connectivity = values / tdi[rows]
    retained = connectivity >= connectivity_threshold
    rows, cols, connectivity = rows[retained], cols[retained], connectivity[retained]

    sigma = smoothing_fwhm / FWHM_TO_SIGMA
    if sigma > 0:
        gaussian_peak = 1.0 / (sigma * np.sqrt(2.0 * np.pi))
        sq_distance = np.sum((positions[rows] - positions[cols]) ** 2, axis=1)
        weights = connectivity * gaussian_peak * np.exp(-sq_distance / (2.0 * sigma ** 2))
        significant = weights > weight_floor
        smooth_rows, smooth_cols = rows[significant], cols[significant]
        smooth_weights = weights[significant]
    else:
        gaussian_peak = 1.0
        smooth_rows = smooth_cols = np.empty(0, dtype=np.int64)
        smooth_weights = np.empty(0)

    diagonal = np.arange(n)

    cfe_connectivity = sparse.csr_matrix(
        (
            np.concatenate([np.power(connectivity, cfe_c), np.ones(n)]),
            (np.concatenate([rows, diagonal]), np.concatenate([cols, diagonal])),
        ),
        shape=(n, n),
    )

    smoothing = sparse.csr_matrix(
        (
            np.concatenate([smooth_weights, np.full(n, gaussian_peak)]),
            (np.concatenate([smooth_rows, diagonal]), np.concatenate([smooth_cols, diagonal])),
        ),
        shape=(n, n),
    )
    row_sums = np.asarray(smoothing.sum(axis=1)).ravel()
    smoothing = sparse.csr_matrix(sparse.diags(1.0 / row_sums) @ smoothing)

    cfe_connectivity.sort_indices()
    smoothing.sort_indices()

    logger.info(
        f"Normalized connectivity: {cfe_connectivity.nnz - n} connections retained "
        f"(threshold {connectivity_threshold}), {smoothing.nnz - n} smoothing weights "
        f"(FWHM {smoothing_fwhm} mm)"
    )
    return cfe_connectivity, smoothing


def build_connectivity(
    template: FixelTemplate,
    tracks_file: str,
    angular_threshold: float = 45.0,
    min_streamlines: int = 1000000,
    upsample_fraction: float = 0.333,
    n_jobs: int = 1,
    progress: bool = True,
) -> Tuple[sparse.csr_matrix, np.ndarray]:
    """
    Build raw fixel-fixel connectivity from a track file.

    Raises
    ------
    ValueError
        If the track file header announces no streamlines.
    """
    source = StreamlineSource(tracks_file)
    if source.count == 0:
        raise ValueError(f"Error in connectivity calculation: no streamlines in {tracks_file}")
    if source.count < min_streamlines:
        logger.warning(
            f"More than {min_streamlines} tracks should be used to ensure robust "
            f"fixel-fixel connectivity (found {source.count})"
        )

    builder = ConnectivityBuilder(template, angular_threshold=angular_threshold)
    mapper = TrackMapper(template, upsample_fraction=upsample_fraction)
    return builder.run(source, mapper, n_jobs=n_jobs, progress=progress)
