"""
Permutation generation, loading and p-value computation.

This module handles:
- Random generation of unique subject permutations
- Loading permutations from text files
- A thread-safe permutation stack shared by workers
- Conversion of statistics to p-values using a null distribution
"""

import logging
import math
import threading
from pathlib import Path
from typing import Iterator, List, Optional, Sequence, Tuple, Union

import numpy as np

logger = logging.getLogger(__name__)


def generate_permutations(
    num_perms: int,
    num_subjects: int,
    include_default: bool = True,
    random_state: Optional[int] = None,
) -> List[np.ndarray]:
    """
    Generate unique random permutations of the subjects.

    Parameters
    ----------
    num_perms : int
        Number of permutations to generate.
    num_subjects : int
        Number of subjects (design matrix rows).
    include_default : bool
        Whether the identity permutation is included, as the first entry.
        Randomly drawn permutations never repeat the identity.
    random_state : int, optional
        Random state for reproducibility.

    Returns
    -------
    list of np.ndarray
        Permutations; each maps a row index to the row it is replaced by.

    Raises
    ------
    ValueError
        If more unique permutations are requested than exist.
    """
    available = math.factorial(num_subjects) - (0 if include_default else 1)
    if num_perms > available:
        raise ValueError(
            f"Cannot generate {num_perms} unique permutations of {num_subjects} subjects "
            f"(at most {available} available)"
        )

    rng = np.random.RandomState(random_state)
    identity = np.arange(num_subjects)
    seen = {tuple(identity)}
    permutations = [identity] if include_default and num_perms > 0 else []

    while len(permutations) < num_perms:
        candidate = rng.permutation(num_subjects)
        key = tuple(candidate)
        if key in seen:
            continue
        seen.add(key)
        permutations.append(candidate)

    return permutations


def load_permutations_file(path: Union[str, Path], num_subjects: int) -> List[np.ndarray]:
    """
    Load permutations from a text file, one permutation per row.

    Entries are 0-based subject indices separated by whitespace.

    Raises
    ------
    ValueError
        If a row length differs from the number of subjects or an index is
        out of range.
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Permutations file not found: {path}")

    matrix = np.loadtxt(path, dtype=np.float64, comments="#", ndmin=2)
    if matrix.size == 0:
        raise ValueError(f"Permutations file is empty: {path}")

    if matrix.shape[1] != num_subjects:
        raise ValueError(
            f"Number of entries per permutation in file \"{path}\" ({matrix.shape[1]}) "
            f"does not match number of rows in design matrix ({num_subjects})"
        )
    if np.any(matrix != np.round(matrix)) or matrix.min() < 0 or matrix.max() >= num_subjects:
        raise ValueError(
            f"Permutations file \"{path}\" contains entries that are not valid "
            f"0-based subject indices (0 to {num_subjects - 1})"
        )

    permutations = [row.astype(np.intp) for row in matrix]
    logger.info(f"Loaded {len(permutations)} permutations from {path}")
    return permutations


class PermutationStack:
    """
    Ordered collection of permutations handed out to workers.

    Parameters
    ----------
    permutations : sequence of array-like
        The permutations, in the order they are to be processed.
    description : str
        Label used in log messages and progress bars.

    Examples
    --------
    >>> stack = PermutationStack.generate(5000, 20, "Running permutations")
    >>> index, permutation = stack.next()
    """

    def __init__(self, permutations: Sequence[Sequence[int]], description: str = "Permutations"):
        self.permutations = [np.asarray(p, dtype=np.intp) for p in permutations]
        self.description = description
        self._counter = 0
        self._lock = threading.Lock()

    @classmethod
    def generate(
        cls,
        num_perms: int,
        num_subjects: int,
        description: str = "Permutations",
        include_default: bool = True,
        random_state: Optional[int] = None,
    ) -> "PermutationStack":
        """Build a stack of randomly generated unique permutations."""
        permutations = generate_permutations(num_perms, num_subjects, include_default, random_state)
        return cls(permutations, description)

    @classmethod
    def from_file(
        cls, path: Union[str, Path], num_subjects: int, description: str = "Permutations"
    ) -> "PermutationStack":
        """Build a stack from a permutations text file."""
        return cls(load_permutations_file(path, num_subjects), description)

    def __len__(self) -> int:
        return len(self.permutations)

    def __iter__(self) -> Iterator[np.ndarray]:
        return iter(self.permutations)

    def __getitem__(self, index: int) -> np.ndarray:
        return self.permutations[index]

    def next(self) -> Optional[Tuple[int, np.ndarray]]:
        """Hand out the next ``(index, permutation)``, or None once exhausted."""
        with self._lock:
            if self._counter >= len(self.permutations):
                return None
            index = self._counter
            self._counter += 1
        return index, self.permutations[index]

    def reset(self) -> None:
        """Restart handing out permutations from the first one."""
        with self._lock:
            self._counter = 0

    def chunks(self, chunk_size: int) -> Iterator[Tuple[int, List[np.ndarray]]]:
        """
        Hand out the remaining permutations in consecutive chunks.

        Yields ``(start_index, permutations)`` pairs.
        """
        while True:
            item = self.next()
            if item is None:
                return
            start, first = item
            chunk = [first]
            while len(chunk) < chunk_size:
                item = self.next()
                if item is None:
                    break
                chunk.append(item[1])
            yield start, chunk


def statistic2pvalue(null_distribution: np.ndarray, statistics: np.ndarray) -> np.ndarray:
    """
    Family-wise error corrected p-values from a null distribution of maxima.

    For each contrast, ``p = max(count(null >= stat), 1) / N``.

    Parameters
    ----------
    null_distribution : np.ndarray
        Maximum enhanced statistic of each permutation (n_contrasts, N) or (N,).
    statistics : np.ndarray
        Enhanced statistics (n_contrasts, n_fixels) or (n_fixels,).

    Returns
    -------
    np.ndarray
        p-values, same shape as ``statistics``.
    """
    null_distribution = np.asarray(null_distribution, dtype=np.float64)
    statistics = np.asarray(statistics, dtype=np.float64)
    squeeze = statistics.ndim == 1
    null_distribution = np.atleast_2d(null_distribution)
    statistics = np.atleast_2d(statistics)

    num_perms = null_distribution.shape[1]
    pvalues = np.empty_like(statistics)
    for contrast, (null, stats) in enumerate(zip(null_distribution, statistics)):
        ordered = np.sort(null)
        count = num_perms - np.searchsorted(ordered, stats, side="left")
        pvalues[contrast] = np.maximum(count, 1) / num_perms

    return pvalues[0] if squeeze else pvalues
