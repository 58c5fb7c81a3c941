"""
Permutation testing of enhanced fixel statistics.

This module handles:
- Enhancement of the default (unpermuted) statistic
- The empirical nonstationarity adjustment
- The permutation loop, run in parallel chunks with joblib, producing the
  null distribution of maxima and uncorrected p-values
"""

import logging
from typing import List, Optional, Tuple

import numpy as np
from joblib import Parallel, delayed, effective_n_jobs
from tqdm import tqdm

from fixelstats.core.cfe import CFEEnhancer
from fixelstats.core.glm import GLMTestBase
from fixelstats.core.permutation import PermutationStack

logger = logging.getLogger(__name__)

# Number of chunks handed to each worker
CHUNKS_PER_JOB = 4


def apply_empirical(enhanced: np.ndarray, empirical: Optional[np.ndarray]) -> np.ndarray:
    """Divide by the empirical statistic where it is positive; 0 elsewhere."""
    if empirical is None:
        return enhanced
    out = np.zeros_like(enhanced)
    np.divide(enhanced, empirical, out=out, where=empirical > 0)
    return out


def _enhance(glm_test: GLMTestBase, enhancer: CFEEnhancer, permutation: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
    stats, max_stat, _ = glm_test(permutation)
    return enhancer(stats, max_stat), stats


def _chunk_size(num_perms: int, n_jobs: int) -> int:
    n_chunks = max(1, effective_n_jobs(n_jobs) * CHUNKS_PER_JOB)
    return max(1, int(np.ceil(num_perms / n_chunks)))


def precompute_default_permutation(
    glm_test: GLMTestBase,
    enhancer: CFEEnhancer,
    empirical: Optional[np.ndarray] = None,
) -> Tuple[np.ndarray, np.ndarray]:
    """
    Enhance the statistic of the unpermuted data.

    Returns
    -------
    tuple of (np.ndarray, np.ndarray)
        Enhanced statistic (divided by ``empirical`` when given) and the
        t statistic, both (n_contrasts, n_fixels).
    """
    identity = np.arange(glm_test.num_subjects)
    enhanced, stats = _enhance(glm_test, enhancer, identity)
    return apply_empirical(enhanced, empirical), stats


def _empirical_chunk(
    glm_test: GLMTestBase,
    enhancer: CFEEnhancer,
    permutations: List[np.ndarray],
) -> Tuple[np.ndarray, np.ndarray]:
    sums = np.zeros((glm_test.num_contrasts, glm_test.num_elements))
    counts = np.zeros((glm_test.num_contrasts, glm_test.num_elements), dtype=np.int64)
    for permutation in permutations:
        enhanced, _ = _enhance(glm_test, enhancer, permutation)
        positive = enhanced > 0
        sums[positive] += enhanced[positive]
        counts += positive
    return sums, counts


def precompute_empirical_stat(
    glm_test: GLMTestBase,
    enhancer: CFEEnhancer,
    stack: PermutationStack,
    n_jobs: int = 1,
    progress: bool = True,
) -> np.ndarray:
    """
    Empirical enhanced statistic used for the nonstationarity adjustment.

    Returns
    -------
    np.ndarray
        Per contrast and fixel, the mean of the positive enhanced values
        over all permutations of ``stack`` (0 where never positive).
    """
    logger.info(f"Pre-computing empirical statistic for nonstationarity adjustment ({len(stack)} permutations)")
    stack.reset()
    chunks = list(stack.chunks(_chunk_size(len(stack), n_jobs)))

    results = Parallel(n_jobs=n_jobs, return_as="generator")(
        delayed(_empirical_chunk)(glm_test, enhancer, permutations) for _, permutations in chunks
    )

    sums = np.zeros((glm_test.num_contrasts, glm_test.num_elements))
    counts = np.zeros((glm_test.num_contrasts, glm_test.num_elements), dtype=np.int64)
    for chunk_sums, chunk_counts in tqdm(results, total=len(chunks), desc=stack.description, disable=not progress):
        sums += chunk_sums
        counts += chunk_counts

    empirical = np.zeros_like(sums)
    np.divide(sums, counts, out=empirical, where=counts > 0)
    return empirical


def _permutation_chunk(
    glm_test: GLMTestBase,
    enhancer: CFEEnhancer,
    permutations: List[np.ndarray],
    empirical: Optional[np.ndarray],
    default_enhanced: np.ndarray,
) -> Tuple[np.ndarray, np.ndarray]:
    maxima = np.zeros((glm_test.num_contrasts, len(permutations)))
    exceedances = np.zeros(default_enhanced.shape, dtype=np.int64)
    for k, permutation in enumerate(permutations):
        enhanced, _ = _enhance(glm_test, enhancer, permutation)
        enhanced = apply_empirical(enhanced, empirical)
        maxima[:, k] = np.max(enhanced, axis=1) if enhanced.shape[1] else 0.0
        exceedances += enhanced >= default_enhanced
    return maxima, exceedances


def run_permutations(
    stack: PermutationStack,
    glm_test: GLMTestBase,
    enhancer: CFEEnhancer,
    empirical: Optional[np.ndarray],
    default_enhanced: np.ndarray,
    n_jobs: int = 1,
    progress: bool = True,
) -> Tuple[np.ndarray, np.ndarray]:
    """
    Run the permutation test.

    The stack is split into chunks processed in parallel; each chunk
    reports the maximum enhanced statistic of every permutation and how
    often each fixel's enhanced statistic reached its default value. The
    results are combined once every chunk has finished.

    Parameters
    ----------
    stack : PermutationStack
        Permutations to evaluate (normally including the identity).
    glm_test : GLMTestBase
        Permutable t-test.
    enhancer : CFEEnhancer
        CFE operator.
    empirical : np.ndarray, optional
        Empirical statistic for the nonstationarity adjustment.
    default_enhanced : np.ndarray
        Enhanced statistic of the unpermuted data (n_contrasts, n_fixels).
    n_jobs : int
        Number of parallel jobs (-1 for all CPUs).
    progress : bool
        Whether to display a progress bar.

    Returns
    -------
    tuple of (np.ndarray, np.ndarray)
        Null distribution (n_contrasts, n_permutations) and uncorrected
        p-values (n_contrasts, n_fixels).
    """
    num_perms = len(stack)
    if num_perms == 0:
        raise ValueError("Cannot run a permutation test without permutations")

    logger.info(f"Running {num_perms} permutations (n_jobs={n_jobs})")
    stack.reset()
    chunks = list(stack.chunks(_chunk_size(num_perms, n_jobs)))

    results = Parallel(n_jobs=n_jobs, return_as="generator")(
        delayed(_permutation_chunk)(glm_test, enhancer, permutations, empirical, default_enhanced)
        for _, permutations in chunks
    )

    null_distribution = np.zeros((glm_test.num_contrasts, num_perms))
    exceedances = np.zeros(default_enhanced.shape, dtype=np.int64)
    for (start, permutations), (maxima, counts) in tqdm(
        zip(chunks, results), total=len(chunks), desc=stack.description, disable=not progress
    ):
        null_distribution[:, start:start + len(permutations)] = maxima
        exceedances += counts

    uncorrected_pvalues = exceedances / float(num_perms)
    logger.info(
        f"Permutation testing complete; null distribution range "
        f"[{null_distribution.min():.3f}, {null_distribution.max():.3f}]"
    )
    return null_distribution, uncorrected_pvalues
