"""
Fixel-wise GLM module.

This module handles:
- Contrast scaling and t-statistic computation
- Default-permutation model properties (betas, effect sizes, standard deviation)
- Permutable t-tests with a fixed design or fixel-wise design columns
"""

import logging
from abc import ABC, abstractmethod
from typing import Dict, List, Optional, Sequence, Tuple

import numpy as np

logger = logging.getLogger(__name__)

# Number of fixels processed together by the fixed-design t-test
GLM_BATCH_SIZE = 1024


def scale_contrasts(
    contrasts: np.ndarray,
    design: np.ndarray,
    degrees_of_freedom: float,
) -> np.ndarray:
    """
    Scale contrasts so that ``betas @ c / ||residuals||`` is a t statistic.

    Each contrast row ``c`` is multiplied by
    ``sqrt(dof / (c @ pinv(X.T @ X) @ c))``.
    """
    contrasts = np.atleast_2d(np.asarray(contrasts, dtype=np.float64))
    design = np.asarray(design, dtype=np.float64)
    if contrasts.shape[1] != design.shape[1]:
        raise ValueError(
            f"Number of columns in contrast matrix ({contrasts.shape[1]}) does not match "
            f"number of columns in design matrix ({design.shape[1]})"
        )

    XtX_inv = np.linalg.pinv(design.T @ design)
    variances = np.einsum("ij,jk,ik->i", contrasts, XtX_inv, contrasts)
    with np.errstate(divide="ignore", invalid="ignore"):
        scale = np.sqrt(degrees_of_freedom / variances)
    return contrasts * scale[:, None]


def ttest(
    design: np.ndarray,
    pinv_design: np.ndarray,
    measurements: np.ndarray,
    scaled_contrasts: np.ndarray,
) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
    """
    Compute t statistics for a block of fixels.

    Parameters
    ----------
    design : np.ndarray
        Design matrix (n_subjects, n_columns).
    pinv_design : np.ndarray
        Pseudo-inverse of the design matrix (n_columns, n_subjects).
    measurements : np.ndarray
        Fixel data (n_fixels, n_subjects).
    scaled_contrasts : np.ndarray
        Output of :func:`scale_contrasts` (n_contrasts, n_columns).

    Returns
    -------
    tuple of (np.ndarray, np.ndarray, np.ndarray)
        t statistics (n_fixels, n_contrasts), betas (n_fixels, n_columns)
        and residuals (n_fixels, n_subjects).
    """
    betas = measurements @ pinv_design.T
    residuals = measurements - betas @ design.T
    with np.errstate(divide="ignore", invalid="ignore"):
        tvalues = (betas @ scaled_contrasts.T) / np.linalg.norm(residuals, axis=1)[:, None]
    return tvalues, betas, residuals


def solve_betas(measurements: np.ndarray, design: np.ndarray) -> np.ndarray:
    """Least-squares regression coefficients, shape (n_columns, n_fixels)."""
    measurements = np.atleast_2d(measurements)
    return np.linalg.lstsq(design, measurements.T, rcond=None)[0]


def abs_effect_size(
    measurements: np.ndarray, design: np.ndarray, contrasts: np.ndarray
) -> np.ndarray:
    """Contrast of the regression coefficients, shape (n_contrasts, n_fixels)."""
    return np.atleast_2d(contrasts) @ solve_betas(measurements, design)


def stdev(measurements: np.ndarray, design: np.ndarray) -> np.ndarray:
    """Pooled standard deviation of the residuals, shape (n_fixels,)."""
    measurements = np.atleast_2d(measurements)
    residuals = measurements.T - design @ solve_betas(measurements, design)
    dof = design.shape[0] - np.linalg.matrix_rank(design)
    with np.errstate(divide="ignore", invalid="ignore"):
        return np.sqrt(np.sum(residuals ** 2, axis=0) / dof)


def std_effect_size(
    measurements: np.ndarray, design: np.ndarray, contrasts: np.ndarray
) -> np.ndarray:
    """Absolute effect size divided by the pooled standard deviation."""
    with np.errstate(divide="ignore", invalid="ignore"):
        return abs_effect_size(measurements, design, contrasts) / stdev(measurements, design)


def all_stats(
    measurements: np.ndarray,
    design: np.ndarray,
    contrasts: np.ndarray,
) -> Dict[str, np.ndarray]:
    """
    Compute every default-permutation model property in one pass.

    Parameters
    ----------
    measurements : np.ndarray
        Fixel data (n_fixels, n_subjects).
    design : np.ndarray
        Design matrix (n_subjects, n_columns).
    contrasts : np.ndarray
        Contrast matrix (n_contrasts, n_columns).

    Returns
    -------
    dict
        - 'betas': (n_columns, n_fixels)
        - 'abs_effect': (n_contrasts, n_fixels)
        - 'std_effect': (n_contrasts, n_fixels)
        - 'std_dev': (n_contrasts, n_fixels)
    """
    measurements = np.atleast_2d(np.asarray(measurements, dtype=np.float64))
    design = np.asarray(design, dtype=np.float64)
    contrasts = np.atleast_2d(np.asarray(contrasts, dtype=np.float64))

    betas = solve_betas(measurements, design)
    abs_effect = contrasts @ betas
    residuals = measurements.T - design @ betas
    dof = design.shape[0] - np.linalg.matrix_rank(design)
    with np.errstate(divide="ignore", invalid="ignore"):
        std_dev = np.sqrt(np.sum(residuals ** 2, axis=0) / dof)
        std_effect = abs_effect / std_dev

    return {
        "betas": betas,
        "abs_effect": abs_effect,
        "std_effect": std_effect,
        "std_dev": np.tile(std_dev, (contrasts.shape[0], 1)),
    }


class GLMTestBase(ABC):
    """
    Permutable fixel-wise t-test.

    Calling the object with a permutation of the subjects returns the t
    statistic of every contrast at every fixel for that relabelling.

    Parameters
    ----------
    measurements : np.ndarray
        Fixel data (n_fixels, n_subjects).
    design : np.ndarray
        Fixed part of the design matrix (n_subjects, n_columns).
    contrasts : np.ndarray
        Contrast matrix (n_contrasts, n_columns [+ n_element_columns]).
    """

    def __init__(self, measurements: np.ndarray, design: np.ndarray, contrasts: np.ndarray):
        self.measurements = np.asarray(measurements, dtype=np.float64)
        self.design = np.asarray(design, dtype=np.float64)
        self.contrasts = np.atleast_2d(np.asarray(contrasts, dtype=np.float64))

        if self.measurements.shape[1] != self.design.shape[0]:
            raise ValueError(
                f"Number of subjects in data ({self.measurements.shape[1]}) does not match "
                f"number of rows in design matrix ({self.design.shape[0]})"
            )

    @property
    def num_subjects(self) -> int:
        return self.design.shape[0]

    @property
    def num_elements(self) -> int:
        return self.measurements.shape[0]

    @property
    def num_contrasts(self) -> int:
        return self.contrasts.shape[0]

    @abstractmethod
    def __call__(self, permutation: Sequence[int]) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
        """
        Compute the t statistics for one permutation.

        Returns
        -------
        tuple of (np.ndarray, np.ndarray, np.ndarray)
            Statistics (n_contrasts, n_fixels) with non-finite values set
            to 0, and the per-contrast maximum and minimum finite statistic.
        """

    @staticmethod
    def _finalize(tvalues: np.ndarray) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
        finite = np.isfinite(tvalues)
        stats = np.where(finite, tvalues, 0.0)
        if stats.shape[1] == 0:
            zeros = np.zeros(stats.shape[0])
            return stats, zeros, zeros.copy()

        max_stat = np.max(np.where(finite, tvalues, -np.inf), axis=1)
        min_stat = np.min(np.where(finite, tvalues, np.inf), axis=1)
        max_stat[~np.isfinite(max_stat)] = 0.0
        min_stat[~np.isfinite(min_stat)] = 0.0
        return stats, max_stat, min_stat

    def _check_permutation(self, permutation: Sequence[int]) -> np.ndarray:
        permutation = np.asarray(permutation, dtype=np.intp)
        if permutation.shape != (self.num_subjects,):
            raise ValueError(
                f"Permutation of length {len(permutation)} does not match "
                f"number of subjects ({self.num_subjects})"
            )
        return permutation


class GLMTTestFixed(GLMTestBase):
    """
    t-test with the same design matrix at every fixel.

    The pseudo-inverse of the design is computed once; a permutation
    reorders the rows of the design and the columns of its pseudo-inverse.
    """

    def __init__(self, measurements: np.ndarray, design: np.ndarray, contrasts: np.ndarray):
        super().__init__(measurements, design, contrasts)
        self.pinv_design = np.linalg.pinv(self.design)
        self.degrees_of_freedom = self.num_subjects - np.linalg.matrix_rank(self.design)
        self.scaled_contrasts = scale_contrasts(self.contrasts, self.design, self.degrees_of_freedom)

        logger.debug(f"Fixed-design GLM: {self.num_elements} fixels, dof = {self.degrees_of_freedom}")

    def __call__(self, permutation: Sequence[int]) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
        permutation = self._check_permutation(permutation)
        shuffled_design = self.design[permutation]
        shuffled_pinv = self.pinv_design[:, permutation]

        tvalues = np.empty((self.num_contrasts, self.num_elements))
        for start in range(0, self.num_elements, GLM_BATCH_SIZE):
            stop = min(start + GLM_BATCH_SIZE, self.num_elements)
            block = ttest(
                shuffled_design,
                shuffled_pinv,
                self.measurements[start:stop],
                self.scaled_contrasts,
            )[0]
            tvalues[:, start:stop] = block.T

        return self._finalize(tvalues)


class GLMTTestVariable(GLMTestBase):
    """
    t-test whose design matrix differs between fixels.

    Each fixel's design is the fixed design with the fixel's values of every
    element-wise column appended. Subjects whose data or element-wise values
    are non-finite at a fixel are excluded from that fixel's model, and the
    permutation is reduced to the remaining subjects.

    Parameters
    ----------
    measurements : np.ndarray
        Fixel data (n_fixels, n_subjects); may contain NaN.
    design : np.ndarray
        Fixed part of the design matrix (n_subjects, n_columns).
    contrasts : np.ndarray
        Contrast matrix (n_contrasts, n_columns + n_element_columns).
    element_columns : list of np.ndarray, optional
        One (n_fixels, n_subjects) matrix per element-wise column.
    """

    def __init__(
        self,
        measurements: np.ndarray,
        design: np.ndarray,
        contrasts: np.ndarray,
        element_columns: Optional[List[np.ndarray]] = None,
    ):
        super().__init__(measurements, design, contrasts)
        self.element_columns = [np.asarray(c, dtype=np.float64) for c in (element_columns or [])]

        n_columns = self.design.shape[1] + len(self.element_columns)
        if self.contrasts.shape[1] != n_columns:
            raise ValueError(
                f"Number of columns in contrast matrix ({self.contrasts.shape[1]}) does not match "
                f"number of columns in design matrix ({n_columns})"
            )
        for column in self.element_columns:
            if column.shape != self.measurements.shape:
                raise ValueError(
                    f"Element-wise design column has shape {column.shape}, "
                    f"expected {self.measurements.shape}"
                )

        logger.debug(
            f"Variable-design GLM: {self.num_elements} fixels, "
            f"{len(self.element_columns)} element-wise column(s)"
        )

    def full_design(self, index: int) -> np.ndarray:
        """Design for one fixel over all subjects, before row removal."""
        if not self.element_columns:
            return self.design
        extra = np.column_stack([column[index] for column in self.element_columns])
        return np.hstack([self.design, extra])

    def element_mask(self, index: int) -> np.ndarray:
        """Boolean mask of the subjects kept in one fixel's model."""
        mask = np.isfinite(self.measurements[index])
        for column in self.element_columns:
            mask &= np.isfinite(column[index])
        return mask

    def default_design(self, index: int) -> np.ndarray:
        """Unpermuted design of one fixel, restricted to the kept subjects."""
        return self.full_design(index)[self.element_mask(index)]

    @staticmethod
    def reduce_permutation(permutation: np.ndarray, mask: np.ndarray) -> np.ndarray:
        """
        Restrict a permutation to the subjects selected by ``mask``.

        Entries referring to excluded subjects are removed and the remaining
        ones renumbered to index the reduced rows.
        """
        new_index = np.cumsum(mask) - 1
        kept = permutation[mask[permutation]]
        return new_index[kept]

    def element_tvalues(self, index: int, permutation: np.ndarray) -> np.ndarray:
        """t statistic of every contrast at one fixel for one permutation."""
        mask = self.element_mask(index)
        design = self.full_design(index)[mask]
        measurements = self.measurements[index, mask][None, :]
        if not np.all(mask):
            permutation = self.reduce_permutation(permutation, mask)

        if design.shape[0] == 0:
            return np.full(self.num_contrasts, np.nan)

        shuffled_design = design[permutation]
        dof = design.shape[0] - np.linalg.matrix_rank(design)
        scaled = scale_contrasts(self.contrasts, design, dof)
        return ttest(shuffled_design, np.linalg.pinv(shuffled_design), measurements, scaled)[0][0]

    def __call__(self, permutation: Sequence[int]) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
        permutation = self._check_permutation(permutation)
        tvalues = np.empty((self.num_contrasts, self.num_elements))
        for index in range(self.num_elements):
            tvalues[:, index] = self.element_tvalues(index, permutation)
        return self._finalize(tvalues)

    def default_stats(self) -> Dict[str, np.ndarray]:
        """
        Default-permutation model properties computed fixel by fixel.

        Returns the same keys as :func:`all_stats`; fixels without enough
        subjects for a fit hold NaN.
        """
        n_columns = self.contrasts.shape[1]
        result = {
            "betas": np.full((n_columns, self.num_elements), np.nan),
            "abs_effect": np.full((self.num_contrasts, self.num_elements), np.nan),
            "std_effect": np.full((self.num_contrasts, self.num_elements), np.nan),
            "std_dev": np.full((self.num_contrasts, self.num_elements), np.nan),
        }
        for index in range(self.num_elements):
            mask = self.element_mask(index)
            if not np.any(mask):
                continue
            stats = all_stats(self.measurements[index, mask], self.default_design(index), self.contrasts)
            for key, value in stats.items():
                result[key][:, index] = value[:, 0]
        return result
