"""
Design matrix builder for fixel-wise GLM analysis.

This module handles:
- Design matrix loading from text files or generation from participant metadata
- Contrast loading and creation from expressions
- Fixel-wise (element-wise) design matrix columns
- Design matrix and contrast validation
"""

import logging
import re
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple, Union

import numpy as np
import pandas as pd
from nilearn.glm import expression_to_contrast_vector

logger = logging.getLogger(__name__)


def load_matrix(path: Union[str, Path]) -> np.ndarray:
    """
    Load a whitespace-delimited numeric matrix from a text file.

    Lines starting with ``#`` are ignored. A single line gives a 1-row matrix.
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Matrix file not found: {path}")

    matrix = np.loadtxt(path, dtype=np.float64, comments="#", ndmin=2)
    if matrix.size == 0:
        raise ValueError(f"Matrix file is empty: {path}")
    return matrix


class DesignMatrixBuilder:
    """
    Build design matrices and contrasts for a fixel-wise GLM.

    Parameters
    ----------
    participants : pd.DataFrame, optional
        Participant metadata, one row per subject in subject list order.

    Attributes
    ----------
    participants : pd.DataFrame or None
        Participant metadata.
    design_matrix : pd.DataFrame or None
        Fixed part of the design matrix (rows = subjects).
    element_columns : list of str
        Names of the fixel-wise columns appended after the fixed columns.
    contrasts : dict
        Dictionary of contrast name -> contrast vector.
    """

    def __init__(self, participants: Optional[pd.DataFrame] = None):
        self.participants = participants.copy() if participants is not None else None
        self.design_matrix: Optional[pd.DataFrame] = None
        self.element_columns: List[str] = []
        self.contrasts: Dict[str, np.ndarray] = {}

    @property
    def column_names(self) -> List[str]:
        """Fixed column names followed by the fixel-wise column names."""
        if self.design_matrix is None:
            return list(self.element_columns)
        return list(self.design_matrix.columns) + list(self.element_columns)

    @property
    def num_columns(self) -> int:
        """Total number of design columns, including fixel-wise ones."""
        return len(self.column_names)

    def set_design_matrix(self, design: Union[np.ndarray, pd.DataFrame]) -> pd.DataFrame:
        """Use an existing matrix as the fixed part of the design."""
        if isinstance(design, pd.DataFrame):
            design_matrix = design.astype(float).reset_index(drop=True)
        else:
            values = np.asarray(design, dtype=np.float64)
            if values.ndim == 1:
                values = values[:, None]
            if values.ndim != 2:
                raise ValueError(f"Design matrix must be 2D, got shape {values.shape}")
            design_matrix = pd.DataFrame(
                values, columns=[f"x{i}" for i in range(values.shape[1])]
            )

        self.design_matrix = design_matrix
        logger.info(f"Design matrix has shape {design_matrix.shape}")
        return design_matrix

    def load_design(self, path: Union[str, Path]) -> pd.DataFrame:
        """
        Load the design matrix from a numeric text file.

        Columns are named ``x0, x1, ...``.
        """
        logger.info(f"Loading design matrix from {path}")
        return self.set_design_matrix(load_matrix(path))

    def build_design_matrix(
        self,
        columns: List[str],
        add_intercept: bool = True,
        categorical_columns: Optional[List[str]] = None,
        standardize_continuous: bool = True,
    ) -> pd.DataFrame:
        """
        Build a design matrix from participant metadata.

        Parameters
        ----------
        columns : list of str
            Column names from the participants table to include.
        add_intercept : bool
            Whether to add an intercept column.
        categorical_columns : list of str, optional
            Columns to treat as categorical (will be dummy-coded).
            If None, will auto-detect based on dtype.
        standardize_continuous : bool
            Whether to standardize (z-score) continuous variables.

        Returns
        -------
        pd.DataFrame
            Design matrix with rows = participants, columns = regressors.
        """
        if self.participants is None:
            raise ValueError("Participant metadata is required to build a design matrix")

        design_matrix = pd.DataFrame(index=self.participants.index)

        missing = set(columns) - set(self.participants.columns)
        if missing:
            raise ValueError(f"Columns not found in participants table: {missing}")

        if categorical_columns is None:
            categorical_columns = []
            for col in columns:
                if not pd.api.types.is_numeric_dtype(self.participants[col]) or \
                   self.participants[col].nunique() <= 2:
                    categorical_columns.append(col)

        for col in columns:
            if col in categorical_columns:
                dummies = pd.get_dummies(
                    self.participants[col],
                    prefix=col,
                    drop_first=add_intercept,
                ).astype(float)
                design_matrix = pd.concat([design_matrix, dummies], axis=1)
            else:
                values = self.participants[col].astype(float)
                if standardize_continuous:
                    values = (values - values.mean()) / values.std()
                design_matrix[col] = values

        if add_intercept:
            design_matrix.insert(0, "intercept", 1.0)

        # nilearn contrast expressions need identifier-like column names
        design_matrix.columns = [re.sub(r"\W", "_", str(c)) for c in design_matrix.columns]

        logger.info(f"Built design matrix with shape {design_matrix.shape}")
        logger.info(f"Design matrix columns: {list(design_matrix.columns)}")
        return self.set_design_matrix(design_matrix)

    def append_element_columns(self, n_columns: int) -> List[str]:
        """
        Register fixel-wise design columns.

        They are named ``column0, column1, ...`` and placed after the fixed
        columns, in the order their data are supplied.
        """
        self.element_columns = [f"column{i}" for i in range(n_columns)]
        if n_columns:
            logger.info(f"Appended {n_columns} fixel-wise design matrix column(s)")
        return self.element_columns

    def load_contrasts(self, path: Union[str, Path]) -> Dict[str, np.ndarray]:
        """
        Load contrasts from a numeric text file, one contrast per row.

        A single column whose length equals the number of design columns
        is read as one contrast.
        """
        matrix = load_matrix(path)
        if matrix.shape[1] == 1 and matrix.shape[0] == self.num_columns and self.num_columns > 1:
            matrix = matrix.T
        return self.set_contrasts(matrix)

    def set_contrasts(self, matrix: Union[np.ndarray, List[List[float]]]) -> Dict[str, np.ndarray]:
        """Replace the contrasts with the rows of a numeric matrix."""
        matrix = np.atleast_2d(np.asarray(matrix, dtype=np.float64))
        self.contrasts = {f"c{i}": row.copy() for i, row in enumerate(matrix)}
        logger.info(f"Number of contrasts: {len(self.contrasts)}")
        return self.contrasts

    def add_contrast(
        self,
        contrast_expression: str,
        name: Optional[str] = None,
    ) -> Tuple[str, np.ndarray]:
        """
        Add a contrast from a string expression.

        Uses nilearn's expression_to_contrast_vector for parsing. The
        expression may refer to fixel-wise columns (``column0``...).

        Parameters
        ----------
        contrast_expression : str
            Contrast expression (e.g., "age", "patients-controls").
        name : str, optional
            Custom name for the contrast. If None, auto-generated.

        Returns
        -------
        tuple of (str, np.ndarray)
            Contrast name and contrast vector.

        Examples
        --------
        >>> builder.add_contrast("age")  # Effect of age
        >>> builder.add_contrast("patients-controls")  # Group difference
        """
        if self.design_matrix is None:
            raise ValueError("Must build design matrix before adding contrasts")

        try:
            contrast_vector = np.asarray(
                expression_to_contrast_vector(contrast_expression, self.column_names),
                dtype=np.float64,
            )
        except Exception as e:
            logger.error(f"Failed to parse contrast '{contrast_expression}': {e}")
            raise ValueError(f"Invalid contrast expression: {contrast_expression}") from e

        if name is None:
            name = self._generate_contrast_name(contrast_expression)

        self.contrasts[name] = contrast_vector
        logger.info(f"Added contrast '{name}': {contrast_expression} -> {contrast_vector}")
        return name, contrast_vector

    def add_contrasts_from_config(
        self,
        contrast_specs: List[Union[str, Dict[str, Any]]],
    ) -> Dict[str, np.ndarray]:
        """
        Add multiple contrasts.

        Each specification is either an expression string or a dict with an
        ``expression`` and optional ``name`` key.
        """
        for spec in contrast_specs:
            if isinstance(spec, str):
                self.add_contrast(spec)
            elif isinstance(spec, dict):
                self.add_contrast(spec.get("expression", spec.get("contrast")), spec.get("name"))
            else:
                raise ValueError(f"Invalid contrast specification: {spec}")
        return self.contrasts

    def _generate_contrast_name(self, expression: str) -> str:
        expr = expression.strip()

        if re.match(r"^[a-zA-Z_][a-zA-Z0-9_]*$", expr):
            return f"effectOf{expr.capitalize()}"

        match = re.match(r"^([a-zA-Z_][a-zA-Z0-9_]*)\s*-\s*([a-zA-Z_][a-zA-Z0-9_]*)$", expr)
        if match:
            return f"{match.group(1)}Versus{match.group(2).capitalize()}"

        clean = re.sub(r"[^a-zA-Z0-9]", "", expr)
        return f"contrast_{clean[:20]}"

    def get_contrast_vector(self, name: str) -> np.ndarray:
        """Get a contrast vector by name."""
        if name not in self.contrasts:
            raise KeyError(f"Contrast '{name}' not found. Available: {list(self.contrasts.keys())}")
        return self.contrasts[name]

    def get_contrast_matrix(self) -> np.ndarray:
        """Stack all contrasts into a (n_contrasts, n_columns) matrix."""
        if not self.contrasts:
            raise ValueError("No contrasts defined")
        return np.vstack(list(self.contrasts.values()))

    def get_design_array(self) -> np.ndarray:
        """Fixed part of the design matrix as a float array."""
        if self.design_matrix is None:
            raise ValueError("Design matrix not built yet")
        return self.design_matrix.to_numpy(dtype=np.float64)

    def validate(self, n_subjects: int) -> None:
        """
        Check the design and contrasts against the cohort.

        Raises
        ------
        ValueError
            If the number of design rows differs from the number of subjects,
            or the number of contrast columns differs from the number of
            design columns (fixed plus fixel-wise).
        """
        if self.design_matrix is None:
            raise ValueError("Design matrix not built yet")

        if len(self.design_matrix) != n_subjects:
            raise ValueError(
                f"Number of input files ({n_subjects}) does not match number of rows "
                f"in design matrix ({len(self.design_matrix)})"
            )

        contrasts = self.get_contrast_matrix()
        if contrasts.shape[1] != self.num_columns:
            raise ValueError(
                f"The number of columns in the contrast matrix ({contrasts.shape[1]}) "
                f"does not equal the number of columns in the design matrix "
                f"({len(self.design_matrix.columns)})"
                + (f" (taking into account the {len(self.element_columns)} fixel-wise "
                   f"column(s) passed via --column)" if self.element_columns else "")
            )

        if np.linalg.matrix_rank(self.get_design_array()) < self.design_matrix.shape[1]:
            logger.warning("Design matrix is rank deficient; estimates will use the pseudo-inverse")

    def summary(self) -> str:
        """Get a text summary of the design matrix and contrasts."""
        lines = []

        if self.design_matrix is not None:
            lines.append("Design Matrix:")
            lines.append(f"  Shape: {self.design_matrix.shape}")
            lines.append(f"  Columns: {self.column_names}")
            lines.append("")

        if self.contrasts:
            lines.append("Contrasts:")
            for name, vector in self.contrasts.items():
                lines.append(f"  {name}: {vector}")

        return "\n".join(lines)
