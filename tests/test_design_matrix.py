"""Tests for the design matrix module."""

import numpy as np
import pandas as pd
import pytest

from fixelstats.core.design_matrix import DesignMatrixBuilder, load_matrix


class TestLoadMatrix:
    """Tests for load_matrix."""

    def test_load_with_comments(self, temp_dir):
        """Test loading a whitespace-delimited matrix with comments."""
        path = temp_dir / "design.txt"
        path.write_text("# intercept group\n1 0\n1 1\n1   1\n")

        matrix = load_matrix(path)
        assert matrix.shape == (3, 2)
        np.testing.assert_array_equal(matrix[:, 1], [0, 1, 1])

    def test_single_row(self, temp_dir):
        """Test that a single line gives a 2D matrix."""
        path = temp_dir / "contrast.txt"
        path.write_text("0 1 -1\n")
        assert load_matrix(path).shape == (1, 3)

    def test_missing_file(self, temp_dir):
        """Test error for a missing file."""
        with pytest.raises(FileNotFoundError):
            load_matrix(temp_dir / "missing.txt")


class TestDesignMatrixBuilder:
    """Tests for DesignMatrixBuilder class."""

    def test_init(self, sample_participants):
        """Test initialization."""
        builder = DesignMatrixBuilder(sample_participants)
        assert builder.design_matrix is None
        assert len(builder.contrasts) == 0
        assert builder.element_columns == []

    def test_load_design(self, temp_dir):
        """Test loading a numeric design matrix."""
        path = temp_dir / "design.txt"
        path.write_text("1 25\n1 30\n1 28\n")

        builder = DesignMatrixBuilder()
        dm = builder.load_design(path)

        assert dm.shape == (3, 2)
        assert list(dm.columns) == ["x0", "x1"]

    def test_design_matrix_with_columns(self, sample_participants):
        """Test design matrix with specified columns."""
        builder = DesignMatrixBuilder(sample_participants)
        dm = builder.build_design_matrix(
            columns=["age"],
            add_intercept=True,
            standardize_continuous=True,
        )

        assert "intercept" in dm.columns
        assert "age" in dm.columns
        assert abs(dm["age"].mean()) < 0.01

    def test_categorical_columns(self, sample_participants):
        """Test dummy coding of categorical regressors."""
        builder = DesignMatrixBuilder(sample_participants)
        dm = builder.build_design_matrix(columns=["group", "age"], add_intercept=True)

        assert list(dm.columns) == ["intercept", "group_patient", "age"]
        assert dm["group_patient"].sum() == 3
        assert np.linalg.matrix_rank(builder.get_design_array()) == 3

    def test_categorical_without_intercept(self, sample_participants):
        """Test that all levels are kept without an intercept."""
        builder = DesignMatrixBuilder(sample_participants)
        dm = builder.build_design_matrix(columns=["group"], add_intercept=False)

        assert set(dm.columns) == {"group_control", "group_patient"}

    def test_missing_column(self, sample_participants):
        """Test error for unknown participants columns."""
        builder = DesignMatrixBuilder(sample_participants)
        with pytest.raises(ValueError):
            builder.build_design_matrix(columns=["height"])

    def test_requires_participants(self):
        """Test that building from metadata requires a participants table."""
        with pytest.raises(ValueError):
            DesignMatrixBuilder().build_design_matrix(columns=["age"])

    def test_add_contrast_simple(self, sample_participants):
        """Test adding a simple contrast."""
        builder = DesignMatrixBuilder(sample_participants)
        builder.build_design_matrix(columns=["age"], add_intercept=True)

        name, vector = builder.add_contrast("age")

        assert name == "effectOfAge"
        np.testing.assert_array_equal(vector, [0, 1])

    def test_add_contrast_with_element_column(self, sample_participants):
        """Test contrast expressions over fixel-wise columns."""
        builder = DesignMatrixBuilder(sample_participants)
        builder.build_design_matrix(columns=["age"], add_intercept=True)
        builder.append_element_columns(1)

        _, vector = builder.add_contrast("column0")
        np.testing.assert_array_equal(vector, [0, 0, 1])

    def test_add_contrasts_from_config(self, sample_participants):
        """Test adding multiple contrasts."""
        builder = DesignMatrixBuilder(sample_participants)
        builder.build_design_matrix(columns=["group", "age"], add_intercept=True)

        contrasts = builder.add_contrasts_from_config([
            "age",
            {"expression": "group_patient", "name": "patients_vs_controls"},
        ])

        assert len(contrasts) == 2
        assert "patients_vs_controls" in contrasts

    def test_invalid_contrast(self, sample_participants):
        """Test error for an expression over unknown columns."""
        builder = DesignMatrixBuilder(sample_participants)
        builder.build_design_matrix(columns=["age"])
        with pytest.raises(ValueError):
            builder.add_contrast("height")

    def test_load_contrasts(self, temp_dir):
        """Test loading one contrast per row."""
        builder = DesignMatrixBuilder()
        builder.set_design_matrix(np.ones((4, 2)))
        path = temp_dir / "contrast.txt"
        path.write_text("0 1\n0 -1\n")

        contrasts = builder.load_contrasts(path)
        assert list(contrasts) == ["c0", "c1"]
        assert builder.get_contrast_matrix().shape == (2, 2)

    def test_load_contrast_column_vector(self, temp_dir):
        """Test that a column vector contrast is read as a single row."""
        builder = DesignMatrixBuilder()
        builder.set_design_matrix(np.ones((4, 3)))
        path = temp_dir / "contrast.txt"
        path.write_text("0\n1\n0\n")

        builder.load_contrasts(path)
        np.testing.assert_array_equal(builder.get_contrast_matrix(), [[0, 1, 0]])

    def test_get_contrast_vector_unknown(self):
        """Test KeyError for unknown contrast names."""
        with pytest.raises(KeyError):
            DesignMatrixBuilder().get_contrast_vector("missing")

    def test_validate(self):
        """Test design and contrast validation."""
        builder = DesignMatrixBuilder()
        builder.set_design_matrix(np.column_stack([np.ones(6), np.arange(6)]))
        builder.set_contrasts([[0, 1]])

        builder.validate(6)

        with pytest.raises(ValueError, match="does not match number of rows"):
            builder.validate(5)

    def test_validate_contrast_columns(self):
        """Test that contrasts must cover fixed and fixel-wise columns."""
        builder = DesignMatrixBuilder()
        builder.set_design_matrix(np.column_stack([np.ones(6), np.arange(6)]))
        builder.append_element_columns(1)
        builder.set_contrasts([[0, 1]])

        with pytest.raises(ValueError, match="number of columns"):
            builder.validate(6)

        builder.set_contrasts([[0, 1, 0]])
        builder.validate(6)

    def test_summary(self, sample_participants):
        """Test summary generation."""
        builder = DesignMatrixBuilder(sample_participants)
        builder.build_design_matrix(columns=["age"])
        builder.add_contrast("age")

        summary = builder.summary()

        assert "Design Matrix" in summary
        assert "intercept" in summary
        assert "effectOfAge" in summary

    def test_dataframe_design(self):
        """Test using an existing DataFrame as design."""
        builder = DesignMatrixBuilder()
        dm = builder.set_design_matrix(pd.DataFrame({"a": [1, 1], "b": [0, 1]}))
        assert list(dm.columns) == ["a", "b"]
        assert builder.num_columns == 2
