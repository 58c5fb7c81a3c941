"""Tests for the CFE module."""

import numpy as np
import pytest
from scipy import sparse

from fixelstats.core.cfe import CFEEnhancer


@pytest.fixture
def identity_connectivity():
    return sparse.identity(3, format="csr")


class TestCFEEnhancer:
    """Tests for CFEEnhancer class."""

    def test_invalid_dh(self, identity_connectivity):
        """Test that the height increment must be positive."""
        with pytest.raises(ValueError):
            CFEEnhancer(identity_connectivity, dh=0.0)

    def test_zero_statistic(self, identity_connectivity):
        """Test that a zero statistic stays zero."""
        enhancer = CFEEnhancer(identity_connectivity)
        np.testing.assert_array_equal(enhancer(np.zeros(3)), 0.0)

    def test_negative_statistic(self, identity_connectivity):
        """Test that only the positive tail is enhanced."""
        enhancer = CFEEnhancer(identity_connectivity)
        np.testing.assert_array_equal(enhancer(np.array([-1.0, -2.5, -0.3])), 0.0)

    def test_isolated_fixel(self, identity_connectivity):
        """Test the integral for a fixel without neighbours."""
        dh = 0.1
        enhancer = CFEEnhancer(identity_connectivity, dh=dh, e=2.0, h=1.0)
        enhanced = enhancer(np.array([0.35, 0.0, 0.0]))

        heights = np.array([1, 2, 3]) * dh
        assert enhanced[0] == pytest.approx(dh * heights.sum())
        assert enhanced[1] == 0.0
        assert enhanced[2] == 0.0

    def test_monotonic(self, identity_connectivity):
        """Test that larger statistics are enhanced more."""
        enhancer = CFEEnhancer(identity_connectivity)
        enhanced = enhancer(np.array([1.0, 2.0, 3.0]))
        assert enhanced[0] < enhanced[1] < enhanced[2]

    def test_connected_fixels_enhanced_more(self):
        """Test that connected supra-threshold fixels reinforce each other."""
        connected = sparse.csr_matrix(np.array([[1.0, 0.5], [0.5, 1.0]]))
        isolated = sparse.identity(2, format="csr")
        stats = np.array([2.0, 2.0])

        with_neighbour = CFEEnhancer(connected)(stats)
        alone = CFEEnhancer(isolated)(stats)

        assert np.all(with_neighbour > alone)
        np.testing.assert_allclose(with_neighbour, alone * 1.5 ** 2)

    def test_neighbour_below_height(self):
        """Test that a neighbour only contributes at heights it exceeds."""
        connectivity = sparse.csr_matrix(np.array([[1.0, 1.0], [1.0, 1.0]]))
        enhanced = CFEEnhancer(connectivity, dh=0.1, e=1.0, h=0.0)(np.array([0.0, 0.55]))

        # fixel 0 receives extent 1 at heights 0.1 to 0.5 from fixel 1
        assert enhanced[0] == pytest.approx(0.5)
        assert enhanced[1] == pytest.approx(0.5)

    def test_explicit_max_stat(self, identity_connectivity):
        """Test that the given maximum bounds the integration."""
        enhancer = CFEEnhancer(identity_connectivity)
        stats = np.array([1.0, 0.5, 0.0])
        np.testing.assert_allclose(enhancer(stats, 1.0), enhancer(stats))

    def test_matrix_input(self, identity_connectivity):
        """Test per-contrast enhancement of a statistic matrix."""
        enhancer = CFEEnhancer(identity_connectivity)
        stats = np.array([[1.0, 2.0, 0.0], [0.0, -1.0, 1.5]])

        enhanced = enhancer(stats, np.array([2.0, 1.5]))

        assert enhanced.shape == (2, 3)
        np.testing.assert_allclose(enhanced[1], enhancer(stats[1]))

    def test_wrong_length(self, identity_connectivity):
        """Test error for a statistic of the wrong length."""
        with pytest.raises(ValueError):
            CFEEnhancer(identity_connectivity)(np.zeros(4))
