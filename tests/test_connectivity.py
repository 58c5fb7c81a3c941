"""Tests for the connectivity module."""

import numpy as np
import pytest
from scipy import sparse

from fixelstats.core import connectivity as connectivity_module
from fixelstats.core.connectivity import (
    FWHM_TO_SIGMA,
    ConnectivityBuilder,
    build_connectivity,
    normalize_connectivity,
)
from fixelstats.core.tractography import StreamlineSource, TrackMapper, VoxelDirectionSet

from conftest import X_TRACT, Y_TRACT, straight_streamline, write_tracks


class TestConnectivityBuilder:
    """Tests for ConnectivityBuilder class."""

    def test_assign_fixels_x_tract(self, template):
        """Test that a streamline along x selects the x fixels."""
        builder = ConnectivityBuilder(template)
        mapper = TrackMapper(template)

        fixels = builder.assign_fixels(mapper(straight_streamline([-0.4, 1, 1], [7.4, 1, 1])))
        np.testing.assert_array_equal(fixels, sorted(X_TRACT))

    def test_assign_fixels_crossing(self, template):
        """Test that the crossing voxel picks the fixel aligned with the streamline."""
        builder = ConnectivityBuilder(template)
        mapper = TrackMapper(template)

        fixels = builder.assign_fixels(mapper(straight_streamline([3, -0.4, 1], [3, 2.4, 1])))
        np.testing.assert_array_equal(fixels, sorted(Y_TRACT))

    def test_angular_threshold(self, template):
        """Test that tangents beyond the angular threshold are not assigned."""
        angle = np.deg2rad(50.0)
        voxel_dirs = VoxelDirectionSet(
            np.array([[0, 1, 1]]), np.array([[np.cos(angle), np.sin(angle), 0.0]])
        )

        assert len(ConnectivityBuilder(template, angular_threshold=45.0).assign_fixels(voxel_dirs)) == 0
        np.testing.assert_array_equal(
            ConnectivityBuilder(template, angular_threshold=60.0).assign_fixels(voxel_dirs), [0]
        )

    def test_empty_voxels_ignored(self, template):
        """Test that voxels without fixels contribute nothing."""
        builder = ConnectivityBuilder(template)
        voxel_dirs = VoxelDirectionSet(np.array([[0, 0, 0]]), np.array([[1.0, 0.0, 0.0]]))
        assert len(builder.assign_fixels(voxel_dirs)) == 0

    def test_accumulate(self, template):
        """Test track density and symmetric pair counts."""
        builder = ConnectivityBuilder(template)
        counts, tdi, num_streamlines = builder.accumulate(
            [np.array([0, 1, 2]), np.array([1, 2]), np.array([], dtype=np.int64)]
        )
        dense = counts.toarray()

        assert num_streamlines == 3
        np.testing.assert_array_equal(tdi[:3], [1, 2, 2])
        assert dense[0, 1] == 1
        assert dense[1, 2] == 2
        np.testing.assert_array_equal(dense, dense.T)
        np.testing.assert_array_equal(np.diag(dense), 0)

    def test_accumulate_flushes_pairs(self, template, monkeypatch):
        """Test that flushing pending pairs to sparse counts gives the same totals."""
        fixel_sets = [np.array([0, 1, 2]), np.array([1, 2]), np.array([2]), np.array([0, 2])]
        builder = ConnectivityBuilder(template)
        expected, expected_tdi, _ = builder.accumulate(fixel_sets)

        monkeypatch.setattr(connectivity_module, "MAX_PENDING_PAIRS", 1)
        counts, tdi, num_streamlines = builder.accumulate(fixel_sets)

        assert num_streamlines == 4
        np.testing.assert_array_equal(counts.toarray(), expected.toarray())
        np.testing.assert_array_equal(tdi, expected_tdi)
        assert counts[0, 2] == 2
        assert counts[1, 2] == 2

    def test_accumulate_does_not_modify_builder(self, template):
        """Test that private accumulation leaves the totals untouched."""
        builder = ConnectivityBuilder(template)
        builder.accumulate([np.array([0, 1])])
        assert builder.counts.nnz == 0
        assert builder.tdi.sum() == 0

    def test_merge(self, template):
        """Test merging private accumulators."""
        builder = ConnectivityBuilder(template)
        for fixel_sets in ([np.array([0, 1])], [np.array([0, 1]), np.array([1, 2])]):
            builder.merge(*builder.accumulate(fixel_sets))

        assert builder.num_streamlines == 3
        assert builder.counts[0, 1] == 2
        assert builder.tdi[1] == 3

    @pytest.mark.parametrize("n_jobs", [1, 2])
    def test_run(self, template, temp_dir, sample_streamlines, n_jobs):
        """Test processing a whole track file, single and multi-threaded."""
        path = temp_dir / "tracks.tck"
        write_tracks(path, sample_streamlines)

        builder = ConnectivityBuilder(template)
        counts, tdi = builder.run(
            StreamlineSource(path), TrackMapper(template), n_jobs=n_jobs, batch_size=2, progress=False
        )

        assert builder.num_streamlines == 6
        np.testing.assert_array_equal(tdi[X_TRACT], 3)
        np.testing.assert_array_equal(tdi[Y_TRACT], 3)
        assert counts[X_TRACT[0], X_TRACT[-1]] == 3
        assert counts[X_TRACT[0], Y_TRACT[0]] == 0

    def test_build_connectivity_warns_on_few_streamlines(self, template, temp_dir, sample_streamlines, caplog):
        """Test the warning for small tractograms."""
        path = temp_dir / "tracks.tck"
        write_tracks(path, sample_streamlines)

        with caplog.at_level("WARNING"):
            build_connectivity(template, str(path), min_streamlines=100, progress=False)
        assert "tracks should be used" in caplog.text

    def test_build_connectivity_no_streamlines(self, template, temp_dir):
        """Test that an empty tractogram is rejected."""
        path = temp_dir / "empty.tck"
        write_tracks(path, [])

        with pytest.raises(ValueError, match="no streamlines"):
            build_connectivity(template, str(path), progress=False)


class TestNormalizeConnectivity:
    """Tests for normalize_connectivity."""

    @pytest.fixture
    def raw(self):
        counts = sparse.csr_matrix(np.array([
            [0, 2, 1],
            [2, 0, 0],
            [1, 0, 0],
        ]))
        tdi = np.array([4, 2, 1])
        positions = np.zeros((3, 3))
        return counts, tdi, positions

    def test_threshold_and_exponent(self, raw):
        """Test row normalization, threshold and connectivity exponent."""
        counts, tdi, positions = raw
        connectivity, _ = normalize_connectivity(
            counts, tdi, positions, connectivity_threshold=0.3, smoothing_fwhm=0.0, cfe_c=0.5
        )
        dense = connectivity.toarray()

        assert dense[0, 1] == pytest.approx(np.sqrt(0.5))
        assert dense[0, 2] == 0.0
        assert dense[1, 0] == pytest.approx(1.0)
        np.testing.assert_allclose(np.diag(dense), 1.0)

    def test_no_smoothing(self, raw):
        """Test that a zero FWHM gives identity smoothing weights."""
        counts, tdi, positions = raw
        _, smoothing = normalize_connectivity(counts, tdi, positions, smoothing_fwhm=0.0)
        np.testing.assert_allclose(smoothing.toarray(), np.eye(3))

    def test_smoothing_weights(self, raw):
        """Test Gaussian smoothing weights and row normalization."""
        counts, tdi, positions = raw
        _, smoothing = normalize_connectivity(
            counts, tdi, positions, connectivity_threshold=0.3, smoothing_fwhm=10.0
        )
        dense = smoothing.toarray()

        sigma = 10.0 / FWHM_TO_SIGMA
        peak = 1.0 / (sigma * np.sqrt(2 * np.pi))
        expected_row0 = np.array([peak, 0.5 * peak, 0.0])

        np.testing.assert_allclose(dense.sum(axis=1), 1.0)
        np.testing.assert_allclose(dense[0], expected_row0 / expected_row0.sum())

    def test_distant_fixels_not_smoothed(self, raw):
        """Test that negligible smoothing weights are dropped but connectivity is kept."""
        counts, tdi, _ = raw
        positions = np.array([[0.0, 0.0, 0.0], [100.0, 0.0, 0.0], [0.0, 0.0, 0.0]])
        connectivity, smoothing = normalize_connectivity(
            counts, tdi, positions, connectivity_threshold=0.01, smoothing_fwhm=10.0
        )

        assert connectivity[0, 1] > 0
        assert smoothing[0, 1] == 0

    def test_self_connections_ignored(self):
        """Test that diagonal counts do not alter the self-entry."""
        counts = sparse.csr_matrix(np.array([[5, 1], [1, 5]]))
        connectivity, _ = normalize_connectivity(counts, np.array([5, 5]), np.zeros((2, 3)), smoothing_fwhm=0.0)
        np.testing.assert_allclose(np.diag(connectivity.toarray()), 1.0)

    def test_untraversed_fixel(self):
        """Test a fixel without streamlines keeps only its self-entries."""
        counts = sparse.csr_matrix((2, 2))
        connectivity, smoothing = normalize_connectivity(counts, np.array([0, 0]), np.zeros((2, 3)))
        np.testing.assert_allclose(connectivity.toarray(), np.eye(2))
        np.testing.assert_allclose(smoothing.toarray(), np.eye(2))
