"""Tests for the tractography module."""

import numpy as np
import pytest

from fixelstats.core.tractography import StreamlineSource, TrackMapper

from conftest import straight_streamline, write_tracks


class TestStreamlineSource:
    """Tests for StreamlineSource class."""

    def test_count_and_iteration(self, temp_dir, sample_streamlines):
        """Test header count and streamline iteration."""
        path = temp_dir / "tracks.tck"
        write_tracks(path, sample_streamlines)

        source = StreamlineSource(path)
        streamlines = list(source)

        assert source.count == len(sample_streamlines)
        assert len(streamlines) == len(sample_streamlines)
        np.testing.assert_allclose(streamlines[0], sample_streamlines[0], atol=1e-5)

    def test_batches(self, temp_dir, sample_streamlines):
        """Test batched iteration."""
        path = temp_dir / "tracks.tck"
        write_tracks(path, sample_streamlines)

        batches = list(StreamlineSource(path).batches(4))
        assert [len(b) for b in batches] == [4, 2]

    def test_iteration_restarts(self, temp_dir, sample_streamlines):
        """Test that the source can be iterated more than once."""
        path = temp_dir / "tracks.tck"
        write_tracks(path, sample_streamlines)

        source = StreamlineSource(path)
        assert len(list(source)) == len(list(source))

    def test_missing_file(self, temp_dir):
        """Test error for a missing track file."""
        with pytest.raises(FileNotFoundError):
            StreamlineSource(temp_dir / "missing.tck")


class TestTrackMapper:
    """Tests for TrackMapper class."""

    def test_upsample_spacing(self, template):
        """Test that upsampled points are no further apart than the step."""
        mapper = TrackMapper(template, upsample_fraction=0.25)
        points = np.array([[0.0, 1.0, 1.0], [3.0, 1.0, 1.0], [3.0, 2.0, 1.0]])

        upsampled = mapper.upsample(points)
        spacing = np.linalg.norm(np.diff(upsampled, axis=0), axis=1)

        assert np.all(spacing <= 0.25 + 1e-9)
        np.testing.assert_allclose(upsampled[0], points[0])
        np.testing.assert_allclose(upsampled[-1], points[-1])

    def test_straight_streamline(self, template):
        """Test voxels and directions of a streamline along x."""
        mapper = TrackMapper(template)
        voxel_dirs = mapper(straight_streamline([-0.4, 1.0, 1.0], [7.4, 1.0, 1.0]))

        assert len(voxel_dirs) == 8
        np.testing.assert_array_equal(np.sort(voxel_dirs.voxels[:, 0]), np.arange(8))
        assert np.all(voxel_dirs.voxels[:, 1:] == 1)
        np.testing.assert_allclose(np.abs(voxel_dirs.directions[:, 0]), 1.0)

    def test_outside_points_discarded(self, template):
        """Test that samples outside the image are ignored."""
        mapper = TrackMapper(template)
        voxel_dirs = mapper(straight_streamline([-5.0, 1.0, 1.0], [2.0, 1.0, 1.0]))

        assert len(voxel_dirs) == 3
        assert voxel_dirs.voxels[:, 0].min() == 0

    def test_entirely_outside(self, template):
        """Test a streamline that never enters the image."""
        mapper = TrackMapper(template)
        voxel_dirs = mapper(straight_streamline([20.0, 20.0, 20.0], [30.0, 20.0, 20.0]))
        assert len(voxel_dirs) == 0

    def test_single_point(self, template):
        """Test that a single-point streamline maps to nothing."""
        mapper = TrackMapper(template)
        assert len(mapper(np.array([[1.0, 1.0, 1.0]]))) == 0
