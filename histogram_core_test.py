"""
Histogram Core Tests
====================
"""

import numpy as np
import pytest

from disana.binning import BinGrid
from disana.core_framework import AccumulationStateError, GridShapeMismatchError
from disana.histogram_core import AggregateGrid, DerivedGrid, WeightedHistogram1D, check_same_binning


class TestWeightedHistogram:
    """Content and sum-of-squared-weight bookkeeping."""

    def test_fill(self):
        hist = WeightedHistogram1D.uniform(18, 0.0, 360.0)
        assert hist.fill(190.0, 2.0)
        assert hist.fill(195.0, 0.5)
        assert not hist.fill(360.0)
        assert not hist.fill(-1.0)
        assert hist.content[9] == pytest.approx(2.5)
        assert hist.variance[9] == pytest.approx(4.25)
        assert hist.integral() == pytest.approx(2.5)

    def test_scale(self):
        hist = WeightedHistogram1D.uniform(4, 0.0, 360.0, content=[1, 2, 3, 4], variance=[1, 2, 3, 4])
        hist.scale(-2.0)
        np.testing.assert_allclose(hist.content, [-2, -4, -6, -8])
        np.testing.assert_allclose(hist.errors, 2.0 * np.sqrt([1, 2, 3, 4]))

    def test_addition(self):
        a = WeightedHistogram1D.uniform(2, 0.0, 360.0, content=[1, 2], variance=[1, 4])
        b = WeightedHistogram1D.uniform(2, 0.0, 360.0, content=[3, 4], variance=[9, 16])
        total = a + b
        np.testing.assert_allclose(total.content, [4, 6])
        np.testing.assert_allclose(total.variance, [10, 20])
        np.testing.assert_allclose(a.content, [1, 2])

    def test_addition_mismatch(self):
        a = WeightedHistogram1D.uniform(18, 0.0, 360.0)
        b = WeightedHistogram1D.uniform(12, 0.0, 360.0)
        with pytest.raises(GridShapeMismatchError) as excinfo:
            a += b
        assert excinfo.value.dimension == "phi"

    @pytest.mark.parametrize("kwargs", [
        dict(edges=[0.0]),
        dict(edges=[0.0, 10.0, 5.0]),
        dict(edges=[0.0, 10.0], content=[1.0, 2.0]),
        dict(edges=[0.0, 10.0], variance=[-1.0]),
    ])
    def test_invalid(self, kwargs):
        with pytest.raises(ValueError):
            WeightedHistogram1D(**kwargs)


class TestAggregateGrid:
    """Dense grid construction, access and normalisation."""

    def test_from_histograms(self, default_grid):
        nested = [[[None for _ in range(3)] for _ in range(3)] for _ in range(3)]
        hist = WeightedHistogram1D.for_grid(default_grid)
        hist.fill(190.0, 3.0)
        nested[1][2][0] = hist
        agg = AggregateGrid.from_histograms(default_grid, nested)
        assert agg.n_present == 1
        assert agg.present[1, 2, 0]
        assert agg.content[1, 2, 0, 9] == 3.0
        assert agg.variance[1, 2, 0, 9] == 9.0
        assert agg.histogram(0, 0, 0) is None

        round_trip = agg.to_nested()
        assert round_trip[0][0][0] is None
        np.testing.assert_array_equal(round_trip[1][2][0].content, hist.content)

    def test_from_histograms_shape_checks(self, default_grid):
        with pytest.raises(GridShapeMismatchError):
            AggregateGrid.from_histograms(default_grid, [[[None] * 3] * 3] * 2)
        nested = [[[None for _ in range(3)] for _ in range(3)] for _ in range(3)]
        nested[0][0][0] = WeightedHistogram1D.uniform(12, 0.0, 360.0)
        with pytest.raises(GridShapeMismatchError) as excinfo:
            AggregateGrid.from_histograms(default_grid, nested)
        assert excinfo.value.dimension == "phi"

    def test_from_histograms_rejects_other_angle_range(self, default_grid):
        nested = [[[WeightedHistogram1D.uniform(18, 0.0, 180.0) for _ in range(3)]
                   for _ in range(3)] for _ in range(3)]
        with pytest.raises(GridShapeMismatchError) as excinfo:
            AggregateGrid.from_histograms(default_grid, nested)
        assert excinfo.value.dimension == "phi"
        assert excinfo.value.actual == (0.0, 180.0)

    def test_histogram_is_a_copy(self, default_grid):
        agg = AggregateGrid(default_grid)
        hist = agg.histogram(0, 1, 2)
        hist.fill(10.0)
        assert agg.content.sum() == 0.0
        assert hist.name == default_grid.cell_name(0, 1, 2)

    def test_merge(self, default_grid):
        a = AggregateGrid(default_grid)
        b = AggregateGrid(default_grid)
        a.content[0, 0, 0, 0] = 2.0
        a.variance[0, 0, 0, 0] = 2.0
        b.content[0, 0, 0, 0] = 1.0
        b.variance[0, 0, 0, 0] = 1.0
        merged = a + b
        assert merged.content[0, 0, 0, 0] == 3.0
        assert merged.variance[0, 0, 0, 0] == 3.0

    def test_merge_normalized_rejected(self, default_grid):
        normalized = AggregateGrid(default_grid).normalize(1.0)
        with pytest.raises(AccumulationStateError):
            normalized.merge(AggregateGrid(default_grid))

    def test_merge_different_binning(self, default_grid):
        other = BinGrid.default(n_phi_bins=12)
        with pytest.raises(GridShapeMismatchError):
            AggregateGrid(default_grid).merge(AggregateGrid(other))

    def test_normalize(self, default_grid):
        agg = AggregateGrid(default_grid)
        agg.content[0, 0, 0, 9] = 4.0
        agg.variance[0, 0, 0, 9] = 4.0
        result = agg.normalize(2.0)
        assert result.normalized and result.exposure == 2.0
        assert result.content[0, 0, 0, 9] == pytest.approx(0.1)
        assert result.errors[0, 0, 0, 9] == pytest.approx(0.05)
        assert result.content[0, 0, 0, 8] == 0.0
        with pytest.raises(ValueError):
            result.content[0, 0, 0, 0] = 1.0
        with pytest.raises(AccumulationStateError):
            result.normalize(2.0)

    @pytest.mark.parametrize("exposure", [0.0, -1.0, float('nan'), float('inf')])
    def test_normalize_invalid_exposure(self, default_grid, exposure):
        with pytest.raises(ValueError):
            AggregateGrid(default_grid).normalize(exposure)


class TestBinningChecks:
    """Dimension-by-dimension comparison of two grids."""

    def test_same_binning(self, default_grid):
        check_same_binning(default_grid, BinGrid.default(), "test")

    def test_reports_every_dimension(self, default_grid):
        other = BinGrid.from_edges((1.0, 2.0, 6.0), (0.1, 0.3, 0.6, 1.0), (0.1, 0.2, 0.4, 0.7),
                                   n_phi_bins=18)
        with pytest.raises(GridShapeMismatchError) as excinfo:
            check_same_binning(default_grid, other, "asymmetry")
        error = excinfo.value
        assert error.stage == "asymmetry"
        assert error.dimension == "Q2"
        assert error.dimensions == ["Q2", "xB"]


class TestDerivedGrid:
    """Read-only result grids."""

    def test_undefined_bins(self, default_grid):
        values = np.zeros(default_grid.full_shape)
        values[0, 0, 0, :2] = np.nan
        values[1, 1, 1, :] = np.nan
        present = np.ones(default_grid.shape, dtype=bool)
        present[1, 1, 1] = False
        derived = DerivedGrid(default_grid, values, np.zeros(default_grid.full_shape), present,
                              kind="asymmetry", skipped_cells=[(1, 1, 1)])
        assert derived.n_undefined_bins == 2
        assert derived.n_skipped_cells == 1
        assert derived.histogram(1, 1, 1) is None
        assert derived.histogram(0, 0, 0).name.endswith("_BSA")
        with pytest.raises(ValueError):
            derived.values[0, 0, 0, 0] = 1.0
