"""
Binning Tests
=============

Half-open bin location, grid shape and cell naming.
"""

import math

import numpy as np
import pytest
from hypothesis import given, settings, assume, strategies as st

from disana.binning import BinEdges, BinGrid, OUT_OF_RANGE, locate, locate_array
from disana.core_framework import AnalysisContext

edge_lists = st.lists(
    st.floats(min_value=-1e3, max_value=1e3, allow_nan=False, allow_infinity=False),
    min_size=2, max_size=12, unique=True,
).map(sorted)


class TestLocate:
    """Upper-bound search with lower-inclusive bins."""

    EDGES = (1.0, 2.0, 4.0, 6.0)

    @pytest.mark.parametrize("value, expected", [
        (1.0, 0), (1.5, 0), (2.0, 1), (3.999, 1), (4.0, 2), (5.999, 2),
        (6.0, OUT_OF_RANGE), (7.0, OUT_OF_RANGE), (0.999, OUT_OF_RANGE),
    ])
    def test_boundaries(self, value, expected):
        assert locate(value, self.EDGES) == expected

    def test_nan_is_out_of_range(self):
        assert locate(float('nan'), self.EDGES) == OUT_OF_RANGE
        assert locate_array(np.array([np.nan]), self.EDGES)[0] == OUT_OF_RANGE

    @given(edges=edge_lists, value=st.floats(min_value=-2e3, max_value=2e3, allow_nan=False))
    @settings(max_examples=100)
    def test_property_unique_bin(self, edges, value):
        index = locate(value, edges)
        if value < edges[0] or value >= edges[-1]:
            assert index == OUT_OF_RANGE
        else:
            assert 0 <= index < len(edges) - 1
            assert edges[index] <= value < edges[index + 1]

    @given(edges=edge_lists,
           values=st.lists(st.floats(min_value=-2e3, max_value=2e3, allow_nan=False), max_size=50))
    @settings(max_examples=50)
    def test_property_vectorised_matches_scalar(self, edges, values):
        result = locate_array(np.array(values, dtype=np.float64), edges)
        assert list(result) == [locate(v, edges) for v in values]


class TestBinEdges:
    """Edge validation."""

    def test_valid(self):
        edges = BinEdges((0.1, 0.3, 0.6, 1.0), "t")
        assert edges.n_bins == 3
        assert edges.bounds(1) == (0.3, 0.6)
        assert edges.low == 0.1 and edges.high == 1.0

    @pytest.mark.parametrize("values", [
        (1.0,), (), (1.0, 1.0), (2.0, 1.0), (1.0, 3.0, 2.0), (0.0, math.inf),
    ])
    def test_invalid(self, values):
        with pytest.raises(ValueError):
            BinEdges(values, "bad")

    def test_immutable(self):
        edges = BinEdges((1.0, 2.0))
        with pytest.raises(AttributeError):
            edges.values = (0.0, 1.0)


class TestBinGrid:
    """Grid shape, angular binning and naming."""

    def test_default_shape(self, default_grid):
        assert default_grid.shape == (3, 3, 3)
        assert default_grid.full_shape == (3, 3, 3, 18)
        assert default_grid.n_cells == 27
        assert default_grid.phi_bin_width == pytest.approx(20.0)
        assert len(default_grid.phi_edges) == 19
        assert default_grid.phi_centers[0] == pytest.approx(10.0)

    def test_from_context(self):
        ctx = AnalysisContext(n_phi_bins=12, verbose=False)
        grid = BinGrid.from_context(ctx)
        assert grid.full_shape == (3, 3, 3, 12)
        assert grid.phi_bin_width == pytest.approx(30.0)

    @pytest.mark.parametrize("phi, expected", [
        (0.0, 0), (19.999, 0), (20.0, 1), (190.0, 9), (359.999, 17),
        (360.0, OUT_OF_RANGE), (-0.001, OUT_OF_RANGE),
    ])
    def test_locate_phi(self, default_grid, phi, expected):
        assert default_grid.locate_phi(phi) == expected
        assert default_grid.locate_phi_array(np.array([phi]))[0] == expected

    def test_locate_cell(self, default_grid):
        assert default_grid.locate_cell(1.5, 0.2, 0.15) == (0, 0, 0)
        assert default_grid.locate_cell(5.0, 0.7, 0.5) == (2, 2, 2)
        assert default_grid.locate_cell(6.0, 0.2, 0.15) is None
        assert default_grid.locate_cell(1.5, 0.05, 0.15) is None

    def test_classify(self, default_grid):
        ia, ib, ic, iphi = default_grid.classify([1.5, 7.0], [0.2, 0.2], [0.15, 0.15], [190.0, 10.0])
        assert list(ia) == [0, OUT_OF_RANGE]
        assert list(ib) == [0, 0]
        assert list(ic) == [0, 0]
        assert list(iphi) == [9, 0]

    def test_cells_iteration(self, default_grid):
        cells = list(default_grid.cells())
        assert len(cells) == 27
        assert cells[0] == (0, 0, 0)
        assert cells[1] == (0, 0, 1)

    def test_cell_naming(self, default_grid):
        assert default_grid.cell_name(0, 0, 0) == "hphi_q1.0_t0.1_xb0.10"
        assert default_grid.cell_name(2, 1, 2) == "hphi_q4.0_t0.3_xb0.40"
        assert "Q2=[1.0,2.0]" in default_grid.cell_title(0, 0, 0)

    def test_same_binning(self, default_grid):
        assert default_grid.same_binning(BinGrid.default())
        assert default_grid == BinGrid.default()
        assert not default_grid.same_binning(BinGrid.default(n_phi_bins=12))
        other = BinGrid.from_edges((1, 2, 4, 7), (0.1, 0.3, 0.6, 1.0), (0.1, 0.2, 0.4, 0.6))
        assert not default_grid.same_binning(other)

    def test_accepts_plain_sequences(self):
        grid = BinGrid((1.0, 2.0), (0.1, 0.5), (0.1, 0.3), n_phi_bins=4)
        assert isinstance(grid.q2_edges, BinEdges)
        assert grid.full_shape == (1, 1, 1, 4)

    @pytest.mark.parametrize("kwargs", [
        {'n_phi_bins': 0}, {'phi_range': (360.0, 0.0)},
    ])
    def test_invalid_angular_binning(self, kwargs):
        with pytest.raises(ValueError):
            BinGrid.from_edges((1, 2), (0.1, 0.2), (0.1, 0.2), **kwargs)

    @given(phi=st.floats(min_value=0.0, max_value=360.0, exclude_max=True))
    def test_property_phi_bin_contains_angle(self, phi):
        grid = BinGrid.default()
        index = grid.locate_phi(phi)
        assume(index != OUT_OF_RANGE)
        lo, hi = grid.phi_edges[index], grid.phi_edges[index + 1]
        assert lo - 1e-9 <= phi < hi + 1e-9
