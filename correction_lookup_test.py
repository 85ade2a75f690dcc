"""
Correction Lookup Tests
=======================
"""

import numpy as np
import pytest

from disana.core_framework import AnalysisContext
from disana.correction_lookup import CorrectionTable, DEFAULT_FACTOR, correction_factor
from disana.histogram_core import DerivedGrid


@pytest.fixture
def table(default_grid):
    factors = np.arange(np.prod(default_grid.full_shape), dtype=float).reshape(default_grid.full_shape)
    return CorrectionTable(default_grid.q2_edges.values, default_grid.t_edges.values,
                           default_grid.xb_edges.values, default_grid.phi_edges, factors)


class TestLookup:
    """Step-function lookup with default outside the axes."""

    def test_inside(self, table):
        assert table.lookup(1.5, 0.2, 0.15, 190.0) == table.factors[0, 0, 0, 9]
        assert table(5.0, 0.7, 0.5, 359.0) == table.factors[2, 2, 2, 17]

    @pytest.mark.parametrize("point", [
        (0.5, 0.2, 0.15, 10.0), (6.0, 0.2, 0.15, 10.0), (1.5, 1.0, 0.15, 10.0),
        (1.5, 0.2, 0.6, 10.0), (1.5, 0.2, 0.15, 360.0), (np.nan, 0.2, 0.15, 10.0),
    ])
    def test_outside_returns_default(self, table, point):
        assert table.lookup(*point) == DEFAULT_FACTOR

    def test_vectorised(self, table):
        q2 = np.array([1.5, 5.0, 7.0])
        t = np.array([0.2, 0.7, 0.2])
        xb = np.array([0.15, 0.5, 0.15])
        phi = np.array([190.0, 359.0, 10.0])
        result = table.lookup_array(q2, t, xb, phi)
        expected = [table.lookup(*p) for p in zip(q2, t, xb, phi)]
        np.testing.assert_array_equal(result, expected)

    def test_nan_factors_use_default(self, default_grid):
        factors = np.full(default_grid.full_shape, np.nan)
        factors[0, 0, 0, 0] = 0.5
        table = CorrectionTable(default_grid.q2_edges.values, default_grid.t_edges.values,
                                default_grid.xb_edges.values, default_grid.phi_edges, factors,
                                default=1.0)
        assert table.lookup(1.5, 0.2, 0.15, 10.0) == 0.5
        assert table.lookup(1.5, 0.2, 0.15, 30.0) == 1.0

    def test_shape_validation(self, default_grid):
        with pytest.raises(ValueError):
            CorrectionTable(default_grid.q2_edges.values, default_grid.t_edges.values,
                            default_grid.xb_edges.values, default_grid.phi_edges, np.ones((3, 3, 3)))

    def test_read_only(self, table):
        with pytest.raises(ValueError):
            table.factors[0, 0, 0, 0] = 2.0

    def test_optional_table(self, table):
        assert correction_factor(None, 1.5, 0.2, 0.15, 190.0) == 1.0
        assert correction_factor(table, 1.5, 0.2, 0.15, 190.0) == table.factors[0, 0, 0, 9]


class TestPersistence:
    """npz round trip and derivation from a correction grid."""

    def test_save_and_load(self, table, tmp_path):
        path = table.save(tmp_path / "corrections" / "pi0_corr")
        assert path.suffix == ".npz"
        loaded = CorrectionTable.load(path)
        np.testing.assert_array_equal(loaded.factors, table.factors)
        assert loaded.name == table.name
        assert loaded.lookup(3.0, 0.4, 0.3, 100.0) == table.lookup(3.0, 0.4, 0.3, 100.0)

    def test_load_reports_only_when_verbose(self, table, tmp_path, capsys):
        path = table.save(tmp_path / "pi0_corr.npz")
        CorrectionTable.load(path)
        CorrectionTable.load(path, context=AnalysisContext(verbose=False))
        assert capsys.readouterr().out == ""
        CorrectionTable.load(path, context=AnalysisContext(verbose=True))
        assert "Correction table loaded" in capsys.readouterr().out

    def test_load_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            CorrectionTable.load(tmp_path / "missing.npz")

    def test_load_incomplete_file(self, tmp_path):
        path = tmp_path / "broken.npz"
        np.savez(path, factors=np.ones((1, 1, 1, 1)))
        with pytest.raises(KeyError):
            CorrectionTable.load(path)

    def test_from_derived_grid(self, default_grid):
        values = np.full(default_grid.full_shape, 1.25)
        values[0, 0, 0, 3] = np.nan
        present = np.ones(default_grid.shape, dtype=bool)
        present[1, 1, 1] = False
        derived = DerivedGrid(default_grid, values, np.zeros(default_grid.full_shape), present,
                              kind="background_correction")
        table = CorrectionTable.from_derived_grid(derived)
        assert table.name == "h_background_correction"
        assert table.lookup(1.5, 0.2, 0.15, 10.0) == 1.25
        assert table.lookup(1.5, 0.2, 0.15, 70.0) == 1.0
        assert table.lookup(3.0, 0.4, 0.3, 10.0) == 1.0
