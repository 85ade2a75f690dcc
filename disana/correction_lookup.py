"""
Correction Lookup
=================

Four-dimensional step function (Q², -t, x_B, φ) returning a multiplicative
per-event weight. Points outside the table axes, and bins without a defined
factor, return the default factor 1.0.

Tables are read-only once built and may be shared across accumulation
workers without locking.
"""

from __future__ import annotations

from pathlib import Path
from typing import Optional, Sequence, Tuple, Union

import numpy as np

from .binning import BinEdges, locate, locate_array
from .core_framework import AnalysisContext, CLASSIFIER_NAMES, ANGLE_NAME, as_float_array
from .histogram_core import DerivedGrid

DEFAULT_FACTOR = 1.0

_AXIS_KEYS = ('q2_edges', 't_edges', 'xb_edges', 'phi_edges')


class CorrectionTable:
    """
    Dense 4-D correction factors on arbitrary axis edges.

    ``factors`` has shape ``(nQ2, nT, nXB, nPhi)`` matching the number of
    bins on each axis. NaN entries are treated as undefined and fall back to
    the default factor.
    """

    def __init__(self,
                 q2_edges: Sequence[float],
                 t_edges: Sequence[float],
                 xb_edges: Sequence[float],
                 phi_edges: Sequence[float],
                 factors: np.ndarray,
                 default: float = DEFAULT_FACTOR,
                 name: str = "h_correction"):
        names = CLASSIFIER_NAMES + (ANGLE_NAME,)
        self.axes: Tuple[BinEdges, ...] = tuple(
            BinEdges(tuple(edges), axis_name)
            for edges, axis_name in zip((q2_edges, t_edges, xb_edges, phi_edges), names)
        )
        expected = tuple(axis.n_bins for axis in self.axes)
        factors = np.array(factors, dtype=np.float64)
        if factors.shape != expected:
            raise ValueError(f"Correction factors must have shape {expected}, got {factors.shape}")
        self.default = float(default)
        self.name = name
        self._factors = np.where(np.isnan(factors), self.default, factors)
        self._factors.setflags(write=False)
        self._edges = tuple(axis.array for axis in self.axes)

    @property
    def factors(self) -> np.ndarray:
        return self._factors

    @property
    def shape(self) -> Tuple[int, ...]:
        return self._factors.shape

    # ------------------------------------------------------------------
    # Lookup
    # ------------------------------------------------------------------

    def lookup(self, q2: float, t: float, xb: float, phi: float) -> float:
        """Correction factor at one point; default outside the table."""
        index = tuple(locate(value, edges)
                      for value, edges in zip((q2, t, xb, phi), self._edges))
        if any(i < 0 for i in index):
            return self.default
        return float(self._factors[index])

    def __call__(self, q2: float, t: float, xb: float, phi: float) -> float:
        return self.lookup(q2, t, xb, phi)

    def lookup_array(self, q2: np.ndarray, t: np.ndarray, xb: np.ndarray,
                     phi: np.ndarray) -> np.ndarray:
        """Vectorised lookup over event arrays."""
        indices = [locate_array(as_float_array(values), edges)
                   for values, edges in zip((q2, t, xb, phi), self._edges)]
        inside = np.logical_and.reduce([i >= 0 for i in indices])
        result = np.full(len(indices[0]), self.default)
        if np.any(inside):
            result[inside] = self._factors[tuple(i[inside] for i in indices)]
        return result

    # ------------------------------------------------------------------
    # Construction and persistence
    # ------------------------------------------------------------------

    @classmethod
    def from_derived_grid(cls, derived: DerivedGrid, default: float = DEFAULT_FACTOR,
                          name: Optional[str] = None) -> 'CorrectionTable':
        """Correction table from a correction-ratio grid; undefined bins use the default."""
        grid = derived.grid
        factors = np.where(derived.present[..., np.newaxis], derived.values, np.nan)
        return cls(grid.q2_edges.values, grid.t_edges.values, grid.xb_edges.values,
                   grid.phi_edges, factors, default=default,
                   name=name or f"h_{derived.kind}")

    def save(self, path: Union[str, Path]) -> Path:
        """Write axes and factors to a compressed ``.npz`` file."""
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        arrays = {key: edges for key, edges in zip(_AXIS_KEYS, self._edges)}
        np.savez_compressed(path, factors=self._factors, default=np.float64(self.default),
                            name=np.array(self.name), **arrays)
        # numpy appends the suffix when missing
        return path if path.suffix == '.npz' else path.with_name(path.name + '.npz')

    @classmethod
    def load(cls, path: Union[str, Path],
             context: Optional[AnalysisContext] = None) -> 'CorrectionTable':
        path = Path(path)
        if not path.exists():
            raise FileNotFoundError(f"Cannot open correction file: {path}")
        with np.load(path, allow_pickle=False) as data:
            missing = [key for key in _AXIS_KEYS + ('factors',) if key not in data.files]
            if missing:
                raise KeyError(f"Correction file {path} lacks arrays: {missing}")
            default = float(data['default']) if 'default' in data.files else DEFAULT_FACTOR
            name = str(data['name']) if 'name' in data.files else "h_correction"
            table = cls(*(data[key] for key in _AXIS_KEYS), data['factors'],
                        default=default, name=name)
        context = context or AnalysisContext(verbose=False)
        context.report(f"✅ Correction table loaded: {table.name} {table.shape}")
        return table

    def __repr__(self) -> str:
        return f"CorrectionTable(name={self.name!r}, shape={self.shape}, default={self.default})"


def correction_factor(table: Optional[CorrectionTable], q2: float, t: float,
                      xb: float, phi: float) -> float:
    """Factor from an optional table, 1.0 when no table is supplied."""
    if table is None:
        return DEFAULT_FACTOR
    return table.lookup(q2, t, xb, phi)


__all__ = ['CorrectionTable', 'correction_factor', 'DEFAULT_FACTOR']
