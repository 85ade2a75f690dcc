"""
Bin Edges and Bin Grid
======================

Three independent classifier axes (Q², -t, x_B) plus a fixed-width azimuthal
sub-binning. Bins are half-open ``[edges[i], edges[i+1])``; values below the
first edge or at/above the last edge are out of range and never clamped.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Iterator, Optional, Sequence, Tuple

import numpy as np

from .core_framework import AnalysisContext, CLASSIFIER_NAMES, as_float_array

OUT_OF_RANGE = -1

DEFAULT_Q2_EDGES = (1.0, 2.0, 4.0, 6.0)
DEFAULT_T_EDGES = (0.1, 0.3, 0.6, 1.0)
DEFAULT_XB_EDGES = (0.1, 0.2, 0.4, 0.6)


@dataclass(frozen=True)
class BinEdges:
    """Strictly increasing bin edges, immutable after construction."""
    values: Tuple[float, ...]
    name: str = ""

    def __post_init__(self):
        values = tuple(float(v) for v in self.values)
        if len(values) < 2:
            raise ValueError(f"Bin edges for '{self.name}' need at least 2 values, got {len(values)}")
        if not all(np.isfinite(values)):
            raise ValueError(f"Bin edges for '{self.name}' must be finite")
        if any(b <= a for a, b in zip(values, values[1:])):
            raise ValueError(f"Bin edges for '{self.name}' must be strictly increasing: {values}")
        object.__setattr__(self, 'values', values)

    @property
    def n_bins(self) -> int:
        return len(self.values) - 1

    @property
    def array(self) -> np.ndarray:
        return np.asarray(self.values, dtype=np.float64)

    @property
    def low(self) -> float:
        return self.values[0]

    @property
    def high(self) -> float:
        return self.values[-1]

    def bounds(self, index: int) -> Tuple[float, float]:
        """Lower and upper edge of bin ``index``."""
        return self.values[index], self.values[index + 1]

    def locate(self, value: float) -> int:
        return locate(value, self.values)

    def __len__(self) -> int:
        return len(self.values)


def locate(value: float, edges: Sequence[float]) -> int:
    """
    Return the bin index ``i`` with ``edges[i] <= value < edges[i+1]``.

    Returns ``OUT_OF_RANGE`` (-1) below the first edge, at or above the last
    edge, and for NaN.
    """
    arr = np.asarray(edges, dtype=np.float64)
    # upper-bound search: first edge strictly greater than value
    pos = int(np.searchsorted(arr, value, side='right'))
    if pos == 0 or pos == len(arr):
        return OUT_OF_RANGE
    return pos - 1


def locate_array(values: np.ndarray, edges: Sequence[float]) -> np.ndarray:
    """Vectorised ``locate``; out-of-range entries (and NaN) map to -1."""
    arr = np.asarray(edges, dtype=np.float64)
    vals = as_float_array(values, "values")
    pos = np.searchsorted(arr, vals, side='right')
    index = pos.astype(np.int64) - 1
    index[(pos == 0) | (pos == len(arr))] = OUT_OF_RANGE
    return index


@dataclass(frozen=True)
class BinGrid:
    """
    Classifier bin grid shared by every aggregator of one analysis
    configuration.

    Axis A is Q², axis B is -t and axis C is x_B. The azimuthal range is
    divided into ``n_phi_bins`` equal bins.
    """
    q2_edges: BinEdges
    t_edges: BinEdges
    xb_edges: BinEdges
    n_phi_bins: int = 18
    phi_range: Tuple[float, float] = (0.0, 360.0)
    _phi_edges: np.ndarray = field(init=False, repr=False, compare=False)

    def __post_init__(self):
        for attr, name in zip(('q2_edges', 't_edges', 'xb_edges'), CLASSIFIER_NAMES):
            edges = getattr(self, attr)
            if not isinstance(edges, BinEdges):
                object.__setattr__(self, attr, BinEdges(tuple(edges), name))
        if int(self.n_phi_bins) < 1:
            raise ValueError(f"Invalid number of phi bins: {self.n_phi_bins}")
        lo, hi = (float(v) for v in self.phi_range)
        if not hi > lo:
            raise ValueError(f"Invalid phi range: {self.phi_range}")
        object.__setattr__(self, 'n_phi_bins', int(self.n_phi_bins))
        object.__setattr__(self, 'phi_range', (lo, hi))
        phi_edges = np.linspace(lo, hi, self.n_phi_bins + 1)
        phi_edges.setflags(write=False)
        object.__setattr__(self, '_phi_edges', phi_edges)

    @classmethod
    def from_edges(cls,
                   q2_edges: Sequence[float],
                   t_edges: Sequence[float],
                   xb_edges: Sequence[float],
                   n_phi_bins: int = 18,
                   phi_range: Tuple[float, float] = (0.0, 360.0)) -> 'BinGrid':
        return cls(BinEdges(tuple(q2_edges), "Q2"),
                   BinEdges(tuple(t_edges), "t"),
                   BinEdges(tuple(xb_edges), "xB"),
                   n_phi_bins=n_phi_bins,
                   phi_range=phi_range)

    @classmethod
    def default(cls, n_phi_bins: int = 18) -> 'BinGrid':
        """Standard analysis binning in Q², -t and x_B."""
        return cls.from_edges(DEFAULT_Q2_EDGES, DEFAULT_T_EDGES, DEFAULT_XB_EDGES,
                              n_phi_bins=n_phi_bins)

    @classmethod
    def from_context(cls,
                     context: AnalysisContext,
                     q2_edges: Sequence[float] = DEFAULT_Q2_EDGES,
                     t_edges: Sequence[float] = DEFAULT_T_EDGES,
                     xb_edges: Sequence[float] = DEFAULT_XB_EDGES) -> 'BinGrid':
        return cls.from_edges(q2_edges, t_edges, xb_edges,
                              n_phi_bins=context.n_phi_bins,
                              phi_range=context.phi_range)

    # ------------------------------------------------------------------
    # Shape
    # ------------------------------------------------------------------

    @property
    def axes(self) -> Tuple[BinEdges, BinEdges, BinEdges]:
        return self.q2_edges, self.t_edges, self.xb_edges

    @property
    def shape(self) -> Tuple[int, int, int]:
        """Classifier grid shape ``(nA-1, nB-1, nC-1)``."""
        return self.q2_edges.n_bins, self.t_edges.n_bins, self.xb_edges.n_bins

    @property
    def full_shape(self) -> Tuple[int, int, int, int]:
        return self.shape + (self.n_phi_bins,)

    @property
    def n_cells(self) -> int:
        a, b, c = self.shape
        return a * b * c

    @property
    def phi_edges(self) -> np.ndarray:
        return self._phi_edges

    @property
    def phi_bin_width(self) -> float:
        lo, hi = self.phi_range
        return (hi - lo) / self.n_phi_bins

    @property
    def phi_centers(self) -> np.ndarray:
        return 0.5 * (self._phi_edges[:-1] + self._phi_edges[1:])

    def cells(self) -> Iterator[Tuple[int, int, int]]:
        """Iterate classifier cell indices in C order."""
        return iter(np.ndindex(*self.shape))

    # ------------------------------------------------------------------
    # Classification
    # ------------------------------------------------------------------

    def locate_cell(self, q2: float, t: float, xb: float) -> Optional[Tuple[int, int, int]]:
        """Cell index of a classifier triple, or None when any axis is out of range."""
        ia = self.q2_edges.locate(q2)
        ib = self.t_edges.locate(t)
        ic = self.xb_edges.locate(xb)
        if ia < 0 or ib < 0 or ic < 0:
            return None
        return ia, ib, ic

    def locate_phi(self, phi: float) -> int:
        lo, hi = self.phi_range
        if not lo <= phi < hi:
            return OUT_OF_RANGE
        index = int((phi - lo) / self.phi_bin_width)
        # guards rounding at the upper edge
        return min(index, self.n_phi_bins - 1)

    def locate_phi_array(self, phi: np.ndarray) -> np.ndarray:
        lo, hi = self.phi_range
        vals = as_float_array(phi, "phi")
        inside = (vals >= lo) & (vals < hi)
        index = np.full(vals.shape, OUT_OF_RANGE, dtype=np.int64)
        index[inside] = np.minimum(
            ((vals[inside] - lo) / self.phi_bin_width).astype(np.int64),
            self.n_phi_bins - 1,
        )
        return index

    def classify(self,
                 q2: np.ndarray,
                 t: np.ndarray,
                 xb: np.ndarray,
                 phi: np.ndarray) -> Tuple[np.ndarray, np.ndarray, np.ndarray, np.ndarray]:
        """Vectorised classification of events into (A, B, C, phi) indices."""
        return (locate_array(q2, self.q2_edges.values),
                locate_array(t, self.t_edges.values),
                locate_array(xb, self.xb_edges.values),
                self.locate_phi_array(phi))

    # ------------------------------------------------------------------
    # Compatibility and naming
    # ------------------------------------------------------------------

    def same_binning(self, other: 'BinGrid') -> bool:
        return (self.q2_edges.values == other.q2_edges.values
                and self.t_edges.values == other.t_edges.values
                and self.xb_edges.values == other.xb_edges.values
                and self.n_phi_bins == other.n_phi_bins
                and self.phi_range == other.phi_range)

    def cell_name(self, ia: int, ib: int, ic: int) -> str:
        """Histogram name for a cell, e.g. ``hphi_q1.0_t0.1_xb0.10``."""
        q2_lo, _ = self.q2_edges.bounds(ia)
        t_lo, _ = self.t_edges.bounds(ib)
        xb_lo, _ = self.xb_edges.bounds(ic)
        return f"hphi_q{q2_lo:.1f}_t{t_lo:.1f}_xb{xb_lo:.2f}"

    def cell_title(self, ia: int, ib: int, ic: int) -> str:
        q2_lo, q2_hi = self.q2_edges.bounds(ia)
        t_lo, t_hi = self.t_edges.bounds(ib)
        xb_lo, xb_hi = self.xb_edges.bounds(ic)
        return (f"dsigma/dphi (Q2=[{q2_lo:.1f},{q2_hi:.1f}], "
                f"t=[{t_lo:.1f},{t_hi:.1f}], xB=[{xb_lo:.2f},{xb_hi:.2f}])")


__all__ = [
    'OUT_OF_RANGE', 'BinEdges', 'BinGrid', 'locate', 'locate_array',
    'DEFAULT_Q2_EDGES', 'DEFAULT_T_EDGES', 'DEFAULT_XB_EDGES',
]
