"""
Histogram Core Types
====================

Value types exchanged between the aggregation layer and the derived-quantity
engines:

- ``WeightedHistogram1D``: angular histogram with per-bin content and
  variance (sum of squared weights)
- ``AggregateGrid``: dense (Q², -t, x_B, φ) content/variance arrays with a
  per-cell presence mask
- ``DerivedHistogram1D`` / ``DerivedGrid``: (value, uncertainty) results of
  asymmetry and correction-ratio combinations

Grids handed to downstream consumers are read-only.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Iterator, List, Optional, Sequence, Tuple

import numpy as np

from .binning import BinGrid, OUT_OF_RANGE, locate
from .core_framework import (
    AccumulationStateError, CLASSIFIER_NAMES, ANGLE_NAME, GridShapeMismatchError,
)

Cell = Tuple[int, int, int]


# ============================================================================
# SHAPE CHECKS
# ============================================================================

def _axis_signature(grid: BinGrid) -> List[Tuple[str, Tuple]]:
    return [
        (CLASSIFIER_NAMES[0], grid.q2_edges.values),
        (CLASSIFIER_NAMES[1], grid.t_edges.values),
        (CLASSIFIER_NAMES[2], grid.xb_edges.values),
        (ANGLE_NAME, (grid.n_phi_bins,) + tuple(grid.phi_range)),
    ]


def check_same_binning(reference: BinGrid, other: BinGrid, stage: str) -> None:
    """Raise GridShapeMismatchError listing every dimension that differs."""
    mismatches = [
        (name, expected, actual)
        for (name, expected), (_, actual) in zip(_axis_signature(reference), _axis_signature(other))
        if expected != actual
    ]
    if mismatches:
        dimension, expected, actual = mismatches[0]
        raise GridShapeMismatchError(dimension, stage, expected, actual, mismatches)


# ============================================================================
# WEIGHTED 1-D HISTOGRAM
# ============================================================================

@dataclass
class WeightedHistogram1D:
    """Angular histogram with content and sum-of-squared-weight variance."""
    edges: np.ndarray
    content: np.ndarray = None
    variance: np.ndarray = None
    name: str = ""
    title: str = ""

    def __post_init__(self):
        self.edges = np.asarray(self.edges, dtype=np.float64)
        if self.edges.ndim != 1 or len(self.edges) < 2 or np.any(np.diff(self.edges) <= 0):
            raise ValueError("Histogram edges must be a strictly increasing sequence of >= 2 values")
        n = len(self.edges) - 1
        self.content = (np.zeros(n) if self.content is None
                        else np.array(self.content, dtype=np.float64))
        self.variance = (np.zeros(n) if self.variance is None
                         else np.array(self.variance, dtype=np.float64))
        if self.content.shape != (n,) or self.variance.shape != (n,):
            raise ValueError(f"Content/variance must have {n} bins")
        if np.any(self.variance < 0):
            raise ValueError("Variance must be non-negative")

    @classmethod
    def uniform(cls, n_bins: int, low: float, high: float, **kwargs) -> 'WeightedHistogram1D':
        return cls(np.linspace(low, high, n_bins + 1), **kwargs)

    @classmethod
    def for_grid(cls, grid: BinGrid, **kwargs) -> 'WeightedHistogram1D':
        return cls(grid.phi_edges.copy(), **kwargs)

    @property
    def n_bins(self) -> int:
        return len(self.content)

    @property
    def bin_width(self) -> float:
        return float(self.edges[1] - self.edges[0])

    @property
    def centers(self) -> np.ndarray:
        return 0.5 * (self.edges[:-1] + self.edges[1:])

    @property
    def errors(self) -> np.ndarray:
        return np.sqrt(self.variance)

    def find_bin(self, value: float) -> int:
        return locate(value, self.edges)

    def fill(self, value: float, weight: float = 1.0) -> bool:
        """Add ``weight`` at ``value``; returns False when out of range."""
        index = self.find_bin(value)
        if index == OUT_OF_RANGE:
            return False
        self.content[index] += weight
        self.variance[index] += weight * weight
        return True

    def scale(self, factor: float) -> 'WeightedHistogram1D':
        """Scale content by ``factor`` (errors scale with |factor|) in place."""
        self.content *= factor
        self.variance *= factor * factor
        return self

    def integral(self) -> float:
        return float(self.content.sum())

    def copy(self) -> 'WeightedHistogram1D':
        return WeightedHistogram1D(self.edges.copy(), self.content.copy(),
                                   self.variance.copy(), self.name, self.title)

    def _check_compatible(self, other: 'WeightedHistogram1D') -> None:
        if self.edges.shape != other.edges.shape or not np.array_equal(self.edges, other.edges):
            raise GridShapeMismatchError(ANGLE_NAME, "histogram addition",
                                         len(self.edges) - 1, len(other.edges) - 1)

    def __iadd__(self, other: 'WeightedHistogram1D') -> 'WeightedHistogram1D':
        self._check_compatible(other)
        self.content += other.content
        self.variance += other.variance
        return self

    def __add__(self, other: 'WeightedHistogram1D') -> 'WeightedHistogram1D':
        result = self.copy()
        result += other
        return result


# ============================================================================
# AGGREGATE GRID
# ============================================================================

@dataclass
class AggregateGrid:
    """
    Dense grid of angular histograms indexed by (Q², -t, x_B) cell.

    ``content`` and ``variance`` have shape ``grid.full_shape``. ``present``
    flags the cells that hold a histogram; absent cells are skipped by the
    combination engines. Once ``normalized`` the grid is read-only.
    """
    grid: BinGrid
    content: np.ndarray = None
    variance: np.ndarray = None
    present: np.ndarray = None
    normalized: bool = False
    exposure: Optional[float] = None

    def __post_init__(self):
        shape = self.grid.full_shape
        self.content = (np.zeros(shape) if self.content is None
                        else np.array(self.content, dtype=np.float64))
        self.variance = (np.zeros(shape) if self.variance is None
                         else np.array(self.variance, dtype=np.float64))
        self.present = (np.ones(self.grid.shape, dtype=bool) if self.present is None
                        else np.array(self.present, dtype=bool))
        if self.content.shape != shape or self.variance.shape != shape:
            raise ValueError(f"Content/variance must have shape {shape}, "
                             f"got {self.content.shape} and {self.variance.shape}")
        if self.present.shape != self.grid.shape:
            raise ValueError(f"Presence mask must have shape {self.grid.shape}")
        if self.normalized:
            self._freeze()

    @classmethod
    def empty(cls, grid: BinGrid) -> 'AggregateGrid':
        return cls(grid)

    @classmethod
    def from_histograms(cls, grid: BinGrid, histograms: Sequence, normalized: bool = False,
                        exposure: Optional[float] = None) -> 'AggregateGrid':
        """
        Build from a nested ``[A][B][C]`` structure of histograms.

        ``None`` entries mark absent cells.
        """
        result = cls(grid, present=np.zeros(grid.shape, dtype=bool))
        n_a, n_b, n_c = grid.shape
        if len(histograms) != n_a:
            raise GridShapeMismatchError(CLASSIFIER_NAMES[0], "from_histograms", n_a, len(histograms))
        for ia in range(n_a):
            if len(histograms[ia]) != n_b:
                raise GridShapeMismatchError(CLASSIFIER_NAMES[1], "from_histograms",
                                             n_b, len(histograms[ia]))
            for ib in range(n_b):
                if len(histograms[ia][ib]) != n_c:
                    raise GridShapeMismatchError(CLASSIFIER_NAMES[2], "from_histograms",
                                                 n_c, len(histograms[ia][ib]))
                for ic in range(n_c):
                    hist = histograms[ia][ib][ic]
                    if hist is None:
                        continue
                    if hist.n_bins != grid.n_phi_bins:
                        raise GridShapeMismatchError(ANGLE_NAME, "from_histograms",
                                                     grid.n_phi_bins, hist.n_bins)
                    if not np.array_equal(hist.edges, grid.phi_edges):
                        raise GridShapeMismatchError(ANGLE_NAME, "from_histograms",
                                                     tuple(grid.phi_range),
                                                     (float(hist.edges[0]), float(hist.edges[-1])))
                    result.content[ia, ib, ic] = hist.content
                    result.variance[ia, ib, ic] = hist.variance
                    result.present[ia, ib, ic] = True
        result.normalized = normalized
        result.exposure = exposure
        if normalized:
            result._freeze()
        return result

    def _freeze(self) -> None:
        for arr in (self.content, self.variance, self.present):
            arr.setflags(write=False)

    # ------------------------------------------------------------------
    # Access
    # ------------------------------------------------------------------

    @property
    def shape(self) -> Tuple[int, int, int]:
        return self.grid.shape

    @property
    def errors(self) -> np.ndarray:
        return np.sqrt(self.variance)

    @property
    def n_present(self) -> int:
        return int(self.present.sum())

    def cells(self) -> Iterator[Cell]:
        return self.grid.cells()

    def histogram(self, ia: int, ib: int, ic: int) -> Optional[WeightedHistogram1D]:
        """Copy of one cell's histogram, or None when the cell is absent."""
        if not self.present[ia, ib, ic]:
            return None
        return WeightedHistogram1D(self.grid.phi_edges.copy(),
                                   self.content[ia, ib, ic].copy(),
                                   self.variance[ia, ib, ic].copy(),
                                   name=self.grid.cell_name(ia, ib, ic),
                                   title=self.grid.cell_title(ia, ib, ic))

    def to_nested(self) -> List[List[List[Optional[WeightedHistogram1D]]]]:
        n_a, n_b, n_c = self.shape
        return [[[self.histogram(ia, ib, ic) for ic in range(n_c)]
                 for ib in range(n_b)] for ia in range(n_a)]

    def copy(self) -> 'AggregateGrid':
        return AggregateGrid(self.grid, self.content.copy(), self.variance.copy(),
                             self.present.copy(), self.normalized, self.exposure)

    # ------------------------------------------------------------------
    # Reduction and normalisation
    # ------------------------------------------------------------------

    def merge(self, other: 'AggregateGrid') -> 'AggregateGrid':
        """Element-wise sum of two raw grids; normalized grids are not additive."""
        if self.normalized or other.normalized:
            raise AccumulationStateError("Normalized grids cannot be merged; merge raw grids before finalize")
        check_same_binning(self.grid, other.grid, "merge")
        return AggregateGrid(self.grid,
                             self.content + other.content,
                             self.variance + other.variance,
                             self.present | other.present)

    def __add__(self, other: 'AggregateGrid') -> 'AggregateGrid':
        return self.merge(other)

    def normalize(self, exposure: float) -> 'AggregateGrid':
        """
        New read-only grid with content / (exposure · Δφ) and uncertainty
        sqrt(variance) / (exposure · Δφ). Empty bins stay 0 ± 0.
        """
        if self.normalized:
            raise AccumulationStateError("Grid is already normalized")
        if not np.isfinite(exposure) or exposure <= 0:
            raise ValueError(f"Exposure must be positive and finite, got {exposure}")
        norm = exposure * self.grid.phi_bin_width
        return AggregateGrid(self.grid,
                             self.content / norm,
                             self.variance / (norm * norm),
                             self.present.copy(),
                             normalized=True,
                             exposure=float(exposure))


# ============================================================================
# DERIVED QUANTITIES
# ============================================================================

@dataclass(frozen=True)
class DerivedHistogram1D:
    """(value, uncertainty) per angular bin."""
    edges: np.ndarray
    values: np.ndarray
    uncertainties: np.ndarray
    name: str = ""

    @property
    def centers(self) -> np.ndarray:
        return 0.5 * (self.edges[:-1] + self.edges[1:])

    @property
    def undefined(self) -> np.ndarray:
        return np.isnan(self.values)


@dataclass
class DerivedGrid:
    """
    Result of combining aggregate grids bin-by-bin.

    Bins where the quantity cannot be defined hold NaN; absent (skipped)
    cells hold NaN and are flagged False in ``present``.
    """
    grid: BinGrid
    values: np.ndarray
    uncertainties: np.ndarray
    present: np.ndarray
    kind: str
    skipped_cells: List[Cell] = field(default_factory=list)

    def __post_init__(self):
        for arr in (self.values, self.uncertainties, self.present):
            arr.setflags(write=False)

    @property
    def shape(self) -> Tuple[int, int, int]:
        return self.grid.shape

    @property
    def n_skipped_cells(self) -> int:
        return len(self.skipped_cells)

    @property
    def undefined_mask(self) -> np.ndarray:
        """True for bins of present cells whose value is undefined."""
        return self.present[..., np.newaxis] & np.isnan(self.values)

    @property
    def n_undefined_bins(self) -> int:
        return int(self.undefined_mask.sum())

    def cells(self) -> Iterator[Cell]:
        return self.grid.cells()

    def histogram(self, ia: int, ib: int, ic: int) -> Optional[DerivedHistogram1D]:
        if not self.present[ia, ib, ic]:
            return None
        suffix = "_BSA" if self.kind == "asymmetry" else f"_{self.kind}"
        return DerivedHistogram1D(self.grid.phi_edges.copy(),
                                  self.values[ia, ib, ic].copy(),
                                  self.uncertainties[ia, ib, ic].copy(),
                                  name=self.grid.cell_name(ia, ib, ic) + suffix)


__all__ = [
    'WeightedHistogram1D', 'AggregateGrid', 'DerivedHistogram1D', 'DerivedGrid',
    'check_same_binning',
]
