"""
Cross-Section Aggregator
========================

Streams events into a (Q², -t, x_B) grid of weighted φ histograms and
normalizes them into a differential yield dσ/dφ.

Lifecycle:
1. ``accumulate`` / ``accumulate_arrays`` / ``fill`` add weighted events
   (event weight × correction factor) to raw content and variance arrays
2. raw grids of independent aggregators are merged by element-wise addition
   (``merge``, ``accumulate_parallel``)
3. ``finalize(exposure)`` runs exactly once and returns a read-only grid

Out-of-range events are dropped silently and only counted.
"""

from __future__ import annotations

import time
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Iterable, Mapping, Optional, Sequence, Tuple

import numpy as np
from numba import njit

from .binning import BinGrid
from .core_framework import (
    AccumulationFinalizedEvent, AccumulationStateError, AnalysisContext,
    EventSourceProtocol, as_float_array, event_bus,
)
from .correction_lookup import CorrectionTable
from .histogram_core import AggregateGrid, check_same_binning

DEFAULT_COLUMNS: Tuple[str, str, str, str] = ("Q2", "t", "xB", "phi")


# ============================================================================
# ACCUMULATION KERNEL
# ============================================================================

@njit(cache=True)
def _fill_grid_kernel(ia: np.ndarray, ib: np.ndarray, ic: np.ndarray, iphi: np.ndarray,
                      weights: np.ndarray, content: np.ndarray,
                      variance: np.ndarray) -> Tuple[int, float]:
    """Add weights into the 4-D grid; entries with a negative index are skipped."""
    n_accepted = 0
    sum_w = 0.0
    for i in range(ia.shape[0]):
        if ia[i] < 0 or ib[i] < 0 or ic[i] < 0 or iphi[i] < 0:
            continue
        w = weights[i]
        content[ia[i], ib[i], ic[i], iphi[i]] += w
        variance[ia[i], ib[i], ic[i], iphi[i]] += w * w
        n_accepted += 1
        sum_w += w
    return n_accepted, sum_w


# ============================================================================
# AGGREGATOR
# ============================================================================

class Aggregator:
    """
    Accumulates weighted events into an AggregateGrid.

    The correction table, when given, is consulted for every accepted event
    and multiplies its weight. Each aggregator owns its raw arrays; parallel
    workers must each use their own aggregator and be merged before
    ``finalize``.
    """

    def __init__(self, grid: BinGrid,
                 correction: Optional[CorrectionTable] = None,
                 context: Optional[AnalysisContext] = None):
        self.grid = grid
        self.correction = correction
        self.context = context or AnalysisContext(verbose=False)
        self._raw = AggregateGrid.empty(grid)
        self._finalized = False
        self._result: Optional[AggregateGrid] = None

        # Diagnostics
        self.n_accepted = 0
        self.n_out_of_range = 0
        self.sum_weights = 0.0

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    @property
    def finalized(self) -> bool:
        return self._finalized

    @property
    def n_processed(self) -> int:
        return self.n_accepted + self.n_out_of_range

    @property
    def raw_grid(self) -> AggregateGrid:
        """Copy of the unnormalized accumulation."""
        return self._raw.copy()

    @property
    def result(self) -> Optional[AggregateGrid]:
        return self._result

    def _require_open(self, operation: str) -> None:
        if self._finalized:
            raise AccumulationStateError(f"Cannot {operation}: aggregator already finalized")

    # ------------------------------------------------------------------
    # Accumulation
    # ------------------------------------------------------------------

    def accumulate_arrays(self, q2, t, xb, phi, weights=None) -> int:
        """
        Accumulate column arrays of classifier values, angle and weight.

        Returns the number of accepted events.
        """
        self._require_open("accumulate")
        q2 = as_float_array(q2, "Q2")
        t = as_float_array(t, "t")
        xb = as_float_array(xb, "xB")
        phi = as_float_array(phi, "phi")
        n = len(q2)
        if not (len(t) == len(xb) == len(phi) == n):
            raise ValueError(f"Column length mismatch: {n}, {len(t)}, {len(xb)}, {len(phi)}")
        weights = np.ones(n) if weights is None else as_float_array(weights, "weights")
        if len(weights) != n:
            raise ValueError(f"Weight length {len(weights)} does not match {n} events")
        if n == 0:
            return 0

        ia, ib, ic, iphi = self.grid.classify(q2, t, xb, phi)
        if self.correction is not None:
            inside = (ia >= 0) & (ib >= 0) & (ic >= 0) & (iphi >= 0)
            factors = np.ones(n)
            if np.any(inside):
                factors[inside] = self.correction.lookup_array(q2[inside], t[inside],
                                                               xb[inside], phi[inside])
            weights = weights * factors

        n_accepted, sum_w = _fill_grid_kernel(ia, ib, ic, iphi, weights,
                                              self._raw.content, self._raw.variance)
        self.n_accepted += int(n_accepted)
        self.n_out_of_range += n - int(n_accepted)
        self.sum_weights += float(sum_w)
        return int(n_accepted)

    def fill(self, q2: float, t: float, xb: float, phi: float, weight: float = 1.0) -> bool:
        """Accumulate a single event; returns False when it was dropped."""
        return self.accumulate_arrays([q2], [t], [xb], [phi], [weight]) == 1

    def accumulate(self, events: Iterable[Sequence[float]], chunk_size: Optional[int] = None) -> int:
        """
        Accumulate a stream of ``(Q2, t, xB, phi[, weight])`` tuples.

        The stream is consumed in chunks so unbounded iterators are supported.
        """
        chunk_size = chunk_size or self.context.batch_size
        accepted = 0
        buffer = []
        for event in events:
            buffer.append(event)
            if len(buffer) >= chunk_size:
                accepted += self._accumulate_rows(buffer)
                buffer = []
        if buffer:
            accepted += self._accumulate_rows(buffer)
        return accepted

    def _accumulate_rows(self, rows) -> int:
        # rows without a weight field carry unit weight
        table = np.ones((len(rows), 5))
        for i, row in enumerate(rows):
            if len(row) not in (4, 5):
                raise ValueError(f"Events must be (Q2, t, xB, phi[, weight]) tuples, got {len(row)} fields")
            table[i, :len(row)] = row
        return self.accumulate_arrays(*table[:, :4].T, weights=table[:, 4])

    def accumulate_source(self, source: Any,
                          columns: Sequence[str] = DEFAULT_COLUMNS,
                          weight_column: Optional[str] = None) -> int:
        """
        Accumulate from an event source.

        Sources exposing ``iter_batches`` are read column-wise in batches;
        otherwise the per-row ``foreach`` callback is used.
        """
        self._require_open("accumulate")
        names = list(columns) + ([weight_column] if weight_column else [])
        if hasattr(source, 'iter_batches'):
            accepted = 0
            for batch in source.iter_batches(names, self.context.batch_size):
                weights = batch[weight_column] if weight_column else None
                accepted += self.accumulate_arrays(*(batch[c] for c in columns), weights=weights)
            return accepted

        counter = {'accepted': 0}

        def filler(*values):
            weight = values[4] if weight_column else 1.0
            counter['accepted'] += self.fill(*values[:4], weight=weight)

        source.foreach(filler, names)
        return counter['accepted']

    # ------------------------------------------------------------------
    # Reduction
    # ------------------------------------------------------------------

    def merge(self, other: 'Aggregator') -> 'Aggregator':
        """Add another aggregator's raw accumulation into this one."""
        self._require_open("merge")
        if other.finalized:
            raise AccumulationStateError("Cannot merge a finalized aggregator")
        self.merge_grid(other._raw)
        self.n_accepted += other.n_accepted
        self.n_out_of_range += other.n_out_of_range
        self.sum_weights += other.sum_weights
        return self

    def merge_grid(self, raw: AggregateGrid) -> None:
        """Add a raw (unnormalized) grid of identical binning."""
        self._require_open("merge")
        if raw.normalized:
            raise AccumulationStateError("Normalized grids are not additive; merge before finalize")
        check_same_binning(self.grid, raw.grid, "Aggregator.merge")
        self._raw.content += raw.content
        self._raw.variance += raw.variance

    def spawn(self) -> 'Aggregator':
        """Empty aggregator sharing grid, correction table and context."""
        return Aggregator(self.grid, self.correction, self.context)

    def accumulate_parallel(self, batches: Iterable[Any], max_workers: Optional[int] = None) -> int:
        """
        Fan-out/fan-in accumulation.

        Each batch (a ``(Q2, t, xB, phi[, weights])`` tuple of arrays or a
        mapping with ``Q2``/``t``/``xB``/``phi``/``weight`` keys) is
        accumulated by an independent aggregator; the raw grids are merged
        into this one.
        """
        self._require_open("accumulate")
        max_workers = max_workers or self.context.max_workers

        def work(batch) -> 'Aggregator':
            worker = self.spawn()
            if isinstance(batch, Mapping):
                worker.accumulate_arrays(*(batch[c] for c in DEFAULT_COLUMNS),
                                         weights=batch.get('weight'))
            else:
                worker.accumulate_arrays(*batch[:4], weights=batch[4] if len(batch) > 4 else None)
            return worker

        before = self.n_accepted
        with ThreadPoolExecutor(max_workers=max_workers) as executor:
            for worker in executor.map(work, batches):
                self.merge(worker)
        return self.n_accepted - before

    # ------------------------------------------------------------------
    # Normalisation
    # ------------------------------------------------------------------

    def finalize(self, exposure: float) -> AggregateGrid:
        """
        Normalize by ``exposure × Δφ``. Allowed exactly once; the raw
        accumulation stays available through ``raw_grid``.
        """
        self._require_open("finalize")
        result = self._raw.normalize(exposure)
        self._finalized = True
        self._result = result
        self._raw.content.setflags(write=False)
        self._raw.variance.setflags(write=False)

        self.context.report(
            f"📊 dσ/dφ grid {self.grid.shape} finalized: {self.n_accepted} events accepted, "
            f"{self.n_out_of_range} out of range"
        )
        event_bus.publish(AccumulationFinalizedEvent(
            n_accepted=self.n_accepted,
            n_out_of_range=self.n_out_of_range,
            exposure=float(exposure),
            grid_shape=self.grid.full_shape,
        ))
        return result


# ============================================================================
# CONVENIENCE
# ============================================================================

def compute_cross_section(source: EventSourceProtocol,
                          grid: BinGrid,
                          luminosity: float,
                          correction: Optional[CorrectionTable] = None,
                          columns: Sequence[str] = DEFAULT_COLUMNS,
                          weight_column: Optional[str] = None,
                          context: Optional[AnalysisContext] = None) -> AggregateGrid:
    """Single-pass dσ/dφ grid of an event source."""
    start = time.perf_counter()
    aggregator = Aggregator(grid, correction=correction, context=context)
    aggregator.accumulate_source(source, columns=columns, weight_column=weight_column)
    result = aggregator.finalize(luminosity)
    aggregator.context.report(f"   ⏱️  computed in {time.perf_counter() - start:.3f}s")
    return result


__all__ = ['Aggregator', 'compute_cross_section', 'DEFAULT_COLUMNS']
