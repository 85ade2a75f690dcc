"""
Event Source Layer
==================

Tabular event access for the aggregation layer, backed by polars lazy
frames. Provides the three operations the analysis needs from an event
table (filter, per-row callback, column mean) plus bulk column extraction
used by the vectorised accumulation path.

Key features:
1. Lazy ingestion from polars, pandas, arrow, dicts of arrays and parquet
2. Filters given as polars expressions or detector-style cut strings
3. Batched numpy extraction for the accumulation kernel
4. Kinematic column definition from reconstructed particle columns
"""

from __future__ import annotations

import time
from pathlib import Path
from typing import Any, Callable, Dict, Iterator, Mapping, Optional, Sequence, Tuple, Union

import numpy as np
import pandas as pd
import polars as pl
import pyarrow as pa

from .binning import BinGrid
from .core_framework import AnalysisContext, CLASSIFIER_NAMES
from .kinematics_engine import KinematicsEngine
from .selection_queries import convert_cut_expression

Predicate = Union[str, pl.Expr]

# Reconstructed particle column prefixes: (p, theta, phi) per particle
PARTICLE_PREFIXES = {'electron': 'recel', 'proton': 'recpro', 'photon': 'recpho'}


def particle_columns(prefix: str) -> Tuple[str, str, str]:
    return f"{prefix}_p", f"{prefix}_theta", f"{prefix}_phi"


class PolarsEventSource:
    """
    Event source over a polars LazyFrame.

    Sources are immutable: ``filter`` and ``with_columns`` return new
    sources sharing the underlying lazy plan.
    """

    def __init__(self, frame: Union[pl.LazyFrame, pl.DataFrame], name: str = "events"):
        self._lf = frame.lazy() if isinstance(frame, pl.DataFrame) else frame
        self.name = name

    # ------------------------------------------------------------------
    # Construction
    # ------------------------------------------------------------------

    @classmethod
    def from_frame(cls, data: Any, name: str = "events") -> 'PolarsEventSource':
        """From a polars/pandas frame, arrow table or mapping of column arrays."""
        if isinstance(data, (pl.DataFrame, pl.LazyFrame)):
            return cls(data, name)
        if isinstance(data, pd.DataFrame):
            return cls(pl.from_pandas(data), name)
        if isinstance(data, pa.Table):
            return cls.from_arrow(data, name)
        if isinstance(data, Mapping):
            return cls(pl.DataFrame({key: np.asarray(values) for key, values in data.items()}), name)
        raise TypeError(f"Unsupported event container: {type(data).__name__}")

    @classmethod
    def from_arrow(cls, table: pa.Table, name: str = "events") -> 'PolarsEventSource':
        return cls(pl.from_arrow(table), name)

    @classmethod
    def from_parquet(cls, path: Union[str, Path], name: Optional[str] = None) -> 'PolarsEventSource':
        """Scan one parquet file or a glob pattern of files."""
        path = str(path)
        if '*' in path:
            files = sorted(Path(path).parent.glob(Path(path).name))
        else:
            files = [Path(path)]
        files = [f for f in files if f.exists()]
        if not files:
            raise FileNotFoundError(f"No parquet files found for: {path}")
        frames = [pl.scan_parquet(str(f)) for f in files]
        lf = frames[0] if len(frames) == 1 else pl.concat(frames)
        return cls(lf, name or Path(files[0]).stem)

    # ------------------------------------------------------------------
    # Schema
    # ------------------------------------------------------------------

    @property
    def lazy(self) -> pl.LazyFrame:
        return self._lf

    @property
    def columns(self) -> list:
        return self._lf.collect_schema().names()

    def has_column(self, column: str) -> bool:
        return column in self.columns

    def _require(self, columns: Sequence[str]) -> None:
        missing = [c for c in columns if c not in self.columns]
        if missing:
            raise KeyError(f"Event source '{self.name}' lacks columns: {missing}")

    # ------------------------------------------------------------------
    # Event source operations
    # ------------------------------------------------------------------

    def filter(self, predicate: Predicate) -> 'PolarsEventSource':
        """Rows satisfying a polars expression or a cut string."""
        expr = convert_cut_expression(predicate) if isinstance(predicate, str) else predicate
        return PolarsEventSource(self._lf.filter(expr), self.name)

    def with_columns(self, columns: Mapping[str, Any]) -> 'PolarsEventSource':
        """Append columns given as polars expressions or materialized arrays."""
        exprs = [value.alias(key) if isinstance(value, pl.Expr) else None
                 for key, value in columns.items()]
        if all(e is not None for e in exprs):
            return PolarsEventSource(self._lf.with_columns(exprs), self.name)
        df = self._lf.collect()
        series = [pl.Series(key, value) if not isinstance(value, pl.Expr) else value.alias(key)
                  for key, value in columns.items()]
        return PolarsEventSource(df.with_columns(series), self.name)

    def count(self) -> int:
        return int(self._lf.select(pl.len()).collect().item())

    def mean(self, column: str) -> float:
        """Column mean; NaN when no rows remain."""
        self._require([column])
        value = self._lf.select(pl.col(column).cast(pl.Float64).mean()).collect().item()
        return float('nan') if value is None else float(value)

    def iter_batches(self, columns: Sequence[str], batch_size: int = 1_000_000) -> Iterator[Dict[str, np.ndarray]]:
        """Yield ``{column: float64 array}`` batches of at most ``batch_size`` rows."""
        columns = list(columns)
        self._require(columns)
        df = self._lf.select([pl.col(c).cast(pl.Float64) for c in columns]).collect()
        for chunk in df.iter_slices(n_rows=int(batch_size)):
            yield {c: chunk[c].to_numpy() for c in columns}

    def to_numpy(self, columns: Sequence[str]) -> Dict[str, np.ndarray]:
        columns = list(columns)
        self._require(columns)
        df = self._lf.select([pl.col(c).cast(pl.Float64) for c in columns]).collect()
        return {c: df[c].to_numpy() for c in columns}

    def foreach(self, callback: Callable[..., None], columns: Sequence[str]) -> int:
        """Invoke ``callback(*values)`` once per row; returns the row count."""
        n_rows = 0
        for batch in self.iter_batches(columns):
            for row in zip(*(batch[c] for c in columns)):
                callback(*(float(v) for v in row))
                n_rows += 1
        return n_rows

    def collect(self) -> pl.DataFrame:
        return self._lf.collect()

    def to_pandas(self) -> pd.DataFrame:
        return self.collect().to_pandas()

    def __repr__(self) -> str:
        return f"PolarsEventSource(name={self.name!r})"


# ============================================================================
# ANALYSIS HELPERS
# ============================================================================

def define_kinematics(source: PolarsEventSource,
                      beam_energy: Optional[float] = None,
                      context: Optional[AnalysisContext] = None,
                      prefixes: Mapping[str, str] = PARTICLE_PREFIXES) -> PolarsEventSource:
    """
    Append the kinematic columns computed from reconstructed electron,
    proton and photon ``(p, theta, phi)`` columns (angles in radians).
    """
    context = context or AnalysisContext(verbose=False)
    beam_energy = context.beam_energy if beam_energy is None else beam_energy
    engine = KinematicsEngine(context)

    names = {particle: particle_columns(prefix) for particle, prefix in prefixes.items()}
    required = [c for cols in names.values() for c in cols]
    start = time.perf_counter()
    arrays = source.to_numpy(required)

    def triple(particle):
        return tuple(arrays[c] for c in names[particle])

    columns = engine.compute_arrays(beam_energy, triple('electron'), triple('proton'), triple('photon'))
    result = source.with_columns(columns)
    context.report(f"✅ Defined {len(columns)} kinematic columns for "
                   f"{len(arrays[required[0]]):,} events in {time.perf_counter() - start:.2f}s")
    return result


def cell_predicate(grid: BinGrid, ia: int, ib: int, ic: int,
                   columns: Sequence[str] = CLASSIFIER_NAMES) -> pl.Expr:
    """Half-open selection of one classifier cell."""
    expr = None
    for column, axis, index in zip(columns, grid.axes, (ia, ib, ic)):
        lo, hi = axis.bounds(index)
        term = (pl.col(column) >= lo) & (pl.col(column) < hi)
        expr = term if expr is None else expr & term
    return expr


def mean_kinematics(source: PolarsEventSource,
                    grid: BinGrid,
                    columns: Sequence[str] = CLASSIFIER_NAMES,
                    classifier_columns: Sequence[str] = CLASSIFIER_NAMES) -> np.ndarray:
    """
    Per-cell means of ``columns``, shape ``grid.shape + (len(columns),)``.

    Empty cells are NaN.
    """
    means = np.full(grid.shape + (len(columns),), np.nan)
    for ia, ib, ic in grid.cells():
        selected = source.filter(cell_predicate(grid, ia, ib, ic, classifier_columns))
        for k, column in enumerate(columns):
            means[ia, ib, ic, k] = selected.mean(column)
    return means


def split_helicity(source: PolarsEventSource, column: str = "helicity") -> Tuple[PolarsEventSource, PolarsEventSource]:
    """Positive and negative beam helicity subsets."""
    plus = source.filter(pl.col(column) > 0)
    minus = source.filter(pl.col(column) < 0)
    plus.name, minus.name = f"{source.name}_plus", f"{source.name}_minus"
    return plus, minus


__all__ = [
    'PolarsEventSource', 'PARTICLE_PREFIXES', 'particle_columns',
    'define_kinematics', 'cell_predicate', 'mean_kinematics', 'split_helicity',
]
