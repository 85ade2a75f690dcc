"""
Statistical Engine: Derived Quantities
======================================

Bin-by-bin combination of aggregate grids with closed-form uncertainty
propagation:

1. Beam-spin asymmetry from two helicity states
   A = (N+ - N-) / (N+ + N-), σ_A = 2/(N+ + N-)² · sqrt((N- σ+)² + (N+ σ-)²),
   both divided by the beam polarization
2. Background correction ratio (S_sim / B_sim) · (B_data / S_data) with
   first-order propagation of all four uncertainties
3. Per-cell fit of the angular modulation a0 + a1 sin φ / (1 + a2 cos φ),
   kept as a display annotation

Combinations are pure functions of read-only grids. Shape mismatches abort
before any output is produced; absent cells are skipped and reported.
"""

from __future__ import annotations

import warnings
from dataclasses import dataclass
from typing import List, Optional, Sequence, Tuple, Union

import numpy as np
from scipy.optimize import OptimizeWarning, curve_fit

from .binning import BinGrid
from .core_framework import (
    AnalysisContext, DerivedGridComputedEvent, EventSourceProtocol,
    IncompleteCellWarning, IncompleteCellsEvent, event_bus,
)
from .correction_lookup import CorrectionTable
from .cross_section_aggregator import DEFAULT_COLUMNS, compute_cross_section
from .histogram_core import AggregateGrid, DerivedGrid, check_same_binning

Cell = Tuple[int, int, int]


# ============================================================================
# SHARED HELPERS
# ============================================================================

def _check_inputs(stage: str, grids: Sequence[AggregateGrid]) -> None:
    reference = grids[0].grid
    for other in grids[1:]:
        check_same_binning(reference, other.grid, stage)


def _report_skipped(kind: str, present: np.ndarray, stacklevel: int = 3) -> List[Cell]:
    skipped = [tuple(int(i) for i in cell) for cell in np.argwhere(~present)]
    if skipped:
        warnings.warn(
            f"{kind}: skipped {len(skipped)} cell(s) with missing histograms: {skipped[:5]}"
            + (" ..." if len(skipped) > 5 else ""),
            IncompleteCellWarning,
            stacklevel=stacklevel,
        )
        event_bus.publish(IncompleteCellsEvent(kind=kind, cells=skipped))
    return skipped


def _publish(result: DerivedGrid, context: AnalysisContext) -> DerivedGrid:
    event_bus.publish(DerivedGridComputedEvent(
        kind=result.kind,
        n_cells=result.grid.n_cells,
        n_skipped_cells=result.n_skipped_cells,
        n_undefined_bins=result.n_undefined_bins,
    ))
    context.report(
        f"📊 {result.kind} grid {result.grid.shape} computed "
        f"({result.n_skipped_cells} cells skipped, {result.n_undefined_bins} undefined bins)"
    )
    return result


def ratio_with_errors(num: np.ndarray, num_err: np.ndarray,
                      den: np.ndarray, den_err: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
    """
    num / den with first-order uncertainty.

    Bins with a zero denominator are NaN in both value and uncertainty.
    """
    num = np.asarray(num, dtype=np.float64)
    den = np.asarray(den, dtype=np.float64)
    valid = den != 0
    ratio = np.full(np.broadcast(num, den).shape, np.nan)
    ratio_err = np.full_like(ratio, np.nan)
    with np.errstate(divide='ignore', invalid='ignore'):
        r = num / den
        r_err = np.sqrt((num_err / den) ** 2 + (num * den_err / den ** 2) ** 2)
    ratio[valid] = r[valid]
    ratio_err[valid] = r_err[valid]
    return ratio, ratio_err


# ============================================================================
# BEAM-SPIN ASYMMETRY
# ============================================================================

class AsymmetryCalculator:
    """Beam-spin asymmetry from positive and negative helicity grids."""

    kind = "asymmetry"

    def __init__(self, context: Optional[AnalysisContext] = None):
        self.context = context or AnalysisContext(verbose=False)

    def compute(self,
                grid_plus: AggregateGrid,
                grid_minus: AggregateGrid,
                beam_polarization: Optional[float] = None) -> DerivedGrid:
        pol = self.context.beam_polarization if beam_polarization is None else float(beam_polarization)
        if pol == 0 or not np.isfinite(pol):
            raise ValueError(f"Invalid beam polarization: {pol}")
        _check_inputs("AsymmetryCalculator", (grid_plus, grid_minus))

        present = grid_plus.present & grid_minus.present
        skipped = _report_skipped(self.kind, present)

        n_p, n_m = grid_plus.content, grid_minus.content
        e_p, e_m = grid_plus.errors, grid_minus.errors
        den = n_p + n_m
        defined = den != 0
        with np.errstate(divide='ignore', invalid='ignore'):
            asym = np.where(defined, (n_p - n_m) / den, 0.0)
            err = np.where(defined,
                           2.0 / (den * den) * np.sqrt((n_m * e_p) ** 2 + (n_p * e_m) ** 2),
                           0.0)

        cell_mask = present[..., np.newaxis]
        values = np.where(cell_mask, asym / pol, np.nan)
        uncertainties = np.where(cell_mask, err / abs(pol), np.nan)
        result = DerivedGrid(grid_plus.grid, values, uncertainties, present.copy(),
                             kind=self.kind, skipped_cells=skipped)
        return _publish(result, self.context)


# ============================================================================
# BACKGROUND CORRECTION
# ============================================================================

class BackgroundCorrectionCalculator:
    """
    Multiplicative background correction per bin:
    (signal_sim / background_sim) · (background_data / signal_data).

    Bins with a zero denominator are undefined (NaN).
    """

    kind = "background_correction"

    def __init__(self, context: Optional[AnalysisContext] = None):
        self.context = context or AnalysisContext(verbose=False)

    def compute(self,
                signal_simulation: AggregateGrid,
                background_simulation: AggregateGrid,
                signal_data: AggregateGrid,
                background_data: AggregateGrid) -> DerivedGrid:
        inputs = (signal_simulation, background_simulation, signal_data, background_data)
        _check_inputs("BackgroundCorrectionCalculator", inputs)

        present = np.logical_and.reduce([g.present for g in inputs])
        skipped = _report_skipped(self.kind, present)

        s_sim, b_sim = signal_simulation.content, background_simulation.content
        s_dat, b_dat = signal_data.content, background_data.content

        # (S_sim / B_sim) · (B_data / S_data); NaN where either denominator is zero
        sim_ratio, sim_err = ratio_with_errors(s_sim, signal_simulation.errors,
                                               b_sim, background_simulation.errors)
        data_ratio, data_err = ratio_with_errors(b_dat, background_data.errors,
                                                 s_dat, signal_data.errors)
        ratio = sim_ratio * data_ratio
        err = np.sqrt((sim_err * data_ratio) ** 2 + (sim_ratio * data_err) ** 2)

        bin_mask = present[..., np.newaxis] & np.isfinite(ratio)
        values = np.where(bin_mask, ratio, np.nan)
        uncertainties = np.where(bin_mask, err, np.nan)
        result = DerivedGrid(signal_simulation.grid, values, uncertainties, present.copy(),
                             kind=self.kind, skipped_cells=skipped)
        return _publish(result, self.context)


# ============================================================================
# ANGULAR MODULATION FIT
# ============================================================================

def modulation_model(phi_deg: np.ndarray, a0: float, a1: float, a2: float) -> np.ndarray:
    """a0 + a1 sin φ / (1 + a2 cos φ), φ in degrees."""
    phi = np.radians(phi_deg)
    return a0 + a1 * np.sin(phi) / (1.0 + a2 * np.cos(phi))


@dataclass(frozen=True)
class ModulationFitResult:
    """Per-cell fit parameters; NaN where the cell was not fitted."""
    a0: np.ndarray
    a1: np.ndarray
    a2: np.ndarray
    a1_error: np.ndarray

    @property
    def fitted(self) -> np.ndarray:
        return np.isfinite(self.a1)

    @property
    def n_fitted(self) -> int:
        return int(self.fitted.sum())

    def label(self, ia: int, ib: int, ic: int) -> str:
        return f"a1 = {self.a1[ia, ib, ic]:.2f} ± {self.a1_error[ia, ib, ic]:.2f}"


MODULATION_A2_LIMIT = 0.99


def fit_sinusoidal_modulation(grid: Union[DerivedGrid, AggregateGrid],
                              initial: Optional[Tuple[float, float, float]] = None,
                              min_points: int = 4) -> ModulationFitResult:
    """
    Fit the sin φ modulation in every present cell.

    Bins with non-finite value or non-positive uncertainty are excluded;
    cells with fewer than ``min_points`` usable bins, or whose fit fails,
    are left as NaN. ``a2`` is bounded to ``|a2| <= 0.99`` so the
    denominator never crosses zero. Without ``initial`` each cell starts
    from (weighted mean, 0.2, 0.1).
    """
    if isinstance(grid, DerivedGrid):
        values, errors = grid.values, grid.uncertainties
    else:
        values, errors = grid.content, grid.errors
    shape = grid.grid.shape
    centers = grid.grid.phi_centers
    a0, a1, a2, a1_err = (np.full(shape, np.nan) for _ in range(4))
    bounds = ([-np.inf, -np.inf, -MODULATION_A2_LIMIT], [np.inf, np.inf, MODULATION_A2_LIMIT])

    for cell in grid.grid.cells():
        if not grid.present[cell]:
            continue
        y, sigma = values[cell], errors[cell]
        usable = np.isfinite(y) & np.isfinite(sigma) & (sigma > 0)
        if usable.sum() < min_points:
            continue
        if initial is None:
            p0 = (np.average(y[usable], weights=sigma[usable] ** -2), 0.2, 0.1)
        else:
            p0 = (initial[0], initial[1],
                  float(np.clip(initial[2], -MODULATION_A2_LIMIT, MODULATION_A2_LIMIT)))
        with warnings.catch_warnings():
            warnings.simplefilter("ignore", OptimizeWarning)
            try:
                popt, pcov = curve_fit(modulation_model, centers[usable], y[usable],
                                       p0=p0, sigma=sigma[usable], bounds=bounds,
                                       absolute_sigma=True, max_nfev=5000)
            except (RuntimeError, ValueError):
                continue
        a0[cell], a1[cell], a2[cell] = popt
        with np.errstate(invalid='ignore'):
            a1_err[cell] = np.sqrt(pcov[1, 1]) if np.isfinite(pcov[1, 1]) else np.nan

    return ModulationFitResult(a0, a1, a2, a1_err)


# ============================================================================
# ONE-SHOT WORKFLOWS
# ============================================================================

def compute_beam_spin_asymmetry(source_plus: EventSourceProtocol,
                                source_minus: EventSourceProtocol,
                                grid: BinGrid,
                                luminosity: float,
                                polarization: Optional[float] = None,
                                correction: Optional[CorrectionTable] = None,
                                columns: Sequence[str] = DEFAULT_COLUMNS,
                                context: Optional[AnalysisContext] = None) -> DerivedGrid:
    """Asymmetry grid from two helicity-separated event sources."""
    plus = compute_cross_section(source_plus, grid, luminosity, correction, columns, context=context)
    minus = compute_cross_section(source_minus, grid, luminosity, correction, columns, context=context)
    return AsymmetryCalculator(context).compute(plus, minus, polarization)


def compute_background_correction(signal_simulation: EventSourceProtocol,
                                  background_simulation: EventSourceProtocol,
                                  signal_data: EventSourceProtocol,
                                  background_data: EventSourceProtocol,
                                  grid: BinGrid,
                                  columns: Sequence[str] = DEFAULT_COLUMNS,
                                  context: Optional[AnalysisContext] = None) -> DerivedGrid:
    """Background correction grid from four event samples at unit exposure."""
    grids = [compute_cross_section(source, grid, 1.0, None, columns, context=context)
             for source in (signal_simulation, background_simulation, signal_data, background_data)]
    return BackgroundCorrectionCalculator(context).compute(*grids)


__all__ = [
    'AsymmetryCalculator', 'BackgroundCorrectionCalculator',
    'ratio_with_errors', 'modulation_model', 'ModulationFitResult',
    'fit_sinusoidal_modulation', 'compute_beam_spin_asymmetry',
    'compute_background_correction',
]
