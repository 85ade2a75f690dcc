# disana/__init__.py
from __future__ import annotations
from .core_framework import (
    AnalysisContext, DisanaError, GridShapeMismatchError, AccumulationStateError,
    IncompleteCellWarning, EventBus, event_bus,
    AccumulationFinalizedEvent, DerivedGridComputedEvent, IncompleteCellsEvent,
)
from .binning import BinEdges, BinGrid, locate, locate_array, OUT_OF_RANGE
from .kinematics_engine import (
    FourVector, KinematicRecord, KinematicsEngine, compute_kinematics, KINEMATIC_COLUMNS,
)
from .histogram_core import WeightedHistogram1D, AggregateGrid, DerivedHistogram1D, DerivedGrid
from .correction_lookup import CorrectionTable, correction_factor
from .cross_section_aggregator import Aggregator, compute_cross_section
from .statistical_engine import (
    AsymmetryCalculator, BackgroundCorrectionCalculator, ModulationFitResult,
    fit_sinusoidal_modulation, compute_beam_spin_asymmetry, compute_background_correction,
)
from .selection_queries import CutExpressionConverter, convert_cut_expression
from .event_source import PolarsEventSource, define_kinematics, mean_kinematics, split_helicity

__version__ = "0.1.0"

__all__ = [
    'AnalysisContext',
    'DisanaError',
    'GridShapeMismatchError',
    'AccumulationStateError',
    'IncompleteCellWarning',
    'EventBus',
    'event_bus',
    'AccumulationFinalizedEvent',
    'DerivedGridComputedEvent',
    'IncompleteCellsEvent',
    'BinEdges',
    'BinGrid',
    'locate',
    'locate_array',
    'OUT_OF_RANGE',
    'FourVector',
    'KinematicRecord',
    'KinematicsEngine',
    'compute_kinematics',
    'KINEMATIC_COLUMNS',
    'WeightedHistogram1D',
    'AggregateGrid',
    'DerivedHistogram1D',
    'DerivedGrid',
    'CorrectionTable',
    'correction_factor',
    'Aggregator',
    'compute_cross_section',
    'AsymmetryCalculator',
    'BackgroundCorrectionCalculator',
    'ModulationFitResult',
    'fit_sinusoidal_modulation',
    'compute_beam_spin_asymmetry',
    'compute_background_correction',
    'CutExpressionConverter',
    'convert_cut_expression',
    'PolarsEventSource',
    'define_kinematics',
    'mean_kinematics',
    'split_helicity',
]
