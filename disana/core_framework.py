"""
DISANA Core Framework
=====================

Shared foundation for the DVCS analysis engines: the analysis context that
carries run configuration, the exception taxonomy, warning categories used
for recoverable diagnostics and a small publish/subscribe event bus used to
report accumulation and combination results without coupling the engines to
any reporting layer.

Architecture:
1. Immutable-after-freeze configuration with validation on construction
2. Structured errors for grid combination failures
3. Event system for loose coupling between engines and observers
4. Protocol for the tabular event source consumed by the aggregator
"""

from __future__ import annotations

import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Protocol, Sequence, Tuple, Type

import numpy as np


# ============================================================================
# PHYSICS CONSTANTS
# ============================================================================

ELECTRON_MASS = 0.000511  # GeV
PROTON_MASS = 0.938272  # GeV
PHOTON_MASS = 0.0

CLASSIFIER_NAMES: Tuple[str, str, str] = ("Q2", "t", "xB")
ANGLE_NAME = "phi"


# ============================================================================
# EXCEPTIONS AND WARNING CATEGORIES
# ============================================================================

class DisanaError(Exception):
    """Base class for analysis framework errors."""


class GridShapeMismatchError(DisanaError):
    """
    Grids being combined were built from different bin grids.

    ``dimension``/``expected``/``actual`` describe the first mismatch found;
    ``mismatches`` lists every mismatched dimension as
    ``(dimension, expected, actual)``.
    """

    def __init__(self, dimension: str, stage: str, expected: Any, actual: Any,
                 mismatches: Optional[List[Tuple[str, Any, Any]]] = None):
        self.dimension = dimension
        self.stage = stage
        self.expected = expected
        self.actual = actual
        self.mismatches = mismatches or [(dimension, expected, actual)]
        detail = "; ".join(f"{dim}: expected {exp}, got {act}"
                           for dim, exp, act in self.mismatches)
        super().__init__(f"{stage}: grid shape mismatch ({detail})")

    @property
    def dimensions(self) -> List[str]:
        return [dim for dim, _, _ in self.mismatches]


class AccumulationStateError(DisanaError):
    """Operation is not allowed in the aggregator's current lifecycle state."""


class IncompleteCellWarning(UserWarning):
    """A grid combination skipped cells with absent histograms."""


# ============================================================================
# ANALYSIS CONTEXT
# ============================================================================

@dataclass
class AnalysisContext:
    """
    Run configuration shared by the analysis engines.

    Values are validated on construction. After ``freeze()`` attribute
    assignment raises, except inside ``temporary_variation`` which restores
    the original values on exit.
    """
    beam_energy: float = 10.604  # GeV
    beam_polarization: float = 1.0
    luminosity: float = 1.0
    n_phi_bins: int = 18
    phi_range: Tuple[float, float] = (0.0, 360.0)
    max_workers: int = 4
    batch_size: int = 1_000_000
    verbose: bool = True
    electron_mass: float = ELECTRON_MASS
    proton_mass: float = PROTON_MASS

    _lock: threading.RLock = field(default_factory=threading.RLock, init=False, repr=False, compare=False)
    _frozen: bool = field(default=False, init=False, repr=False, compare=False)

    def __post_init__(self):
        if not self.beam_energy > 0:
            raise ValueError(f"Invalid beam energy: {self.beam_energy}")
        if self.beam_polarization == 0 or abs(self.beam_polarization) > 1:
            raise ValueError(f"Invalid beam polarization: {self.beam_polarization}")
        if not self.luminosity > 0:
            raise ValueError(f"Invalid luminosity: {self.luminosity}")
        if int(self.n_phi_bins) < 1:
            raise ValueError(f"Invalid number of phi bins: {self.n_phi_bins}")
        lo, hi = self.phi_range
        if not hi > lo:
            raise ValueError(f"Invalid phi range: {self.phi_range}")
        if int(self.max_workers) < 1:
            raise ValueError(f"Invalid worker count: {self.max_workers}")
        if int(self.batch_size) < 1:
            raise ValueError(f"Invalid batch size: {self.batch_size}")

    def __setattr__(self, name: str, value: Any) -> None:
        if name != '_frozen' and getattr(self, '_frozen', False):
            raise AttributeError(f"AnalysisContext is frozen, cannot set '{name}'")
        object.__setattr__(self, name, value)

    def freeze(self) -> 'AnalysisContext':
        """Make context immutable."""
        object.__setattr__(self, '_frozen', True)
        return self

    @property
    def frozen(self) -> bool:
        return self._frozen

    def to_dict(self) -> Dict[str, Any]:
        """Thread-safe conversion to dictionary."""
        with self._lock:
            return {
                'beam_energy': self.beam_energy,
                'beam_polarization': self.beam_polarization,
                'luminosity': self.luminosity,
                'n_phi_bins': self.n_phi_bins,
                'phi_range': tuple(self.phi_range),
                'max_workers': self.max_workers,
                'batch_size': self.batch_size,
                'verbose': self.verbose,
            }

    @contextmanager
    def temporary_variation(self, **variations):
        """Context manager for temporary configuration variations."""
        old_values = {}

        with self._lock:
            for key, value in variations.items():
                if not hasattr(self, key) or key.startswith('_'):
                    raise AttributeError(f"Unknown context field: {key}")
                old_values[key] = getattr(self, key)
                object.__setattr__(self, key, value)

            try:
                yield self
            finally:
                for key, value in old_values.items():
                    object.__setattr__(self, key, value)

    def report(self, message: str) -> None:
        """Print a progress line when running verbosely."""
        if self.verbose:
            print(message)


# ============================================================================
# EVENT SOURCE PROTOCOL
# ============================================================================

class EventSourceProtocol(Protocol):
    """Tabular event source consumed by the aggregation layer."""

    def filter(self, predicate: Any) -> 'EventSourceProtocol': ...

    def foreach(self, callback: Callable[..., None], columns: Sequence[str]) -> int: ...

    def mean(self, column: str) -> float: ...


# ============================================================================
# EVENT SYSTEM
# ============================================================================

class Event:
    """Base event class for publish-subscribe pattern."""
    pass


@dataclass
class AccumulationFinalizedEvent(Event):
    """Fired when an aggregator normalizes its grid."""
    n_accepted: int
    n_out_of_range: int
    exposure: float
    grid_shape: Tuple[int, ...]
    timestamp: float = field(default_factory=time.time)


@dataclass
class DerivedGridComputedEvent(Event):
    """Fired when an asymmetry or correction grid has been produced."""
    kind: str
    n_cells: int
    n_skipped_cells: int
    n_undefined_bins: int
    timestamp: float = field(default_factory=time.time)


@dataclass
class IncompleteCellsEvent(Event):
    """Fired when a combination skipped absent cells."""
    kind: str
    cells: List[Tuple[int, int, int]]


class EventBus:
    """
    Simple event bus for decoupled communication.

    Handlers are called outside the lock; a failing handler is reported and
    never affects the publisher.
    """

    def __init__(self):
        self._subscribers: Dict[Type[Event], List[Callable[[Event], None]]] = {}
        self._lock = threading.RLock()

    def subscribe(self, event_type: Type[Event], handler: Callable[[Event], None]) -> None:
        """Subscribe to an event type."""
        with self._lock:
            self._subscribers.setdefault(event_type, []).append(handler)

    def unsubscribe(self, event_type: Type[Event], handler: Callable[[Event], None]) -> None:
        """Remove a handler; unknown handlers are ignored."""
        with self._lock:
            handlers = self._subscribers.get(event_type, [])
            if handler in handlers:
                handlers.remove(handler)

    def publish(self, event: Event) -> None:
        """Publish an event to all subscribers."""
        with self._lock:
            handlers = list(self._subscribers.get(type(event), []))

        for handler in handlers:
            try:
                handler(event)
            except Exception as e:
                print(f"⚠️  Event handler error: {e}")


# Global event bus instance
event_bus = EventBus()


def as_float_array(values: Any, name: str = "values") -> np.ndarray:
    """Convert input to a contiguous 1-D float64 array."""
    arr = np.ascontiguousarray(np.asarray(values, dtype=np.float64))
    if arr.ndim == 0:
        arr = arr.reshape(1)
    if arr.ndim != 1:
        raise ValueError(f"{name} must be one-dimensional, got shape {arr.shape}")
    return arr


__all__ = [
    'ELECTRON_MASS', 'PROTON_MASS', 'PHOTON_MASS',
    'CLASSIFIER_NAMES', 'ANGLE_NAME',
    'DisanaError', 'GridShapeMismatchError', 'AccumulationStateError',
    'IncompleteCellWarning',
    'AnalysisContext', 'EventSourceProtocol',
    'Event', 'AccumulationFinalizedEvent', 'DerivedGridComputedEvent',
    'IncompleteCellsEvent', 'EventBus', 'event_bus',
    'as_float_array',
]
