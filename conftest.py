"""
Shared fixtures for the DISANA test suite.
"""

import numpy as np
import pytest
from hypothesis import settings

from disana.binning import BinGrid
from disana.core_framework import AnalysisContext, event_bus

# Configure hypothesis profiles
settings.register_profile("ci", max_examples=50, deadline=None)
settings.register_profile("dev", max_examples=10, deadline=None)
settings.register_profile("debug", max_examples=1, deadline=None)
settings.load_profile("ci")

RANDOM_SEED = 42


@pytest.fixture(scope="function")
def context():
    """Quiet analysis context."""
    return AnalysisContext(beam_energy=10.604, verbose=False)


@pytest.fixture(scope="session")
def default_grid():
    return BinGrid.default()


@pytest.fixture(scope="function")
def rng():
    return np.random.default_rng(RANDOM_SEED)


@pytest.fixture(scope="function")
def recorded_events():
    """Collect events published on the global bus during one test."""
    received = []

    def handler(event):
        received.append(event)

    from disana.core_framework import (
        AccumulationFinalizedEvent, DerivedGridComputedEvent, IncompleteCellsEvent,
    )
    event_types = (AccumulationFinalizedEvent, DerivedGridComputedEvent, IncompleteCellsEvent)
    for event_type in event_types:
        event_bus.subscribe(event_type, handler)
    yield received
    for event_type in event_types:
        event_bus.unsubscribe(event_type, handler)


def make_classified_events(rng, n_events, grid=None):
    """Uniform (Q2, t, xB, phi) columns spanning slightly beyond the grid."""
    grid = grid or BinGrid.default()
    return {
        'Q2': rng.uniform(grid.q2_edges.low - 0.5, grid.q2_edges.high + 0.5, n_events),
        't': rng.uniform(grid.t_edges.low - 0.05, grid.t_edges.high + 0.05, n_events),
        'xB': rng.uniform(grid.xb_edges.low - 0.05, grid.xb_edges.high + 0.05, n_events),
        'phi': rng.uniform(0.0, 360.0, n_events),
    }


@pytest.fixture(scope="function")
def classified_events(rng):
    return make_classified_events(rng, 5000)
