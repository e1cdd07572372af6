"""
Pytest fixtures for the regime ensemble tests.

Provides synthetic bar frames, seeded generators and small configurations
that keep training loops fast.
"""
import os
import sys

import numpy as np
import pandas as pd
import pytest

# Add project root to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from regime_ensemble import SchedulerConfig, generate_regime_bars


# ============================================================================
# Sample Data Fixtures
# ============================================================================

@pytest.fixture
def rng():
    """Seeded generator for reproducible random inputs."""
    return np.random.default_rng(42)


@pytest.fixture
def regime_bars():
    """300 regime-switching daily bars."""
    return generate_regime_bars(n_bars=300, start_price=50_000.0, seed=7)


@pytest.fixture
def short_bars():
    """Too short for any feature or regime computation."""
    return generate_regime_bars(n_bars=20, start_price=100.0, seed=3)


@pytest.fixture
def trending_closes():
    """Steady uptrend with mild noise."""
    gen = np.random.default_rng(11)
    returns = 0.01 + 0.002 * gen.standard_normal(120)
    return 100.0 * np.exp(np.cumsum(returns))


@pytest.fixture
def flat_bars():
    """Bars with a constant close and volume."""
    dates = pd.date_range(start="2023-01-01", periods=80, freq="D", name="timestamp")
    return pd.DataFrame({
        "open": 100.0,
        "high": 100.0,
        "low": 100.0,
        "close": 100.0,
        "volume": 1_000_000.0,
    }, index=dates)


# ============================================================================
# Configuration Fixtures
# ============================================================================

@pytest.fixture
def fast_config():
    """Scheduler settings small enough for unit tests (min_history = 125)."""
    return SchedulerConfig(
        epochs=4,
        use_hmm=False,
        min_train_samples=60,
        retrain_interval=30,
        seed=5,
    )


@pytest.fixture
def fast_hmm_config():
    """Like fast_config but with the regime detector enabled."""
    return SchedulerConfig(
        epochs=3,
        use_hmm=True,
        min_train_samples=60,
        retrain_interval=40,
        seed=5,
    )
