"""
Market Regime Detection
=======================

Labels each bar with a probability distribution over a small, fixed set of
named market regimes.

MODELS
------
Gaussian Hidden Markov Model:
    Hamilton, J.D. (1989). "A New Approach to the Economic Analysis of
    Nonstationary Time Series and the Business Cycle." Econometrica, 57(2).
    Rabiner, L.R. (1989). "A Tutorial on Hidden Markov Models and Selected
    Applications in Speech Recognition." Proc. IEEE, 77(2).

    Hidden state X_t is the regime, the observation Y_t is the vector
    [return, realized volatility, volume ratio]. Emissions are Gaussian with
    a diagonal covariance (no cross-dimension correlation).

    Training:   Baum-Welch EM, entirely in log space
    Decoding:   Viterbi (most probable regime path)
    Online:     Forward pass (posterior of the regime at the last bar)

Volatility-ratio heuristic:
    Fallback classifier used when no trained HMM is available; compares
    20-bar and 60-bar realized volatility and the 30-bar return magnitude.

CONCURRENCY
-----------
Parameters live in an immutable RegimeModel snapshot. `fit` builds new
arrays privately and publishes them with a single reference assignment, so
a concurrent reader sees either the old or the new parameter set, never a
mixture.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Tuple

import numpy as np
import pandas as pd
from scipy.special import logsumexp

from .config import (
    HeuristicRegimeConfig,
    RegimeDetectorConfig,
    UNKNOWN_REGIME,
)
from .features import validate_bars
from .results import ConfigurationError, Result, Status, StopCheck
from .technical_indicators import realized_volatility, simple_returns

logger = logging.getLogger(__name__)


# =============================================================================
# SECTION 1: CONFIGURATION
# =============================================================================

class Config:
    """Numerical guards for the HMM recursions."""

    # Floor applied to probabilities before taking logs
    LOG_FLOOR: float = 1e-300

    # Variance floor inside the emission density
    EMISSION_VARIANCE_FLOOR: float = 1e-10

    # Fallback variance for a regime with no occupancy
    EMPTY_STATE_VARIANCE: float = 1e-3

    # Expected-duration cap (bars)
    MAX_DURATION: float = 1000.0

    # Rounding used only by display helpers
    DISPLAY_DECIMALS: int = 3


# =============================================================================
# SECTION 2: DATA STRUCTURES
# =============================================================================

def _frozen(array: np.ndarray) -> np.ndarray:
    out = np.array(array, dtype=float, copy=True)
    out.setflags(write=False)
    return out


@dataclass(frozen=True)
class RegimeModel:
    """
    Immutable HMM parameter snapshot.

    Attributes:
        states: Regime names, index-aligned with every array
        pi: Initial regime distribution (N,)
        transmat: Row-stochastic transition matrix (N, N)
        means: Emission means (N, D)
        variances: Emission variances (N, D), floored above zero
        trained: True once a fit pass has completed
        log_likelihood: Log-likelihood reported by the last fit
        n_iter: EM iterations performed by the last fit
    """
    states: Tuple[str, ...]
    pi: np.ndarray
    transmat: np.ndarray
    means: np.ndarray
    variances: np.ndarray
    trained: bool = False
    log_likelihood: float = float('-inf')
    n_iter: int = 0

    def __post_init__(self):
        for name in ('pi', 'transmat', 'means', 'variances'):
            object.__setattr__(self, name, _frozen(getattr(self, name)))
        n = len(self.states)
        if self.pi.shape != (n,) or self.transmat.shape != (n, n):
            raise ConfigurationError(
                f"Regime model shapes do not match {n} states: "
                f"pi={self.pi.shape}, transmat={self.transmat.shape}"
            )
        if self.means.ndim != 2 or self.means.shape[0] != n or self.means.shape != self.variances.shape:
            raise ConfigurationError(
                f"Emission shapes are inconsistent: means={self.means.shape}, "
                f"variances={self.variances.shape}"
            )

    @property
    def n_states(self) -> int:
        return len(self.states)

    @property
    def obs_dim(self) -> int:
        return self.means.shape[1]

    def to_dict(self) -> Dict[str, Any]:
        return {
            'states': list(self.states),
            'obs_dim': self.obs_dim,
            'pi': self.pi.tolist(),
            'transmat': self.transmat.tolist(),
            'means': self.means.tolist(),
            'variances': self.variances.tolist(),
            'trained': self.trained,
            'log_likelihood': self.log_likelihood,
            'n_iter': self.n_iter,
        }


@dataclass(frozen=True)
class FitReport:
    """Diagnostics from one Baum-Welch run."""
    log_likelihood: float
    n_iter: int
    converged: bool
    n_observations: int
    stop_reason: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            'log_likelihood': self.log_likelihood,
            'n_iter': self.n_iter,
            'converged': self.converged,
            'n_observations': self.n_observations,
            'stop_reason': self.stop_reason,
        }


@dataclass(frozen=True)
class RegimeBelief:
    """
    Posterior belief about the regime at the last observation.

    `regime` is UNKNOWN_REGIME (and `probabilities` empty) when there was
    nothing to infer from.
    """
    regime: str
    confidence: float
    probabilities: Dict[str, float] = field(default_factory=dict)

    @property
    def is_unknown(self) -> bool:
        return self.regime == UNKNOWN_REGIME

    def to_dict(self, decimals: Optional[int] = Config.DISPLAY_DECIMALS) -> Dict[str, Any]:
        def fmt(x: float) -> float:
            return round(x, decimals) if decimals is not None else x
        return {
            'regime': self.regime,
            'confidence': fmt(self.confidence),
            'probabilities': {k: fmt(v) for k, v in self.probabilities.items()},
        }


UNKNOWN_BELIEF = RegimeBelief(regime=UNKNOWN_REGIME, confidence=0.0, probabilities={})


# =============================================================================
# SECTION 3: GAUSSIAN HMM
# =============================================================================

def _initial_model(config: RegimeDetectorConfig) -> RegimeModel:
    """Regime-informed starting parameters."""
    n = len(config.states)
    off_diagonal = (1.0 - config.self_transition) / (n - 1)
    transmat = np.full((n, n), off_diagonal)
    np.fill_diagonal(transmat, config.self_transition)

    means = np.zeros((n, config.obs_dim))
    variances = np.ones((n, config.obs_dim))
    for i, name in enumerate(config.states):
        prior = config.priors.get(name)
        if prior is not None:
            means[i] = prior.mean
            variances[i] = prior.variance

    return RegimeModel(
        states=tuple(config.states),
        pi=np.full(n, 1.0 / n),
        transmat=transmat,
        means=means,
        variances=variances,
    )


def _normalize_rows(matrix: np.ndarray) -> np.ndarray:
    totals = matrix.sum(axis=-1, keepdims=True)
    return np.where(totals > 0, matrix / np.where(totals > 0, totals, 1.0), matrix)


class GaussianHMM:
    """
    Gaussian HMM with diagonal covariance over named regimes.

    The default regime set is bull / bear / range_bound / high_vol with
    emission priors from RegimeDetectorConfig.priors, a self-transition
    probability of 0.7 and a uniform initial distribution.

    Example:
        >>> hmm = GaussianHMM()
        >>> obs = extract_observations(bars)
        >>> report = hmm.fit(obs)
        >>> if report.ok:
        ...     belief = hmm.current_regime(obs)
    """

    def __init__(self, config: Optional[RegimeDetectorConfig] = None):
        self.config = config or RegimeDetectorConfig()
        self._model: RegimeModel = _initial_model(self.config)

    # -------------------------------------------------------------------------
    # Snapshot access
    # -------------------------------------------------------------------------

    @property
    def model(self) -> RegimeModel:
        """Current immutable parameter snapshot."""
        return self._model

    @property
    def trained(self) -> bool:
        return self._model.trained

    @property
    def states(self) -> Tuple[str, ...]:
        return self._model.states

    @property
    def n_states(self) -> int:
        return self._model.n_states

    @property
    def obs_dim(self) -> int:
        return self._model.obs_dim

    @property
    def pi(self) -> np.ndarray:
        return self._model.pi

    @property
    def transmat(self) -> np.ndarray:
        return self._model.transmat

    @property
    def means(self) -> np.ndarray:
        return self._model.means

    @property
    def variances(self) -> np.ndarray:
        return self._model.variances

    # -------------------------------------------------------------------------
    # Recursions (all log space)
    # -------------------------------------------------------------------------

    def _check_observations(self, observations: Any, obs_dim: int) -> np.ndarray:
        X = np.asarray(observations, dtype=float)
        if X.size == 0:
            return np.empty((0, obs_dim))
        if X.ndim == 1:
            X = X.reshape(1, -1)
        if X.ndim != 2 or X.shape[1] != obs_dim:
            raise ConfigurationError(
                f"Observations must have shape (T, {obs_dim}), got {X.shape}"
            )
        return np.nan_to_num(X, nan=0.0, posinf=0.0, neginf=0.0)

    @staticmethod
    def _log_emissions(X: np.ndarray, means: np.ndarray, variances: np.ndarray) -> np.ndarray:
        """log N(x_t | mu_k, diag(var_k)) for all t, k. Shape (T, N)."""
        var = np.maximum(variances, Config.EMISSION_VARIANCE_FLOOR)
        diff = X[:, None, :] - means[None, :, :]
        return -0.5 * np.sum(np.log(2.0 * np.pi * var)[None, :, :] + diff ** 2 / var[None, :, :], axis=2)

    @staticmethod
    def _log(p: np.ndarray) -> np.ndarray:
        return np.log(np.maximum(p, Config.LOG_FLOOR))

    @staticmethod
    def _forward(log_pi: np.ndarray, log_A: np.ndarray, log_B: np.ndarray) -> Tuple[np.ndarray, float]:
        """
        Forward algorithm.

        Returns:
            log_alpha: log P(Y_1..t, X_t = k), shape (T, N)
            log_likelihood: log P(Y_1..T)
        """
        T, N = log_B.shape
        log_alpha = np.empty((T, N))
        log_alpha[0] = log_pi + log_B[0]
        for t in range(1, T):
            log_alpha[t] = logsumexp(log_alpha[t - 1][:, None] + log_A, axis=0) + log_B[t]
        return log_alpha, float(logsumexp(log_alpha[-1]))

    @staticmethod
    def _backward(log_A: np.ndarray, log_B: np.ndarray) -> np.ndarray:
        """Backward algorithm: log P(Y_t+1..T | X_t = k), shape (T, N)."""
        T, N = log_B.shape
        log_beta = np.zeros((T, N))
        for t in range(T - 2, -1, -1):
            log_beta[t] = logsumexp(log_A + (log_B[t + 1] + log_beta[t + 1])[None, :], axis=1)
        return log_beta

    # -------------------------------------------------------------------------
    # Training
    # -------------------------------------------------------------------------

    def fit(self, observations: Any, should_stop: Optional[StopCheck] = None) -> Result[FitReport]:
        """
        Fit the HMM with Baum-Welch EM.

        Iterates up to config.max_iter times, stopping early once the
        log-likelihood improves by less than config.tolerance after at least
        two iterations, or when it becomes non-finite. Variances are floored
        at config.variance_floor and probabilities at
        config.probability_floor.

        Args:
            observations: Array-like of shape (T, obs_dim)
            should_stop: Optional callable polled between iterations; a True
                return abandons the fit without publishing anything

        Returns:
            Result wrapping a FitReport; INSUFFICIENT_DATA below
            config.min_observations or when no EM pass completes (parameters
            untouched), CANCELLED when should_stop fired.
        """
        cfg = self.config
        start = self._model
        X = self._check_observations(observations, start.obs_dim)
        T = len(X)
        if T < cfg.min_observations:
            logger.warning(f"HMM fit skipped: {T} observations (need >= {cfg.min_observations})")
            return Result.failure(
                Status.INSUFFICIENT_DATA,
                f"Need at least {cfg.min_observations} observations, got {T}",
            )

        N = start.n_states
        floor = cfg.probability_floor
        pi = start.pi.copy()
        A = start.transmat.copy()
        means = start.means.copy()
        variances = start.variances.copy()

        prev_ll = -np.inf
        last_ll = -np.inf
        iterations = 0
        converged = False
        stop_reason = 'max_iter'

        for _ in range(cfg.max_iter):
            if should_stop is not None and should_stop():
                logger.info(f"HMM fit cancelled after {iterations} iterations")
                return Result.failure(Status.CANCELLED, f"Cancelled after {iterations} iterations")

            # E-step
            log_pi = self._log(pi)
            log_A = self._log(A)
            log_B = self._log_emissions(X, means, variances)
            log_alpha, ll = self._forward(log_pi, log_A, log_B)

            if not np.isfinite(ll):
                stop_reason = 'non_finite'
                break
            last_ll = ll
            if iterations >= 2 and abs(ll - prev_ll) < cfg.tolerance:
                converged = True
                stop_reason = 'converged'
                break
            prev_ll = ll

            log_beta = self._backward(log_A, log_B)

            log_gamma = log_alpha + log_beta
            gamma = np.exp(log_gamma - logsumexp(log_gamma, axis=1, keepdims=True))

            log_xi = (
                log_alpha[:-1, :, None]
                + log_A[None, :, :]
                + (log_B[1:] + log_beta[1:])[:, None, :]
            )
            xi = np.exp(log_xi - logsumexp(log_xi, axis=(1, 2), keepdims=True))

            # M-step
            pi = np.maximum(gamma[0], floor)
            pi = pi / pi.sum()

            from_occupancy = gamma[:-1].sum(axis=0)
            A = np.where(
                from_occupancy[:, None] > floor,
                xi.sum(axis=0) / np.maximum(from_occupancy[:, None], floor),
                1.0 / N,
            )
            A = _normalize_rows(A)

            occupancy = gamma.sum(axis=0)
            occupied = occupancy > floor
            safe_occupancy = np.maximum(occupancy, floor)[:, None]
            means = np.where(occupied[:, None], gamma.T @ X / safe_occupancy, 0.0)
            sq_dev = (X[:, None, :] - means[None, :, :]) ** 2
            weighted = np.einsum('tn,tnd->nd', gamma, sq_dev) / safe_occupancy
            variances = np.where(occupied[:, None], weighted, Config.EMPTY_STATE_VARIANCE)
            variances = np.maximum(variances, cfg.variance_floor)

            iterations += 1
            logger.debug(f"HMM EM iteration {iterations}: log-likelihood {ll:.4f}")

        if iterations == 0:
            logger.warning("HMM fit abandoned: log-likelihood is non-finite at the starting parameters")
            return Result.failure(
                Status.INSUFFICIENT_DATA,
                "Observations have no finite likelihood under the starting parameters",
            )

        self._model = RegimeModel(
            states=start.states,
            pi=pi,
            transmat=A,
            means=means,
            variances=variances,
            trained=True,
            log_likelihood=float(last_ll),
            n_iter=iterations,
        )

        report = FitReport(
            log_likelihood=float(last_ll),
            n_iter=iterations,
            converged=converged,
            n_observations=T,
            stop_reason=stop_reason,
        )
        logger.info(
            f"HMM fit on {T} observations: {iterations} iterations, "
            f"log-likelihood {last_ll:.2f} ({stop_reason})"
        )
        return Result.success(report)

    # -------------------------------------------------------------------------
    # Inference
    # -------------------------------------------------------------------------

    def decode(self, observations: Any) -> List[str]:
        """
        Most probable regime path (Viterbi).

        Ties are broken in favour of the first regime attaining the maximum.
        An empty input decodes to an empty list.
        """
        model = self._model
        X = self._check_observations(observations, model.obs_dim)
        T = len(X)
        if T == 0:
            return []

        log_A = self._log(model.transmat)
        log_B = self._log_emissions(X, model.means, model.variances)
        N = model.n_states

        delta = np.empty((T, N))
        psi = np.zeros((T, N), dtype=int)
        delta[0] = self._log(model.pi) + log_B[0]
        columns = np.arange(N)
        for t in range(1, T):
            scores = delta[t - 1][:, None] + log_A
            psi[t] = np.argmax(scores, axis=0)
            delta[t] = scores[psi[t], columns] + log_B[t]

        path = np.zeros(T, dtype=int)
        path[-1] = int(np.argmax(delta[-1]))
        for t in range(T - 2, -1, -1):
            path[t] = psi[t + 1, path[t + 1]]

        return [model.states[s] for s in path]

    def _filtered(self, model: RegimeModel, observations: Any) -> np.ndarray:
        X = self._check_observations(observations, model.obs_dim)
        if len(X) == 0:
            return np.empty(0)
        log_B = self._log_emissions(X, model.means, model.variances)
        log_alpha, _ = self._forward(self._log(model.pi), self._log(model.transmat), log_B)
        last = log_alpha[-1]
        # Only this final step leaves log space
        return np.exp(last - logsumexp(last))

    def posterior(self, observations: Any) -> np.ndarray:
        """Filtered regime distribution at the last observation (sums to 1)."""
        return self._filtered(self._model, observations)

    def current_regime(self, observations: Any) -> RegimeBelief:
        """
        Regime belief at the last observation from a single forward pass.

        Returns UNKNOWN_BELIEF for empty input.
        """
        model = self._model
        probs = self._filtered(model, observations)
        if probs.size == 0:
            return UNKNOWN_BELIEF
        best = int(np.argmax(probs))
        return RegimeBelief(
            regime=model.states[best],
            confidence=float(probs[best]),
            probabilities={name: float(p) for name, p in zip(model.states, probs)},
        )

    # -------------------------------------------------------------------------
    # Diagnostics
    # -------------------------------------------------------------------------

    def transition_table(self, decimals: Optional[int] = None) -> Dict[str, Dict[str, float]]:
        """Transition matrix keyed by regime names."""
        model = self._model
        table = {}
        for i, src in enumerate(model.states):
            row = {}
            for j, dst in enumerate(model.states):
                p = float(model.transmat[i, j])
                row[dst] = round(p, decimals) if decimals is not None else p
            table[src] = row
        return table

    def expected_durations(self) -> Dict[str, float]:
        """
        Expected bars spent in each regime per visit.

        Duration in state k = 1 / (1 - A[k, k]), capped at Config.MAX_DURATION.
        """
        model = self._model
        durations = {}
        for k, name in enumerate(model.states):
            duration = 1.0 / (1.0 - model.transmat[k, k] + 1e-10)
            durations[name] = float(min(duration, Config.MAX_DURATION))
        return durations

    def stationary_distribution(self) -> Dict[str, float]:
        """
        Long-run regime distribution.

        Left eigenvector of the transition matrix for eigenvalue 1.
        """
        model = self._model
        eigenvalues, eigenvectors = np.linalg.eig(model.transmat.T)
        idx = int(np.argmin(np.abs(eigenvalues - 1.0)))
        stationary = np.real(eigenvectors[:, idx])
        total = stationary.sum()
        if total == 0 or not np.isfinite(total):
            stationary = np.full(model.n_states, 1.0 / model.n_states)
        else:
            stationary = np.clip(stationary / total, 0.0, None)
            stationary = stationary / stationary.sum()
        return {name: float(p) for name, p in zip(model.states, stationary)}

    def summary(self) -> Dict[str, Any]:
        """Compact description for reports."""
        model = self._model
        return {
            'trained': model.trained,
            'states': list(model.states),
            'log_likelihood': model.log_likelihood,
            'n_iter': model.n_iter,
            'transition_matrix': np.round(model.transmat, 2).tolist(),
            'expected_durations': self.expected_durations(),
        }

    # -------------------------------------------------------------------------
    # Persistence
    # -------------------------------------------------------------------------

    def to_dict(self) -> Dict[str, Any]:
        """Plain-data snapshot; from_dict reproduces identical inference."""
        data = self._model.to_dict()
        data['max_iter'] = self.config.max_iter
        data['tolerance'] = self.config.tolerance
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'GaussianHMM':
        required = ('states', 'pi', 'transmat', 'means', 'variances')
        missing = [k for k in required if k not in data]
        if missing:
            raise ConfigurationError(f"Serialized HMM is missing {missing}")

        states = tuple(data['states'])
        means = np.asarray(data['means'], dtype=float)
        obs_dim = int(data.get('obs_dim', means.shape[1] if means.ndim == 2 else 0))
        config = RegimeDetectorConfig(
            states=states,
            obs_dim=obs_dim,
            max_iter=int(data.get('max_iter', RegimeDetectorConfig.max_iter)),
            tolerance=float(data.get('tolerance', RegimeDetectorConfig.tolerance)),
            priors={},
        )
        hmm = cls(config)
        hmm._model = RegimeModel(
            states=states,
            pi=np.asarray(data['pi'], dtype=float),
            transmat=np.asarray(data['transmat'], dtype=float),
            means=means,
            variances=np.asarray(data['variances'], dtype=float),
            trained=bool(data.get('trained', False)),
            log_likelihood=float(data.get('log_likelihood', float('-inf'))),
            n_iter=int(data.get('n_iter', 0)),
        )
        if hmm._model.obs_dim != obs_dim:
            raise ConfigurationError(
                f"obs_dim={obs_dim} does not match means of shape {means.shape}"
            )
        return hmm


# =============================================================================
# SECTION 4: OBSERVATIONS AND HEURISTIC FALLBACK
# =============================================================================

def extract_observations(bars: pd.DataFrame, vol_window: int = 20) -> np.ndarray:
    """
    Build HMM observations from OHLCV bars.

    Row for bar i (i >= vol_window):
        return        close[i] / close[i-1] - 1
        realized vol  population std of the vol_window returns ending at i
        volume ratio  volume[i] / mean(volume[i-vol_window:i]), 1 if that mean is 0

    Each row depends only on bars up to and including i.

    Returns:
        Array of shape (len(bars) - vol_window, 3); empty when too short
    """
    validate_bars(bars)
    if len(bars) <= vol_window:
        return np.empty((0, 3))

    close = bars['close'].astype(float).reset_index(drop=True)
    volume = bars['volume'].astype(float).reset_index(drop=True)

    returns = simple_returns(close)
    vol = realized_volatility(close, window=vol_window)
    avg_volume = volume.shift(1).rolling(window=vol_window, min_periods=vol_window).mean()
    ratio = (volume / avg_volume.where(avg_volume > 0)).fillna(1.0)

    obs = np.column_stack([returns, vol, ratio])[vol_window:]
    return np.nan_to_num(obs, nan=0.0, posinf=0.0, neginf=0.0)


def detect_heuristic_regime(
    closes: Sequence[float],
    config: Optional[HeuristicRegimeConfig] = None
) -> str:
    """
    Volatility-ratio / return-magnitude regime classifier.

    Compares short-window to long-window realized volatility and the
    trend-lookback return magnitude:

        ratio > 1.5 and |ret| > 15%   high_vol_trending
        ratio < 0.8 and |ret| < 5%    low_vol_range
        |ret| > 10%                   trending
        otherwise                     range_bound

    Returns UNKNOWN_REGIME with fewer than config.min_closes closes.
    """
    cfg = config or HeuristicRegimeConfig()
    prices = np.asarray(closes, dtype=float)
    if len(prices) < cfg.min_closes:
        return UNKNOWN_REGIME

    with np.errstate(divide='ignore', invalid='ignore'):
        returns = np.diff(prices) / prices[:-1]
    returns = np.nan_to_num(returns, nan=0.0, posinf=0.0, neginf=0.0)

    recent_vol = returns[-cfg.short_vol_window:].std()
    long_vol = returns[-cfg.long_vol_window:].std()
    vol_ratio = recent_vol / (long_vol if long_vol > 0 else 1.0)

    base = prices[-1 - cfg.trend_lookback]
    trend_return = abs((prices[-1] - base) / base) if base != 0 else 0.0

    if vol_ratio > cfg.high_vol_ratio and trend_return > cfg.high_vol_trend_return:
        return 'high_vol_trending'
    if vol_ratio < cfg.low_vol_ratio and trend_return < cfg.low_vol_range_return:
        return 'low_vol_range'
    if trend_return > cfg.trend_return:
        return 'trending'
    return 'range_bound'
