# torch_clustering/_torch_gmm_em.py
"""Diagonal-covariance Gaussian Mixture Model (GMM) EM in PyTorch (sklearn-aligned).

Key alignment choices:
- We store covariances but compute and USE precisions_cholesky for E-step log-probs
  (like sklearn).
- reg_covar is ADDED (not clamped) to the variances in the M-step, after clamping
  the round-off of E[x^2] - mean^2 at zero.
- nk smoothing uses: nk = resp.sum(0) + 10 * eps(dtype), like sklearn; weights are
  then renormalized to sum to one.
- Both steps are written as matrix products (resp^T X, resp^T X^2, X P^T, X^2 P^T)
  instead of (N,K,D) broadcasts.
- The Gaussian normalizer uses the dimension count: -0.5 * D * log(2 pi).

Initialization:
- default: one TorchKMeans fit (k-means++ seeding + Lloyd), labels -> one-hot resp
- resp_init: caller-supplied (N,K) responsibilities (warm start from known labels)

Storage (all diag): weights (K,), means (K,D), covariances (K,D),
precisions_cholesky (K,D) = 1/sqrt(covariances).
"""

from __future__ import annotations

import logging
import math
import os
from dataclasses import dataclass
from typing import Optional, Tuple

import torch

from ._common import (
    ArrayLike,
    CancellationToken,
    FitCancelled,
    FitState,
    InvalidParameter,
    _as_matrix,
    _check_cancelled,
    _check_positive,
    _check_tolerance,
    _log_state,
    _logsumexp_rows,
    _make_generator,
    _safe_log,
)
from ._kmeans import TorchKMeans

logger = logging.getLogger(__name__)


# ---------------------------
# Utilities
# ---------------------------

def _nk_eps(dtype: torch.dtype) -> float:
    """Match sklearn's nk smoothing: 10 * machine epsilon for dtype."""
    return float(10.0 * torch.finfo(dtype).eps)


@torch.no_grad()
def _compute_precisions_cholesky(cov: torch.Tensor) -> torch.Tensor:
    """(K, D) entries 1/sqrt(var)."""
    return 1.0 / torch.sqrt(cov)


@torch.no_grad()
def _compute_precisions(prec_chol: torch.Tensor) -> torch.Tensor:
    return prec_chol * prec_chol


@dataclass(frozen=True)
class GaussianParameters:
    weights: torch.Tensor              # (K,)
    means: torch.Tensor                # (K,D)
    covariances: torch.Tensor          # (K,D)
    precisions_cholesky: torch.Tensor  # (K,D)

    @property
    def precisions(self) -> torch.Tensor:
        return _compute_precisions(self.precisions_cholesky)


# ---------------------------
# Log Gaussian probability via precisions_cholesky (sklearn-style E-step)
# ---------------------------

def _estimate_log_gaussian_prob(
    X: torch.Tensor,
    X2: torch.Tensor,
    means: torch.Tensor,
    precisions_chol: torch.Tensor,
    cancel_token: Optional[CancellationToken] = None,
) -> torch.Tensor:
    """Diag log N(X | means, cov) (N,K), expanded into matrix products.

    (x - m)^2 p = m^2 p - 2 x (m p) + x^2 p, summed over dimensions.
    X2 is X * X, computed once per fit.
    """
    N, D = X.shape
    K, D2 = means.shape
    assert D == D2
    assert precisions_chol.shape == (K, D)

    precisions = _compute_precisions(precisions_chol)  # (K,D)
    # 0.5 * logdet(precision) = sum_d log(prec_chol_{k,d})
    log_det_term = torch.sum(torch.log(precisions_chol), dim=1)  # (K,)

    _check_cancelled(cancel_token)
    log_prob = torch.sum(means * means * precisions, dim=1).unsqueeze(0)  # (1,K)
    log_prob = torch.addmm(log_prob, X, (means * precisions).T, beta=1.0, alpha=-2.0)  # (N,K)
    _check_cancelled(cancel_token)
    log_prob = torch.addmm(log_prob, X2, precisions.T)  # (N,K)
    _check_cancelled(cancel_token)

    return -0.5 * (D * math.log(2 * math.pi) + log_prob) + log_det_term.unsqueeze(0)


# ---------------------------
# EM steps
# ---------------------------

def _expectation_step(
    X: torch.Tensor,
    X2: torch.Tensor,
    params: GaussianParameters,
    cancel_token: Optional[CancellationToken] = None,
) -> Tuple[torch.Tensor, torch.Tensor]:
    """E-step. Returns (mean log-likelihood lower bound, log_resp (N,K))."""
    log_prob = _estimate_log_gaussian_prob(
        X, X2, params.means, params.precisions_cholesky, cancel_token
    )  # (N,K)
    weighted_log_prob = log_prob + _safe_log(params.weights).unsqueeze(0)  # (N,K)

    log_prob_norm = _logsumexp_rows(weighted_log_prob)  # (N,)
    log_resp = weighted_log_prob - log_prob_norm.unsqueeze(1)  # (N,K)

    return log_prob_norm.mean(), log_resp


def _estimate_gaussian_parameters(
    X: torch.Tensor,
    X2: torch.Tensor,
    resp: torch.Tensor,
    reg_covar: float = 1e-6,
    cancel_token: Optional[CancellationToken] = None,
) -> GaussianParameters:
    """M-step (sklearn-style) producing weights/means/covariances from resp (N,K)."""
    N, D = X.shape
    assert resp.shape[0] == N

    nk = resp.sum(dim=0) + _nk_eps(resp.dtype)  # (K,)

    _check_cancelled(cancel_token)
    means = (resp.T @ X) / nk.unsqueeze(1)  # (K,D)
    _check_cancelled(cancel_token)
    avg_X2 = (resp.T @ X2) / nk.unsqueeze(1)  # (K,D)
    _check_cancelled(cancel_token)

    covariances = (avg_X2 - means * means).clamp_min(0.0) + reg_covar
    weights = nk / nk.sum()

    return GaussianParameters(
        weights=weights,
        means=means,
        covariances=covariances,
        precisions_cholesky=_compute_precisions_cholesky(covariances),
    )


# ---------------------------
# Results
# ---------------------------

@dataclass(frozen=True)
class GaussianMixtureFitResult:
    converged: bool
    lower_bound: float
    n_iter: int
    parameters: GaussianParameters
    labels: torch.Tensor  # (N,)
    lower_bounds: Tuple[float, ...]
    state: FitState

    @property
    def weights(self) -> torch.Tensor:
        return self.parameters.weights

    @property
    def means(self) -> torch.Tensor:
        return self.parameters.means

    @property
    def covariances(self) -> torch.Tensor:
        return self.parameters.covariances

    @property
    def precisions_cholesky(self) -> torch.Tensor:
        return self.parameters.precisions_cholesky

    def predicted_values(self) -> torch.Tensor:
        return self.labels

    def _to_matrix(self, num_values: int, data: ArrayLike) -> Tuple[torch.Tensor, torch.Tensor]:
        means = self.parameters.means
        X = _as_matrix(num_values, data, means.shape[1], dtype=means.dtype, device=means.device)
        return X, X * X

    @torch.no_grad()
    def predict_proba(self, num_values: int, data: ArrayLike) -> torch.Tensor:
        """Posterior responsibilities (N,K)."""
        X, X2 = self._to_matrix(num_values, data)
        _, log_resp = _expectation_step(X, X2, self.parameters)
        return log_resp.exp()

    @torch.no_grad()
    def predict(self, num_values: int, data: ArrayLike) -> torch.Tensor:
        X, X2 = self._to_matrix(num_values, data)
        _, log_resp = _expectation_step(X, X2, self.parameters)
        return torch.argmax(log_resp, dim=1)

    @torch.no_grad()
    def score_samples(self, num_values: int, data: ArrayLike) -> torch.Tensor:
        """Per-sample log-likelihood (N,)."""
        X, X2 = self._to_matrix(num_values, data)
        p = self.parameters
        log_prob = _estimate_log_gaussian_prob(X, X2, p.means, p.precisions_cholesky)
        return _logsumexp_rows(log_prob + _safe_log(p.weights).unsqueeze(0))

    @torch.no_grad()
    def score(self, num_values: int, data: ArrayLike) -> float:
        """Mean log-likelihood."""
        return float(self.score_samples(num_values, data).mean().item())

    def _n_parameters(self) -> int:
        """Parameter count like sklearn (diag) for AIC/BIC."""
        K, D = self.parameters.means.shape
        return int((K - 1) + K * D + K * D)

    def aic(self, num_values: int, data: ArrayLike) -> float:
        """Akaike information criterion."""
        ll = float(self.score_samples(num_values, data).sum().item())
        return 2.0 * self._n_parameters() - 2.0 * ll

    def bic(self, num_values: int, data: ArrayLike) -> float:
        """Bayesian information criterion."""
        ll = float(self.score_samples(num_values, data).sum().item())
        return math.log(num_values) * self._n_parameters() - 2.0 * ll


def _improves(candidate: float, best: float) -> bool:
    # NaN ranks below every real lower bound
    if math.isnan(best):
        return not math.isnan(candidate)
    return candidate > best


# ---------------------------
# Model wrapper
# ---------------------------

class TorchGaussianMixture:
    """Sklearn-shaped diagonal GaussianMixture in PyTorch, seeded by TorchKMeans."""

    def __init__(
        self,
        n_components: int,
        n_dimensions: int,
        *,
        kmeans_max_iter: int = 300,
        kmeans_tol: float = 1e-4,
        n_workers: Optional[int] = None,
        random_state=None,
        device=None,
        dtype=None,
    ) -> None:
        _check_positive("n_components", n_components)
        _check_positive("n_dimensions", n_dimensions)
        _check_positive("kmeans_max_iter", kmeans_max_iter)
        _check_tolerance("kmeans_tol", kmeans_tol)
        if n_workers is None:
            n_workers = os.cpu_count() or 1
        _check_positive("n_workers", n_workers)

        self.n_components = int(n_components)
        self.n_dimensions = int(n_dimensions)
        self.kmeans_max_iter = kmeans_max_iter
        self.kmeans_tol = kmeans_tol
        self.n_workers = int(n_workers)
        self.random_state = random_state
        self.device = device
        self.dtype = dtype

    def _check_resp_init(self, resp_init: ArrayLike, X: torch.Tensor) -> torch.Tensor:
        N, K = X.shape[0], self.n_components
        resp = torch.as_tensor(resp_init, device=X.device).to(X.dtype)
        if resp.numel() != N * K:
            raise InvalidParameter(
                f"resp_init must have shape (N,K) = {(N, K)}, got {tuple(resp.shape)}"
            )
        return resp.reshape(N, K)

    @torch.no_grad()
    def _initial_resp(
        self,
        X: torch.Tensor,
        generator: torch.Generator,
        cancel_token: Optional[CancellationToken],
    ) -> torch.Tensor:
        """One k-means fit turned into one-hot responsibilities (N,K)."""
        N = X.shape[0]
        kmeans = TorchKMeans(
            self.n_components,
            self.n_dimensions,
            n_workers=self.n_workers,
            device=self.device,
            dtype=self.dtype,
        )
        fitted = kmeans._fit(
            X,
            max_iter=self.kmeans_max_iter,
            tol=self.kmeans_tol,
            centroids=None,
            generator=generator,
            cancel_token=cancel_token,
        )
        resp = torch.zeros((N, self.n_components), device=X.device, dtype=X.dtype)
        resp[torch.arange(N, device=X.device), fitted.labels] = 1.0
        return resp

    # -----------------------
    # Public API
    # -----------------------

    def fit(
        self,
        num_values: int,
        data: ArrayLike,
        n_init: int = 1,
        max_iter: int = 100,
        tol: float = 1e-3,
        reg_covar: float = 1e-6,
        resp_init: Optional[ArrayLike] = None,
        cancel_token: Optional[CancellationToken] = None,
    ) -> GaussianMixtureFitResult:
        X = _as_matrix(num_values, data, self.n_dimensions, dtype=self.dtype, device=self.device)
        _check_positive("n_init", n_init)
        _check_positive("max_iter", max_iter)
        _check_tolerance("tol", tol)
        _check_tolerance("reg_covar", reg_covar)
        if reg_covar < 0:
            raise InvalidParameter("reg_covar must be non-negative")

        resp0 = self._check_resp_init(resp_init, X) if resp_init is not None else None
        if resp0 is None and num_values < self.n_components:
            raise InvalidParameter(
                f"num_values ({num_values}) must be >= n_components ({self.n_components}) "
                "unless resp_init is given"
            )

        try:
            return self._fit(X, n_init, max_iter, tol, reg_covar, resp0, cancel_token)
        except FitCancelled:
            _log_state("gmm", FitState.CANCELLED)
            raise

    @torch.no_grad()
    def _fit(
        self,
        X: torch.Tensor,
        n_init: int,
        max_iter: int,
        tol: float,
        reg_covar: float,
        resp0: Optional[torch.Tensor],
        cancel_token: Optional[CancellationToken],
    ) -> GaussianMixtureFitResult:
        X2 = X * X
        generator = _make_generator(self.random_state)

        # a supplied resp makes every restart identical
        n_init = 1 if resp0 is not None else n_init

        best: Optional[GaussianMixtureFitResult] = None
        for run in range(n_init):
            _log_state("gmm", FitState.INITIALIZING)
            resp = resp0 if resp0 is not None else self._initial_resp(X, generator, cancel_token)
            result = self._single_fit(X, X2, resp, max_iter, tol, reg_covar, cancel_token)
            logger.info(
                "gmm run %d/%d: lower_bound=%.6f converged=%s n_iter=%d",
                run + 1, n_init, result.lower_bound, result.converged, result.n_iter,
            )

            if best is None or _improves(result.lower_bound, best.lower_bound):
                best = result

        assert best is not None
        return best

    def _single_fit(
        self,
        X: torch.Tensor,
        X2: torch.Tensor,
        resp: torch.Tensor,
        max_iter: int,
        tol: float,
        reg_covar: float,
        cancel_token: Optional[CancellationToken],
    ) -> GaussianMixtureFitResult:
        p = _estimate_gaussian_parameters(X, X2, resp, reg_covar, cancel_token)

        _log_state("gmm", FitState.ITERATING)
        lower = float("-inf")
        converged = False
        n_iter = max_iter
        history = []

        for it in range(max_iter):
            _check_cancelled(cancel_token)
            prev_lower = lower

            lower_t, log_resp = _expectation_step(X, X2, p, cancel_token)
            p = _estimate_gaussian_parameters(X, X2, log_resp.exp(), reg_covar, cancel_token)
            lower = float(lower_t.item())
            history.append(lower)

            change = lower - prev_lower
            logger.debug("gmm iteration %d: lower_bound=%.6f change=%.3g", it + 1, lower, change)
            if abs(change) < tol:
                converged = True
                n_iter = it + 1
                break

        state = FitState.CONVERGED if converged else FitState.MAX_ITERATIONS_REACHED
        _log_state("gmm", state)
        if not converged:
            logger.warning(
                "gmm did not converge within max_iter=%d (last change %.3g, tol %.3g)",
                max_iter, change, tol,
            )

        _, log_resp = _expectation_step(X, X2, p, cancel_token)
        labels = torch.argmax(log_resp, dim=1)

        return GaussianMixtureFitResult(
            converged=converged,
            lower_bound=lower,
            n_iter=n_iter,
            parameters=p,
            labels=labels,
            lower_bounds=tuple(history),
            state=state,
        )
