# torch_clustering/_kmeans.py
"""k-means (Lloyd) in PyTorch.

- k-means++ seeding without replacement: a chosen point's weight is zeroed.
- Assignment uses ||c||^2 - 2 x.c through one addmm (||x||^2 is dropped,
  it is the same for every centroid of a given point).
- Centroid update accumulates per-chunk counts/sums on a thread pool, each
  chunk writing only its own slot, then reduces them on the calling thread.
- Stops when centroids repeat bit for bit, or when the total squared shift
  drops below tol * (mean per-dimension variance of the data).
"""

from __future__ import annotations

import logging
import os
from concurrent.futures import ThreadPoolExecutor
from contextlib import nullcontext
from dataclasses import dataclass
from typing import Optional

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
    _make_generator,
)

logger = logging.getLogger(__name__)


# ---------------------------
# Seeding
# ---------------------------

def _sample_index(weights: torch.Tensor, available: torch.Tensor, generator: torch.Generator) -> int:
    """Draw one index with probability proportional to weights over available points."""
    w = torch.where(available, weights, torch.zeros_like(weights)).to("cpu", torch.float64)
    if not bool(w.sum() > 0):
        # only duplicates of already chosen points remain
        w = available.to("cpu", torch.float64)
        if not bool(w.sum() > 0):
            w = torch.ones_like(w)
    return int(torch.multinomial(w, 1, generator=generator).item())


@torch.no_grad()
def _kmeans_plus_plus_init_centroids(
    X: torch.Tensor,
    K: int,
    generator: torch.Generator,
    cancel_token: Optional[CancellationToken] = None,
) -> torch.Tensor:
    """k-means++ seeding. Returns centroids (K, D)."""
    N, D = X.shape
    centroids = torch.empty((K, D), device=X.device, dtype=X.dtype)
    available = torch.ones((N,), device=X.device, dtype=torch.bool)

    # First centroid uniformly
    closest_d2 = torch.ones((N,), device=X.device, dtype=X.dtype)

    for k in range(K):
        _check_cancelled(cancel_token)
        idx = _sample_index(closest_d2, available, generator)
        centroids[k] = X[idx]
        available[idx] = False

        if k == K - 1:
            break
        d2_new = torch.sum((X - centroids[k]) ** 2, dim=1)
        closest_d2 = d2_new if k == 0 else torch.minimum(closest_d2, d2_new)

    return centroids


# ---------------------------
# Lloyd steps
# ---------------------------

@torch.no_grad()
def _assign_labels(
    X: torch.Tensor,
    centroids: torch.Tensor,
    cancel_token: Optional[CancellationToken] = None,
) -> torch.Tensor:
    """Index of the nearest centroid per row (N,). Ties go to the lowest index."""
    _check_cancelled(cancel_token)
    sq_norms = torch.sum(centroids * centroids, dim=1)  # (K,)
    scores = torch.addmm(sq_norms.unsqueeze(0), X, centroids.T, beta=1.0, alpha=-2.0)  # (N,K)
    labels = torch.argmin(scores, dim=1)
    _check_cancelled(cancel_token)
    return labels


def _accumulate_chunk(
    slot: int,
    X_chunk: torch.Tensor,
    labels_chunk: torch.Tensor,
    centroids: torch.Tensor,
    counts: torch.Tensor,
    sums: torch.Tensor,
) -> None:
    K = counts.shape[1]
    counts[slot] = torch.bincount(labels_chunk, minlength=K)
    # offsets from the current centroid: points sitting on it add exactly zero
    sums[slot].index_add_(0, labels_chunk, X_chunk - centroids[labels_chunk])


@torch.no_grad()
def _recalculate_centroids(
    X: torch.Tensor,
    labels: torch.Tensor,
    centroids: torch.Tensor,
    n_chunks: int,
    executor: Optional[ThreadPoolExecutor] = None,
    cancel_token: Optional[CancellationToken] = None,
) -> torch.Tensor:
    """New centroids (K, D) from contiguous chunks reduced on this thread.

    Each chunk sums the offsets of its points from their current centroid;
    the mean offset is then added back onto that centroid.

    A cluster that received no points keeps its previous centroid.
    """
    N, D = X.shape
    K = centroids.shape[0]
    n_chunks = max(1, min(n_chunks, N))

    counts = torch.zeros((n_chunks, K), device=X.device, dtype=torch.long)
    sums = torch.zeros((n_chunks, K, D), device=X.device, dtype=X.dtype)
    chunks = zip(X.tensor_split(n_chunks), labels.tensor_split(n_chunks))

    _check_cancelled(cancel_token)
    if executor is None or n_chunks == 1:
        for slot, (X_chunk, labels_chunk) in enumerate(chunks):
            _accumulate_chunk(slot, X_chunk, labels_chunk, centroids, counts, sums)
    else:
        futures = [
            executor.submit(_accumulate_chunk, slot, X_chunk, labels_chunk, centroids, counts, sums)
            for slot, (X_chunk, labels_chunk) in enumerate(chunks)
        ]
        for future in futures:
            future.result()
    _check_cancelled(cancel_token)

    total_counts = counts.sum(dim=0)  # (K,)
    total_sums = sums.sum(dim=0)      # (K,D)

    nonempty = (total_counts > 0).unsqueeze(1)
    shifts = total_sums / total_counts.clamp_min(1).unsqueeze(1).to(X.dtype)
    return torch.where(nonempty, centroids + shifts, centroids)


def _centroid_shift(previous: torch.Tensor, current: torch.Tensor) -> float:
    return float(torch.sum((current - previous) ** 2).item())


def _data_variance(X: torch.Tensor) -> float:
    """Mean over dimensions of the (population) variance of each dimension."""
    return float(X.var(dim=0, unbiased=False).mean().item())


def _inertia(X: torch.Tensor, centroids: torch.Tensor, labels: torch.Tensor) -> float:
    return float(torch.sum((X - centroids[labels]) ** 2).item())


# ---------------------------
# Results
# ---------------------------

@dataclass(frozen=True)
class KMeansFitResult:
    centroids: torch.Tensor  # (K,D)
    n_iter: int
    inertia: float
    labels: torch.Tensor     # (N,)
    state: FitState

    @property
    def converged(self) -> bool:
        return self.state is FitState.CONVERGED

    def predicted_values(self) -> torch.Tensor:
        return self.labels

    @torch.no_grad()
    def predict(self, num_values: int, data: ArrayLike) -> torch.Tensor:
        K, D = self.centroids.shape
        X = _as_matrix(num_values, data, D, dtype=self.centroids.dtype, device=self.centroids.device)
        return _assign_labels(X, self.centroids)


# ---------------------------
# Model wrapper
# ---------------------------

class TorchKMeans:
    """k-means with k-means++ seeding and a chunked, thread-parallel update step."""

    def __init__(
        self,
        n_clusters: int,
        n_dimensions: int,
        *,
        n_workers: Optional[int] = None,
        random_state=None,
        device=None,
        dtype=None,
    ) -> None:
        _check_positive("n_clusters", n_clusters)
        _check_positive("n_dimensions", n_dimensions)
        if n_workers is None:
            n_workers = os.cpu_count() or 1
        _check_positive("n_workers", n_workers)

        self.n_clusters = int(n_clusters)
        self.n_dimensions = int(n_dimensions)
        self.n_workers = int(n_workers)
        self.random_state = random_state
        self.device = device
        self.dtype = dtype

    def _to_matrix(self, num_values: int, data: ArrayLike) -> torch.Tensor:
        return _as_matrix(num_values, data, self.n_dimensions, dtype=self.dtype, device=self.device)

    def _check_init(self, init: ArrayLike, X: torch.Tensor) -> torch.Tensor:
        centroids = torch.as_tensor(init, device=X.device).to(X.dtype)
        K, D = self.n_clusters, self.n_dimensions
        if centroids.numel() != K * D:
            raise InvalidParameter(
                f"init must hold (K,D) = {(K, D)} centroids, got {tuple(centroids.shape)}"
            )
        return centroids.reshape(K, D).clone()

    # -----------------------
    # Public API
    # -----------------------

    def fit(
        self,
        num_values: int,
        data: ArrayLike,
        max_iter: int = 300,
        tol: float = 1e-4,
        init: Optional[ArrayLike] = None,
        cancel_token: Optional[CancellationToken] = None,
    ) -> KMeansFitResult:
        X = self._to_matrix(num_values, data)
        _check_positive("max_iter", max_iter)
        _check_tolerance("tol", tol)
        if num_values < self.n_clusters:
            raise InvalidParameter(
                f"num_values ({num_values}) must be >= n_clusters ({self.n_clusters})"
            )
        centroids = self._check_init(init, X) if init is not None else None

        try:
            return self._fit(
                X,
                max_iter=max_iter,
                tol=tol,
                centroids=centroids,
                generator=_make_generator(self.random_state),
                cancel_token=cancel_token,
            )
        except FitCancelled:
            _log_state("kmeans", FitState.CANCELLED)
            raise

    @torch.no_grad()
    def _fit(
        self,
        X: torch.Tensor,
        max_iter: int,
        tol: float,
        centroids: Optional[torch.Tensor],
        generator: torch.Generator,
        cancel_token: Optional[CancellationToken] = None,
    ) -> KMeansFitResult:
        """Run Lloyd iterations on an already validated (N, D) tensor."""
        _log_state("kmeans", FitState.INITIALIZING)
        _check_cancelled(cancel_token)

        adapted_tol = _data_variance(X) * tol
        if centroids is None:
            centroids = _kmeans_plus_plus_init_centroids(X, self.n_clusters, generator, cancel_token)

        _log_state("kmeans", FitState.ITERATING)
        state = FitState.MAX_ITERATIONS_REACHED
        n_iter = max_iter

        pool = ThreadPoolExecutor(max_workers=self.n_workers) if self.n_workers > 1 else nullcontext()
        with pool as executor:
            for it in range(max_iter):
                _check_cancelled(cancel_token)
                labels = _assign_labels(X, centroids, cancel_token)
                new_centroids = _recalculate_centroids(
                    X, labels, centroids, self.n_workers, executor, cancel_token
                )

                if torch.equal(new_centroids, centroids):
                    state, n_iter = FitState.CONVERGED, it
                    break

                shift = _centroid_shift(centroids, new_centroids)
                centroids = new_centroids
                if shift < adapted_tol:
                    state, n_iter = FitState.CONVERGED, it
                    break

                if logger.isEnabledFor(logging.DEBUG):
                    logger.debug(
                        "k-means iteration %d: shift=%.6g inertia=%.6g",
                        it, shift, _inertia(X, centroids, labels),
                    )

        # labels against the returned centroids, so predict() on X agrees with them
        labels = _assign_labels(X, centroids, cancel_token)
        inertia = _inertia(X, centroids, labels)

        _log_state("kmeans", state)
        if state is FitState.MAX_ITERATIONS_REACHED:
            logger.warning("k-means did not converge within max_iter=%d (inertia=%.6g)", max_iter, inertia)
        else:
            logger.info("k-means converged at iteration %d (inertia=%.6g)", n_iter, inertia)

        return KMeansFitResult(
            centroids=centroids,
            n_iter=n_iter,
            inertia=inertia,
            labels=labels,
            state=state,
        )
