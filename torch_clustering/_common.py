# torch_clustering/_common.py
"""Pieces shared by the k-means and Gaussian-mixture engines.

- InvalidParameter / FitCancelled: the two error outcomes of a fit.
- CancellationToken: cooperative cancellation, polled between iterations and
  around the expensive matrix products.
- FitState: Initializing -> Iterating -> {Converged | MaxIterationsReached | Cancelled}.
- FittedModel: the capability both fit results implement (labels + predict).
- Small tensor helpers (input coercion, safe log, row-wise log-sum-exp).
"""

from __future__ import annotations

import enum
import logging
import math
import threading
from typing import Optional, Protocol, Sequence, Union, runtime_checkable

import numpy as np
import torch

logger = logging.getLogger(__name__)

ArrayLike = Union[Sequence[float], np.ndarray, torch.Tensor]


# ---------------------------
# Errors
# ---------------------------

class InvalidParameter(ValueError):
    """Bad cluster/dimension/value counts, short data, or malformed init arrays."""


class FitState(enum.Enum):
    INITIALIZING = "initializing"
    ITERATING = "iterating"
    CONVERGED = "converged"
    MAX_ITERATIONS_REACHED = "max_iterations_reached"
    CANCELLED = "cancelled"


class FitCancelled(RuntimeError):
    """Raised out of ``fit`` when its CancellationToken was cancelled."""

    state = FitState.CANCELLED


# ---------------------------
# Cancellation
# ---------------------------

class CancellationToken:
    """Thread-safe cancellation flag threaded through a fit call."""

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self) -> None:
        if self.cancelled:
            raise FitCancelled("fit was cancelled")


def _check_cancelled(token: Optional[CancellationToken]) -> None:
    if token is not None:
        token.raise_if_cancelled()


def _log_state(name: str, state: FitState) -> None:
    logger.debug("%s -> %s", name, state.value)


# ---------------------------
# Fitted-model capability
# ---------------------------

@runtime_checkable
class FittedModel(Protocol):
    """What algorithm-agnostic callers rely on: trained labels and predict()."""

    def predicted_values(self) -> torch.Tensor:
        ...

    def predict(self, num_values: int, data: ArrayLike) -> torch.Tensor:
        ...


# ---------------------------
# Input validation / coercion
# ---------------------------

def _check_positive(name: str, value: int) -> None:
    if isinstance(value, bool) or not isinstance(value, (int, np.integer)) or value <= 0:
        raise InvalidParameter(f"{name} must be a positive integer, got {value!r}")


def _check_tolerance(name: str, value: float) -> None:
    real = isinstance(value, (int, float, np.integer, np.floating)) and not isinstance(value, bool)
    if not real or math.isnan(value):
        raise InvalidParameter(f"{name} must be a real number, got {value!r}")


def _as_matrix(
    num_values: int,
    data: ArrayLike,
    n_dimensions: int,
    dtype: Optional[torch.dtype] = None,
    device=None,
) -> torch.Tensor:
    """Turn a flat row-major buffer of length >= N*D into an (N, D) tensor.

    The caller's buffer is never written to; trailing elements are ignored.
    """
    _check_positive("num_values", num_values)

    flat = torch.as_tensor(data, device=device)
    if dtype is not None:
        flat = flat.to(dtype)
    elif not flat.is_floating_point():
        flat = flat.to(torch.get_default_dtype())
    flat = flat.reshape(-1)

    needed = num_values * n_dimensions
    if flat.numel() < needed:
        raise InvalidParameter(
            f"data has {flat.numel()} values, need at least {needed} "
            f"({num_values} points x {n_dimensions} dimensions)"
        )
    return flat[:needed].reshape(num_values, n_dimensions)


def _make_generator(random_state) -> torch.Generator:
    """Per-fit generator: None -> fresh entropy, int -> seeded, Generator -> as is."""
    if isinstance(random_state, torch.Generator):
        return random_state
    gen = torch.Generator()
    if random_state is None:
        gen.seed()
    else:
        gen.manual_seed(int(random_state))
    return gen


# ---------------------------
# Numerics
# ---------------------------

def _safe_log(x: torch.Tensor) -> torch.Tensor:
    tiny = torch.finfo(x.dtype).tiny
    return torch.log(x.clamp_min(tiny))


def _logsumexp_rows(a: torch.Tensor) -> torch.Tensor:
    """log(sum_k exp(a[n, k])) per row, shifted by the row max. Returns (N,)."""
    a_max = a.max(dim=1, keepdim=True).values
    # all -inf (or inf) rows: shift by 0 so we never compute inf - inf
    a_max = torch.where(torch.isfinite(a_max), a_max, torch.zeros_like(a_max))
    summed = torch.exp(a - a_max).sum(dim=1, keepdim=True)
    return (_safe_log(summed) + a_max).squeeze(1)
