"""k-means and diagonal Gaussian-mixture EM clustering in PyTorch."""

from ._common import (
    CancellationToken,
    FitCancelled,
    FitState,
    FittedModel,
    InvalidParameter,
)
from ._kmeans import KMeansFitResult, TorchKMeans
from ._torch_gmm_em import (
    GaussianMixtureFitResult,
    GaussianParameters,
    TorchGaussianMixture,
)

__version__ = "0.1.0"

__all__ = [
    "CancellationToken",
    "FitCancelled",
    "FitState",
    "FittedModel",
    "GaussianMixtureFitResult",
    "GaussianParameters",
    "InvalidParameter",
    "KMeansFitResult",
    "TorchGaussianMixture",
    "TorchKMeans",
]
