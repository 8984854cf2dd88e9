# gaussian_mixture/config.py
"""Defaults shared by the mixture model and the objects derived from it."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

import torch

DEFAULT_CONTAINER_TOPIC = "gaussian_mixture_model"


@dataclass
class MixtureConfig:
    """Numerical and I/O settings for a GaussianMixtureModel.

    dtype:            working precision of means, covariances and priors
    reg_covar:        added to a covariance diagonal when its Cholesky
                      factorization fails (singular clusters); also the
                      M-step regularization used by EM
    kmeans_max_iter:  default round bound for init_kmeans
    em_max_iter:      default iteration bound for ExpectationMaximization.run
    em_tol:           EM stops once the lower bound changes by less than this
    seed:             seeds the model's own torch.Generator; None uses torch's
                      global generator
    container_topic:  entry name used by to_container / from_container
    """
    dtype: torch.dtype = torch.float64
    reg_covar: float = 1e-6
    kmeans_max_iter: int = 100
    em_max_iter: int = 100
    em_tol: float = 1e-3
    seed: Optional[int] = None
    container_topic: str = DEFAULT_CONTAINER_TOPIC

    def __post_init__(self):
        if not self.dtype.is_floating_point:
            raise ValueError(f"dtype must be a floating dtype, got {self.dtype}")
        if self.reg_covar < 0:
            raise ValueError("reg_covar must be non-negative")
        if self.kmeans_max_iter <= 0:
            raise ValueError("kmeans_max_iter must be positive")
        if self.em_max_iter <= 0:
            raise ValueError("em_max_iter must be positive")
        if not self.container_topic:
            raise ValueError("container_topic must be a non-empty string")

    def make_generator(self) -> Optional[torch.Generator]:
        if self.seed is None:
            return None
        generator = torch.Generator()
        generator.manual_seed(int(self.seed))
        return generator
