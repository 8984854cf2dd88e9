# gaussian_mixture/em.py
"""Expectation-Maximization refinement of a GaussianMixtureModel.

The refinement object is bound to one model instance and writes the updated
priors, means and covariances straight back into it, so the usual pattern is

    gmm.set_num_states(K).init_kmeans(X)
    gmm.get_em().run(X)

E-step log-probabilities use the precision Cholesky factors (sklearn-style);
the M-step ADDS reg_covar to the covariance diagonal and smooths nk with
10 * eps(dtype), like sklearn.

Exposed sklearn-like attributes after run:
- converged_, n_iter_, lower_bound_
- lower_bounds_ (history list)
"""

from __future__ import annotations

import logging
from typing import List, Optional

import torch

from ._linalg import _expectation_step_precchol, _maximization_step


class ExpectationMaximization:
    """EM on a GaussianMixtureModel, in place."""

    def __init__(
        self,
        gmm,
        max_iter: Optional[int] = None,
        tol: Optional[float] = None,
        reg_covar: Optional[float] = None,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        config = gmm.config
        self.gmm = gmm
        self.max_iter = config.em_max_iter if max_iter is None else max_iter
        self.tol = config.em_tol if tol is None else tol
        self.reg_covar = config.reg_covar if reg_covar is None else reg_covar
        self.logger = logger if logger is not None else logging.getLogger(__name__)

        if self.max_iter <= 0:
            raise ValueError("max_iter must be positive")
        if self.reg_covar < 0:
            raise ValueError("reg_covar must be non-negative")

        self.converged_: bool = False
        self.n_iter_: int = 0
        self.lower_bound_: float = float("-inf")
        self.lower_bounds_: List[float] = []

    def _check_model(self) -> None:
        if not self.gmm.initialized or self.gmm.num_states == 0:
            raise RuntimeError("EM needs an initialized mixture model.")

    @torch.no_grad()
    def step(self, data) -> float:
        """One E-step + M-step.

        Returns the mean log-likelihood of data under the parameters before the
        update.
        """
        self._check_model()
        gmm = self.gmm
        X = gmm._as_patterns(data)

        lower, log_resp = _expectation_step_precchol(
            X, gmm.means, gmm._precisions_cholesky(), gmm.priors
        )
        weights, means, cov = _maximization_step(X, log_resp, reg_covar=self.reg_covar)

        gmm.set_priors(weights)
        for k in range(gmm.num_states):
            gmm.set_mean(k, means[k])
            gmm.set_covariance(k, cov[k])
        return float(lower.item())

    @torch.no_grad()
    def run(self, data) -> "ExpectationMaximization":
        """Iterate until the lower bound changes by less than tol or max_iter."""
        self._check_model()
        X = self.gmm._as_patterns(data)

        prev_lower = float("-inf")
        self.converged_ = False
        self.lower_bounds_ = []

        for it in range(self.max_iter):
            lower = self.step(X)
            self.lower_bounds_.append(lower)
            self.n_iter_ = it + 1
            self.logger.debug("EM iteration %d: mean log-likelihood %.6f", it + 1, lower)

            change = lower - prev_lower
            if abs(change) < self.tol:
                self.converged_ = True
                break
            prev_lower = lower

        self.lower_bound_ = self.lower_bounds_[-1]
        if not self.converged_:
            self.logger.debug("EM did not converge after %d iterations", self.n_iter_)
        return self
