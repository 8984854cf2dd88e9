# gaussian_mixture/gmr.py
"""Gaussian Mixture Regression (GMR).

The joint mixture over D dimensions is split into inputs (the leading
D - out_dim coordinates) and outputs (the trailing out_dim coordinates).
Conditioning each component on an input x gives

  h_k(x)   ∝ pi_k N(x | mu_k^i, S_k^ii)
  m_k(x)   = mu_k^o + S_k^oi (S_k^ii)^-1 (x - mu_k^i)
  C_k      = S_k^oo - S_k^oi (S_k^ii)^-1 S_k^io

and the prediction is the mixture mean sum_k h_k m_k, with covariance
sum_k h_k (C_k + m_k m_k^T) - m m^T.

The regression object keeps a reference to the mixture and reads its current
parameters on every call; refining the mixture afterwards changes the
predictions.
"""

from __future__ import annotations

from typing import Tuple, Union

import torch

from ._linalg import _cholesky, _estimate_log_gaussian_prob_full_precchol, _safe_log
from .gmm import GaussianMixtureModel


class GaussianMixtureRegression:
    """Predict the trailing out_dim coordinates from the leading ones."""

    def __init__(
        self,
        gmm: GaussianMixtureModel,
        out_dim: int,
    ) -> None:
        if not 0 < out_dim <= gmm.dim:
            raise ValueError(f"out_dim must be in [1, {gmm.dim}], got {out_dim}")
        self.gmm = gmm
        self.out_dim = int(out_dim)
        self.in_dim = gmm.dim - self.out_dim

    def _check_model(self) -> None:
        if not self.gmm.initialized or self.gmm.num_states == 0:
            raise RuntimeError("regression needs an initialized mixture model.")

    @torch.no_grad()
    def _condition(self, X: torch.Tensor) -> Tuple[torch.Tensor, torch.Tensor, torch.Tensor]:
        """Per-component conditionals for a batch X (N, in_dim).

        Returns:
          resp:  (N,K) conditional component weights
          means: (N,K,out_dim)
          covs:  (K,out_dim,out_dim)
        """
        gmm = self.gmm
        i, o = self.in_dim, self.out_dim
        mu = gmm.means  # (K,D)
        S = gmm.covariances  # (K,D,D)
        N = X.shape[0]
        K = gmm.num_states

        mu_i, mu_o = mu[:, :i], mu[:, i:]
        S_oo = S[:, i:, i:]

        if i == 0:
            resp = (gmm.priors / gmm.priors.sum()).unsqueeze(0).expand(N, K)
            return resp, mu_o.unsqueeze(0).expand(N, K, o), S_oo

        S_ii = S[:, :i, :i]
        S_oi = S[:, i:, :i]

        L = _cholesky(S_ii, gmm.config.reg_covar)  # (K,i,i)
        I = torch.eye(i, dtype=L.dtype).expand_as(L)
        prec_chol = torch.linalg.solve_triangular(L, I, upper=False)

        log_prob = _estimate_log_gaussian_prob_full_precchol(X, mu_i, prec_chol)  # (N,K)
        weighted = log_prob + _safe_log(gmm.priors).unsqueeze(0)
        resp = (weighted - torch.logsumexp(weighted, dim=1, keepdim=True)).exp()

        # gain_k = S_oi S_ii^-1, via S_ii gain_k^T = S_io
        gain = torch.cholesky_solve(S_oi.transpose(-1, -2), L).transpose(-1, -2)  # (K,o,i)
        diff = X.unsqueeze(1) - mu_i.unsqueeze(0)  # (N,K,i)
        means = mu_o.unsqueeze(0) + torch.einsum('koi,nki->nko', gain, diff)  # (N,K,o)
        covs = S_oo - gain @ S_oi.transpose(-1, -2)  # (K,o,o)
        return resp, means, covs

    def _as_inputs(self, x) -> Tuple[torch.Tensor, bool]:
        x = torch.as_tensor(x, dtype=self.gmm.config.dtype)
        single = x.dim() <= 1
        X = x.reshape(1, x.numel()) if single else x
        if X.dim() != 2 or X.shape[1] != self.in_dim:
            raise ValueError(f"x must have shape ({self.in_dim},) or (N,{self.in_dim}), got {tuple(x.shape)}")
        return X, single

    @torch.no_grad()
    def predict(
        self, x, return_cov: bool = False
    ) -> Union[torch.Tensor, Tuple[torch.Tensor, torch.Tensor]]:
        """Conditional expectation of the outputs given x.

        x is (in_dim,) or (N,in_dim); the result is (out_dim,) or (N,out_dim),
        plus the matching conditional covariance when return_cov is set.
        """
        self._check_model()
        X, single = self._as_inputs(x)
        resp, means, covs = self._condition(X)

        mean = torch.einsum('nk,nko->no', resp, means)  # (N,o)
        if not return_cov:
            return mean[0] if single else mean

        second = torch.einsum('nk,kab->nab', resp, covs) + torch.einsum('nk,nka,nkb->nab', resp, means, means)
        cov = second - mean.unsqueeze(2) * mean.unsqueeze(1)  # (N,o,o)
        if single:
            return mean[0], cov[0]
        return mean, cov

    @torch.no_grad()
    def conditional(self, x) -> GaussianMixtureModel:
        """The conditional distribution p(outputs | x) as a new mixture."""
        self._check_model()
        X, single = self._as_inputs(x)
        if not single:
            raise ValueError("conditional() takes a single input vector")
        resp, means, covs = self._condition(X)

        out = GaussianMixtureModel(self.out_dim, config=self.gmm.config, logger=self.gmm.logger)
        out.set_num_states(self.gmm.num_states)
        out.set_priors(resp[0])
        for k in range(out.num_states):
            out.set_mean(k, means[0, k])
            out.set_covariance(k, covs[k])
        return out.force_initialize()
