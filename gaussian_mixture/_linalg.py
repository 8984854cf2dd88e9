# gaussian_mixture/_linalg.py
"""Full-covariance Gaussian kernels in PyTorch.

Densities are evaluated through the Cholesky factor of the precision matrix
(sklearn-style), which is more stable on ill-conditioned covariances than
inverting the covariance directly:

  cov = L L^T (L lower).  precision_chol = inv(L) (lower).
  precision = inv(cov) = inv(L^T) inv(L) = precision_chol^T precision_chol.

Covariances produced by k-means on tiny clusters are often singular. When the
plain factorization fails, reg_covar is ADDED to the diagonal and the
factorization is retried.

Shapes:
- X:               (N, D)
- means:           (K, D)
- cov:             (K, D, D) or (D, D)
- precisions_chol: (K, D, D)
- weights:         (K,)
"""

from __future__ import annotations

import math
from typing import Tuple

import torch


def _nk_eps(dtype: torch.dtype) -> float:
    """Match sklearn's nk smoothing: 10 * machine epsilon for dtype."""
    return float(10.0 * torch.finfo(dtype).eps)


def _safe_log(x: torch.Tensor) -> torch.Tensor:
    tiny = torch.finfo(x.dtype).tiny
    return torch.log(x.clamp_min(tiny))


def _add_reg_diag(cov: torch.Tensor, reg_covar: float) -> torch.Tensor:
    """Add reg_covar to diagonal (works for (D,D) or (K,D,D))."""
    if reg_covar == 0.0:
        return cov
    if cov.dim() == 2:
        D = cov.shape[0]
        return cov + reg_covar * torch.eye(D, device=cov.device, dtype=cov.dtype)
    if cov.dim() == 3:
        _, D, _ = cov.shape
        eye = torch.eye(D, device=cov.device, dtype=cov.dtype)
        return cov + reg_covar * eye.unsqueeze(0)
    raise ValueError("cov must be (D,D) or (K,D,D)")


@torch.no_grad()
def _cholesky(cov: torch.Tensor, reg_covar: float) -> torch.Tensor:
    """Lower Cholesky factor of cov, regularizing the diagonal if needed."""
    L, info = torch.linalg.cholesky_ex(cov)
    if bool(torch.any(info != 0)):
        L = torch.linalg.cholesky(_add_reg_diag(cov, reg_covar))
    return L


@torch.no_grad()
def _compute_precisions_cholesky(cov: torch.Tensor, reg_covar: float = 1e-6) -> torch.Tensor:
    """Compute precisions_cholesky from (D,D) or batched (K,D,D) covariances."""
    L = _cholesky(cov, reg_covar)
    D = L.shape[-1]
    I = torch.eye(D, device=cov.device, dtype=cov.dtype).expand_as(L)
    return torch.linalg.solve_triangular(L, I, upper=False)


def _estimate_log_gaussian_prob_full_precchol(
    X: torch.Tensor,
    means: torch.Tensor,
    precisions_chol: torch.Tensor,
) -> torch.Tensor:
    """Full-cov log N using precision_cholesky (K,D,D lower). Returns (N,K)."""
    N, D = X.shape
    K, D2 = means.shape
    assert D == D2
    assert precisions_chol.shape == (K, D, D)

    diff = X.unsqueeze(1) - means.unsqueeze(0)  # (N,K,D)

    # 0.5 * logdet(precision) = sum log diag(prec_chol)
    log_det_term = torch.sum(torch.log(torch.diagonal(precisions_chol, dim1=1, dim2=2)), dim=1)  # (K,)

    # y[n,k,:] = diff[n,k,:] @ P[k]^T
    y = torch.einsum('nkd,kde->nke', diff, precisions_chol.transpose(-1, -2))  # (N,K,D)
    mahal = torch.sum(y * y, dim=2)  # (N,K)

    return -0.5 * (D * math.log(2 * math.pi) + mahal) + log_det_term.unsqueeze(0)


def _estimate_weighted_log_prob(
    X: torch.Tensor,
    means: torch.Tensor,
    precisions_chol: torch.Tensor,
    weights: torch.Tensor,
) -> torch.Tensor:
    """log(pi_k) + log N(x_n | mu_k, Sigma_k), shape (N,K)."""
    log_prob = _estimate_log_gaussian_prob_full_precchol(X, means, precisions_chol)
    return log_prob + _safe_log(weights).unsqueeze(0)


# ---------------------------
# EM steps
# ---------------------------

def _expectation_step_precchol(
    X: torch.Tensor,
    means: torch.Tensor,
    precisions_chol: torch.Tensor,
    weights: torch.Tensor,
) -> Tuple[torch.Tensor, torch.Tensor]:
    """E-step using precisions_cholesky. Returns (mean log-likelihood, log_resp)."""
    weighted_log_prob = _estimate_weighted_log_prob(X, means, precisions_chol, weights)  # (N,K)

    log_prob_norm = torch.logsumexp(weighted_log_prob, dim=1)  # (N,)
    log_resp = weighted_log_prob - log_prob_norm.unsqueeze(1)  # (N,K)

    return log_prob_norm.mean(), log_resp


def _maximization_step(
    X: torch.Tensor,
    log_resp: torch.Tensor,
    reg_covar: float = 1e-6,
) -> Tuple[torch.Tensor, torch.Tensor, torch.Tensor]:
    """M-step producing updated (weights, means, full covariances)."""
    N, D = X.shape
    assert log_resp.shape[0] == N

    resp = log_resp.exp()  # (N,K)

    nk = resp.sum(dim=0) + _nk_eps(resp.dtype)  # (K,)

    new_weights = nk / nk.sum()
    new_means = (resp.T @ X) / nk.unsqueeze(1)  # (K,D)

    diff = X.unsqueeze(1) - new_means.unsqueeze(0)  # (N,K,D)

    # For each k: sum_n resp[n,k] * diff[n,k,:] * diff[n,k,:]^T / nk[k]
    cov_sum = torch.einsum('nk,nkd,nke->kde', resp, diff, diff)  # (K,D,D)
    new_cov = cov_sum / nk.unsqueeze(1).unsqueeze(2)  # (K,D,D)
    new_cov = _add_reg_diag(new_cov, reg_covar)

    return new_weights, new_means, new_cov
