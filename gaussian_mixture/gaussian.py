# gaussian_mixture/gaussian.py
"""Single multivariate normal component.

Stores a mean (D,) and a full covariance (D,D). Densities go through the
precision Cholesky factor (see _linalg); the factors are cached and dropped
whenever the covariance changes.

Binary form (little-endian): mean as D float64, then covariance as D*D float64
in row-major order. Values are always written in double width regardless of
the working dtype.
"""

from __future__ import annotations

import logging
from typing import BinaryIO, Optional

import numpy as np
import torch

from ._linalg import (
    _cholesky,
    _compute_precisions_cholesky,
    _estimate_log_gaussian_prob_full_precchol,
)
from .messages import GaussianMsg

logger = logging.getLogger(__name__)

_F64 = np.dtype("<f8")


# ---------------------------
# Raw binary helpers
# ---------------------------

def _read_exact(stream: BinaryIO, n: int) -> bytes:
    buf = stream.read(n)
    if len(buf) != n:
        raise EOFError(f"expected {n} bytes, got {len(buf)}")
    return buf


def _write_f64(stream: BinaryIO, values: torch.Tensor) -> None:
    arr = values.detach().cpu().numpy().astype(_F64, copy=False).reshape(-1)
    stream.write(arr.tobytes())


def _read_f64(stream: BinaryIO, count: int) -> np.ndarray:
    return np.frombuffer(_read_exact(stream, count * _F64.itemsize), dtype=_F64, count=count)


class Gaussian:
    """Multivariate normal N(mean, covariance) in PyTorch."""

    def __init__(self, dim: int, dtype: torch.dtype = torch.float64, reg_covar: float = 1e-6) -> None:
        if dim <= 0:
            raise ValueError("dim must be positive")
        self.dim = int(dim)
        self.dtype = dtype
        self.reg_covar = reg_covar
        self._mean = torch.zeros(self.dim, dtype=dtype)
        self._covariance = torch.eye(self.dim, dtype=dtype)
        self._chol: Optional[torch.Tensor] = None
        self._prec_chol: Optional[torch.Tensor] = None

    def __repr__(self) -> str:
        return f"Gaussian(dim={self.dim}, mean={self._mean.tolist()})"

    # -----------------------
    # Parameters
    # -----------------------

    @property
    def mean(self) -> torch.Tensor:
        return self._mean.clone()

    @property
    def covariance(self) -> torch.Tensor:
        return self._covariance.clone()

    def set_mean(self, mean) -> "Gaussian":
        mean = torch.as_tensor(mean, dtype=self.dtype).reshape(-1)
        if mean.shape != (self.dim,):
            raise ValueError(f"mean must have shape ({self.dim},), got {tuple(mean.shape)}")
        self._mean = mean.clone()
        return self

    def set_covariance(self, covariance) -> "Gaussian":
        covariance = torch.as_tensor(covariance, dtype=self.dtype)
        if covariance.shape != (self.dim, self.dim):
            raise ValueError(
                f"covariance must have shape ({self.dim},{self.dim}), got {tuple(covariance.shape)}"
            )
        self._covariance = covariance.clone()
        self._chol = None
        self._prec_chol = None
        return self

    def copy(self) -> "Gaussian":
        g = Gaussian(self.dim, dtype=self.dtype, reg_covar=self.reg_covar)
        g._mean = self._mean.clone()
        g._covariance = self._covariance.clone()
        return g

    def _cov_cholesky(self) -> torch.Tensor:
        if self._chol is None:
            self._chol = _cholesky(self._covariance, self.reg_covar)
        return self._chol

    def precision_cholesky(self) -> torch.Tensor:
        """Lower-triangular P with precision = P^T P, shape (D,D)."""
        if self._prec_chol is None:
            self._prec_chol = _compute_precisions_cholesky(self._covariance, self.reg_covar)
        return self._prec_chol

    # -----------------------
    # Density / sampling
    # -----------------------

    @torch.no_grad()
    def log_pdf(self, x) -> torch.Tensor:
        """log N(x | mean, cov) for a point (D,) -> () or a batch (N,D) -> (N,)."""
        x = torch.as_tensor(x, dtype=self.dtype)
        single = x.dim() == 1
        X = x.unsqueeze(0) if single else x
        if X.dim() != 2 or X.shape[1] != self.dim:
            raise ValueError(f"x must have shape ({self.dim},) or (N,{self.dim}), got {tuple(x.shape)}")
        log_prob = _estimate_log_gaussian_prob_full_precchol(
            X, self._mean.unsqueeze(0), self.precision_cholesky().unsqueeze(0)
        )[:, 0]
        return log_prob[0] if single else log_prob

    def pdf(self, x) -> torch.Tensor:
        return self.log_pdf(x).exp()

    @torch.no_grad()
    def draw(self, n: Optional[int] = None, generator: Optional[torch.Generator] = None) -> torch.Tensor:
        """One sample (D,) or, with n given, n samples (n,D)."""
        shape = (1 if n is None else n, self.dim)
        z = torch.randn(shape, generator=generator, dtype=self.dtype)
        out = self._mean.unsqueeze(0) + z @ self._cov_cholesky().T
        return out[0] if n is None else out

    # -----------------------
    # Serialization
    # -----------------------

    def to_stream(self, out: BinaryIO) -> bool:
        _write_f64(out, self._mean)
        _write_f64(out, self._covariance)
        return True

    def from_stream(self, inp: BinaryIO) -> bool:
        D = self.dim
        mean = _read_f64(inp, D)
        cov = _read_f64(inp, D * D).reshape(D, D)
        self.set_mean(torch.from_numpy(mean.copy()))
        self.set_covariance(torch.from_numpy(cov.copy()))
        return True

    def to_message(self) -> GaussianMsg:
        return GaussianMsg(
            dim=self.dim,
            mean=[float(v) for v in self._mean.tolist()],
            covariance=[float(v) for v in self._covariance.reshape(-1).tolist()],
        )

    def from_message(self, msg: GaussianMsg) -> bool:
        if msg.dim != self.dim:
            logger.error("cannot initialize gaussian of dim %d from message with dim %d", self.dim, msg.dim)
            return False
        if len(msg.mean) != self.dim or len(msg.covariance) != self.dim * self.dim:
            logger.error(
                "malformed gaussian message: %d mean entries, %d covariance entries for dim %d",
                len(msg.mean), len(msg.covariance), self.dim,
            )
            return False
        self.set_mean(torch.tensor(msg.mean, dtype=torch.float64))
        self.set_covariance(torch.tensor(msg.covariance, dtype=torch.float64).reshape(self.dim, self.dim))
        return True
