# gaussian_mixture/gmm.py
"""Gaussian Mixture Model in PyTorch.

A GaussianMixtureModel owns K Gaussian components and a parallel prior vector.
Its dimension is fixed at construction. The usual lifecycle is

    gmm = GaussianMixtureModel(2).set_num_states(3).init_kmeans(X, max_iter=20)
    gmm.pdf(x); gmm.most_likely_state(x); gmm.draw()

Initialization options:
- init_random:              random data points (with replacement) as means
- init_uniform_along_axis:  data points closest to an even grid along one axis
- init_kmeans:              init_random followed by Lloyd-style refinement that
                            also sets per-cluster covariances
- force_initialize:         parameters were supplied through the setters

Priors are expected to sum to 1 but this is never enforced; the setters take
what they are given.

Queries on a model that is not initialized are not errors: pdf is 0, the most
likely state is 0 and draw produces nothing.

Persistence (little-endian):
    int32 dim | int32 num_states | uint8 initialized | num_states x float64 priors
    | num_states x (Gaussian binary form)
"""

from __future__ import annotations

import logging
import zipfile
from typing import BinaryIO, List, Optional, Tuple

import numpy as np
import torch

from . import container
from ._linalg import _estimate_weighted_log_prob
from .config import MixtureConfig
from .exceptions import ContractViolation
from .gaussian import Gaussian, _read_exact, _read_f64, _write_f64
from .messages import GaussianMixtureModelMsg

_I32 = np.dtype("<i4")


class GaussianMixtureModel:
    """Weighted sum of full-covariance Gaussians over a fixed dimension."""

    def __init__(
        self,
        dim: int,
        config: Optional[MixtureConfig] = None,
        generator: Optional[torch.Generator] = None,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        if dim <= 0:
            raise ValueError("dim must be positive")
        self.config = config if config is not None else MixtureConfig()
        self.generator = generator if generator is not None else self.config.make_generator()
        self.logger = logger if logger is not None else logging.getLogger(__name__)

        self._dim = int(dim)
        self._gaussians: List[Gaussian] = []
        self._priors = torch.zeros(0, dtype=self.config.dtype)
        self._initialized = False

    def __repr__(self) -> str:
        return (
            f"GaussianMixtureModel(dim={self._dim}, num_states={self.num_states}, "
            f"initialized={self._initialized})"
        )

    # -----------------------
    # Configuration
    # -----------------------

    @property
    def dim(self) -> int:
        return self._dim

    @property
    def num_states(self) -> int:
        return len(self._gaussians)

    @property
    def initialized(self) -> bool:
        return self._initialized

    def _new_gaussian(self) -> Gaussian:
        return Gaussian(self._dim, dtype=self.config.dtype, reg_covar=self.config.reg_covar)

    def _check_state(self, state: int) -> None:
        if not 0 <= state < self.num_states:
            raise ContractViolation(f"state {state} out of range [0, {self.num_states})")

    def set_num_states(self, num: int) -> "GaussianMixtureModel":
        """Resize to num components with uniform priors 1/num.

        Does not touch the initialized flag.
        """
        num = int(num)
        if num < len(self._gaussians):
            del self._gaussians[num:]
        while len(self._gaussians) < num:
            self._gaussians.append(self._new_gaussian())
        if num > 0:
            self._priors = torch.full((num,), 1.0 / num, dtype=self.config.dtype)
        else:
            self._priors = torch.zeros(0, dtype=self.config.dtype)
        return self

    def set_mean(self, state: int, mean) -> "GaussianMixtureModel":
        self._check_state(state)
        self._gaussians[state].set_mean(mean)
        return self

    def set_covariance(self, state: int, cov) -> "GaussianMixtureModel":
        self._check_state(state)
        self._gaussians[state].set_covariance(cov)
        return self

    def set_prior(self, state: int, prior: float) -> "GaussianMixtureModel":
        self._check_state(state)
        self._priors[state] = float(prior)
        return self

    def set_priors(self, priors) -> "GaussianMixtureModel":
        priors = torch.as_tensor(priors, dtype=self.config.dtype).reshape(-1)
        if priors.numel() != self.num_states:
            raise ContractViolation(
                f"expected {self.num_states} priors, got {priors.numel()}"
            )
        self._priors = priors.clone()
        return self

    def force_initialize(self) -> "GaussianMixtureModel":
        self._initialized = True
        return self

    # -----------------------
    # Accessors
    # -----------------------

    @property
    def priors(self) -> torch.Tensor:
        return self._priors.clone()

    def get_prior(self, state: int) -> float:
        self._check_state(state)
        return float(self._priors[state])

    def get_mean(self, state: int) -> torch.Tensor:
        self._check_state(state)
        return self._gaussians[state].mean

    def get_covariance(self, state: int) -> torch.Tensor:
        self._check_state(state)
        return self._gaussians[state].covariance

    def gaussian(self, state: int) -> Gaussian:
        """The owned component itself; changes to it change the model."""
        self._check_state(state)
        return self._gaussians[state]

    @property
    def means(self) -> torch.Tensor:
        if not self._gaussians:
            return torch.zeros((0, self._dim), dtype=self.config.dtype)
        return torch.stack([g.mean for g in self._gaussians], dim=0)

    @property
    def covariances(self) -> torch.Tensor:
        if not self._gaussians:
            return torch.zeros((0, self._dim, self._dim), dtype=self.config.dtype)
        return torch.stack([g.covariance for g in self._gaussians], dim=0)

    def _precisions_cholesky(self) -> torch.Tensor:
        return torch.stack([g.precision_cholesky() for g in self._gaussians], dim=0)

    # -----------------------
    # Initialization
    # -----------------------

    def _as_patterns(self, data) -> torch.Tensor:
        X = torch.as_tensor(data, dtype=self.config.dtype)
        if X.dim() != 2 or X.shape[1] != self._dim:
            raise ValueError(f"data must have shape (N,{self._dim}), got {tuple(X.shape)}")
        if X.shape[0] == 0:
            raise ValueError("data must contain at least one pattern")
        return X

    @torch.no_grad()
    def init_random(self, data) -> "GaussianMixtureModel":
        """Set each mean to a data point drawn with replacement."""
        X = self._as_patterns(data)
        idx = torch.randint(0, X.shape[0], (self.num_states,), generator=self.generator)
        for g, i in zip(self._gaussians, idx.tolist()):
            # covariance is left untouched (identity for fresh components)
            g.set_mean(X[i])
        self._initialized = True
        return self

    @torch.no_grad()
    def init_uniform_along_axis(self, data, axis: int) -> "GaussianMixtureModel":
        """Set the means to the data points closest to an even grid along axis."""
        if not 0 <= axis < self._dim:
            raise ContractViolation(f"axis {axis} out of range [0, {self._dim})")
        X = self._as_patterns(data)
        values = X[:, axis]
        lo = values.min()
        hi = values.max()
        K = self.num_states
        for i, g in enumerate(self._gaussians):
            desired = (hi - lo) * i / K + lo
            # argmin returns the first minimal index
            best = int(torch.argmin(torch.abs(desired - values)))
            g.set_mean(X[best])
        self._initialized = True
        return self

    @torch.no_grad()
    def init_kmeans(self, data, max_iter: Optional[int] = None) -> "GaussianMixtureModel":
        """Random seeding followed by up to max_iter assignment/update rounds."""
        X = self._as_patterns(data)
        if max_iter is None:
            max_iter = self.config.kmeans_max_iter
        N = X.shape[0]

        # -1 matches no component, so the first assignment always counts as changed
        previous = torch.full((N,), -1, dtype=torch.long)
        current = torch.empty((N,), dtype=torch.long)

        self.init_random(X)
        summed_dist, _ = self.cluster(X, current, previous)

        rounds = 1
        for it in range(1, max_iter):
            self.update_clusters(X, current)
            previous, current = current, previous
            summed_dist, changed = self.cluster(X, current, previous)
            rounds = it + 1
            if not changed:
                self.logger.debug("No assignment changed ... kmeans finished after %d iterations", it)
                break

        self._initialized = True

        if self.logger.isEnabledFor(logging.DEBUG):
            self.logger.debug("kmeans: %d rounds, summed squared distance %.6g", rounds, summed_dist)
            for i, g in enumerate(self._gaussians):
                self.logger.debug("after kmeans: mean of state %d: %s", i, g.mean.tolist())
                self.logger.debug("covariance:\n%s", g.covariance)

        return self

    @torch.no_grad()
    def cluster(
        self,
        data,
        assignments: torch.Tensor,
        old_assignments: torch.Tensor,
    ) -> Tuple[float, bool]:
        """Assign every pattern to its nearest mean.

        Writes the labels into assignments (in place) and returns
        (summed squared distance, whether any label differs from old_assignments).
        """
        X = torch.as_tensor(data, dtype=self.config.dtype)
        means = self.means  # (K,D)
        # explicit differences keep ties exact (cdist may go through matmul)
        d2 = torch.sum((X.unsqueeze(1) - means.unsqueeze(0)) ** 2, dim=2)  # (N,K)
        best_d2, labels = torch.min(d2, dim=1)
        assignments.copy_(labels)
        changed = bool(torch.any(assignments != old_assignments))
        return float(best_d2.sum()), changed

    @torch.no_grad()
    def update_clusters(self, data, assignments: torch.Tensor) -> None:
        """Recompute means and covariances from the assigned patterns.

        A component without patterns keeps its mean and gets an identity
        covariance.
        """
        X = torch.as_tensor(data, dtype=self.config.dtype)
        N, D = X.shape
        K = self.num_states
        labels = assignments.to(torch.long)

        counts = torch.bincount(labels, minlength=K).to(X.dtype)  # (K,)
        sums = torch.zeros((K, D), dtype=X.dtype)
        sums.index_add_(0, labels, X)

        means = self.means
        occupied = counts > 0
        means[occupied] = sums[occupied] / counts[occupied].unsqueeze(1)

        diff = X - means[labels]  # (N,D)
        cov_sum = torch.zeros((K, D, D), dtype=X.dtype)
        cov_sum.index_add_(0, labels, diff.unsqueeze(2) * diff.unsqueeze(1))

        eye = torch.eye(D, dtype=X.dtype)
        for k, g in enumerate(self._gaussians):
            if occupied[k]:
                g.set_mean(means[k])
                g.set_covariance(cov_sum[k] / counts[k])
            else:
                g.set_covariance(eye)

    # -----------------------
    # Inference
    # -----------------------

    @torch.no_grad()
    def pdf(self, x) -> float:
        """Mixture density sum_i prior_i * N(x | mu_i, Sigma_i)."""
        if not self._initialized:
            return 0.0
        likelihood = 0.0
        for prior, g in zip(self._priors.tolist(), self._gaussians):
            likelihood += prior * float(g.pdf(x))
        return likelihood

    @torch.no_grad()
    def most_likely_state(self, x) -> int:
        """Index of the component maximizing prior_i * N(x | mu_i, Sigma_i)."""
        if not self._initialized:
            return 0
        best_likelihood = 0.0
        best = 0
        for i, (prior, g) in enumerate(zip(self._priors.tolist(), self._gaussians)):
            tmp = prior * float(g.pdf(x))
            if tmp > best_likelihood:
                best_likelihood = tmp
                best = i
        return best

    def _select_states(self, thresholds: torch.Tensor) -> torch.Tensor:
        # first state whose cumulative prior exceeds the threshold
        accum = torch.cumsum(self._priors, dim=0)
        states = torch.searchsorted(accum, thresholds.to(accum.dtype), right=True)
        return torch.clamp(states, 0, self.num_states - 1)

    @torch.no_grad()
    def draw_state(self) -> int:
        """Categorical pick of a state according to the priors."""
        thresh = torch.rand((1,), generator=self.generator, dtype=self.config.dtype)
        return int(self._select_states(thresh)[0])

    @torch.no_grad()
    def draw(self) -> Optional[torch.Tensor]:
        """One sample from the mixture, or None if not initialized."""
        if not self._initialized or self.num_states == 0:
            return None
        state = self.draw_state()
        return self._gaussians[state].draw(generator=self.generator)

    @torch.no_grad()
    def sample(self, n_samples: int) -> Optional[Tuple[torch.Tensor, torch.Tensor]]:
        """Sample from the mixture.

        Returns:
          X: (n_samples, D)
          labels: (n_samples,)
        """
        if n_samples <= 0:
            raise ValueError("n_samples must be positive")
        if not self._initialized or self.num_states == 0:
            return None

        thresh = torch.rand((n_samples,), generator=self.generator, dtype=self.config.dtype)
        labels = self._select_states(thresh)

        X_out = torch.empty((n_samples, self._dim), dtype=self.config.dtype)
        for k, g in enumerate(self._gaussians):
            mask = labels == k
            if mask.any():
                n_k = int(mask.sum().item())
                X_out[mask] = g.draw(n_k, generator=self.generator)
        return X_out, labels

    @torch.no_grad()
    def score_samples(self, X) -> torch.Tensor:
        """Per-sample mixture log-density (N,); -inf everywhere if not initialized."""
        X = torch.as_tensor(X, dtype=self.config.dtype)
        if not self._initialized or self.num_states == 0:
            return torch.full((X.shape[0],), float("-inf"), dtype=self.config.dtype)
        weighted = _estimate_weighted_log_prob(X, self.means, self._precisions_cholesky(), self._priors)
        return torch.logsumexp(weighted, dim=1)

    @torch.no_grad()
    def predict_proba(self, X) -> torch.Tensor:
        """Posterior responsibilities (N,K)."""
        if not self._initialized:
            raise RuntimeError("Model is not initialized yet.")
        X = torch.as_tensor(X, dtype=self.config.dtype)
        weighted = _estimate_weighted_log_prob(X, self.means, self._precisions_cholesky(), self._priors)
        return (weighted - torch.logsumexp(weighted, dim=1, keepdim=True)).exp()

    @torch.no_grad()
    def predict(self, X) -> torch.Tensor:
        return torch.argmax(self.predict_proba(X), dim=1)

    # -----------------------
    # Derived products
    # -----------------------

    def get_regression_model(self, out_dim: int):
        """GMR predicting the trailing out_dim coordinates, bound to this model."""
        from .gmr import GaussianMixtureRegression

        return GaussianMixtureRegression(self, out_dim)

    def get_em(self, **kwargs):
        """EM refinement object operating on this model in place."""
        from .em import ExpectationMaximization

        return ExpectationMaximization(self, **kwargs)

    # -----------------------
    # Binary persistence
    # -----------------------

    def to_stream(self, out: BinaryIO) -> bool:
        out.write(np.array([self._dim, self.num_states], dtype=_I32).tobytes())
        out.write(bytes([1 if self._initialized else 0]))
        _write_f64(out, self._priors)
        res = True
        for g in self._gaussians:
            res &= g.to_stream(out)
        return res

    def from_stream(self, inp: BinaryIO) -> bool:
        """Read a model written by to_stream.

        Returns False on a dimension mismatch. A truncated stream raises EOFError.
        """
        dim = int(np.frombuffer(_read_exact(inp, _I32.itemsize), dtype=_I32)[0])
        if dim != self._dim:
            self.logger.error(
                "called GMM.from_stream() with data of invalid dimension: %d this dim: %d",
                dim, self._dim,
            )
            return False
        num_states = int(np.frombuffer(_read_exact(inp, _I32.itemsize), dtype=_I32)[0])
        if num_states < 0:
            raise ValueError(f"corrupt stream: negative number of states {num_states}")
        # size the component list and priors before reading them
        self.set_num_states(num_states)
        self._initialized = _read_exact(inp, 1) != b"\x00"
        priors = _read_f64(inp, num_states)
        self._priors = torch.from_numpy(priors.copy()).to(self.config.dtype)
        res = True
        for g in self._gaussians:
            res &= g.from_stream(inp)
        return res

    def to_binary_file(self, fname: str) -> bool:
        try:
            with open(fname, "wb") as out:
                return self.to_stream(out)
        except OSError as exc:
            self.logger.error("Failed to write Gaussian Mixture Model to file %s: %s", fname, exc)
            return False

    def from_binary_file(self, fname: str) -> bool:
        try:
            with open(fname, "rb") as inp:
                return self.from_stream(inp)
        except (OSError, EOFError, ValueError) as exc:
            self.logger.error("Failed to load Gaussian Mixture Model from file %s: %s", fname, exc)
            return False

    # -----------------------
    # Messages / containers
    # -----------------------

    def to_message(self) -> Optional[GaussianMixtureModelMsg]:
        if self.num_states < 1:
            self.logger.error("cannot write model with 0 states to message!")
            return None
        return GaussianMixtureModelMsg(
            dim=self._dim,
            num_states=self.num_states,
            initialized=self._initialized,
            priors=[float(p) for p in self._priors.tolist()],
            gaussians=[g.to_message() for g in self._gaussians],
        )

    def from_message(self, msg: GaussianMixtureModelMsg) -> bool:
        if msg.dim != self._dim:
            self.logger.error("cannot initialize gmm of dim %d from model with dim %d", self._dim, msg.dim)
            return False
        if msg.num_states < 1:
            self.logger.error("cannot read model with 0 states from message!")
            return False
        if len(msg.priors) != msg.num_states or len(msg.gaussians) != msg.num_states:
            self.logger.error(
                "malformed message: %d states but %d priors and %d gaussians",
                msg.num_states, len(msg.priors), len(msg.gaussians),
            )
            return False
        self.set_num_states(msg.num_states)
        self._initialized = bool(msg.initialized)
        self._priors = torch.tensor(msg.priors, dtype=torch.float64).to(self.config.dtype)
        for g, g_msg in zip(self._gaussians, msg.gaussians):
            if not g.from_message(g_msg):
                return False
        return True

    def to_container(self, path: str, topic: Optional[str] = None) -> bool:
        topic = topic or self.config.container_topic
        msg = self.to_message()
        if msg is None:
            self.logger.error("Could not convert GMM to message.")
            return False
        try:
            container.write_message(path, topic, msg.to_dict())
        except OSError as exc:
            self.logger.error("Could not open container file %s: %s", path, exc)
            return False
        return True

    def from_container(self, path: str, topic: Optional[str] = None) -> bool:
        topic = topic or self.config.container_topic
        try:
            entries = container.read_messages(path, topic)
        except (OSError, zipfile.BadZipFile, ValueError) as exc:
            self.logger.error("Could not open container file %s: %s", path, exc)
            return False
        if len(entries) > 1:
            self.logger.error("More than one GMM stored in container file %s!", path)
            return False
        if not entries:
            self.logger.error("No GMM stored under %r in container file %s", topic, path)
            return False
        try:
            msg = GaussianMixtureModelMsg.from_dict(entries[0])
        except (KeyError, TypeError, ValueError) as exc:
            self.logger.error("Corrupt GMM entry in container file %s: %s", path, exc)
            return False
        if not self.from_message(msg):
            self.logger.error("Could not initialize GMM from message!")
            return False
        return True
