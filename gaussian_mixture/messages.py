# gaussian_mixture/messages.py
"""Middleware message structures mirroring the binary layout.

Both messages are plain dataclasses holding Python lists so they can be handed
to any transport; to_dict/from_dict give the JSON-compatible form stored in
containers.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List


@dataclass
class GaussianMsg:
    dim: int
    mean: List[float] = field(default_factory=list)
    covariance: List[float] = field(default_factory=list)  # row-major, dim*dim

    def to_dict(self) -> Dict[str, Any]:
        return {"dim": self.dim, "mean": list(self.mean), "covariance": list(self.covariance)}

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "GaussianMsg":
        return cls(
            dim=int(d["dim"]),
            mean=[float(v) for v in d["mean"]],
            covariance=[float(v) for v in d["covariance"]],
        )


@dataclass
class GaussianMixtureModelMsg:
    dim: int
    num_states: int
    initialized: bool
    priors: List[float] = field(default_factory=list)
    gaussians: List[GaussianMsg] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "dim": self.dim,
            "num_states": self.num_states,
            "initialized": self.initialized,
            "priors": list(self.priors),
            "gaussians": [g.to_dict() for g in self.gaussians],
        }

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "GaussianMixtureModelMsg":
        return cls(
            dim=int(d["dim"]),
            num_states=int(d["num_states"]),
            initialized=bool(d["initialized"]),
            priors=[float(p) for p in d["priors"]],
            gaussians=[GaussianMsg.from_dict(g) for g in d["gaussians"]],
        )
