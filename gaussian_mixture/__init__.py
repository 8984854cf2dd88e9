"""
Gaussian Mixture Models in PyTorch: clustering, density evaluation, sampling,
EM refinement and Gaussian Mixture Regression.

Modules:
- gaussian: single multivariate normal component
- gmm: the mixture model (initialization, k-means refinement, inference, persistence)
- em: Expectation-Maximization refinement bound to a mixture
- gmr: Gaussian Mixture Regression bound to a mixture
- messages / container: message structures and the named message container
- config: defaults shared by the above
"""

import logging

from .config import DEFAULT_CONTAINER_TOPIC, MixtureConfig
from .em import ExpectationMaximization
from .exceptions import ContractViolation
from .gaussian import Gaussian
from .gmm import GaussianMixtureModel
from .gmr import GaussianMixtureRegression
from .messages import GaussianMixtureModelMsg, GaussianMsg

logging.getLogger(__name__).addHandler(logging.NullHandler())

__version__ = "0.1.0"

__all__ = [
    "ContractViolation",
    "DEFAULT_CONTAINER_TOPIC",
    "ExpectationMaximization",
    "Gaussian",
    "GaussianMixtureModel",
    "GaussianMixtureModelMsg",
    "GaussianMixtureRegression",
    "GaussianMsg",
    "MixtureConfig",
]
