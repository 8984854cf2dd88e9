# tests/test_gmm.py
import logging
import os
import sys

# Add parent directory to path so we can import the package
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import numpy as np
import pytest
import torch
from sklearn.cluster import KMeans

from gaussian_mixture import ContractViolation, GaussianMixtureModel, MixtureConfig


def _random_seed():
    """Generate a random seed between 1 and 1000."""
    return np.random.default_rng().integers(1, 1001)


def _blobs(rng, centers, n_per_blob=50, scale=0.3):
    """Well-separated isotropic blobs around the given centers, shuffled."""
    centers = np.asarray(centers, dtype=np.float64)
    X = np.concatenate([c + scale * rng.randn(n_per_blob, centers.shape[1]) for c in centers])
    return X[rng.permutation(len(X))]


def _two_state_model(priors=(0.3, 0.7)):
    gmm = GaussianMixtureModel(2).set_num_states(2)
    gmm.set_mean(0, [0.0, 0.0]).set_mean(1, [10.0, 10.0])
    gmm.set_priors(list(priors))
    return gmm.force_initialize()


# ---------------------------------------------------------------------
# Lifecycle / configuration
# ---------------------------------------------------------------------

def test_new_model_is_empty():
    gmm = GaussianMixtureModel(3)
    assert gmm.dim == 3
    assert gmm.num_states == 0
    assert not gmm.initialized
    assert gmm.priors.shape == (0,)


@pytest.mark.parametrize("n", [1, 2, 3, 7, 50])
def test_set_num_states_uniform_priors(n):
    gmm = GaussianMixtureModel(2)
    assert gmm.set_num_states(n) is gmm
    assert gmm.num_states == n
    assert gmm.priors.shape == (n,)
    assert torch.allclose(gmm.priors, torch.full((n,), 1.0 / n, dtype=torch.float64))
    assert float(gmm.priors.sum()) == pytest.approx(1.0)
    assert gmm.means.shape == (n, 2)
    assert gmm.covariances.shape == (n, 2, 2)


def test_set_num_states_keeps_initialized_flag():
    gmm = GaussianMixtureModel(2).set_num_states(2).force_initialize()
    gmm.set_num_states(4)
    assert gmm.initialized
    assert gmm.num_states == 4


def test_setters_chain_and_copy_inputs():
    mean = torch.tensor([1.0, 2.0], dtype=torch.float64)
    gmm = GaussianMixtureModel(2).set_num_states(2)
    gmm.set_mean(1, mean).set_covariance(1, 2.0 * torch.eye(2)).set_prior(0, 0.25)
    mean[0] = 100.0

    assert torch.equal(gmm.get_mean(1), torch.tensor([1.0, 2.0], dtype=torch.float64))
    assert torch.equal(gmm.get_covariance(1), 2.0 * torch.eye(2, dtype=torch.float64))
    assert gmm.get_prior(0) == 0.25
    assert gmm.get_prior(1) == 0.5


@pytest.mark.parametrize("state", [-1, 2, 10])
def test_state_index_out_of_range_is_a_contract_violation(state):
    gmm = GaussianMixtureModel(2).set_num_states(2)
    with pytest.raises(ContractViolation):
        gmm.set_mean(state, [0.0, 0.0])
    with pytest.raises(ContractViolation):
        gmm.set_covariance(state, torch.eye(2))
    with pytest.raises(ContractViolation):
        gmm.set_prior(state, 0.5)
    with pytest.raises(ContractViolation):
        gmm.get_mean(state)


def test_set_priors_length_mismatch_is_a_contract_violation():
    gmm = GaussianMixtureModel(2).set_num_states(3)
    with pytest.raises(ContractViolation):
        gmm.set_priors([0.5, 0.5])
    gmm.set_priors([0.2, 0.3, 0.5])
    assert torch.allclose(gmm.priors, torch.tensor([0.2, 0.3, 0.5], dtype=torch.float64))


def test_priors_accessor_does_not_alias():
    gmm = GaussianMixtureModel(1).set_num_states(2)
    p = gmm.priors
    p[0] = 42.0
    assert gmm.get_prior(0) == 0.5


# ---------------------------------------------------------------------
# Initialization strategies
# ---------------------------------------------------------------------

def test_init_random_picks_data_points():
    rng = np.random.RandomState(_random_seed())
    X = rng.randn(30, 3)
    gmm = GaussianMixtureModel(3, config=MixtureConfig(seed=7)).set_num_states(5)
    assert gmm.init_random(X) is gmm
    assert gmm.initialized

    data = torch.from_numpy(X)
    for k in range(5):
        mean = gmm.get_mean(k)
        assert any(torch.equal(mean, row) for row in data), f"state {k} mean is not a data point"
        assert torch.equal(gmm.get_covariance(k), torch.eye(3, dtype=torch.float64))


def test_init_uniform_along_axis_picks_nearest_points():
    rng = np.random.RandomState(3)
    xs = rng.permutation(10).astype(np.float64)
    X = np.stack([xs, 100.0 + xs], axis=1)

    gmm = GaussianMixtureModel(2).set_num_states(5).init_uniform_along_axis(X, axis=0)
    assert gmm.initialized
    # targets 0, 1.8, 3.6, 5.4, 7.2 on [0, 9]
    chosen = [float(gmm.get_mean(k)[0]) for k in range(5)]
    assert chosen == [0.0, 2.0, 4.0, 5.0, 7.0]
    for k in range(5):
        assert float(gmm.get_mean(k)[1]) == 100.0 + chosen[k]


def test_init_uniform_along_axis_is_deterministic():
    rng = np.random.RandomState(_random_seed())
    X = rng.randn(200, 3)
    a = GaussianMixtureModel(3).set_num_states(4).init_uniform_along_axis(X, axis=2)
    b = GaussianMixtureModel(3).set_num_states(4).init_uniform_along_axis(X, axis=2)
    assert torch.equal(a.means, b.means)


@pytest.mark.parametrize("axis", [-1, 2, 5])
def test_init_uniform_along_axis_checks_axis(axis):
    gmm = GaussianMixtureModel(2).set_num_states(2)
    with pytest.raises(ContractViolation):
        gmm.init_uniform_along_axis(np.zeros((4, 2)), axis=axis)


@pytest.mark.parametrize("seed", range(20))
def test_kmeans_converges_on_two_pairs(seed):
    """Two tight pairs end up as two clusters whatever the random seeding picks."""
    X = [[0.0, 0.0], [0.0, 1.0], [10.0, 10.0], [10.0, 11.0]]
    gmm = GaussianMixtureModel(2, config=MixtureConfig(seed=seed)).set_num_states(2)
    gmm.init_kmeans(X, max_iter=10)
    assert gmm.initialized

    means = sorted(gmm.means.tolist())
    assert np.allclose(means[0], [0.0, 0.5], atol=1e-9), means
    assert np.allclose(means[1], [10.0, 10.5], atol=1e-9), means

    # both clusters hold two points that differ along the second axis only
    for k in range(2):
        cov = gmm.get_covariance(k)
        assert torch.allclose(cov, torch.tensor([[0.0, 0.0], [0.0, 0.25]], dtype=torch.float64))


def test_kmeans_matches_sklearn_on_separated_blobs():
    rng = np.random.RandomState(_random_seed())
    centers = [[0.0, 0.0], [20.0, 0.0], [0.0, 20.0]]
    X = _blobs(rng, centers)

    gmm = GaussianMixtureModel(2).set_num_states(3).force_initialize()
    # seed with one point per blob so the result does not depend on luck
    gmm.set_mean(0, X[np.argmin(np.linalg.norm(X - centers[0], axis=1))])
    gmm.set_mean(1, X[np.argmin(np.linalg.norm(X - centers[1], axis=1))])
    gmm.set_mean(2, X[np.argmin(np.linalg.norm(X - centers[2], axis=1))])

    labels = torch.empty(len(X), dtype=torch.long)
    gmm.cluster(X, labels, torch.full((len(X),), -1, dtype=torch.long))
    for _ in range(10):
        gmm.update_clusters(X, labels)
        gmm.cluster(X, labels, labels.clone())

    sk = KMeans(n_clusters=3, n_init=10, random_state=0).fit(X)
    ours = np.array(sorted(gmm.means.tolist()))
    theirs = np.array(sorted(sk.cluster_centers_.tolist()))
    assert np.allclose(ours, theirs, atol=1e-8), f"{ours} vs {theirs}"


def test_kmeans_logs_progress_at_debug(caplog):
    X = [[0.0, 0.0], [0.0, 1.0], [10.0, 10.0], [10.0, 11.0]]
    gmm = GaussianMixtureModel(2, config=MixtureConfig(seed=0)).set_num_states(2)
    with caplog.at_level(logging.DEBUG, logger="gaussian_mixture"):
        gmm.init_kmeans(X, max_iter=10)
    assert any("after kmeans" in r.getMessage() for r in caplog.records)


def test_init_rejects_bad_data():
    gmm = GaussianMixtureModel(2).set_num_states(2)
    with pytest.raises(ValueError):
        gmm.init_random(np.zeros((0, 2)))
    with pytest.raises(ValueError):
        gmm.init_kmeans(np.zeros((5, 3)))


# ---------------------------------------------------------------------
# Clustering refinement
# ---------------------------------------------------------------------

def test_first_assignment_against_sentinel_counts_as_changed():
    gmm = _two_state_model()
    X = torch.tensor([[0.0, 0.0], [9.0, 9.0]], dtype=torch.float64)
    labels = torch.empty(2, dtype=torch.long)
    summed, changed = gmm.cluster(X, labels, torch.full((2,), -1, dtype=torch.long))
    assert changed
    assert labels.tolist() == [0, 1]
    assert summed == pytest.approx(2.0)


def test_cluster_ties_go_to_first_state():
    gmm = GaussianMixtureModel(1).set_num_states(2).set_mean(0, [-1.0]).set_mean(1, [1.0])
    labels = torch.empty(1, dtype=torch.long)
    gmm.cluster([[0.0]], labels, torch.full((1,), -1, dtype=torch.long))
    assert labels.tolist() == [0]


def test_assignment_fixed_point_is_idempotent():
    rng = np.random.RandomState(_random_seed())
    X = _blobs(rng, [[0.0, 0.0], [15.0, 15.0]])
    gmm = GaussianMixtureModel(2, config=MixtureConfig(seed=int(_random_seed()))).set_num_states(2)
    gmm.init_kmeans(X, max_iter=100)

    first = torch.empty(len(X), dtype=torch.long)
    gmm.cluster(X, first, torch.full((len(X),), -1, dtype=torch.long))
    second = torch.empty(len(X), dtype=torch.long)
    _, changed = gmm.cluster(X, second, first)
    assert not changed
    assert torch.equal(first, second)

    # after convergence an extra update leaves the assignments alone
    gmm.update_clusters(X, second)
    third = torch.empty(len(X), dtype=torch.long)
    _, changed = gmm.cluster(X, third, second)
    assert not changed


def test_empty_cluster_keeps_mean_and_gets_identity_covariance():
    gmm = GaussianMixtureModel(2).set_num_states(2)
    gmm.set_mean(0, [0.0, 0.0]).set_mean(1, [100.0, 100.0])
    gmm.set_covariance(1, 5.0 * torch.eye(2))
    X = torch.tensor([[0.0, 0.0], [2.0, 0.0], [0.0, 2.0], [2.0, 2.0]], dtype=torch.float64)

    gmm.update_clusters(X, torch.zeros(4, dtype=torch.long))

    assert torch.allclose(gmm.get_mean(0), torch.tensor([1.0, 1.0], dtype=torch.float64))
    assert torch.allclose(gmm.get_covariance(0), torch.eye(2, dtype=torch.float64))
    assert torch.equal(gmm.get_mean(1), torch.tensor([100.0, 100.0], dtype=torch.float64))
    assert torch.equal(gmm.get_covariance(1), torch.eye(2, dtype=torch.float64))


def test_update_clusters_uses_population_covariance():
    rng = np.random.RandomState(_random_seed())
    X = rng.randn(40, 3)
    labels = torch.from_numpy(rng.randint(0, 2, size=40))
    gmm = GaussianMixtureModel(3).set_num_states(2)
    gmm.update_clusters(X, labels)
    for k in range(2):
        members = X[labels.numpy() == k]
        assert np.allclose(gmm.get_mean(k).numpy(), members.mean(axis=0))
        assert np.allclose(gmm.get_covariance(k).numpy(), np.cov(members, rowvar=False, bias=True))


# ---------------------------------------------------------------------
# Inference
# ---------------------------------------------------------------------

def test_queries_before_initialization_are_harmless():
    gmm = GaussianMixtureModel(2).set_num_states(2)
    assert gmm.pdf([0.0, 0.0]) == 0.0
    assert gmm.most_likely_state([0.0, 0.0]) == 0
    assert gmm.draw() is None
    assert gmm.sample(5) is None
    assert torch.isinf(gmm.score_samples(torch.zeros(3, 2))).all()
    with pytest.raises(RuntimeError):
        gmm.predict_proba(torch.zeros(3, 2))


def test_most_likely_state_scenario():
    gmm = _two_state_model((0.3, 0.7))
    assert gmm.most_likely_state([9.0, 9.0]) == 1
    assert gmm.most_likely_state([0.5, 0.0]) == 0


def test_most_likely_state_all_zero_returns_zero():
    gmm = _two_state_model((0.0, 0.0))
    assert gmm.most_likely_state([9.0, 9.0]) == 0


def test_pdf_is_weighted_sum_and_non_negative():
    gmm = _two_state_model((0.3, 0.7))
    rng = np.random.RandomState(_random_seed())
    for x in rng.randn(50, 2) * 8.0:
        value = gmm.pdf(x)
        assert value >= 0.0
        expected = 0.3 * float(gmm.gaussian(0).pdf(x)) + 0.7 * float(gmm.gaussian(1).pdf(x))
        assert value == pytest.approx(expected)

    at_origin = gmm.pdf([0.0, 0.0])
    assert at_origin == pytest.approx(0.3 / (2 * np.pi), rel=1e-6)


def test_score_samples_matches_pdf():
    gmm = _two_state_model()
    X = torch.tensor([[0.0, 0.0], [5.0, 5.0], [9.0, 10.0]], dtype=torch.float64)
    log_dens = gmm.score_samples(X)
    for i in range(3):
        assert float(log_dens[i].exp()) == pytest.approx(gmm.pdf(X[i]), rel=1e-10)


def test_predict_proba_rows_sum_to_one():
    gmm = _two_state_model()
    X = torch.randn(25, 2, dtype=torch.float64) * 6.0
    resp = gmm.predict_proba(X)
    assert resp.shape == (25, 2)
    assert torch.allclose(resp.sum(dim=1), torch.ones(25, dtype=torch.float64))
    assert gmm.predict(torch.tensor([[9.0, 9.0]], dtype=torch.float64)).tolist() == [1]


def test_draw_returns_points():
    gmm = _two_state_model()
    gmm.generator = torch.Generator().manual_seed(5)
    for _ in range(20):
        x = gmm.draw()
        assert x.shape == (2,)
        assert torch.isfinite(x).all()


def test_sampled_states_stay_in_range():
    gmm = GaussianMixtureModel(1, config=MixtureConfig(seed=11)).set_num_states(4)
    gmm.set_priors([0.1, 0.2, 0.3, 0.4]).force_initialize()

    X, labels = gmm.sample(100000)
    assert X.shape == (100000, 1)
    assert int(labels.min()) >= 0
    assert int(labels.max()) <= 3
    freq = torch.bincount(labels, minlength=4).double() / 100000
    assert torch.allclose(freq, gmm.priors, atol=0.01)

    for _ in range(2000):
        assert 0 <= gmm.draw_state() <= 3


def test_priors_not_summing_to_one_are_clamped():
    gmm = GaussianMixtureModel(1, config=MixtureConfig(seed=3)).set_num_states(3)
    gmm.set_priors([0.1, 0.1, 0.1]).force_initialize()
    _, labels = gmm.sample(5000)
    assert int(labels.max()) == 2
    assert int(labels.min()) >= 0
    # most draws exceed the total mass and land on the last state
    assert (labels == 2).double().mean() > 0.6


def test_sample_rejects_non_positive_count():
    gmm = _two_state_model()
    with pytest.raises(ValueError):
        gmm.sample(0)


def test_derived_products_are_bound_to_this_instance():
    gmm = _two_state_model()
    assert gmm.get_em().gmm is gmm
    assert gmm.get_regression_model(1).gmm is gmm
