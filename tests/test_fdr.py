import numpy as np
import pytest

from cytofda.core.types import ConfigurationError
from cytofda.stats.fdr import bh_fdr, default_bandwidth, density_weights, spatial_fdr, weighted_bh


def test_weighted_bh_equals_bh_for_unit_weights():
    p = np.array([0.01, 0.04, 0.03, 0.2, 0.5])
    q = weighted_bh(p, np.ones(p.size))
    # Hand-computed BH.
    np.testing.assert_allclose(q, [0.05, 0.2 / 3, 0.2 / 3, 0.25, 0.5])
    np.testing.assert_allclose(bh_fdr(p), q)


def test_weighted_bh_q_at_least_p_and_monotone():
    rng = np.random.default_rng(0)
    p = rng.uniform(size=200)
    w = rng.uniform(0.05, 1.0, size=200)
    q = weighted_bh(p, w)
    assert np.all(q >= p - 1e-15)
    assert np.all(q <= 1.0)
    order = np.argsort(p, kind="mergesort")
    assert np.all(np.diff(q[order]) >= -1e-15)


def test_weighted_bh_uses_weights():
    p = np.array([0.01, 0.5])
    # Down-weighting the smallest p-value inflates its q-value.
    light = weighted_bh(p, np.array([0.1, 1.0]))
    heavy = weighted_bh(p, np.array([1.0, 0.1]))
    assert light[0] == pytest.approx(0.01 * 1.1 / 0.1)
    assert heavy[0] == pytest.approx(0.01 * 1.1)
    assert light[1] == pytest.approx(0.5)


def test_weighted_bh_ties_are_deterministic():
    p = np.array([0.02, 0.02, 0.02])
    w = np.array([0.5, 1.0, 0.25])
    q1 = weighted_bh(p, w)
    q2 = weighted_bh(p, w)
    np.testing.assert_array_equal(q1, q2)
    np.testing.assert_allclose(q1, [0.02, 0.02, 0.02])


def test_nan_pvalues_are_excluded():
    p = np.array([0.01, np.nan, 0.04])
    q = weighted_bh(p, np.ones(3))
    assert np.isnan(q[1])
    np.testing.assert_allclose(q[[0, 2]], [0.02, 0.04])
    assert np.isnan(bh_fdr(p)[1])


def test_all_nan_returns_all_nan():
    q = weighted_bh(np.array([np.nan, np.nan]), np.ones(2))
    assert np.isnan(q).all()


def test_invalid_pvalues_rejected():
    with pytest.raises(ValueError):
        weighted_bh(np.array([0.5, 1.5]), np.ones(2))
    with pytest.raises(ValueError):
        weighted_bh(np.array([0.5, np.inf]), np.ones(2))


def test_nonpositive_weight_rejected():
    with pytest.raises(ValueError, match="weights"):
        weighted_bh(np.array([0.1, 0.2]), np.array([1.0, 0.0]))


def test_isolated_center_gets_weight_one():
    rng = np.random.default_rng(0)
    dense = rng.normal(scale=0.05, size=(40, 2))
    centers = np.vstack([dense, [[100.0, 100.0]]])
    w = density_weights(centers, neighbors=10)
    assert w[-1] == pytest.approx(1.0)
    assert np.all(w > 0.0)
    assert np.all(w <= 1.0)
    assert np.median(w[:-1]) < 0.5


def test_dense_centers_get_smaller_weights():
    rng = np.random.default_rng(1)
    dense = rng.normal(scale=0.1, size=(60, 2))
    sparse = rng.uniform(5.0, 15.0, size=(20, 2))
    w = density_weights(np.vstack([dense, sparse]), neighbors=5, bandwidth=1.0)
    assert np.mean(w[:60]) < np.mean(w[60:])


def test_gaussian_kernel_supported():
    centers = np.array([[0.0, 0.0], [0.5, 0.0], [10.0, 0.0]])
    w = density_weights(centers, bandwidth=1.0, kernel="gaussian")
    assert w[2] == pytest.approx(1.0)
    assert w[0] < 1.0


def test_unknown_kernel_rejected():
    with pytest.raises(ConfigurationError):
        density_weights(np.zeros((3, 2)), kernel="box")


def test_duplicate_centers_do_not_break_bandwidth():
    centers = np.zeros((5, 2))
    assert default_bandwidth(centers, neighbors=2) == 0.0
    w = density_weights(centers, neighbors=2)
    np.testing.assert_allclose(w, 0.2)


def test_spatial_fdr_length_mismatch():
    with pytest.raises(ValueError):
        spatial_fdr(np.zeros((3, 2)), np.array([0.1, 0.2]))


def test_spatial_fdr_q_at_least_p():
    rng = np.random.default_rng(2)
    centers = rng.normal(size=(100, 3))
    p = rng.uniform(size=100)
    p[:5] = 1e-6
    q = spatial_fdr(centers, p, neighbors=10)
    assert np.all(q >= p - 1e-15)
    assert np.all(q[:5] < 0.01)
