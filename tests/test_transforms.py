import numpy as np
import pandas as pd
import pytest

from cytofda.core.types import ConfigurationError
from cytofda.preprocessing.transforms import (
    LogicleParams,
    TransformParams,
    apply_transform,
    arcsinh_transform,
    estimate_logicle_params,
    estimate_transform_params,
    logicle_transform,
)


def _events() -> pd.DataFrame:
    rng = np.random.default_rng(0)
    return pd.DataFrame(
        {
            "Time": np.arange(200, dtype=float),
            "CD3": rng.exponential(50.0, size=200),
            "CD19": rng.exponential(5.0, size=200) - 1.0,
        }
    )


def test_arcsinh_matches_numpy():
    x = np.array([-10.0, 0.0, 5.0, 500.0])
    np.testing.assert_allclose(arcsinh_transform(x, 5.0), np.arcsinh(x / 5.0))


def test_arcsinh_rejects_bad_cofactor():
    with pytest.raises(ConfigurationError):
        arcsinh_transform(np.ones(2), 0.0)
    with pytest.raises(ConfigurationError):
        TransformParams(method="arcsinh", cofactor=-1.0)


def test_unknown_method_rejected():
    with pytest.raises(ConfigurationError):
        TransformParams(method="log")


def test_logicle_is_monotone_and_anchored():
    p = LogicleParams(T=10000.0, W=0.5, M=4.5, A=0.0)
    x = np.array([-50.0, 0.0, 10.0, 100.0, 1000.0, 10000.0])
    y = logicle_transform(x, p)
    assert np.all(np.diff(y) > 0)
    # Zero maps to W / (M + A) of the scale and T to the top.
    assert y[1] == pytest.approx(p.W, abs=1e-3)
    assert y[-1] == pytest.approx(p.M, abs=1e-3)


def test_logicle_validation():
    with pytest.raises(ConfigurationError):
        LogicleParams(T=-1.0).validate()
    with pytest.raises(ConfigurationError):
        LogicleParams(W=3.0, M=4.5).validate()


def test_estimate_logicle_params_from_data():
    x = np.concatenate([np.linspace(-20, 0, 50), np.linspace(0, 5000, 200)])
    p = estimate_logicle_params(x)
    assert p.T == pytest.approx(5000.0)
    assert 0.0 <= p.W <= p.M / 2.0


def test_apply_transform_is_pure_and_skips_time():
    ev = _events()
    before = ev.copy()
    params = estimate_transform_params(ev, method="arcsinh", cofactor=5.0)
    assert params.channels == ("CD3", "CD19")
    out = apply_transform(ev, params)
    pd.testing.assert_frame_equal(ev, before)
    np.testing.assert_allclose(out["Time"], ev["Time"])
    np.testing.assert_allclose(out["CD3"], np.arcsinh(ev["CD3"] / 5.0))


def test_logicle_parameters_are_estimated_per_channel():
    ev = _events()
    params = estimate_transform_params(ev, method="logicle", channels=["CD3", "CD19"])
    assert set(params.logicle) == {"CD3", "CD19"}
    out = apply_transform(ev, params)
    assert np.isfinite(out[["CD3", "CD19"]].to_numpy()).all()


def test_missing_logicle_channel_params():
    params = TransformParams(method="logicle", channels=("CD3",))
    with pytest.raises(ConfigurationError):
        apply_transform(_events(), params)


def test_none_method_returns_copy():
    ev = _events()
    out = apply_transform(ev, TransformParams(method="none"))
    pd.testing.assert_frame_equal(out, ev)
    assert out is not ev
