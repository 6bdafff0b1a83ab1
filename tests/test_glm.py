import warnings

import numpy as np
import pandas as pd
import pytest

from cytofda.core.counting import count_cells
from cytofda.core.types import AbundanceTable, ConfigurationError, EventStore
from cytofda.stats.fdr import spatial_fdr
from cytofda.stats.glm import (
    STATUS_NOT_TESTABLE,
    STATUS_OK,
    Contrast,
    estimate_latent_factors,
    fit_contrasts,
    log_cpm,
    make_contrast,
    make_design,
)


def _meta(groups: list[str]) -> pd.DataFrame:
    return pd.DataFrame({"group": groups}, index=[f"s{i}" for i in range(len(groups))])


def _table(counts: np.ndarray, totals: np.ndarray, meta: pd.DataFrame) -> AbundanceTable:
    n = counts.shape[0]
    return AbundanceTable(
        counts=counts.astype(np.int64),
        centers=np.arange(n, dtype=float).reshape(-1, 1),
        radius=0.5,
        sample_names=tuple(meta.index),
        markers=("m0",),
        totals=np.asarray(totals, dtype=np.int64),
        sample_meta=meta,
    )


def _replicated(seed: int = 0) -> tuple[AbundanceTable, pd.DataFrame]:
    rng = np.random.default_rng(seed)
    meta = _meta(["A", "A", "A", "B", "B", "B"])
    counts = rng.poisson(50, size=(40, 6))
    counts[0, :3] = rng.poisson(200, size=3)
    counts[0, 3:] = rng.poisson(20, size=3)
    table = _table(counts, np.full(6, 10000), meta)
    return table, make_design(meta, "0 + group")


def test_make_design_group_means():
    design = make_design(_meta(["A", "B", "A"]))
    assert list(design.columns) == ["group[A]", "group[B]"]
    np.testing.assert_array_equal(design.to_numpy(), [[1, 0], [0, 1], [1, 0]])
    assert list(design.index) == ["s0", "s1", "s2"]


def test_make_design_rejects_rank_deficiency():
    meta = _meta(["A", "B", "A", "B"])
    meta["a_flag"] = (meta["group"] == "A").astype(float)
    with pytest.raises(ConfigurationError, match="full column rank"):
        make_design(meta, "0 + group + a_flag")


def test_make_design_rejects_bad_formula():
    with pytest.raises(ConfigurationError):
        make_design(_meta(["A", "B"]), "0 + not_a_column")


def test_make_contrast_resolves_levels():
    cols = ["group[A]", "group[B]", "group[C]"]
    con = make_contrast("A - B", cols)
    np.testing.assert_allclose(con.coefficients, [1.0, -1.0, 0.0])
    assert con.name == "A - B"
    con = make_contrast("0.5*A + 0.5*B - C", cols, name="avg")
    np.testing.assert_allclose(con.coefficients, [0.5, 0.5, -1.0])
    assert con.name == "avg"
    assert con.as_series()["group[C]"] == -1.0


def test_make_contrast_accepts_full_column_names():
    con = make_contrast("group[B] - group[A]", ["group[A]", "group[B]"])
    np.testing.assert_allclose(con.coefficients, [-1.0, 1.0])


def test_make_contrast_handles_hyphenated_levels():
    meta = _meta(["pre-treat", "post-treat", "pre-treat", "post-treat"])
    cols = list(make_design(meta).columns)
    assert cols == ["group[post-treat]", "group[pre-treat]"]
    by_column = make_contrast("group[post-treat] - group[pre-treat]", cols)
    np.testing.assert_allclose(by_column.coefficients, [1.0, -1.0])
    by_level = make_contrast("pre-treat - post-treat", cols)
    np.testing.assert_allclose(by_level.coefficients, [-1.0, 1.0])


def test_make_contrast_prefers_longest_level():
    cols = ["group[CD4]", "group[CD4-stim]", "group[stim]"]
    con = make_contrast("CD4-stim - CD4", cols)
    np.testing.assert_allclose(con.coefficients, [-1.0, 1.0, 0.0])
    con = make_contrast("CD4 - stim", cols)
    np.testing.assert_allclose(con.coefficients, [1.0, 0.0, -1.0])


def test_make_contrast_accepts_exponent_coefficients():
    con = make_contrast("1e-3*A - 2.5E+1*B", ["group[A]", "group[B]"])
    np.testing.assert_allclose(con.coefficients, [1e-3, -25.0])


@pytest.mark.parametrize("expr", ["", "A - Z", "A - A", "A -", "A + + B"])
def test_make_contrast_rejects_invalid(expr):
    with pytest.raises(ConfigurationError):
        make_contrast(expr, ["group[A]", "group[B]"])


def test_log_cpm_equal_for_equal_proportions():
    y = log_cpm(np.array([[10, 20]]), np.array([100, 200]))
    assert y[0, 0] == pytest.approx(y[0, 1])


def test_replicated_design_detects_shift():
    table, design = _replicated()
    res = fit_contrasts(table, design, {"AvsB": "A - B"})["AvsB"]
    assert list(res.columns) == ["logFC", "logCPM", "F", "PValue", "status"]
    assert (res["status"] == STATUS_OK).all()
    assert res.loc[0, "PValue"] < 1e-4
    assert res.loc[0, "logFC"] == pytest.approx(np.log2(10.0), abs=0.7)
    assert res["PValue"].between(0.0, 1.0).all()
    assert np.median(res.loc[1:, "PValue"]) > 0.1


def test_zero_count_hypersphere_not_testable():
    table, design = _replicated()
    counts = table.counts.copy()
    counts[5] = 0
    table = _table(counts, table.totals, table.sample_meta)
    with pytest.warns(RuntimeWarning, match="not testable"):
        res = fit_contrasts(table, design, {"AvsB": "A - B"}, dispersion=0.01)["AvsB"]
    assert res.loc[5, "status"] == STATUS_NOT_TESTABLE
    assert np.isnan(res.loc[5, "PValue"])
    assert np.isnan(res.loc[5, "logFC"])
    assert np.isfinite(res.loc[5, "logCPM"])
    q = spatial_fdr(table.centers, res["PValue"].to_numpy())
    assert np.isnan(q[5])
    assert np.isfinite(np.delete(q, 5)).all()


def test_no_replicates_fall_back_to_fixed_dispersion():
    meta = _meta(["A", "B"])
    table = _table(np.array([[30, 2], [70, 98]]), np.array([100, 100]), meta)
    with pytest.warns(RuntimeWarning, match="no residual degrees of freedom"):
        res = fit_contrasts(table, make_design(meta), {"AvsB": "A - B"})["AvsB"]
    assert (res["status"] == STATUS_OK).all()
    assert res.loc[0, "PValue"] < res.loc[1, "PValue"]


def test_non_estimable_contrast_marks_everything_untestable():
    meta = _meta(["A", "A", "A"])
    table = _table(np.array([[5, 6, 7], [1, 2, 3]]), np.array([100, 100, 100]), meta)
    design = np.ones((3, 2))
    con = Contrast("diff", np.array([1.0, -1.0]), ("x0", "x1"))
    with warnings.catch_warnings():
        warnings.simplefilter("ignore")
        res = fit_contrasts(table, design, [con], dispersion=0.1)["diff"]
    assert (res["status"] == STATUS_NOT_TESTABLE).all()
    assert res["PValue"].isna().all()


def test_design_rows_must_match_samples():
    table, design = _replicated()
    with pytest.raises(ConfigurationError):
        fit_contrasts(table, design.iloc[:4], {"AvsB": "A - B"})


def test_latent_factors_are_orthogonal_to_design():
    table, design = _replicated()
    lat = estimate_latent_factors(table.counts, table.totals, design, n_factors=1)
    assert list(lat.columns) == ["latent1"]
    assert lat.shape == (6, 1)
    np.testing.assert_allclose(lat.to_numpy().T @ design.to_numpy(), 0.0, atol=1e-8)
    again = estimate_latent_factors(table.counts, table.totals, design, n_factors=1)
    np.testing.assert_allclose(lat.to_numpy(), again.to_numpy())
    full = make_design(table.sample_meta, "0 + group", latent=lat)
    assert list(full.columns) == ["group[A]", "group[B]", "latent1"]


def test_latent_factors_need_residual_df():
    table, design = _replicated()
    with pytest.raises(ConfigurationError):
        estimate_latent_factors(table.counts, table.totals, design, n_factors=4)


def test_two_cluster_scenario_flags_only_the_shifted_cluster():
    rng = np.random.default_rng(0)

    def cells(n1: int, n2: int) -> np.ndarray:
        return np.vstack(
            [
                rng.normal(loc=0.0, scale=0.2, size=(n1, 2)),
                rng.normal(loc=10.0, scale=0.2, size=(n2, 2)),
            ]
        )

    meta = pd.DataFrame({"group": ["A", "B"]}, index=["A", "B"])
    store = EventStore.from_arrays({"A": cells(30, 70), "B": cells(2, 98)}, sample_meta=meta)
    table = count_cells(store, tol=2.0, downsample=10)
    design = make_design(table.sample_meta, "0 + group")
    res = fit_contrasts(table, design, {"AvsB": "A - B"}, dispersion=0.05)["AvsB"]
    fdr = spatial_fdr(table.centers, res["PValue"].to_numpy())

    in_c1 = table.centers[:, 0] < 5.0
    assert in_c1.sum() >= 2
    assert np.all(fdr[in_c1] <= 0.05)
    assert np.all(fdr[~in_c1] > 0.05)
    assert np.all(res.loc[in_c1, "logFC"] > 2.0)
