import numpy as np
import pandas as pd
import pytest

from housing_surgery.analysis import (
    association_test,
    build_confounder_tables,
    build_contingency_table,
    build_proportion_table,
    build_table1,
    compare_outcome_rates,
    specialty_distribution,
)

LEVELS = ["domiciled", "homeless"]


@pytest.fixture
def four_and_four(derive, make_sheet):
    dom = make_sheet([{} for _ in range(4)])
    hom = make_sheet([{"associated_diagnosis_codes": "T81.4"}, {"associated_diagnosis_codes": "K35.8, T81.0"}, {}, {}])
    return derive(dom, hom).analysis_df


@pytest.fixture
def synthetic_df(derive, synthetic_sheets):
    return derive(synthetic_sheets["Domiciled"], synthetic_sheets["Homeless"]).analysis_df


def test_four_and_four_contingency_table(four_and_four):
    table = build_contingency_table(four_and_four, "complication", group_levels=LEVELS)
    assert table.index.tolist() == [True, False]
    assert table.columns.tolist() == LEVELS
    assert table.loc[True, "domiciled"] == 0
    assert table.loc[True, "homeless"] == 2
    assert table.loc[False, "domiciled"] == 4
    assert table.loc[False, "homeless"] == 2


def test_one_sided_tests_on_four_and_four(four_and_four):
    lower = compare_outcome_rates(four_and_four, "complication", "less")
    higher = compare_outcome_rates(four_and_four, "complication", "greater")
    assert lower["p_value"] == pytest.approx(1.0)
    assert lower["p_value"] > 0.05
    assert higher["p_value"] == pytest.approx(15 / 70)
    assert higher["homeless_rate"] == pytest.approx(0.5)
    assert higher["domiciled_rate"] == 0


def test_higher_rate_test_gets_small_p_with_larger_groups(derive, make_sheet):
    dom = make_sheet([{} for _ in range(40)])
    hom = make_sheet([{"associated_diagnosis_codes": "T81.4"} for _ in range(20)] + [{} for _ in range(20)])
    df = derive(dom, hom).analysis_df
    assert compare_outcome_rates(df, "complication", "greater")["p_value"] < 0.001
    assert compare_outcome_rates(df, "complication", "less")["p_value"] > 0.5


def test_sparse_two_by_two_falls_back_to_fisher(four_and_four):
    table = build_contingency_table(four_and_four, "complication", group_levels=LEVELS)
    result = association_test(table, label="complication")
    assert result["test"] == "fisher_exact"
    assert "Fisher" in result["warning"]
    assert 0 < result["p_value"] <= 1


def test_degenerate_table_warns_instead_of_raising(derive, make_sheet):
    df = derive(make_sheet([{}, {}]), make_sheet([{}, {}])).analysis_df
    table = build_contingency_table(df, "complication", group_levels=LEVELS)
    assert table.loc[True].sum() == 0
    result = association_test(table, label="complication")
    assert result["test"] == "not performed"
    assert np.isnan(result["p_value"])
    assert "fewer than two" in result["warning"]


def test_well_populated_table_uses_chi_square(synthetic_df):
    table = build_contingency_table(synthetic_df, "complication", group_levels=LEVELS)
    result = association_test(table, label="complication")
    assert result["test"] == "chi_square"
    assert result["warning"] == ""
    assert result["dof"] == 1


def test_proportion_table_columns_sum_to_one(synthetic_df):
    table = build_contingency_table(synthetic_df, "age_group", group_levels=LEVELS)
    props = build_proportion_table(table)
    assert np.allclose(props.sum(axis=0).values, 1.0)


def test_confounder_tables_cover_each_confounder(synthetic_df, config):
    counts, proportions, tests = build_confounder_tables(synthetic_df, config["confounders"], config)
    assert tests["variable"].tolist() == config["confounders"]
    assert set(counts["variable"]) == set(config["confounders"])
    assert {"variable", "level", "housing_status", "n"} <= set(counts.columns)
    sex_total = counts.loc[counts["variable"] == "sex", "n"].sum()
    assert sex_total == len(synthetic_df)
    assert set(proportions.columns) >= {"proportion"}


def test_specialty_distribution_excludes_psy_and_reports_residuals(synthetic_df, synthetic_sheets, config):
    table, residuals, test = specialty_distribution(synthetic_df, config)
    assert "PSY" not in table.index
    raw_total = sum(len(df) for df in synthetic_sheets.values())
    assert table.to_numpy().sum() == len(synthetic_df) < raw_total
    assert len(residuals) == table.size
    assert (residuals["p_value_bonferroni"] >= residuals["p_value"]).all()
    assert test["variable"].iloc[0] == "specialty_group"
    assert np.isfinite(test["p_value"].iloc[0])


def test_adjusted_residuals_mirror_across_two_columns(synthetic_df, config):
    _, residuals, _ = specialty_distribution(synthetic_df, config)
    wide = residuals.pivot(index="specialty_group", columns="housing_status", values="adjusted_residual")
    assert np.allclose(wide["domiciled"], -wide["homeless"])


def test_table1_has_counts_per_housing_group(synthetic_df):
    table1 = build_table1(synthetic_df)
    counts = table1.loc[table1["variable"] == "N"].set_index("housing_status")["n"]
    expected = synthetic_df["housing_status"].value_counts()
    assert counts.to_dict() == expected.to_dict()
    assert {"mean", "sd"} <= set(table1.loc[table1["variable"] == "age", "level"])


def test_empty_level_is_trimmed_before_testing():
    table = pd.DataFrame([[10, 20], [0, 0], [30, 15]], index=["a", "b", "c"], columns=LEVELS)
    result = association_test(table, label="age_group")
    assert result["test"] == "chi_square"
    assert result["dof"] == 2
    assert "empty levels removed" in result["warning"]


def test_sparse_larger_table_keeps_chi_square_with_warning():
    table = pd.DataFrame([[20, 25], [1, 2], [30, 28]], index=["a", "b", "c"], columns=LEVELS)
    result = association_test(table, label="age_group")
    assert result["test"] == "chi_square"
    assert result["min_expected"] < 5
    assert "may be unreliable" in result["warning"]
    assert np.isfinite(result["p_value"])


def test_adjusted_residual_matches_hand_computation(config):
    df = pd.DataFrame(
        {
            "specialty_group": ["A"] * 30 + ["B"] * 40,
            "housing_status": ["domiciled"] * 10 + ["homeless"] * 20 + ["domiciled"] * 30 + ["homeless"] * 10,
        }
    )
    _, residuals, _ = specialty_distribution(df, config)
    cell = residuals.set_index(["specialty_group", "housing_status"]).loc[("A", "domiciled")]
    # expected = 30 * 40 / 70; denominator sqrt(expected * (1 - 30/70) * (1 - 40/70))
    assert cell["expected"] == pytest.approx(30 * 40 / 70)
    assert cell["adjusted_residual"] == pytest.approx(-3.48608, abs=1e-4)
    assert cell["p_value_bonferroni"] == pytest.approx(min(1.0, 4 * cell["p_value"]))
