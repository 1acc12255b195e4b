"""Analysis modules for housing status and surgical outcomes."""

from __future__ import annotations

import logging
import math
import warnings
from dataclasses import dataclass, field
from typing import Iterable, Mapping

import numpy as np
import pandas as pd
import statsmodels.formula.api as smf
from patsy import PatsyError
from scipy.stats import chi2_contingency, fisher_exact
from statsmodels.tools.sm_exceptions import ConvergenceWarning, PerfectSeparationError, PerfectSeparationWarning

from .cohort import add_model_transforms

FAMILIES = ("logistic", "log_linear")
MODEL_ERROR_COLUMNS = ["model", "outcome", "family", "predictors", "reason"]
DROPPED_COLUMNS = ["model", "outcome", "predictor", "round1_p_value", "threshold"]


class ModelFitError(RuntimeError):
    """A per-outcome model could not be fitted; carries enough context to skip or abort."""

    def __init__(self, outcome: str, predictors: Iterable[str], reason: str) -> None:
        self.outcome = outcome
        self.predictors = tuple(predictors)
        self.reason = reason
        super().__init__(
            f"{outcome}: model fit failed ({reason}); predictors={', '.join(self.predictors) or 'intercept only'}"
        )


@dataclass(frozen=True)
class ModelSpec:
    outcome: str
    predictors: tuple[str, ...]
    family: str = "logistic"
    threshold: float = 0.05
    label: str = ""
    cov_type: str = "nonrobust"

    def __post_init__(self) -> None:
        if self.family not in FAMILIES:
            raise ValueError(f"Unknown model family '{self.family}'. Expected one of: {', '.join(FAMILIES)}.")
        if not 0.0 <= float(self.threshold) <= 1.0:
            raise ValueError(f"threshold must be within [0, 1], got {self.threshold}.")
        object.__setattr__(self, "predictors", tuple(self.predictors))
        if not self.label:
            prefix = "logit" if self.family == "logistic" else "loglinear"
            object.__setattr__(self, "label", f"{prefix}_{self.outcome}")

    @property
    def response(self) -> str:
        return self.outcome if self.family == "logistic" else f"log_{self.outcome}"


@dataclass
class ModelResult:
    spec: ModelSpec
    formula: str
    n_obs: int
    events: int | None
    retained: list[str]
    dropped: dict[str, float]
    initial_p_values: pd.Series
    coefficients: pd.DataFrame

    @property
    def intercept_only(self) -> bool:
        return not self.retained

    def to_frame(self) -> pd.DataFrame:
        out = self.coefficients.copy()
        out["n_obs"] = self.n_obs
        out["events"] = self.events if self.events is not None else np.nan
        out["formula"] = self.formula
        return out

    def dropped_frame(self) -> pd.DataFrame:
        rows = [
            {
                "model": self.spec.label,
                "outcome": self.spec.outcome,
                "predictor": predictor,
                "round1_p_value": p_value,
                "threshold": self.spec.threshold,
            }
            for predictor, p_value in self.dropped.items()
        ]
        return pd.DataFrame(rows, columns=DROPPED_COLUMNS)


@dataclass
class AnalysisBundle:
    label: str
    n_records: int
    table1: pd.DataFrame
    confounder_counts: pd.DataFrame
    confounder_proportions: pd.DataFrame
    confounder_tests: pd.DataFrame
    specialty_table: pd.DataFrame
    specialty_residuals: pd.DataFrame
    specialty_test: pd.DataFrame
    outcome_rate_tests: pd.DataFrame
    model_results: pd.DataFrame
    model_dropped: pd.DataFrame
    model_errors: pd.DataFrame
    models: dict[str, ModelResult] = field(default_factory=dict)
    notes: list[str] = field(default_factory=list)


def _two_sided_p_from_z(z_value: float) -> float:
    if not np.isfinite(z_value):
        return np.nan
    return float(math.erfc(abs(float(z_value)) / math.sqrt(2.0)))


def _predictor_term(name: str, config: dict | None) -> str:
    cfg = config or {}
    if name not in cfg.get("categorical_predictors", []):
        return name
    ref = str(cfg.get("reference_levels", {}).get(name, "")).strip()
    if ref:
        return f'C({name}, Treatment(reference="{ref}"))'
    return f"C({name})"


def _term_matches(param_name: str, term: str) -> bool:
    if term.startswith("C("):
        return param_name.startswith(term + "[")
    return param_name == term


def _build_formula(response: str, terms: Iterable[str]) -> str:
    terms = list(terms)
    return f"{response} ~ " + (" + ".join(terms) if terms else "1")


def _prepare_fit_data(df: pd.DataFrame, spec: ModelSpec) -> pd.DataFrame:
    if spec.family == "log_linear" and spec.response not in df.columns and spec.outcome in df.columns:
        df = add_model_transforms(df)
    missing = [c for c in [spec.response, *spec.predictors] if c not in df.columns]
    if missing:
        raise ModelFitError(spec.outcome, spec.predictors, f"columns not found: {', '.join(missing)}")

    # Log responses are NaN for non-positive values, so dropna below removes them.
    data = df[[spec.response, *spec.predictors]].copy()
    data[spec.response] = pd.to_numeric(data[spec.response], errors="coerce").astype(float)

    for col in spec.predictors:
        if pd.api.types.is_bool_dtype(data[col]):
            data[col] = data[col].astype(int)

    data = data.dropna(subset=[spec.response, *spec.predictors]).reset_index(drop=True)

    if data.empty:
        raise ModelFitError(spec.outcome, spec.predictors, "no records available for fitting")
    if data[spec.response].nunique() < 2:
        raise ModelFitError(spec.outcome, spec.predictors, "outcome has zero variance in the fitting set")
    for col in spec.predictors:
        if data[col].nunique() < 2:
            raise ModelFitError(spec.outcome, spec.predictors, f"predictor '{col}' has zero variance")
    return data


def _fit_model(data: pd.DataFrame, formula: str, spec: ModelSpec, predictors: Iterable[str]):
    predictors = tuple(predictors)
    try:
        if spec.family == "logistic":
            model = smf.logit(formula=formula, data=data)
        else:
            model = smf.ols(formula=formula, data=data)
    except (PatsyError, ValueError) as exc:
        raise ModelFitError(spec.outcome, predictors, f"could not build design matrix ({exc})") from exc

    exog = np.asarray(model.exog, dtype=float)
    if np.linalg.matrix_rank(exog) < exog.shape[1]:
        raise ModelFitError(spec.outcome, predictors, "singular design matrix (collinear predictors)")

    if spec.family == "log_linear":
        return model.fit(cov_type=spec.cov_type)

    try:
        with warnings.catch_warnings():
            warnings.filterwarnings("error", category=PerfectSeparationWarning)
            warnings.filterwarnings("error", category=ConvergenceWarning)
            warnings.filterwarnings("error", category=RuntimeWarning)
            fit = model.fit(disp=False, maxiter=100, cov_type=spec.cov_type)
    except (
        PerfectSeparationError,
        PerfectSeparationWarning,
        ConvergenceWarning,
        np.linalg.LinAlgError,
        RuntimeWarning,
        OverflowError,
    ) as exc:
        raise ModelFitError(spec.outcome, predictors, f"unstable maximum likelihood fit ({exc})") from exc

    mle_retvals = getattr(fit, "mle_retvals", {})
    if isinstance(mle_retvals, dict) and not bool(mle_retvals.get("converged", True)):
        raise ModelFitError(spec.outcome, predictors, "maximum likelihood did not converge")
    return fit


def _predictor_p_values(fit, term_map: Mapping[str, str]) -> pd.Series:
    """One p-value per predictor; multi-level categoricals use a joint Wald test."""
    names = list(fit.params.index)
    out: dict[str, float] = {}
    for predictor, term in term_map.items():
        idx = [i for i, name in enumerate(names) if _term_matches(name, term)]
        if not idx:
            out[predictor] = np.nan
        elif len(idx) == 1:
            out[predictor] = float(fit.pvalues.iloc[idx[0]])
        else:
            r = np.zeros((len(idx), len(names)))
            for row, i in enumerate(idx):
                r[row, i] = 1
            out[predictor] = float(fit.wald_test(r, scalar=True).pvalue)
    return pd.Series(out, dtype=float)


def _effect_table(fit, spec: ModelSpec, term_map: Mapping[str, str]) -> pd.DataFrame:
    params = fit.params
    conf = fit.conf_int()
    predictor_for = []
    for name in params.index:
        match = next((p for p, term in term_map.items() if _term_matches(name, term)), None)
        predictor_for.append(match if match is not None else name)
    return pd.DataFrame(
        {
            "model": spec.label,
            "outcome": spec.outcome,
            "family": spec.family,
            "term": params.index,
            "predictor": predictor_for,
            "coef": params.values,
            "std_error": fit.bse.values,
            "effect": np.exp(params.values),
            "ci_low": np.exp(conf[0].values),
            "ci_high": np.exp(conf[1].values),
            "p_value": fit.pvalues.values,
            "effect_type": "OR" if spec.family == "logistic" else "multiplicative",
            "effect_scale": "log",
        }
    )


def select_model(df: pd.DataFrame, spec: ModelSpec, config: dict | None = None) -> ModelResult:
    """Two-round backward elimination for one outcome.

    Round 1 fits every candidate predictor. Every predictor whose p-value
    exceeds ``spec.threshold`` is removed in one step and the model is refit
    once on the remaining set. Both rounds use the same fitting rows. If
    nothing survives, the intercept-only model is returned.
    """
    data = _prepare_fit_data(df, spec)
    term_map = {p: _predictor_term(p, config) for p in spec.predictors}

    full_formula = _build_formula(spec.response, term_map.values())
    full_fit = _fit_model(data, full_formula, spec, spec.predictors)
    initial_p = _predictor_p_values(full_fit, term_map)
    undefined = [p for p, v in initial_p.items() if not np.isfinite(v)]
    if undefined:
        raise ModelFitError(spec.outcome, spec.predictors, f"p-value undefined for: {', '.join(undefined)}")

    # A zero threshold removes everything, including p-values that underflow to 0.0.
    dropped = {
        p: float(initial_p[p])
        for p in spec.predictors
        if initial_p[p] > spec.threshold or spec.threshold <= 0.0
    }
    retained = [p for p in spec.predictors if p not in dropped]
    retained_terms = {p: term_map[p] for p in retained}

    if dropped:
        formula = _build_formula(spec.response, retained_terms.values())
        fit = _fit_model(data, formula, spec, retained)
    else:
        formula, fit = full_formula, full_fit

    events = int(data[spec.response].sum()) if spec.family == "logistic" else None
    logging.info(
        "%s: n=%s events=%s retained=[%s] dropped=[%s]",
        spec.label,
        len(data),
        events if events is not None else "NA",
        ", ".join(retained) or "intercept only",
        ", ".join(dropped),
    )
    return ModelResult(
        spec=spec,
        formula=formula,
        n_obs=int(len(data)),
        events=events,
        retained=retained,
        dropped=dropped,
        initial_p_values=initial_p,
        coefficients=_effect_table(fit, spec, retained_terms),
    )


def build_model_specs(config: dict, outcomes: Iterable[str] | None = None) -> list[ModelSpec]:
    binary = [str(x) for x in config.get("binary_outcomes", [])]
    continuous = [str(x) for x in config.get("continuous_outcomes", [])]
    wanted = list(outcomes) if outcomes is not None else [*binary, *continuous]
    predictors = tuple(str(x) for x in config["candidate_predictors"])
    threshold = float(config.get("significance_threshold", 0.05))
    cov_type = str(config.get("model_cov_type", "nonrobust"))

    specs: list[ModelSpec] = []
    for outcome in wanted:
        if outcome in binary:
            family = "logistic"
        elif outcome in continuous:
            family = "log_linear"
        else:
            raise ValueError(f"Outcome '{outcome}' is not configured as binary or continuous.")
        specs.append(
            ModelSpec(outcome=outcome, predictors=predictors, family=family, threshold=threshold, cov_type=cov_type)
        )
    return specs


def run_outcome_models(
    df: pd.DataFrame,
    specs: Iterable[ModelSpec],
    *,
    config: dict | None = None,
    notes: list[str] | None = None,
    raise_on_error: bool = False,
) -> tuple[dict[str, ModelResult], pd.DataFrame]:
    results: dict[str, ModelResult] = {}
    error_rows: list[dict[str, object]] = []
    for spec in specs:
        try:
            results[spec.label] = select_model(df, spec, config)
        except ModelFitError as exc:
            logging.error("%s: %s", spec.label, exc)
            if raise_on_error:
                raise
            error_rows.append(
                {
                    "model": spec.label,
                    "outcome": spec.outcome,
                    "family": spec.family,
                    "predictors": ", ".join(exc.predictors),
                    "reason": exc.reason,
                }
            )
            if notes is not None:
                notes.append(f"{spec.label}: model not estimated ({exc.reason}).")
    return results, pd.DataFrame(error_rows, columns=MODEL_ERROR_COLUMNS)


def build_contingency_table(
    df: pd.DataFrame,
    variable: str,
    group_col: str = "housing_status",
    group_levels: list[str] | None = None,
) -> pd.DataFrame:
    """Counts of ``variable`` levels (rows) by housing group (columns), zero cells kept."""
    table = pd.crosstab(df[variable], df[group_col], dropna=False)
    if pd.api.types.is_bool_dtype(df[variable]):
        table = table.reindex(index=[True, False], fill_value=0)
    if group_levels is not None:
        table = table.reindex(columns=group_levels, fill_value=0)
    table.index.name = variable
    table.columns.name = group_col
    return table.astype(int)


def build_proportion_table(table: pd.DataFrame) -> pd.DataFrame:
    totals = table.sum(axis=0).replace(0, np.nan)
    return table.div(totals, axis=1)


def association_test(table: pd.DataFrame, *, label: str, min_expected: float = 5.0) -> dict[str, object]:
    """Chi-square test of independence with a Fisher fallback for sparse 2x2 tables.

    Problems with the table never raise; they are described in ``warning``.
    """
    row: dict[str, object] = {
        "variable": label,
        "test": "not performed",
        "statistic": np.nan,
        "dof": np.nan,
        "p_value": np.nan,
        "min_expected": np.nan,
        "warning": "",
    }
    trimmed = table.loc[table.sum(axis=1) > 0, table.sum(axis=0) > 0]
    if trimmed.shape[0] < 2 or trimmed.shape[1] < 2:
        row["warning"] = "fewer than two non-empty levels per dimension; test not performed"
        return row
    if trimmed.shape != table.shape:
        row["warning"] = "empty levels removed before testing"

    values = trimmed.to_numpy(dtype=float)
    try:
        statistic, p_value, dof, expected = chi2_contingency(values)
    except ValueError as exc:
        row["warning"] = f"chi-square failed ({exc})"
        return row

    min_exp = float(np.min(expected))
    row.update(
        {"test": "chi_square", "statistic": float(statistic), "dof": int(dof), "p_value": float(p_value), "min_expected": min_exp}
    )
    if min_exp < min_expected:
        if values.shape == (2, 2):
            odds_ratio, fisher_p = fisher_exact(values)
            row.update({"test": "fisher_exact", "statistic": float(odds_ratio), "dof": np.nan, "p_value": float(fisher_p)})
            note = f"expected count {min_exp:.2f} < {min_expected:g}; used Fisher's exact test"
        else:
            note = f"expected count {min_exp:.2f} < {min_expected:g}; chi-square approximation may be unreliable"
        row["warning"] = "; ".join(x for x in [row["warning"], note] if x)
    return row


def compare_outcome_rates(
    df: pd.DataFrame,
    outcome: str,
    alternative: str = "greater",
    *,
    group_col: str = "housing_status",
    exposed: str = "homeless",
    reference: str = "domiciled",
) -> dict[str, object]:
    """Fisher's exact test of the exposed vs reference odds of ``outcome``.

    ``alternative="greater"`` tests whether the exposed group has the higher
    rate; ``"less"`` tests whether it has the lower one.
    """
    flag = df[outcome].astype(bool)
    exposed_mask = df[group_col] == exposed
    reference_mask = df[group_col] == reference
    e_events, e_n = int(flag[exposed_mask].sum()), int(exposed_mask.sum())
    r_events, r_n = int(flag[reference_mask].sum()), int(reference_mask.sum())

    table = [[e_events, e_n - e_events], [r_events, r_n - r_events]]
    odds_ratio, p_value = fisher_exact(table, alternative=alternative)
    return {
        "outcome": outcome,
        "alternative": alternative,
        f"{exposed}_events": e_events,
        f"{exposed}_n": e_n,
        f"{exposed}_rate": e_events / e_n if e_n else np.nan,
        f"{reference}_events": r_events,
        f"{reference}_n": r_n,
        f"{reference}_rate": r_events / r_n if r_n else np.nan,
        "odds_ratio": float(odds_ratio),
        "p_value": float(p_value),
    }


def _long_table(table: pd.DataFrame, value_name: str) -> pd.DataFrame:
    variable = table.index.name
    group_col = table.columns.name
    out = table.reset_index().melt(id_vars=variable, var_name=group_col, value_name=value_name)
    out = out.rename(columns={variable: "level"})
    out.insert(0, "variable", variable)
    out["level"] = out["level"].astype(str)
    return out


def build_confounder_tables(
    df: pd.DataFrame,
    confounders: Iterable[str],
    config: dict,
) -> tuple[pd.DataFrame, pd.DataFrame, pd.DataFrame]:
    levels = list(config["housing_levels"])
    min_expected = float(config.get("min_expected_cell_count", 5.0))
    counts, proportions, tests = [], [], []
    for var in confounders:
        table = build_contingency_table(df, var, group_levels=levels)
        counts.append(_long_table(table, "n"))
        proportions.append(_long_table(build_proportion_table(table), "proportion"))
        tests.append(association_test(table, label=var, min_expected=min_expected))
    return (
        pd.concat(counts, ignore_index=True) if counts else pd.DataFrame(),
        pd.concat(proportions, ignore_index=True) if proportions else pd.DataFrame(),
        pd.DataFrame(tests),
    )


def specialty_distribution(df: pd.DataFrame, config: dict) -> tuple[pd.DataFrame, pd.DataFrame, pd.DataFrame]:
    """Specialty group by housing status with an overall test and per-cell post-hoc residuals.

    Post-hoc cells use adjusted standardized residuals; their two-sided p-values
    are Bonferroni-adjusted over the number of cells.
    """
    levels = list(config["housing_levels"])
    table = build_contingency_table(df, "specialty_group", group_levels=levels)
    test = association_test(
        table,
        label="specialty_group",
        min_expected=float(config.get("min_expected_cell_count", 5.0)),
    )

    observed = table.to_numpy(dtype=float)
    total = observed.sum()
    rows: list[dict[str, object]] = []
    if total > 0:
        row_share = observed.sum(axis=1, keepdims=True) / total
        col_share = observed.sum(axis=0, keepdims=True) / total
        expected = row_share * col_share * total
        denom = np.sqrt(expected * (1 - row_share) * (1 - col_share))
        with np.errstate(divide="ignore", invalid="ignore"):
            residuals = np.where(denom > 0, (observed - expected) / denom, np.nan)
        n_cells = observed.size
        for i, group in enumerate(table.index):
            for j, housing in enumerate(table.columns):
                z = float(residuals[i, j])
                p = _two_sided_p_from_z(z)
                rows.append(
                    {
                        "specialty_group": group,
                        "housing_status": housing,
                        "observed": int(observed[i, j]),
                        "expected": float(expected[i, j]),
                        "adjusted_residual": z,
                        "p_value": p,
                        "p_value_bonferroni": min(1.0, p * n_cells) if np.isfinite(p) else np.nan,
                    }
                )
    return table, pd.DataFrame(rows), pd.DataFrame([test])


def build_table1(df: pd.DataFrame, group_col: str = "housing_status") -> pd.DataFrame:
    rows: list[dict[str, object]] = []
    numeric_vars = ["age", "length_of_stay", "icu_hours"]
    cat_vars = [
        "sex",
        "age_group",
        "specialty_group",
        "complication",
        "mortality",
        "icu_admission",
        "drug_alcohol_disorder",
        "mental_illness",
        "discharge_against_advice",
    ]

    for arm, g in df.groupby(group_col, dropna=False, observed=False):
        arm_name = str(arm)
        rows.append(
            {group_col: arm_name, "variable": "N", "level": "overall", "n": int(len(g)), "value": float(len(g)), "stat": "count"}
        )
        for var in numeric_vars:
            if var not in g.columns:
                continue
            non_null = pd.to_numeric(g[var], errors="coerce").dropna()
            rows.append(
                {
                    group_col: arm_name,
                    "variable": var,
                    "level": "mean",
                    "n": int(non_null.shape[0]),
                    "value": float(non_null.mean()) if len(non_null) else np.nan,
                    "stat": "mean",
                }
            )
            rows.append(
                {
                    group_col: arm_name,
                    "variable": var,
                    "level": "sd",
                    "n": int(non_null.shape[0]),
                    "value": float(non_null.std(ddof=1)) if len(non_null) > 1 else np.nan,
                    "stat": "sd",
                }
            )
        for var in cat_vars:
            if var not in g.columns:
                continue
            counts = g[var].value_counts(dropna=False)
            for level, cnt in counts.items():
                rows.append(
                    {
                        group_col: arm_name,
                        "variable": var,
                        "level": str(level),
                        "n": int(cnt),
                        "value": float(cnt / len(g)) if len(g) else np.nan,
                        "stat": "proportion",
                    }
                )
    return pd.DataFrame(rows)


def restrict_to_specialty_groups(df: pd.DataFrame, groups: Iterable[str]) -> pd.DataFrame:
    wanted = {str(g) for g in groups}
    return df.loc[df["specialty_group"].isin(wanted)].reset_index(drop=True)


def run_all_analyses(
    analysis_df: pd.DataFrame,
    config: dict,
    *,
    outcomes: Iterable[str] | None = None,
    label: str = "general",
) -> AnalysisBundle:
    notes: list[str] = []
    df = add_model_transforms(analysis_df)
    logging.info("Running %s analyses on %s records", label, len(df))

    table1 = build_table1(df)
    conf_counts, conf_props, conf_tests = build_confounder_tables(df, config.get("confounders", []), config)
    spec_table, spec_resid, spec_test = specialty_distribution(df, config)

    for tests in (conf_tests, spec_test):
        for _, row in tests.iterrows():
            if row.get("warning"):
                msg = f"{label}: association test for {row['variable']}: {row['warning']}"
                logging.warning(msg)
                notes.append(msg)

    specs = build_model_specs(config, outcomes)
    binary = [s.outcome for s in specs if s.family == "logistic"]
    rate_rows = [
        compare_outcome_rates(df, outcome, alternative)
        for outcome in binary
        for alternative in ("greater", "less")
    ]

    models, model_errors = run_outcome_models(
        df,
        specs,
        config=config,
        notes=notes,
        raise_on_error=bool(config.get("abort_on_model_error", False)),
    )
    model_results = (
        pd.concat([m.to_frame() for m in models.values()], ignore_index=True) if models else pd.DataFrame()
    )
    dropped_frames = [m.dropped_frame() for m in models.values() if m.dropped]
    model_dropped = (
        pd.concat(dropped_frames, ignore_index=True) if dropped_frames else pd.DataFrame(columns=DROPPED_COLUMNS)
    )

    return AnalysisBundle(
        label=label,
        n_records=int(len(df)),
        table1=table1,
        confounder_counts=conf_counts,
        confounder_proportions=conf_props,
        confounder_tests=conf_tests,
        specialty_table=spec_table.reset_index(),
        specialty_residuals=spec_resid,
        specialty_test=spec_test,
        outcome_rate_tests=pd.DataFrame(rate_rows),
        model_results=model_results,
        model_dropped=model_dropped,
        model_errors=model_errors,
        models=models,
        notes=notes,
    )
