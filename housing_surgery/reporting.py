"""Report generation utilities for the housing status outputs."""

from __future__ import annotations

from pathlib import Path

import pandas as pd

from .analysis import AnalysisBundle


def _fmt_p(x: float | None) -> str:
    if x is None or pd.isna(x):
        return "NA"
    if float(x) < 0.001:
        return "<0.001"
    return f"{float(x):.3f}"


def _fmt_ci(effect: float, low: float, high: float) -> str:
    if pd.isna(effect):
        return "NA"
    return f"{effect:.2f} ({low:.2f}-{high:.2f})"


def _model_lines(bundle: AnalysisBundle) -> list[str]:
    lines: list[str] = []
    for label, result in bundle.models.items():
        kind = "odds ratio" if result.spec.family == "logistic" else "multiplicative effect"
        lines.append(f"### `{label}` (n={result.n_obs}, {kind})")
        if result.intercept_only:
            lines.append("- No predictor retained at the significance threshold; intercept-only model reported.")
        for _, row in result.coefficients.iterrows():
            if row["term"] == "Intercept":
                continue
            lines.append(
                f"- {row['term']}: {_fmt_ci(row['effect'], row['ci_low'], row['ci_high'])}, p={_fmt_p(row['p_value'])}"
            )
        for predictor, p_value in result.dropped.items():
            lines.append(f"- dropped `{predictor}` (round 1 p={_fmt_p(p_value)})")
        lines.append("")
    return lines


def write_report(
    *,
    output_dir: Path,
    change_log: list[str],
    assumptions: list[str],
    cohort_flow: pd.DataFrame,
    rejections: pd.DataFrame,
    bundles: list[AnalysisBundle],
    generated_files: list[str],
    notes: list[str],
) -> Path:
    report_path = output_dir / "REPORT.md"

    lines: list[str] = []
    lines.append("# REPORT: Housing Status and Surgical Outcomes")
    lines.append("")

    lines.append("## Change Log")
    for entry in change_log:
        lines.append(f"- {entry}")
    lines.append("")

    lines.append("## Assumptions")
    for entry in assumptions:
        lines.append(f"- {entry}")
    lines.append("")

    lines.append("## Cohort Flow")
    if cohort_flow.empty:
        lines.append("- Cohort flow unavailable.")
    else:
        for _, row in cohort_flow.iterrows():
            lines.append(f"- {row.get('step', 'step')}: {row.get('n', 'NA')}")
    lines.append("")

    lines.append("## Rejected Records")
    if rejections.empty:
        lines.append("- No records were rejected.")
    else:
        for reason, n in rejections["reason"].value_counts().items():
            lines.append(f"- {reason}: {n}")
    lines.append("")

    for bundle in bundles:
        lines.append(f"## Models: {bundle.label} (records={bundle.n_records})")
        lines.append("")
        lines.extend(_model_lines(bundle))
        lines.append(f"### Model failures ({bundle.label})")
        if bundle.model_errors.empty:
            lines.append("- None.")
        else:
            for _, row in bundle.model_errors.iterrows():
                lines.append(f"- `{row['model']}`: NOT ESTIMATED ({row['reason']})")
        lines.append("")

    lines.append("## Generated Artifacts")
    for fp in sorted(generated_files):
        lines.append(f"- `{fp}`")
    lines.append("")

    lines.append("## Notes")
    if not notes:
        lines.append("- None.")
    else:
        for note in notes:
            lines.append(f"- {note}")
    lines.append("")

    lines.append("## Interpretation Guardrails")
    lines.append("- Effect sizes come from a single-step backward elimination; they are not AIC-stepwise estimates.")
    lines.append("- Models listed under 'Model failures' were not estimated and must not be read as null effects.")
    lines.append("- ICU-hours models describe admissions with ICU hours > 0 only.")

    report_path.write_text("\n".join(lines), encoding="utf-8")
    return report_path
