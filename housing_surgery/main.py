"""Main entrypoint for the housing status and surgical outcomes report."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path

import pandas as pd

from .analysis import AnalysisBundle, restrict_to_specialty_groups, run_all_analyses
from .code_sets import get_code_set_inventory
from .cohort import CohortData, derive_analysis_records
from .config import ASSUMPTIONS, CHANGE_LOG, CONFIG, REQUIRED_OUTPUT_FILES, ensure_output_dir, validate_config
from .reporting import write_report
from .sheets import load_sheets


@dataclass
class PipelineRunResult:
    output_dir: Path
    generated_files: list[str]
    cohort_data: CohortData
    analyses: list[AnalysisBundle]
    notes: list[str]


def _configure_logging() -> None:
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s | %(levelname)s | %(message)s",
    )


def _print_df(label: str, df: pd.DataFrame, max_rows: int = 30) -> None:
    print(f"\n===== {label} =====")
    if df.empty:
        print("[empty]")
        return
    if len(df) > max_rows:
        print(df.head(max_rows).to_string(index=False))
        print(f"... ({len(df)} rows total)")
    else:
        print(df.to_string(index=False))


def _save_table(
    *,
    file_name: str,
    df: pd.DataFrame,
    output_dir: Path,
    print_tables: bool = False,
    print_max_rows: int = 30,
) -> Path:
    out_path = output_dir / file_name
    df.to_csv(out_path, index=False)
    logging.info("Saved %s (%s rows)", file_name, len(df))
    if logging.getLogger().isEnabledFor(logging.DEBUG) and not df.empty:
        logging.debug("%s preview:\n%s", file_name, df.head(20).to_string(index=False))
    if print_tables:
        _print_df(file_name, df, max_rows=print_max_rows)
    return out_path


def _bundle_outputs(bundle: AnalysisBundle, prefix: str = "") -> list[tuple[str, pd.DataFrame]]:
    return [
        (f"{prefix}table1_by_housing.csv", bundle.table1),
        (f"{prefix}confounder_counts.csv", bundle.confounder_counts),
        (f"{prefix}confounder_proportions.csv", bundle.confounder_proportions),
        (f"{prefix}confounder_tests.csv", bundle.confounder_tests),
        (f"{prefix}specialty_distribution.csv", bundle.specialty_table),
        (f"{prefix}specialty_residuals.csv", bundle.specialty_residuals),
        (f"{prefix}specialty_test.csv", bundle.specialty_test),
        (f"{prefix}outcome_rate_tests.csv", bundle.outcome_rate_tests),
        (f"{prefix}model_results.csv", bundle.model_results),
        (f"{prefix}model_dropped.csv", bundle.model_dropped),
        (f"{prefix}model_errors.csv", bundle.model_errors),
    ]


def _verify_outputs(output_dir: Path, notes: list[str]) -> None:
    for file_name in REQUIRED_OUTPUT_FILES:
        if file_name == "REPORT.md":
            continue
        if not (output_dir / file_name).exists():
            notes.append(f"Missing expected output artifact: {file_name}")


def run_pipeline(config: dict) -> PipelineRunResult:
    validate_config(config)
    output_dir = ensure_output_dir(config)
    print_tables = bool(config.get("print_tables", False))
    print_max_rows = int(config.get("print_table_max_rows", 30))

    logging.info("Starting housing status pipeline. input=%s", config["input_path"])
    logging.info("Output directory: %s", output_dir)

    sheets, _ = load_sheets(
        config["input_path"],
        config["sheet_housing_map"],
        config["column_map"],
        list(config["housing_levels"]),
    )
    cohort_data = derive_analysis_records(sheets, config)
    if cohort_data.analysis_df.empty:
        raise ValueError("No analysis records remain after validation and specialty filtering.")

    general = run_all_analyses(cohort_data.analysis_df, config, label="general")
    restricted_df = restrict_to_specialty_groups(
        cohort_data.analysis_df, config.get("restricted_specialty_groups", [])
    )
    bundles = [general]
    notes = list(general.notes)
    if restricted_df.empty:
        notes.append("Specialty-restricted variant skipped: no records in the restricted specialty groups.")
        logging.warning("Specialty-restricted variant skipped: no records.")
    else:
        restricted = run_all_analyses(
            restricted_df,
            config,
            outcomes=config.get("restricted_outcomes"),
            label="restricted",
        )
        bundles.append(restricted)
        notes.extend(restricted.notes)

    output_map: list[tuple[str, pd.DataFrame]] = [
        ("cohort_flow.csv", cohort_data.cohort_flow),
        ("rejected_records.csv", cohort_data.rejections),
        ("code_sets.csv", get_code_set_inventory()),
        *_bundle_outputs(general),
    ]
    if len(bundles) > 1:
        output_map.extend(_bundle_outputs(bundles[1], prefix="restricted_"))

    generated_files: list[str] = []
    for file_name, df in output_map:
        path = _save_table(
            file_name=file_name,
            df=df,
            output_dir=output_dir,
            print_tables=print_tables,
            print_max_rows=print_max_rows,
        )
        generated_files.append(path.name)

    n_failed = sum(len(b.model_errors) for b in bundles)
    if n_failed:
        logging.warning("%s outcome models could not be estimated; see model_errors.csv.", n_failed)

    _verify_outputs(output_dir, notes)

    report_path = write_report(
        output_dir=output_dir,
        change_log=CHANGE_LOG,
        assumptions=ASSUMPTIONS,
        cohort_flow=cohort_data.cohort_flow,
        rejections=cohort_data.rejections,
        bundles=bundles,
        generated_files=generated_files,
        notes=notes,
    )
    generated_files.append(report_path.name)

    logging.info("Pipeline complete. Generated files:")
    for fp in sorted(generated_files):
        logging.info("- %s", fp)

    return PipelineRunResult(
        output_dir=output_dir,
        generated_files=sorted(generated_files),
        cohort_data=cohort_data,
        analyses=bundles,
        notes=notes,
    )


def main() -> PipelineRunResult:
    _configure_logging()
    return run_pipeline(CONFIG)


if __name__ == "__main__":
    main()
