"""Configuration for the housing status and surgical outcomes report."""

from __future__ import annotations

import os
from pathlib import Path

CHANGE_LOG = [
    "0.1.0: Initial release with one-shot backward elimination for the six outcome models.",
    "0.1.0: Rejected records are reported with sheet, row and reason; out-of-allow-list admissions are excluded, not rejected.",
    "0.1.0: Model failures are written to model_errors.csv and the report instead of being skipped.",
    "0.1.0: Fisher fallback for sparse 2x2 tables and post-hoc residuals for the specialty distribution.",
    "0.1.0: Specialty-restricted variant covering the orthopaedic and general surgery groups.",
]

ASSUMPTIONS = [
    "Housing status is assigned from the source sheet, not from a patient-reported field.",
    "Only admissions under the surgical specialty allow-list enter any table or denominator.",
    "Diagnosis flags use substring matching on the associated diagnosis codes field; F17 (tobacco) is excluded from drug/alcohol disorder.",
    "Missing associated diagnosis codes are treated as 'NONE'; missing ICU hours are treated as 0.",
    "Length of stay and ICU hours are modelled on the natural-log scale; ICU-hours models use admissions with ICU hours > 0 only.",
    "Non-significant predictors (p > threshold) are removed in a single step and the model is refit once.",
]

# Grouping of raw specialty codes into report labels; unmapped codes keep their code.
SPECIALTY_GROUPS = {
    "OT1": "ORTHOPAEDICS",
    "OT2": "ORTHOPAEDICS",
    "CRS": "GENERAL SURGERY",
    "GIT": "GENERAL SURGERY",
    "SOC": "GENERAL SURGERY",
    "HNO": "ENT",
    "ENT": "ENT",
    "CTS": "CARDIOTHORACIC/VASCULAR",
    "VAS": "CARDIOTHORACIC/VASCULAR",
}

CONFIG = {
    "input_path": os.environ.get("ADMISSIONS_WORKBOOK", "").strip(),
    "sheet_housing_map": {
        "Domiciled": "domiciled",
        "Homeless": "homeless",
    },
    "housing_levels": ["domiciled", "homeless"],
    "column_map": {
        "Sex": "sex",
        "Age": "age",
        "Associated Diagnosis Codes": "associated_diagnosis_codes",
        "Specialty": "specialty",
        "Length of Stay": "length_of_stay",
        "ICU Hours": "icu_hours",
        "Discharge Status": "discharge_status",
    },
    "required_columns": [
        "sex",
        "age",
        "specialty",
        "length_of_stay",
        "discharge_status",
    ],
    "recoverable_columns": ["associated_diagnosis_codes", "icu_hours"],
    "specialty_allow_list": [
        "OT1",
        "OT2",
        "CRS",
        "NS",
        "HNO",
        "PLS",
        "CTS",
        "VAS",
        "SOC",
        "ENT",
        "URO",
        "GIT",
    ],
    "specialty_groups": SPECIALTY_GROUPS,
    "missing_codes_sentinel": "NONE",
    "death_pattern": r"death|died|deceased|expired",
    "own_risk_status": "Discharge at Own Risk",
    "reference_levels": {
        "housing_status": "domiciled",
        "sex": "F",
    },
    "categorical_predictors": ["housing_status", "sex", "specialty_group", "age_group"],
    "candidate_predictors": [
        "housing_status",
        "age",
        "sex",
        "drug_alcohol_disorder",
        "mental_illness",
    ],
    "significance_threshold": 0.05,
    "model_cov_type": "nonrobust",
    "binary_outcomes": [
        "complication",
        "mortality",
        "icu_admission",
        "discharge_against_advice",
    ],
    "continuous_outcomes": ["length_of_stay", "icu_hours"],
    "confounders": ["sex", "age_group", "drug_alcohol_disorder", "mental_illness"],
    "restricted_specialty_groups": ["ORTHOPAEDICS", "GENERAL SURGERY"],
    "restricted_outcomes": ["complication", "mortality", "length_of_stay"],
    "min_expected_cell_count": 5.0,
    "abort_on_model_error": False,
    "print_tables": False,
    "print_table_max_rows": 30,
    "output_dir": os.environ.get(
        "HOUSING_OUTPUT_DIR",
        str(Path(__file__).resolve().parents[1] / "housing_outputs"),
    ),
}

REQUIRED_OUTPUT_FILES = [
    "cohort_flow.csv",
    "rejected_records.csv",
    "code_sets.csv",
    "table1_by_housing.csv",
    "confounder_counts.csv",
    "confounder_proportions.csv",
    "confounder_tests.csv",
    "specialty_distribution.csv",
    "specialty_residuals.csv",
    "specialty_test.csv",
    "outcome_rate_tests.csv",
    "model_results.csv",
    "model_dropped.csv",
    "model_errors.csv",
    "REPORT.md",
]


def validate_config(config: dict | None = None) -> None:
    cfg = CONFIG if config is None else config
    if not cfg.get("input_path"):
        raise ValueError("ADMISSIONS_WORKBOOK is empty. Set ADMISSIONS_WORKBOOK before running.")
    if not 0.0 <= float(cfg["significance_threshold"]) <= 1.0:
        raise ValueError("significance_threshold must be within [0, 1].")


def ensure_output_dir(config: dict | None = None) -> Path:
    cfg = CONFIG if config is None else config
    out_dir = Path(cfg["output_dir"]).resolve()
    out_dir.mkdir(parents=True, exist_ok=True)
    return out_dir
