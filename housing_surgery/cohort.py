"""Cohort construction: raw admission sheets -> analysis-ready admission records."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Iterable, Mapping

import numpy as np
import pandas as pd

from .code_sets import DIAGNOSIS_FLAGS, patterns_for
from .sheets import IngestionError, validate_sheet_map

RAW_COLUMNS = [
    "sex",
    "age",
    "associated_diagnosis_codes",
    "specialty",
    "length_of_stay",
    "icu_hours",
    "discharge_status",
]
NUMERIC_COLUMNS = ["age", "length_of_stay", "icu_hours"]
REJECTION_COLUMNS = ["sheet", "sheet_row", "housing_status", "reason"]
ANALYSIS_COLUMNS = [
    "housing_status",
    *RAW_COLUMNS,
    "complication",
    "mortality",
    "icu_admission",
    "drug_alcohol_disorder",
    "mental_illness",
    "discharge_against_advice",
    "specialty_group",
    "age_group",
]


@dataclass
class CohortData:
    cohort_flow: pd.DataFrame
    analysis_df: pd.DataFrame
    rejections: pd.DataFrame


def _is_blank(series: pd.Series) -> pd.Series:
    return series.isna() | series.astype(str).str.strip().eq("")


def _clean_text(x: object, upper: bool = False) -> object:
    if pd.isna(x) or not str(x).strip():
        return np.nan
    s = str(x).strip()
    return s.upper() if upper else s


def _standardize_sex(x: object) -> str | None:
    if pd.isna(x):
        return None
    s = str(x).strip().lower()
    if s in ("m", "male"):
        return "M"
    if s in ("f", "female"):
        return "F"
    return None


def _age_group(x: float) -> str:
    if pd.isna(x):
        return "Unknown"
    if x < 40:
        return "<40"
    if x < 60:
        return "40-59"
    if x < 80:
        return "60-79"
    return "80+"


def _contains_any(series: pd.Series, patterns: Iterable[str]) -> pd.Series:
    text = series.astype(str)
    hit = pd.Series(False, index=series.index)
    for pattern in patterns:
        hit = hit | text.str.contains(pattern, regex=False)
    return hit


def validate_sheet(
    df: pd.DataFrame,
    *,
    sheet_name: str,
    housing_status: str,
    config: dict,
) -> tuple[pd.DataFrame, pd.DataFrame]:
    """Return (valid_rows, rejected_rows) for one raw sheet.

    A required column absent from the whole sheet is not a per-record problem
    and raises ``IngestionError``. Recoverable columns that are absent are
    added as missing and normalized later.
    """
    required = [str(c) for c in config["required_columns"]]
    missing_cols = [c for c in required if c not in df.columns]
    if missing_cols:
        raise IngestionError(
            f"Sheet '{sheet_name}' is missing required columns: {', '.join(missing_cols)}."
        )

    out = df.copy()
    for col in config.get("recoverable_columns", []):
        if col not in out.columns:
            logging.warning("Sheet %s has no %s column; treating every value as missing.", sheet_name, col)
            out[col] = np.nan

    reasons: list[list[str]] = [[] for _ in range(len(out))]
    # Admissions outside the allow-list are never rejected; the specialty filter excludes them.
    allowed = {str(x).strip().upper() for x in config["specialty_allow_list"]}
    specialty = out["specialty"].map(lambda v: _clean_text(v, upper=True))
    in_scope = (specialty.isna() | specialty.isin(allowed)).to_numpy()

    def _flag(mask: pd.Series, reason: str) -> None:
        for pos in np.flatnonzero(mask.to_numpy() & in_scope):
            reasons[pos].append(reason)

    for col in required:
        _flag(_is_blank(out[col]), f"missing {col}")

    for col in NUMERIC_COLUMNS:
        present = ~_is_blank(out[col])
        coerced = pd.to_numeric(out[col], errors="coerce")
        _flag(present & coerced.isna(), f"unparseable {col}")
        out[col] = coerced

    sex = out["sex"].map(_standardize_sex)
    _flag(~_is_blank(df["sex"]) & sex.isna(), "unrecognised sex")
    out["sex"] = sex

    out["specialty"] = specialty
    out["associated_diagnosis_codes"] = out["associated_diagnosis_codes"].map(_clean_text)
    out["discharge_status"] = out["discharge_status"].map(_clean_text)

    rejected_mask = pd.Series([bool(r) for r in reasons], index=out.index)
    rejected = pd.DataFrame(
        {
            "sheet": sheet_name,
            "sheet_row": np.flatnonzero(rejected_mask.to_numpy()) + 2,
            "housing_status": housing_status,
            "reason": ["; ".join(r) for r in reasons if r],
        },
        columns=REJECTION_COLUMNS,
    )
    if not rejected.empty:
        logging.warning(
            "Sheet %s: rejected %s of %s records (%s)",
            sheet_name,
            len(rejected),
            len(out),
            ", ".join(sorted({reason for r in reasons for reason in r})),
        )

    kept = out.loc[~rejected_mask, RAW_COLUMNS].reset_index(drop=True)
    return kept, rejected.reset_index(drop=True)


def union_sheets(
    sheets: Mapping[str, pd.DataFrame],
    sheet_housing_map: Mapping[str, str],
    housing_levels: list[str],
) -> pd.DataFrame:
    sheet_map = validate_sheet_map(sheet_housing_map, housing_levels)
    frames: list[pd.DataFrame] = []
    for sheet_name, housing_status in sheet_map.items():
        if sheet_name not in sheets:
            raise IngestionError(f"No data loaded for sheet '{sheet_name}' ({housing_status}).")
        tagged = sheets[sheet_name].copy()
        tagged.insert(0, "housing_status", housing_status)
        frames.append(tagged)
    if not frames:
        return pd.DataFrame(columns=["housing_status", *RAW_COLUMNS])
    return pd.concat(frames, ignore_index=True, sort=False)


def filter_specialties(df: pd.DataFrame, allow_list: Iterable[str]) -> pd.DataFrame:
    allowed = {str(x).strip().upper() for x in allow_list}
    keep = df["specialty"].astype(str).str.strip().str.upper().isin(allowed)
    return df.loc[keep].reset_index(drop=True)


def normalize_missing(df: pd.DataFrame, sentinel: str = "NONE") -> pd.DataFrame:
    out = df.copy()
    out["associated_diagnosis_codes"] = out["associated_diagnosis_codes"].astype(object).where(
        ~_is_blank(out["associated_diagnosis_codes"]), sentinel
    )
    out["associated_diagnosis_codes"] = out["associated_diagnosis_codes"].astype(str)
    out["icu_hours"] = pd.to_numeric(out["icu_hours"], errors="coerce").fillna(0.0)
    return out


def derive_flags(df: pd.DataFrame, config: dict) -> pd.DataFrame:
    out = df.copy()
    codes = out["associated_diagnosis_codes"]
    for flag in DIAGNOSIS_FLAGS:
        out[flag] = _contains_any(codes, patterns_for(flag))

    status = out["discharge_status"].astype(str)
    out["mortality"] = status.str.contains(str(config["death_pattern"]), case=False, regex=True)
    out["icu_admission"] = out["icu_hours"] > 0
    out["discharge_against_advice"] = status.str.strip().eq(str(config["own_risk_status"]))
    return out


def map_specialty_groups(df: pd.DataFrame, groups: Mapping[str, str]) -> pd.DataFrame:
    out = df.copy()
    out["specialty_group"] = out["specialty"].map(lambda code: groups.get(code, code))
    out["age_group"] = out["age"].apply(_age_group)
    return out


def add_model_transforms(df: pd.DataFrame) -> pd.DataFrame:
    """Add log length-of-stay and log ICU hours; zero ICU hours stay missing."""
    out = df.copy()
    if "length_of_stay" in out.columns:
        los = pd.to_numeric(out["length_of_stay"], errors="coerce")
        non_positive = int((los <= 0).sum())
        if non_positive:
            logging.warning("%s records have length_of_stay <= 0; log_length_of_stay left missing.", non_positive)
        out["log_length_of_stay"] = np.log(los.where(los > 0))
    if "icu_hours" in out.columns:
        icu = pd.to_numeric(out["icu_hours"], errors="coerce")
        out["log_icu_hours"] = np.log(icu.where(icu > 0))
    return out


def derive_analysis_records(sheets: Mapping[str, pd.DataFrame], config: dict) -> CohortData:
    """Validate, union, filter and derive the analysis record set.

    Each step takes a frame and returns a new one; the input sheets are never
    modified. Re-running on the same sheets yields an identical frame.
    """
    sheet_map = validate_sheet_map(config["sheet_housing_map"], list(config["housing_levels"]))
    flow: list[dict[str, object]] = []
    valid: dict[str, pd.DataFrame] = {}
    rejection_chunks: list[pd.DataFrame] = []

    for sheet_name, housing_status in sheet_map.items():
        if sheet_name not in sheets:
            raise IngestionError(f"No data loaded for sheet '{sheet_name}' ({housing_status}).")
        raw = sheets[sheet_name]
        flow.append({"step": f"Loaded sheet {sheet_name} ({housing_status})", "n": int(len(raw))})
        kept, rejected = validate_sheet(raw, sheet_name=sheet_name, housing_status=housing_status, config=config)
        valid[sheet_name] = kept
        rejection_chunks.append(rejected)

    rejections = pd.concat(rejection_chunks, ignore_index=True) if rejection_chunks else pd.DataFrame(
        columns=REJECTION_COLUMNS
    )
    flow.append({"step": "Rejected records (missing/unparseable required fields)", "n": int(len(rejections))})

    unioned = union_sheets(valid, sheet_map, list(config["housing_levels"]))
    flow.append({"step": "Valid records after union", "n": int(len(unioned))})

    filtered = filter_specialties(unioned, config["specialty_allow_list"])
    flow.append({"step": "Excluded by specialty allow-list", "n": int(len(unioned) - len(filtered))})

    out = normalize_missing(filtered, str(config.get("missing_codes_sentinel", "NONE")))
    out = derive_flags(out, config)
    out = map_specialty_groups(out, config.get("specialty_groups", {}))
    out = out[ANALYSIS_COLUMNS].reset_index(drop=True)
    flow.append({"step": "Analysis records", "n": int(len(out))})

    for housing_status, n in out["housing_status"].value_counts().reindex(config["housing_levels"], fill_value=0).items():
        flow.append({"step": f"Analysis records ({housing_status})", "n": int(n)})

    logging.info(
        "Derived %s analysis records (%s rejected, %s outside allow-list)",
        len(out),
        len(rejections),
        len(unioned) - len(filtered),
    )
    return CohortData(
        cohort_flow=pd.DataFrame(flow, columns=["step", "n"]),
        analysis_df=out,
        rejections=rejections,
    )
