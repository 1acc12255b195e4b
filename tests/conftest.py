import copy

import numpy as np
import pandas as pd
import pytest

from housing_surgery.cohort import derive_analysis_records
from housing_surgery.config import CONFIG

RAW_HEADERS = {
    "sex": "Sex",
    "age": "Age",
    "associated_diagnosis_codes": "Associated Diagnosis Codes",
    "specialty": "Specialty",
    "length_of_stay": "Length of Stay",
    "icu_hours": "ICU Hours",
    "discharge_status": "Discharge Status",
}


@pytest.fixture
def config(tmp_path):
    cfg = copy.deepcopy(CONFIG)
    cfg["output_dir"] = str(tmp_path / "outputs")
    return cfg


@pytest.fixture
def make_sheet():
    """Build a sheet in analysis column names from partial record dicts."""

    def _make(records):
        defaults = {
            "sex": "M",
            "age": 50,
            "associated_diagnosis_codes": "K35.8",
            "specialty": "CRS",
            "length_of_stay": 3,
            "icu_hours": 0,
            "discharge_status": "Discharged Home",
        }
        return pd.DataFrame([{**defaults, **r} for r in records])

    return _make


@pytest.fixture
def derive(config):
    """Run the cohort step on {sheet_name: DataFrame} with the default sheet map."""

    def _derive(domiciled, homeless):
        return derive_analysis_records({"Domiciled": domiciled, "Homeless": homeless}, config)

    return _derive


def _synthetic_group(rng, n, homeless):
    specialties = np.array(["OT1", "OT2", "CRS", "GIT", "NS", "URO", "ENT", "VAS", "PSY"])
    rows = []
    for _ in range(n):
        codes = []
        if rng.rand() < (0.25 if homeless else 0.08):
            codes.append("T81.4")
        if rng.rand() < (0.30 if homeless else 0.05):
            codes.append("F10.2")
        if rng.rand() < 0.15:
            codes.append("F17.2")
        if rng.rand() < (0.25 if homeless else 0.10):
            codes.append("F32.9")
        icu = float(np.round(rng.lognormal(3.0, 0.8), 1)) if rng.rand() < 0.35 else 0.0
        if rng.rand() < 0.05:
            status = "Death"
        elif rng.rand() < (0.15 if homeless else 0.03):
            status = "Discharge at Own Risk"
        else:
            status = "Discharged Home"
        rows.append(
            {
                "sex": "M" if rng.rand() < 0.6 else "F",
                "age": int(rng.randint(20, 90)),
                "associated_diagnosis_codes": ", ".join(codes) if codes else np.nan,
                "specialty": specialties[rng.randint(0, len(specialties))],
                "length_of_stay": float(np.round(rng.lognormal(1.5 + (0.3 if homeless else 0.0), 0.6), 1)) + 0.1,
                "icu_hours": icu if rng.rand() > 0.05 else np.nan,
                "discharge_status": status,
            }
        )
    return pd.DataFrame(rows)


@pytest.fixture
def synthetic_sheets():
    rng = np.random.RandomState(42)
    return {
        "Domiciled": _synthetic_group(rng, 400, homeless=False),
        "Homeless": _synthetic_group(rng, 400, homeless=True),
    }


@pytest.fixture
def synthetic_raw_sheets(synthetic_sheets):
    """The synthetic sheets with the workbook's raw header names."""
    return {name: df.rename(columns=RAW_HEADERS) for name, df in synthetic_sheets.items()}


@pytest.fixture
def model_frame():
    """Analysis-shaped frame with one strong and one unrelated predictor."""
    rng = np.random.RandomState(7)
    n = 600
    homeless = rng.rand(n) < 0.5
    age = rng.randint(20, 90, size=n).astype(float)
    noise = rng.rand(n) < 0.5
    logit = -1.0 + 1.8 * homeless
    complication = rng.rand(n) < 1 / (1 + np.exp(-logit))
    los = np.exp(1.2 + 0.3 * homeless + rng.normal(0, 1.0, size=n))
    icu = np.where(rng.rand(n) < 0.4, np.exp(2.5 + 0.3 * homeless + rng.normal(0, 1.0, size=n)), 0.0)
    return pd.DataFrame(
        {
            "housing_status": np.where(homeless, "homeless", "domiciled"),
            "sex": np.where(rng.rand(n) < 0.5, "M", "F"),
            "age": age,
            "drug_alcohol_disorder": noise,
            "mental_illness": rng.rand(n) < 0.3,
            "specialty_group": rng.choice(["ORTHOPAEDICS", "GENERAL SURGERY", "ENT"], size=n),
            "complication": complication,
            "mortality": np.zeros(n, dtype=bool),
            "length_of_stay": los,
            "icu_hours": icu,
        }
    )
