import gc
import warnings

import pandas as pd
import pytest

from housing_surgery.sheets import (
    IngestionError,
    load_sheets,
    rename_columns,
    validate_input_path,
    validate_sheet_map,
)


def _write_workbook(path, sheets):
    with pd.ExcelWriter(path) as writer:
        for name, df in sheets.items():
            df.to_excel(writer, sheet_name=name, index=False)
    return path


def test_load_workbook_renames_headers(tmp_path, config, synthetic_raw_sheets):
    path = _write_workbook(tmp_path / "admissions.xlsx", synthetic_raw_sheets)
    frames, artifacts = load_sheets(
        path, config["sheet_housing_map"], config["column_map"], config["housing_levels"]
    )
    assert list(frames) == ["Domiciled", "Homeless"]
    assert set(config["column_map"].values()) <= set(frames["Homeless"].columns)
    assert [a.housing_status for a in artifacts] == ["domiciled", "homeless"]
    assert artifacts[0].row_count == len(synthetic_raw_sheets["Domiciled"])


def test_missing_sheet_is_fatal(tmp_path, config, synthetic_raw_sheets):
    path = _write_workbook(tmp_path / "admissions.xlsx", {"Domiciled": synthetic_raw_sheets["Domiciled"]})
    with pytest.raises(IngestionError, match="Homeless"):
        load_sheets(path, config["sheet_housing_map"], config["column_map"], config["housing_levels"])


def test_csv_directory_is_accepted(tmp_path, config, synthetic_raw_sheets):
    for name, df in synthetic_raw_sheets.items():
        df.to_csv(tmp_path / f"{name}.csv", index=False)
    frames, _ = load_sheets(tmp_path, config["sheet_housing_map"], config["column_map"], config["housing_levels"])
    assert len(frames["Domiciled"]) == len(synthetic_raw_sheets["Domiciled"])
    assert "length_of_stay" in frames["Domiciled"].columns


def test_input_path_validation(tmp_path):
    with pytest.raises(IngestionError):
        validate_input_path("")
    with pytest.raises(IngestionError, match="does not exist"):
        validate_input_path(tmp_path / "nope.xlsx")
    bad = tmp_path / "admissions.txt"
    bad.write_text("x")
    with pytest.raises(IngestionError, match="Unsupported"):
        validate_input_path(bad)


def test_sheet_map_validation():
    assert validate_sheet_map({"A": "homeless"}, ["domiciled", "homeless"]) == {"A": "homeless"}
    with pytest.raises(IngestionError):
        validate_sheet_map({}, ["domiciled", "homeless"])
    with pytest.raises(IngestionError):
        validate_sheet_map({"A": "sheltered"}, ["domiciled", "homeless"])


def test_rename_ignores_case_and_whitespace():
    df = pd.DataFrame(columns=[" sex", "LENGTH OF STAY", "Ward"])
    out = rename_columns(df, {"Sex": "sex", "Length of Stay": "length_of_stay"})
    assert out.columns.tolist() == ["sex", "length_of_stay", "Ward"]


def test_workbook_handle_is_closed_after_loading(tmp_path, config, synthetic_raw_sheets):
    path = _write_workbook(tmp_path / "admissions.xlsx", synthetic_raw_sheets)
    with warnings.catch_warnings(record=True) as caught:
        warnings.simplefilter("always")
        load_sheets(path, config["sheet_housing_map"], config["column_map"], config["housing_levels"])
        gc.collect()
    leaked = [str(w.message) for w in caught if issubclass(w.category, ResourceWarning)]
    assert leaked == []


def test_unreadable_workbook_raises_ingestion_error(tmp_path, config, caplog):
    path = tmp_path / "admissions.xlsx"
    path.write_text("not a workbook")
    with pytest.raises(IngestionError, match="Could not read workbook"):
        load_sheets(path, config["sheet_housing_map"], config["column_map"], config["housing_levels"])
    assert "Could not read workbook" in caplog.text
