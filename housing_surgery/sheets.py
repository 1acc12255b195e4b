"""Workbook/CSV helpers for loading one admissions sheet per housing group."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping

import pandas as pd

WORKBOOK_SUFFIXES = (".xlsx", ".xlsm", ".xls")


class IngestionError(ValueError):
    """Raised when the input cannot be loaded or housing status cannot be assigned."""


@dataclass
class SheetArtifact:
    sheet_name: str
    housing_status: str
    row_count: int
    source: str


def validate_input_path(path: str | Path) -> Path:
    if not str(path).strip():
        raise IngestionError("ADMISSIONS_WORKBOOK is empty.")
    resolved = Path(path).expanduser().resolve()
    if not resolved.exists():
        raise IngestionError(f"Input path does not exist: {resolved}")
    if resolved.is_file() and resolved.suffix.lower() not in WORKBOOK_SUFFIXES:
        raise IngestionError(
            f"Unsupported workbook type '{resolved.suffix}'. Expected one of: {', '.join(WORKBOOK_SUFFIXES)}."
        )
    return resolved


def validate_sheet_map(sheet_housing_map: Mapping[str, str], housing_levels: list[str]) -> dict[str, str]:
    if not sheet_housing_map:
        raise IngestionError("No sheets are mapped to a housing status; cannot assign housing_status.")
    bad = {sheet: status for sheet, status in sheet_housing_map.items() if status not in housing_levels}
    if bad:
        raise IngestionError(
            f"Unknown housing status in sheet map: {bad}. Allowed: {', '.join(housing_levels)}."
        )
    return dict(sheet_housing_map)


def rename_columns(df: pd.DataFrame, column_map: Mapping[str, str]) -> pd.DataFrame:
    # Header matching ignores surrounding whitespace and case.
    lookup = {str(k).strip().lower(): v for k, v in column_map.items()}
    renamed = {}
    for col in df.columns:
        key = str(col).strip().lower()
        if key in lookup:
            renamed[col] = lookup[key]
    return df.rename(columns=renamed)


def _read_workbook(path: Path, sheet_names: list[str]) -> dict[str, pd.DataFrame]:
    try:
        with pd.ExcelFile(path) as xls:
            available = [str(name) for name in xls.sheet_names]
            missing = [name for name in sheet_names if name not in available]
            if missing:
                raise IngestionError(
                    f"Workbook {path.name} is missing sheets: {', '.join(missing)} (found: {', '.join(available)})."
                )
            return pd.read_excel(xls, sheet_name=sheet_names)
    except IngestionError:
        raise
    except (OSError, ValueError) as exc:
        logging.exception("Could not read workbook: %s", path)
        raise IngestionError(f"Could not read workbook ({path}): {exc}") from exc


def _read_csv_directory(path: Path, sheet_names: list[str]) -> dict[str, pd.DataFrame]:
    frames: dict[str, pd.DataFrame] = {}
    for name in sheet_names:
        csv_path = path / f"{name}.csv"
        if not csv_path.exists():
            raise IngestionError(f"Missing sheet export: {csv_path}")
        try:
            frames[name] = pd.read_csv(csv_path)
        except (OSError, ValueError) as exc:
            logging.exception("Could not read sheet export: %s", csv_path)
            raise IngestionError(f"Could not read sheet export ({csv_path}): {exc}") from exc
    return frames


def load_sheets(
    path: str | Path,
    sheet_housing_map: Mapping[str, str],
    column_map: Mapping[str, str],
    housing_levels: list[str],
) -> tuple[dict[str, pd.DataFrame], list[SheetArtifact]]:
    """Load every mapped sheet, rename raw headers and key the frames by sheet name.

    ``path`` is either an Excel workbook or a directory holding ``<sheet>.csv``
    exports. Housing status is not attached here; the cohort step tags rows
    from the sheet map so the assignment stays in one place.
    """
    resolved = validate_input_path(path)
    sheet_map = validate_sheet_map(sheet_housing_map, housing_levels)
    sheet_names = list(sheet_map)

    logging.info("Loading %s sheets from %s", len(sheet_names), resolved)
    if resolved.is_dir():
        raw = _read_csv_directory(resolved, sheet_names)
    else:
        raw = _read_workbook(resolved, sheet_names)

    frames: dict[str, pd.DataFrame] = {}
    artifacts: list[SheetArtifact] = []
    for name in sheet_names:
        df = rename_columns(raw[name], column_map)
        frames[name] = df
        artifacts.append(
            SheetArtifact(
                sheet_name=name,
                housing_status=sheet_map[name],
                row_count=int(len(df)),
                source=str(resolved),
            )
        )
        logging.info("Loaded sheet %s | housing_status=%s rows=%s", name, sheet_map[name], len(df))
    return frames, artifacts
