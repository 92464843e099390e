#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
roster.py

Reads the campus roster (CampusBMCSheetInfo) from the master workbook.

Columns: A=email, B=campus, C=level, D=folder id, E=campus spreadsheet id.
Row 1 is the header; entries start on row 2. Empty cells become "".
Levels are trimmed + upper-cased at read time so comparisons are case-insensitive.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import pandas as pd

from campus_config import (
    INFO_SHEET_NAME,
    LEVELS,
    ROSTER_COLUMNS,
    ROSTER_FIRST_ROW,
    ConfigurationError,
    normalize_level,
)
from workbook_store import Document, WorkbookStore, is_na_scalar


@dataclass
class RosterEntry:
    row_number: int
    email: str
    campus: str
    level: str
    folder_id: str
    spreadsheet_id: str


def _cell_to_str(v: Any) -> str:
    return "" if is_na_scalar(v) else str(v).strip()


def read_roster(
    store: WorkbookStore,
    master: Document,
    logger: Optional[logging.Logger] = None,
) -> List[RosterEntry]:
    """
    Parse every roster row in sheet order. No filtering beyond structure.
    Raises ConfigurationError when the roster sheet is missing.
    """
    logger = logger or logging.getLogger("campus_consolidation")

    sheet = store.get_sheet(master, INFO_SHEET_NAME)
    if sheet is None:
        raise ConfigurationError(f"{INFO_SHEET_NAME} sheet not found in {master.ref}")

    last_row, _ = store.get_dimensions(sheet)
    if last_row < ROSTER_FIRST_ROW:
        logger.info(f"{INFO_SHEET_NAME}: no roster rows")
        return []

    grid = store.read_range(sheet, ROSTER_FIRST_ROW, 1, last_row - ROSTER_FIRST_ROW + 1, len(ROSTER_COLUMNS))
    df = pd.DataFrame(grid, columns=ROSTER_COLUMNS)
    for c in ROSTER_COLUMNS:
        df[c] = df[c].apply(_cell_to_str)
    df["level"] = df["level"].str.upper()

    entries: List[RosterEntry] = []
    for offset, rec in enumerate(df.to_dict(orient="records")):
        entries.append(
            RosterEntry(
                row_number=ROSTER_FIRST_ROW + offset,
                email=rec["email"],
                campus=rec["campus"],
                level=rec["level"],
                folder_id=rec["folder_id"],
                spreadsheet_id=rec["spreadsheet_id"],
            )
        )

    logger.debug(f"{INFO_SHEET_NAME}: parsed {len(entries)} roster rows")
    return entries


def level_entries(entries: List[RosterEntry], level: str) -> List[RosterEntry]:
    """
    Entries eligible for consolidation: matching level, campus name and spreadsheet id set.
    Roster order is preserved; it decides which entries fall into which batch.
    """
    lvl = normalize_level(level)
    return [e for e in entries if e.level == lvl and e.campus and e.spreadsheet_id]


def level_totals(entries: List[RosterEntry]) -> Dict[str, int]:
    return {lvl: len(level_entries(entries, lvl)) for lvl in LEVELS}


def campus_names(entries: List[RosterEntry]) -> List[str]:
    seen = set()
    out: List[str] = []
    for e in entries:
        if e.campus and e.campus not in seen:
            seen.add(e.campus)
            out.append(e.campus)
    return out


def provisioning_problem(entry: RosterEntry) -> Optional[str]:
    """
    Per-row message when a roster row cannot be provisioned; None when it can.
    """
    if not entry.campus:
        return f"Row {entry.row_number}: Missing campus name."
    if not entry.folder_id:
        return f"Row {entry.row_number} ({entry.campus}): Missing Main/Level Folder ID."
    if not entry.email:
        return f"Row {entry.row_number} ({entry.campus}): Missing email."
    return None
