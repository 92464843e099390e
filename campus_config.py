#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
campus_config.py

Fixed layout of the master / campus workbooks and the tunables shared by the
consolidation, provisioning and campus-name fill jobs.

Workbook layout:
- Master holds the roster sheet (CampusBMCSheetInfo) plus one sheet per month.
- Every campus workbook is a copy of the master without the roster and Totals.
- Month sheets: rows 1-2 are headers/metadata, data starts on row 3.
"""

from __future__ import annotations

from typing import Any, Tuple


class ConfigurationError(Exception):
    """Fatal precondition failure (missing roster sheet, bad level, bad batch size)."""


# -----------------
# Roster (info) sheet
# -----------------

INFO_SHEET_NAME = "CampusBMCSheetInfo"

# Columns: A=email, B=campus, C=level, D=folder id, E=campus spreadsheet id
ROSTER_COLUMNS = ["email", "campus", "level", "folder_id", "spreadsheet_id"]
ROSTER_FIRST_ROW = 2
SPREADSHEET_ID_COLUMN = 5

# -----------
# Month sheets
# -----------

# .xlsx sheet titles cannot contain "/", so the last bucket uses a dash.
MONTH_SHEETS: Tuple[str, ...] = (
    "AUGUST",
    "SEPTEMBER",
    "OCTOBER",
    "NOVEMBER",
    "DECEMBER",
    "JANUARY",
    "FEBRUARY",
    "MARCH",
    "APRIL-MAY PROJECTIONS",
)
PROJECTIONS_SHEET = MONTH_SHEETS[-1]

HEADER_ROWS = 2
DATA_START_ROW = HEADER_ROWS + 1

# 0-based column positions ignored when deciding whether a row holds data.
# Column D carries the campus name prefilled on every row of the template.
IGNORED_COLUMNS: Tuple[int, ...] = (3,)

# ------
# Levels
# ------

LEVELS: Tuple[str, ...] = ("ES", "MS", "HS")


def normalize_level(level: Any) -> str:
    t = "" if level is None else str(level).strip().upper()
    if t not in LEVELS:
        raise ConfigurationError(f"Unknown level {level!r}; expected one of {', '.join(LEVELS)}")
    return t


# ----------------------
# Batch cursor properties
# ----------------------

BATCH_SIZE_KEY = "CONSOLIDATE_BATCH_SIZE"
DEFAULT_BATCH_SIZE = 15


def level_cursor_key(level: str) -> str:
    return "CONS_LEVEL_IDX_" + level.upper()


def level_cleared_key(level: str) -> str:
    return "CONS_LEVEL_CLEARED_" + level.upper()


def parse_batch_size(value: Any) -> int:
    """
    Accept a positive integer (or its string form). Anything else is a ConfigurationError.
    """
    if isinstance(value, bool):
        raise ConfigurationError(f"Invalid batch size: {value!r}")
    if isinstance(value, int):
        n = value
    elif isinstance(value, float) and value.is_integer():
        n = int(value)
    else:
        t = "" if value is None else str(value).strip()
        if not t.isdigit():
            raise ConfigurationError(f"Invalid batch size: {value!r}")
        n = int(t)
    if n < 1:
        raise ConfigurationError(f"Invalid batch size: {value!r} (must be >= 1)")
    return n


# -------
# Locking
# -------

LOCK_TIMEOUT_SECONDS = 30

# ------------
# Provisioning
# ------------

SHEETS_REMOVED_FROM_COPIES: Tuple[str, ...] = (INFO_SHEET_NAME, "Totals")
COPY_NAME_SUFFIX = " BMC Class Count"

# ------------------
# Campus name filling
# ------------------

FILL_CURSOR_KEY = "CAMPUS_FILL_IDX"
FILL_BATCH_SIZE = 10
CAMPUS_NAME_COLUMN = 4
CAMPUS_PICKER_COLUMN = 5
PROJECTIONS_FIRST_ROW = 4

# --------
# Defaults
# --------

DEFAULT_MASTER = "master.xlsx"
DEFAULT_STATE_FILE = ".consolidation_state.json"
DEFAULT_LOCK_FILE = ".consolidation.lock"
LOGGER_NAME = "campus_consolidation"
