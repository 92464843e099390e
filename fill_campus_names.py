#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
fill_campus_names.py

Prefills the campus name column and the campus dropdown in campus workbooks,
ten roster rows per call (cursor CAMPUS_FILL_IDX, reset once every row is done).

Per month sheet:
- regular months: column D from row 3 to the sheet's last row gets the campus name
  (its validation removed first)
- projections month: same from row 4, then column E from row 4 gets a dropdown of
  every roster campus
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import List, Optional, Sequence

from campus_config import (
    CAMPUS_NAME_COLUMN,
    CAMPUS_PICKER_COLUMN,
    DATA_START_ROW,
    FILL_BATCH_SIZE,
    FILL_CURSOR_KEY,
    LOCK_TIMEOUT_SECONDS,
    LOGGER_NAME,
    MONTH_SHEETS,
    PROJECTIONS_FIRST_ROW,
    PROJECTIONS_SHEET,
    ConfigurationError,
)
from roster import RosterEntry, campus_names, read_roster
from script_state import LockBusyError, PropertyStore, ScriptLock
from workbook_store import DocumentOpenError, WorkbookStore


@dataclass
class FillResult:
    start_index: int = 0
    end_index: int = 0
    total: int = 0
    log: List[str] = field(default_factory=list)
    busy: bool = False

    @property
    def done(self) -> bool:
        return not self.busy and self.end_index >= self.total


def _read_cursor(props: PropertyStore, logger: logging.Logger) -> int:
    raw = props.get(FILL_CURSOR_KEY)
    if raw is None:
        return 0
    try:
        return max(0, int(str(raw).strip()))
    except ValueError:
        logger.warning(f"{FILL_CURSOR_KEY}={raw!r} is not an integer; starting from 0")
        return 0


def fill_campus_names(
    store: WorkbookStore,
    master_ref: str,
    props: PropertyStore,
    lock: ScriptLock,
    months: Sequence[str] = MONTH_SHEETS,
    batch_size: int = FILL_BATCH_SIZE,
    lock_timeout: float = LOCK_TIMEOUT_SECONDS,
    logger: Optional[logging.Logger] = None,
) -> FillResult:
    logger = logger or logging.getLogger(LOGGER_NAME)
    try:
        with lock.hold(lock_timeout):
            return _fill_batch(store, master_ref, props, months, batch_size, logger)
    except LockBusyError as e:
        logger.warning(str(e))
        return FillResult(busy=True)


def _fill_workbook(
    store: WorkbookStore,
    entry: RosterEntry,
    months: Sequence[str],
    campus_list: List[str],
    log: List[str],
) -> None:
    doc = store.open_document(entry.spreadsheet_id)
    log.append(f"Opened spreadsheet: {entry.spreadsheet_id}")

    for month in months:
        log.append(f"  Checking sheet: {month}")
        sheet = store.get_sheet(doc, month)
        if sheet is None:
            log.append(f"    Sheet not found: {month}")
            continue

        projections = month == PROJECTIONS_SHEET
        first_row = PROJECTIONS_FIRST_ROW if projections else DATA_START_ROW
        last_row = store.get_max_rows(sheet)
        n = last_row - first_row + 1
        if n < 1:
            log.append(f"    No rows from row {first_row} in sheet: {month}")
            continue

        store.clear_validation(sheet, first_row, CAMPUS_NAME_COLUMN, n)
        store.write_range(sheet, first_row, CAMPUS_NAME_COLUMN, [[entry.campus] for _ in range(n)])

        if projections:
            store.clear_validation(sheet, first_row, CAMPUS_PICKER_COLUMN, n)
            store.set_list_validation(sheet, first_row, CAMPUS_PICKER_COLUMN, n, campus_list)
            log.append(
                f"    Cleared validation in D{first_row}:D{last_row}, filled with campus name, "
                f"and applied validation to E{first_row}:E{last_row} in sheet: {month}"
            )
        else:
            log.append(f"    Cleared validation in D{first_row}:D{last_row} and filled with campus name in sheet: {month}")

    store.save(doc)


def _fill_batch(
    store: WorkbookStore,
    master_ref: str,
    props: PropertyStore,
    months: Sequence[str],
    batch_size: int,
    logger: logging.Logger,
) -> FillResult:
    try:
        master = store.open_document(master_ref, values_only=True)
    except DocumentOpenError as e:
        raise ConfigurationError(f"Master workbook unavailable: {e}") from e

    entries = read_roster(store, master, logger)
    campus_list = campus_names(entries)
    total = len(entries)

    start = _read_cursor(props, logger)
    end = min(total, start + batch_size)
    log = [f"Processing campuses {start + 1} to {end} of {total}"]

    for entry in entries[start:end]:
        if not entry.campus or not entry.spreadsheet_id:
            continue
        log.append("---")
        log.append(f"About to open spreadsheet: {entry.spreadsheet_id} for campus: {entry.campus}")
        try:
            _fill_workbook(store, entry, months, campus_list, log)
        except Exception as e:
            logger.exception(f"{entry.campus}: campus name fill failed")
            log.append(f"  Error opening spreadsheet: {entry.spreadsheet_id} - {e}")

    props.set(FILL_CURSOR_KEY, str(end))
    if end >= total:
        log.append("All campuses processed. Resetting cursor.")
        props.delete(FILL_CURSOR_KEY)
    else:
        log.append(f"Batch complete. Next run will process campuses {end + 1} to {min(total, end + batch_size)}")

    for line in log:
        logger.info(line)
    return FillResult(start_index=start, end_index=end, total=total, log=log)


def format_fill_report(result: FillResult) -> str:
    if result.busy:
        return "Another instance is running. Try again later."
    status = "all campuses processed" if result.done else f"next run starts at campus {result.end_index + 1}"
    return f"Campus name fill complete ({result.end_index} / {result.total}, {status}). See logs for details."
