#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
create_campus_spreadsheets.py

Creates a separate workbook for each campus listed in CampusBMCSheetInfo:
- Copies the master into the folder in column D as '<campus> BMC Class Count'
- Removes CampusBMCSheetInfo and Totals from the copy
- Writes the new workbook reference in column E (master saved per row)
- Shares the copy with the email in column A

Rows whose column E already points at an existing workbook are left alone.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import List, Optional

from campus_config import (
    COPY_NAME_SUFFIX,
    INFO_SHEET_NAME,
    LOCK_TIMEOUT_SECONDS,
    LOGGER_NAME,
    SHEETS_REMOVED_FROM_COPIES,
    SPREADSHEET_ID_COLUMN,
    ConfigurationError,
)
from roster import provisioning_problem, read_roster
from script_state import LockBusyError, ScriptLock
from workbook_store import DocumentOpenError, SharingError, WorkbookStore


@dataclass
class ProvisionResult:
    created: List[str] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)
    busy: bool = False


def create_campus_spreadsheets(
    store: WorkbookStore,
    master_ref: str,
    lock: ScriptLock,
    lock_timeout: float = LOCK_TIMEOUT_SECONDS,
    logger: Optional[logging.Logger] = None,
) -> ProvisionResult:
    logger = logger or logging.getLogger(LOGGER_NAME)
    try:
        with lock.hold(lock_timeout):
            return _provision(store, master_ref, logger)
    except LockBusyError as e:
        logger.warning(str(e))
        return ProvisionResult(busy=True)


def _provision(store: WorkbookStore, master_ref: str, logger: logging.Logger) -> ProvisionResult:
    logger.info(f"FUNCTION START: create_campus_spreadsheets ({master_ref})")
    try:
        master = store.open_document(master_ref)
    except DocumentOpenError as e:
        raise ConfigurationError(f"Master workbook unavailable: {e}") from e

    entries = read_roster(store, master, logger)
    info_sheet = store.get_sheet(master, INFO_SHEET_NAME)
    result = ProvisionResult()

    for entry in entries:
        problem = provisioning_problem(entry)
        if problem:
            result.errors.append(problem)
            continue

        if entry.spreadsheet_id and store.document_exists(entry.spreadsheet_id):
            continue

        label = f"Row {entry.row_number} ({entry.campus})"
        if not store.folder_exists(entry.folder_id):
            result.errors.append(f"{label}: Invalid folder ID.")
            continue

        name = entry.campus + COPY_NAME_SUFFIX
        logger.info(f"CREATING SPREADSHEET: {name} for row {entry.row_number}")
        new_ref = store.duplicate_document(master_ref, entry.folder_id, name)

        copy = store.open_document(new_ref)
        for sheet_name in SHEETS_REMOVED_FROM_COPIES:
            store.delete_sheet(copy, sheet_name)
        store.save(copy)

        store.write_range(info_sheet, entry.row_number, SPREADSHEET_ID_COLUMN, [[new_ref]])
        store.save(master)

        try:
            store.add_editor(new_ref, entry.email)
        except SharingError as e:
            msg = f"{label}: Could not share spreadsheet with {entry.email}"
            text = str(e).lower()
            if "permission" in text or "sharing" in text:
                msg += " (Check Shared Drive sharing permissions)"
            logger.warning(f"{msg}: {e}")
            result.errors.append(msg + ".")

        result.created.append(name)

    logger.info(f"FUNCTION END: create_campus_spreadsheets - Created {len(result.created)} spreadsheets")
    return result


def format_provision_report(result: ProvisionResult) -> str:
    if result.busy:
        return "Another instance is already running. Please wait and try again."
    message = ""
    if result.created:
        message += f"Created {len(result.created)} spreadsheet(s):\n" + "\n".join(result.created) + "\n\n"
    else:
        message += "No new spreadsheets were created.\n"
    if result.errors:
        message += "Errors:\n" + "\n".join(result.errors)
    return message.rstrip("\n")
