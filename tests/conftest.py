"""Shared fixtures: real .xlsx master / campus workbooks built with openpyxl in tmp_path."""

from pathlib import Path
from typing import Dict, Iterable, List, Optional, Sequence

import pytest
from openpyxl import Workbook

from campus_config import INFO_SHEET_NAME, MONTH_SHEETS
from script_state import MemoryPropertyStore, ScriptLock
from workbook_store import WorkbookStore

MONTH_HEADER = ["Teacher", "Grade", "Class", "Campus", "Count"]
ROSTER_HEADER = ["Email", "Campus", "Level", "Main/Level Folder ID", "Spreadsheet ID"]


def _blank_to_none(values: Iterable) -> List:
    return [None if v == "" else v for v in values]


def make_master(
    path: Path,
    roster_rows: Sequence[Sequence],
    months: Sequence[str] = MONTH_SHEETS,
    header: Sequence[str] = MONTH_HEADER,
    month_rows: Optional[Dict[str, List[List]]] = None,
    with_info: bool = True,
    extra_sheets: Sequence[str] = (),
) -> Path:
    wb = Workbook()
    first = wb.active
    if with_info:
        first.title = INFO_SHEET_NAME
        first.append(ROSTER_HEADER)
        for r in roster_rows:
            first.append(_blank_to_none(r))
    else:
        first.title = "Notes"
    for m in months:
        ws = wb.create_sheet(m)
        ws.append([m])
        ws.append(list(header))
        for r in (month_rows or {}).get(m, []):
            ws.append(_blank_to_none(r))
    for name in extra_sheets:
        wb.create_sheet(name)
    wb.save(path)
    return path


def make_campus(
    path: Path,
    month_rows: Dict[str, List[List]],
    months: Sequence[str] = MONTH_SHEETS,
    header: Sequence[str] = MONTH_HEADER,
) -> Path:
    wb = Workbook()
    wb.remove(wb.active)
    for m in months:
        ws = wb.create_sheet(m)
        ws.append([m])
        ws.append(list(header))
        for r in month_rows.get(m, []):
            ws.append(_blank_to_none(r))
    wb.save(path)
    return path


@pytest.fixture
def store(tmp_path):
    return WorkbookStore(tmp_path)


@pytest.fixture
def props():
    return MemoryPropertyStore()


@pytest.fixture
def lock(tmp_path):
    return ScriptLock(tmp_path / ".consolidation.lock", poll_interval=0.01)
