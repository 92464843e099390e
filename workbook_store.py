#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
workbook_store.py

Spreadsheet store over .xlsx workbooks kept under one root directory.

- A document reference is the workbook path relative to the root
  (absolute paths are accepted as-is).
- A folder reference is a directory relative to the root.
- Sheets are openpyxl worksheets; rows/columns are 1-based like the UI.
- "Last row" / "last column" mean the last row/column holding content,
  so clearing content shrinks them (formatting and validation rules do not count).

Also provides the small document service used by provisioning:
duplicate a template into a folder and grant edit access (sharing ledger).

Dependencies:
- openpyxl
- pandas (scalar NA checks)
"""

from __future__ import annotations

import json
import logging
import os
import re
import shutil
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Tuple

import pandas as pd
from openpyxl import load_workbook
from openpyxl.cell.cell import MergedCell
from openpyxl.utils import get_column_letter, quote_sheetname
from openpyxl.workbook.workbook import Workbook
from openpyxl.worksheet.cell_range import CellRange, MultiCellRange
from openpyxl.worksheet.datavalidation import DataValidation
from openpyxl.worksheet.worksheet import Worksheet
from pandas.api.types import is_scalar


EMAIL_REGEX = re.compile(r"^[A-Z0-9._%+\-]+@[A-Z0-9.\-]+\.[A-Z]{2,}$", re.I)

# Excel rejects inline list formulas longer than this
INLINE_LIST_MAX_CHARS = 255
VALIDATION_LISTS_SHEET = "ValidationLists"

SHARING_LEDGER = ".sharing.json"


class DocumentOpenError(Exception):
    """The referenced workbook is missing or cannot be loaded."""


class SharingError(Exception):
    """Edit access could not be granted."""


@dataclass
class Document:
    ref: str
    path: Path
    workbook: Workbook
    values_only: bool = False


def is_na_scalar(v: Any) -> bool:
    """
    Safe NA check that never returns an array/Series.
    """
    if v is None:
        return True
    if is_scalar(v):
        return bool(pd.isna(v))
    return False


def is_blank(v: Any) -> bool:
    """
    Blank means null/NaN, empty string, or whitespace-only.
    """
    if is_na_scalar(v):
        return True
    return str(v).strip() == ""


def _is_empty_cell(v: Any) -> bool:
    return v is None or v == ""


class WorkbookStore:
    def __init__(self, root: Path, logger: Optional[logging.Logger] = None) -> None:
        self.root = Path(root)
        self.logger = logger or logging.getLogger("campus_consolidation")

    # ---------
    # Documents
    # ---------

    def resolve(self, ref: str) -> Path:
        p = Path(str(ref).strip())
        return p if p.is_absolute() else self.root / p

    def relative_ref(self, path: Path) -> str:
        try:
            return path.resolve().relative_to(self.root.resolve()).as_posix()
        except ValueError:
            return str(path)

    def open_document(self, ref: str, values_only: bool = False) -> Document:
        """
        Load a workbook. values_only=True reads formula cells as their cached values
        (used for read-only campus sources; such documents cannot be saved).
        """
        if not ref or not str(ref).strip():
            raise DocumentOpenError("Empty document reference")
        path = self.resolve(ref)
        if not path.is_file():
            raise DocumentOpenError(f"Workbook not found: {ref}")
        try:
            wb = load_workbook(path, data_only=values_only)
        except Exception as e:
            raise DocumentOpenError(f"Failed to open workbook {ref}: {e}") from e
        return Document(ref=str(ref), path=path, workbook=wb, values_only=values_only)

    def save(self, doc: Document) -> None:
        if doc.values_only:
            raise ValueError(f"{doc.ref} was opened values-only; saving would drop its formulas")
        doc.workbook.save(doc.path)
        self.logger.debug(f"Saved workbook {doc.ref}")

    def document_exists(self, ref: str) -> bool:
        if not ref or not str(ref).strip():
            return False
        return self.resolve(ref).is_file()

    # ------
    # Sheets
    # ------

    def get_sheet(self, doc: Document, name: str) -> Optional[Worksheet]:
        if name in doc.workbook.sheetnames:
            return doc.workbook[name]
        return None

    def create_sheet(self, doc: Document, name: str) -> Worksheet:
        self.logger.info(f"{doc.ref}: creating sheet '{name}'")
        return doc.workbook.create_sheet(title=name)

    def delete_sheet(self, doc: Document, name: str) -> bool:
        sheet = self.get_sheet(doc, name)
        if sheet is None:
            return False
        doc.workbook.remove(sheet)
        return True

    def get_dimensions(self, sheet: Worksheet) -> Tuple[int, int]:
        """
        (last_row, last_column) holding content; (0, 0) for an empty sheet.
        """
        last_row = 0
        last_col = 0
        for r, row in enumerate(sheet.iter_rows(values_only=True), start=1):
            for c, v in enumerate(row, start=1):
                if _is_empty_cell(v):
                    continue
                last_row = r
                if c > last_col:
                    last_col = c
        return last_row, last_col

    def get_max_rows(self, sheet: Worksheet) -> int:
        """Physical row extent, including formatted rows without content."""
        return sheet.max_row

    # ------
    # Ranges
    # ------

    def read_range(self, sheet: Worksheet, row: int, col: int, num_rows: int, num_cols: int) -> List[List[Any]]:
        if num_rows < 1 or num_cols < 1:
            return []
        grid: List[List[Any]] = []
        for values in sheet.iter_rows(
            min_row=row,
            max_row=row + num_rows - 1,
            min_col=col,
            max_col=col + num_cols - 1,
            values_only=True,
        ):
            grid.append(["" if v is None else v for v in values])
        return grid

    def write_range(self, sheet: Worksheet, row: int, col: int, grid: Sequence[Sequence[Any]]) -> None:
        for i, values in enumerate(grid):
            for j, v in enumerate(values):
                sheet.cell(row=row + i, column=col + j, value=None if _is_empty_cell(v) else v)

    def clear_range(self, sheet: Worksheet, row: int, col: int, num_rows: int, num_cols: int) -> None:
        """
        Clear content only; styles and validation rules stay in place.
        """
        if num_rows < 1 or num_cols < 1:
            return
        for cells in sheet.iter_rows(
            min_row=row,
            max_row=row + num_rows - 1,
            min_col=col,
            max_col=col + num_cols - 1,
        ):
            for cell in cells:
                if isinstance(cell, MergedCell):
                    continue
                cell.value = None

    # ----------------
    # Data validations
    # ----------------

    def set_list_validation(self, sheet: Worksheet, row: int, col: int, num_rows: int, values: Sequence[Any]) -> None:
        """
        Restrict a single-column range to a dropdown of values; invalid input is rejected.
        """
        items = [str(v) for v in values if not is_blank(v)]
        if not items or num_rows < 1:
            return

        inline = ",".join(items)
        if len(inline) + 2 <= INLINE_LIST_MAX_CHARS and not any(("," in v or '"' in v) for v in items):
            formula = f'"{inline}"'
        else:
            formula = self._list_source_range(sheet.parent, items)

        dv = DataValidation(type="list", formula1=formula, allow_blank=True, showErrorMessage=True)
        dv.error = "Value must be selected from the list."
        letter = get_column_letter(col)
        dv.add(f"{letter}{row}:{letter}{row + num_rows - 1}")
        sheet.add_data_validation(dv)

    def clear_validation(self, sheet: Worksheet, row: int, col: int, num_rows: int) -> int:
        """
        Drop validation ranges overlapping a single-column range. Overlapping ranges are
        dropped whole. Returns the number of ranges removed.
        """
        if num_rows < 1:
            return 0
        target = CellRange(min_col=col, min_row=row, max_col=col, max_row=row + num_rows - 1)
        removed = 0
        for dv in list(sheet.data_validations.dataValidation):
            ranges = list(dv.sqref.ranges)
            keep = [r for r in ranges if r.isdisjoint(target)]
            if len(keep) == len(ranges):
                continue
            removed += len(ranges) - len(keep)
            if keep:
                dv.sqref = MultiCellRange(keep)
            else:
                sheet.data_validations.dataValidation.remove(dv)
        return removed

    def _list_source_range(self, wb: Workbook, items: List[str]) -> str:
        """
        Long lists live on a hidden sheet; identical lists share one column.
        """
        if VALIDATION_LISTS_SHEET in wb.sheetnames:
            ws = wb[VALIDATION_LISTS_SHEET]
        else:
            ws = wb.create_sheet(title=VALIDATION_LISTS_SHEET)
            ws.sheet_state = "hidden"

        _, last_col = self.get_dimensions(ws)
        target_col = None
        for c in range(1, last_col + 1):
            existing = [v for (v,) in ws.iter_rows(min_col=c, max_col=c, values_only=True) if not _is_empty_cell(v)]
            if existing == items:
                target_col = c
                break
        if target_col is None:
            target_col = last_col + 1
            for i, v in enumerate(items, start=1):
                ws.cell(row=i, column=target_col, value=v)

        letter = get_column_letter(target_col)
        return f"{quote_sheetname(VALIDATION_LISTS_SHEET)}!${letter}$1:${letter}${len(items)}"

    # ----------------
    # Document service
    # ----------------

    def folder_exists(self, folder_ref: str) -> bool:
        if not folder_ref or not str(folder_ref).strip():
            return False
        return self.resolve(folder_ref).is_dir()

    def duplicate_document(self, template_ref: str, folder_ref: str, name: str) -> str:
        """
        Copy a workbook into a folder as '<name>.xlsx' (numbered if taken). Returns the new reference.
        """
        src = self.resolve(template_ref)
        if not src.is_file():
            raise DocumentOpenError(f"Template workbook not found: {template_ref}")
        folder = self.resolve(folder_ref)
        safe_name = re.sub(r'[\\/:*?"<>|]+', "_", name).strip() or "Untitled"

        dest = folder / f"{safe_name}.xlsx"
        n = 2
        while dest.exists():
            dest = folder / f"{safe_name} ({n}).xlsx"
            n += 1

        shutil.copyfile(src, dest)
        ref = self.relative_ref(dest)
        self.logger.info(f"Copied {template_ref} -> {ref}")
        return ref

    def add_editor(self, ref: str, email: str) -> None:
        t = (email or "").strip()
        if not EMAIL_REGEX.match(t):
            raise SharingError(f"Invalid email address: {email!r}")
        if not self.document_exists(ref):
            raise SharingError(f"Cannot share missing workbook: {ref}")

        ledger_path = self.root / SHARING_LEDGER
        ledger: Dict[str, List[str]] = {}
        if ledger_path.exists():
            with open(ledger_path, "r", encoding="utf-8") as f:
                ledger = json.load(f)

        editors = ledger.setdefault(ref, [])
        if t.lower() not in (e.lower() for e in editors):
            editors.append(t)

        tmp = ledger_path.with_suffix(".tmp")
        with open(tmp, "w", encoding="utf-8") as f:
            json.dump(ledger, f, ensure_ascii=False, indent=2)
        os.replace(tmp, ledger_path)

    def editors(self, ref: str) -> List[str]:
        ledger_path = self.root / SHARING_LEDGER
        if not ledger_path.exists():
            return []
        with open(ledger_path, "r", encoding="utf-8") as f:
            return list(json.load(f).get(ref, []))
