#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
consolidate_campuses.py

Batched consolidation of campus workbooks into the master workbook.

Input:
- Master workbook (default: ./master.xlsx) with the CampusBMCSheetInfo roster
  and one sheet per month.
- One campus workbook per roster row (column E holds its reference).

Run model:
- Each level (ES / MS / HS) has its own durable cursor: "start" resets it and runs
  the first batch, "next" runs the following batch. A batch is a contiguous slice of
  the level's eligible roster entries (campus + spreadsheet id, roster order).
- The first batch of a run clears rows 3+ of every month sheet in the master, once.
  Later batches only append below existing data.
- Every batch runs under the script lock; a held lock means "try again later".

Month sheets:
- Rows 1-2 are headers/metadata and are never touched; data starts on row 3.
- A source row is kept when any cell outside column D is non-blank.
- Rows are truncated / padded to the master sheet's width so validation columns
  never shift.

Logs:
- Console + logs/campus_consolidation.log

Dependencies:
- pandas
- openpyxl
"""

from __future__ import annotations

import argparse
import logging
import os
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Tuple

import pandas as pd

from campus_config import (
    BATCH_SIZE_KEY,
    DATA_START_ROW,
    DEFAULT_BATCH_SIZE,
    DEFAULT_LOCK_FILE,
    DEFAULT_MASTER,
    DEFAULT_STATE_FILE,
    HEADER_ROWS,
    IGNORED_COLUMNS,
    LEVELS,
    LOCK_TIMEOUT_SECONDS,
    LOGGER_NAME,
    MONTH_SHEETS,
    ConfigurationError,
    level_cleared_key,
    level_cursor_key,
    normalize_level,
    parse_batch_size,
)
from create_campus_spreadsheets import create_campus_spreadsheets, format_provision_report
from fill_campus_names import fill_campus_names, format_fill_report
from roster import RosterEntry, level_entries, level_totals, read_roster
from script_state import JsonPropertyStore, LockBusyError, PropertyStore, ScriptLock
from workbook_store import Document, DocumentOpenError, WorkbookStore, is_blank


STATUS_BATCH_COMPLETE = "batch_complete"
STATUS_ALREADY_COMPLETE = "already_complete"
STATUS_NO_CAMPUSES = "no_campuses"
STATUS_BUSY = "busy"

EXIT_CONFIG_ERROR = 2
EXIT_LOCK_BUSY = 3

# month -> campus -> rows
MonthBuckets = Dict[str, Dict[str, List[List[Any]]]]


# ----------
# Logging
# ----------

def setup_logging(debug: bool) -> logging.Logger:
    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(logging.DEBUG)

    if logger.handlers:
        return logger

    os.makedirs("logs", exist_ok=True)
    log_path = Path("logs") / "campus_consolidation.log"

    fmt = logging.Formatter(
        "%(asctime)s | %(levelname)-7s | %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    fh = logging.FileHandler(log_path, encoding="utf-8")
    fh.setLevel(logging.DEBUG if debug else logging.INFO)
    fh.setFormatter(fmt)

    sh = logging.StreamHandler(sys.stdout)
    sh.setLevel(logging.DEBUG if debug else logging.INFO)
    sh.setFormatter(fmt)

    logger.addHandler(fh)
    logger.addHandler(sh)
    return logger


# -------------
# Data classes
# -------------

@dataclass
class BatchResult:
    level: str
    status: str
    start_index: int = 0
    end_index: int = 0
    total: int = 0
    batch_campuses: List[str] = field(default_factory=list)
    processed_campuses: List[str] = field(default_factory=list)
    rows_by_month: Dict[str, int] = field(default_factory=dict)
    errors: List[str] = field(default_factory=list)
    cleared: bool = False
    message: str = ""

    @property
    def cursor(self) -> int:
        return self.end_index

    @property
    def done(self) -> bool:
        return self.total > 0 and self.end_index >= self.total


@dataclass
class StatusReport:
    batch_size: int
    progress: Dict[str, Tuple[int, int]]

    def is_done(self, level: str) -> bool:
        done, total = self.progress[level]
        return total > 0 and done >= total


# --------------------
# Batch cursor manager
# --------------------

class ConsolidationState:
    """
    Per-level cursor + clear-once flag, and the global batch size, over a property store.
    Levels are independent: touching one never changes another's keys.
    """

    def __init__(self, props: PropertyStore, logger: Optional[logging.Logger] = None) -> None:
        self.props = props
        self.logger = logger or logging.getLogger(LOGGER_NAME)

    def batch_size(self) -> int:
        raw = self.props.get(BATCH_SIZE_KEY)
        if raw is None:
            return DEFAULT_BATCH_SIZE
        try:
            return parse_batch_size(raw)
        except ConfigurationError:
            self.logger.warning(f"Stored {BATCH_SIZE_KEY}={raw!r} is invalid; using {DEFAULT_BATCH_SIZE}")
            return DEFAULT_BATCH_SIZE

    def set_batch_size(self, value: Any) -> int:
        n = parse_batch_size(value)
        self.props.set(BATCH_SIZE_KEY, str(n))
        return n

    def cursor(self, level: str) -> int:
        raw = self.props.get(level_cursor_key(level))
        if raw is None:
            return 0
        try:
            n = int(str(raw).strip())
        except ValueError:
            self.logger.warning(f"Cursor for {level} is not an integer ({raw!r}); treating as 0")
            return 0
        return max(0, n)

    def set_cursor(self, level: str, index: int) -> None:
        self.props.set(level_cursor_key(level), str(int(index)))

    def is_cleared(self, level: str) -> bool:
        return self.props.get(level_cleared_key(level)) == "true"

    def mark_cleared(self, level: str) -> None:
        self.props.set(level_cleared_key(level), "true")

    def start_run(self, level: str) -> None:
        self.set_cursor(level, 0)
        self.props.delete(level_cleared_key(level))

    def progress(self, level: str, total: int) -> Tuple[int, int]:
        return min(self.cursor(level), total), total


# ----------------------
# Row filter / alignment
# ----------------------

def row_has_data(row: Sequence[Any], ignored_columns: Sequence[int] = IGNORED_COLUMNS) -> bool:
    """
    True when any cell outside the ignored columns is non-blank.
    """
    for i, v in enumerate(row):
        if i in ignored_columns:
            continue
        if not is_blank(v):
            return True
    return False


def align_row(row: Sequence[Any], width: int) -> List[Any]:
    aligned = list(row[:width])
    aligned.extend([""] * (width - len(aligned)))
    return aligned


# ----------------------
# Consolidation executor
# ----------------------

def collect_month_rows(
    store: WorkbookStore,
    batch: List[RosterEntry],
    months: Sequence[str],
    logger: logging.Logger,
) -> Tuple[MonthBuckets, List[str], List[str]]:
    """
    Read rows 3+ of every month sheet of every campus in the batch.
    Returns (month -> campus -> kept rows, soft errors, campuses that contributed rows).
    """
    by_month: MonthBuckets = {m: {} for m in months}
    errors: List[str] = []
    processed: List[str] = []

    for entry in batch:
        try:
            doc = store.open_document(entry.spreadsheet_id, values_only=True)
        except DocumentOpenError as e:
            msg = f"Skip {entry.campus}: cannot open spreadsheet {entry.spreadsheet_id}"
            logger.warning(f"{msg} ({e})")
            errors.append(msg)
            continue

        found_any = False
        for month in months:
            sheet = store.get_sheet(doc, month)
            if sheet is None:
                logger.debug(f"{entry.campus} | {month}: sheet missing, skipped")
                continue
            lr, lc = store.get_dimensions(sheet)
            if lr <= HEADER_ROWS or lc < 1:
                continue

            values = store.read_range(sheet, DATA_START_ROW, 1, lr - HEADER_ROWS, lc)
            kept = [r for r in values if row_has_data(r)]
            logger.debug(f"{entry.campus} | {month}: kept {len(kept)}/{len(values)} rows")
            if not kept:
                continue

            found_any = True
            by_month[month].setdefault(entry.campus, []).extend(kept)

        if found_any:
            processed.append(entry.campus)

    return by_month, errors, processed


def clear_master_months(
    store: WorkbookStore,
    master: Document,
    months: Sequence[str],
    logger: logging.Logger,
) -> List[str]:
    """
    Clear rows 3+ of each month sheet in the master (rows 1-2 preserved).
    Returns the months that had data cleared.
    """
    cleared: List[str] = []
    for month in months:
        sheet = store.get_sheet(master, month)
        if sheet is None:
            continue
        lr, lc = store.get_dimensions(sheet)
        if lr > HEADER_ROWS and lc > 0:
            store.clear_range(sheet, DATA_START_ROW, 1, lr - HEADER_ROWS, lc)
            cleared.append(month)
            logger.debug(f"master | {month}: cleared rows {DATA_START_ROW}..{lr}")
    return cleared


def append_month_rows(
    store: WorkbookStore,
    master: Document,
    month: str,
    rows_by_campus: Dict[str, List[List[Any]]],
    logger: logging.Logger,
) -> int:
    """
    Append a month's rows below the master sheet's existing data (never above row 3),
    aligned to the master sheet's width. Missing sheets are created; an empty sheet
    adopts the width of the first collected row.
    """
    campuses = list(rows_by_campus.keys())
    if not campuses:
        return 0

    dest = store.get_sheet(master, month)
    if dest is None:
        dest = store.create_sheet(master, month)

    lr_dest, lc_dest = store.get_dimensions(dest)
    if lc_dest == 0:
        first_rows = rows_by_campus[campuses[0]]
        lc_dest = len(first_rows[0]) if first_rows and first_rows[0] else 1

    rows_to_append: List[List[Any]] = []
    for campus in campuses:
        for r in rows_by_campus[campus]:
            rows_to_append.append(align_row(r, lc_dest))

    if rows_to_append:
        start_row = max(DATA_START_ROW, lr_dest + 1)
        store.write_range(dest, start_row, 1, rows_to_append)
        logger.info(f"master | {month}: appended {len(rows_to_append)} rows at row {start_row} (width={lc_dest})")

    return len(rows_to_append)


class Consolidator:
    """
    Start / Next Batch / Status operations for one master workbook.

    Example:
        >>> c = Consolidator(store, "master.xlsx", JsonPropertyStore(p), ScriptLock(l))
        >>> c.start("es").status
        'batch_complete'
        >>> c.next_batch("ES").done
        True
    """

    def __init__(
        self,
        store: WorkbookStore,
        master_ref: str,
        props: PropertyStore,
        lock: ScriptLock,
        months: Sequence[str] = MONTH_SHEETS,
        lock_timeout: float = LOCK_TIMEOUT_SECONDS,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.store = store
        self.master_ref = master_ref
        self.lock = lock
        self.months = tuple(months)
        self.lock_timeout = lock_timeout
        self.logger = logger or logging.getLogger(LOGGER_NAME)
        self.state = ConsolidationState(props, self.logger)

    def _open_master(self) -> Document:
        try:
            return self.store.open_document(self.master_ref)
        except DocumentOpenError as e:
            raise ConfigurationError(f"Master workbook unavailable: {e}") from e

    def _eligible(self, master: Document, level: str) -> List[RosterEntry]:
        return level_entries(read_roster(self.store, master, self.logger), level)

    def start(self, level: str) -> BatchResult:
        lvl = normalize_level(level)
        try:
            with self.lock.hold(self.lock_timeout):
                return self._run_batch(lvl, reset=True)
        except LockBusyError as e:
            self.logger.warning(str(e))
            return BatchResult(level=lvl, status=STATUS_BUSY, message=str(e))

    def next_batch(self, level: str) -> BatchResult:
        lvl = normalize_level(level)
        try:
            with self.lock.hold(self.lock_timeout):
                return self._run_batch(lvl)
        except LockBusyError as e:
            self.logger.warning(str(e))
            return BatchResult(level=lvl, status=STATUS_BUSY, message=str(e))

    def _run_batch(self, level: str, reset: bool = False) -> BatchResult:
        """
        One batch under the held lock. reset=True (start) rewinds the cursor and
        clear flag, but only once the level is known to have eligible campuses.
        """
        master = self._open_master()
        eligible = self._eligible(master, level)
        total = len(eligible)

        if total and reset:
            self.state.start_run(level)
            self.logger.info(f"Level {level}: run started, cursor reset")
        start = self.state.cursor(level)

        if total == 0:
            self.logger.info(f"Level {level}: no campuses with a spreadsheet id")
            return BatchResult(
                level=level,
                status=STATUS_NO_CAMPUSES,
                start_index=start,
                end_index=start,
                message=f"No campuses found for level {level}.",
            )

        if start >= total:
            self.logger.info(f"Level {level}: already complete ({start} / {total})")
            return BatchResult(
                level=level,
                status=STATUS_ALREADY_COMPLETE,
                start_index=start,
                end_index=start,
                total=total,
                message=f"Level {level} already complete. Start again to rerun.",
            )

        batch_size = self.state.batch_size()
        end = min(total, start + batch_size)
        batch = eligible[start:end]
        self.logger.info(f"Level {level}: processing entries {start}..{end - 1} of {total} (batch_size={batch_size})")

        by_month, errors, processed = collect_month_rows(self.store, batch, self.months, self.logger)

        clear_now = not self.state.is_cleared(level)
        if clear_now:
            cleared = clear_master_months(self.store, master, self.months, self.logger)
            self.logger.info(f"Level {level}: cleared master data rows once for this run ({len(cleared)} sheets)")

        rows_by_month: Dict[str, int] = {}
        for month in self.months:
            n = append_month_rows(self.store, master, month, by_month[month], self.logger)
            if n:
                rows_by_month[month] = n

        self.store.save(master)
        if clear_now:
            self.state.mark_cleared(level)
        self.state.set_cursor(level, end)
        self.logger.info(f"Level {level}: cursor advanced to {end} / {total}")

        return BatchResult(
            level=level,
            status=STATUS_BATCH_COMPLETE,
            start_index=start,
            end_index=end,
            total=total,
            batch_campuses=[e.campus for e in batch],
            processed_campuses=processed,
            rows_by_month=rows_by_month,
            errors=errors,
            cleared=clear_now,
        )

    def progress(self, level: str) -> Tuple[int, int]:
        lvl = normalize_level(level)
        master = self._open_master()
        return self.state.progress(lvl, len(self._eligible(master, lvl)))

    def status(self) -> StatusReport:
        master = self._open_master()
        totals = level_totals(read_roster(self.store, master, self.logger))
        return StatusReport(
            batch_size=self.state.batch_size(),
            progress={lvl: self.state.progress(lvl, totals[lvl]) for lvl in LEVELS},
        )

    def set_batch_size(self, value: Any) -> int:
        n = self.state.set_batch_size(value)
        self.logger.info(f"Batch size set to {n}")
        return n


# ------------
# Presentation
# ------------

def format_batch_report(result: BatchResult) -> str:
    if result.status == STATUS_BUSY:
        return "Another instance is running. Try again later."
    if result.status in (STATUS_NO_CAMPUSES, STATUS_ALREADY_COMPLETE):
        return result.message

    lines = [
        f"Level {result.level} batch complete.",
        f"Processed campuses: {len(result.batch_campuses)}",
    ]
    if result.rows_by_month:
        lines.append(", ".join(f"{m}: {n} rows" for m, n in result.rows_by_month.items()))
    else:
        lines.append("No data this run")
    lines.append(f"Progress: {result.end_index} / {result.total}" + (" (DONE)" if result.done else ""))
    if result.errors:
        lines.append("")
        lines.append("Errors:")
        lines.extend(result.errors)
    return "\n".join(lines)


def format_status(status: StatusReport) -> str:
    lines = [f"Batch size: {status.batch_size}", ""]
    for lvl in LEVELS:
        done, total = status.progress[lvl]
        lines.append(f"{lvl}: {done} / {total}" + (" (DONE)" if status.is_done(lvl) else ""))
    return "\n".join(lines)


def write_batch_report(result: BatchResult, path: Path, months: Sequence[str] = MONTH_SHEETS) -> None:
    rows = [
        {
            "level": result.level,
            "status": result.status,
            "month": m,
            "rows_appended": int(result.rows_by_month.get(m, 0)),
            "progress": f"{result.end_index}/{result.total}",
            "errors": " | ".join(result.errors),
        }
        for m in months
    ]
    pd.DataFrame(rows).to_csv(path, index=False, encoding="utf-8-sig")


# -----
# Main
# -----

def _under_root(root: Path, value: str) -> Path:
    p = Path(value)
    return p if p.is_absolute() else root / p


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Batched consolidation of campus workbooks into the master workbook.")
    parser.add_argument("--root", default=".", help="Folder holding the master and campus workbooks (default: .)")
    parser.add_argument("--master", default=DEFAULT_MASTER, help=f"Master workbook, relative to --root (default: {DEFAULT_MASTER})")
    parser.add_argument("--state-file", default=DEFAULT_STATE_FILE, help=f"Durable cursor/flag store (default: {DEFAULT_STATE_FILE})")
    parser.add_argument("--lock-file", default=DEFAULT_LOCK_FILE, help=f"Script lock file (default: {DEFAULT_LOCK_FILE})")
    parser.add_argument("--lock-timeout", type=float, default=LOCK_TIMEOUT_SECONDS, help="Seconds to wait for the lock (default: 30)")
    parser.add_argument("--out-report", default=None, help="Optional CSV report for start/next")
    parser.add_argument("--debug", action="store_true", help="Enable DEBUG logging")

    sub = parser.add_subparsers(dest="command", required=True)
    p_start = sub.add_parser("start", help="Reset a level's cursor and run its first batch")
    p_start.add_argument("level", help="ES, MS or HS")
    p_next = sub.add_parser("next", help="Run the next batch for a level")
    p_next.add_argument("level", help="ES, MS or HS")
    sub.add_parser("status", help="Show batch size and per-level progress")
    p_size = sub.add_parser("set-batch-size", help="Set the number of campuses per batch")
    p_size.add_argument("size")
    sub.add_parser("create-spreadsheets", help="Create a workbook for each roster campus without one")
    sub.add_parser("fill-campus-names", help="Fill campus names and campus dropdowns in the next batch of campus workbooks")
    return parser


def main(argv: Optional[List[str]] = None) -> None:
    args = build_parser().parse_args(argv)
    logger = setup_logging(args.debug)

    root = Path(args.root)
    if not root.is_dir():
        logger.error(f"Root folder not found: {root.resolve()}")
        sys.exit(EXIT_CONFIG_ERROR)

    store = WorkbookStore(root, logger)
    props = JsonPropertyStore(_under_root(root, args.state_file))
    lock = ScriptLock(_under_root(root, args.lock_file), logger=logger)
    consolidator = Consolidator(store, args.master, props, lock, lock_timeout=args.lock_timeout, logger=logger)

    busy = False
    try:
        if args.command in ("start", "next"):
            if args.command == "start":
                result = consolidator.start(args.level)
            else:
                result = consolidator.next_batch(args.level)
            print(format_batch_report(result))
            busy = result.status == STATUS_BUSY
            if args.out_report and not busy:
                write_batch_report(result, Path(args.out_report), consolidator.months)
                logger.info(f"Wrote batch report: {Path(args.out_report).resolve()}")

        elif args.command == "status":
            print(format_status(consolidator.status()))

        elif args.command == "set-batch-size":
            n = consolidator.set_batch_size(args.size)
            print(f"Batch size: {n}")

        elif args.command == "create-spreadsheets":
            prov = create_campus_spreadsheets(store, args.master, lock, lock_timeout=args.lock_timeout, logger=logger)
            print(format_provision_report(prov))
            busy = prov.busy

        elif args.command == "fill-campus-names":
            fill = fill_campus_names(store, args.master, props, lock, lock_timeout=args.lock_timeout, logger=logger)
            print(format_fill_report(fill))
            busy = fill.busy

    except ConfigurationError as e:
        logger.error(str(e))
        sys.exit(EXIT_CONFIG_ERROR)

    if busy:
        sys.exit(EXIT_LOCK_BUSY)


if __name__ == "__main__":
    main()
