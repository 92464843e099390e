"""Tests for the batch cursor manager and the consolidation executor."""

import pandas as pd
import pytest
from openpyxl import load_workbook

from campus_config import MONTH_SHEETS, ConfigurationError, level_cleared_key, level_cursor_key
from consolidate_campuses import (
    STATUS_ALREADY_COMPLETE,
    STATUS_BATCH_COMPLETE,
    STATUS_BUSY,
    STATUS_NO_CAMPUSES,
    ConsolidationState,
    Consolidator,
    StatusReport,
    align_row,
    format_batch_report,
    format_status,
    row_has_data,
    write_batch_report,
)
from script_state import JsonPropertyStore, MemoryPropertyStore, ScriptLock

from conftest import make_campus, make_master


def build_level(tmp_path, n, level="ES", prefix="C", month="AUGUST", missing=()):
    """n campuses for a level, each with one data row in `month`."""
    roster = []
    for i in range(n):
        ref = f"{prefix.lower()}_{i:02d}.xlsx"
        if i not in missing:
            make_campus(tmp_path / ref, {month: [[f"T{i}", 3, "A", f"{prefix}{i}", i]]})
        roster.append((f"u{i}@example.org", f"{prefix}{i}", level, "", ref))
    return roster


def data_rows(tmp_path, month, master="master.xlsx"):
    ws = load_workbook(tmp_path / master)[month]
    rows = []
    for r in range(3, ws.max_row + 1):
        values = [ws.cell(row=r, column=c).value for c in range(1, ws.max_column + 1)]
        if any(v is not None for v in values):
            rows.append(values)
    return rows


def consolidator(store, props, lock):
    return Consolidator(store, "master.xlsx", props, lock, lock_timeout=0)


class TestRowFilter:
    def test_blank_except_ignored_column_is_dropped(self):
        assert row_has_data(["", None, "   ", "North Campus", ""]) is False

    def test_any_other_column_keeps_row(self):
        assert row_has_data(["", "", "", "North Campus", "7"]) is True
        assert row_has_data(["x", "", "", "", ""]) is True

    def test_columns_past_o_count(self):
        row = [""] * 20
        row[18] = "late"
        assert row_has_data(row) is True

    def test_zero_is_data(self):
        assert row_has_data([0, None, None, None]) is True

    def test_custom_ignored_columns(self):
        assert row_has_data(["only-a", ""], ignored_columns=(0,)) is False


class TestAlignRow:
    @pytest.mark.parametrize("width", [1, 3, 5, 8])
    def test_length_always_matches(self, width):
        for row in ([], [1], [1, 2, 3, 4, 5], list(range(10))):
            assert len(align_row(row, width)) == width

    def test_truncates_and_pads(self):
        assert align_row([1, 2, 3], 2) == [1, 2]
        assert align_row([1], 3) == [1, "", ""]


class TestConsolidationState:
    def test_defaults(self, props):
        state = ConsolidationState(props)
        assert state.cursor("ES") == 0
        assert state.is_cleared("ES") is False
        assert state.batch_size() == 15

    def test_start_run_resets_cursor_and_flag(self, props):
        state = ConsolidationState(props)
        state.set_cursor("MS", 7)
        state.mark_cleared("MS")
        state.start_run("MS")
        assert state.cursor("MS") == 0
        assert state.is_cleared("MS") is False
        state.start_run("MS")
        assert state.cursor("MS") == 0
        assert props.get(level_cleared_key("MS")) is None

    def test_levels_are_independent(self, props):
        state = ConsolidationState(props)
        state.set_cursor("ES", 4)
        state.mark_cleared("ES")
        state.start_run("MS")
        assert state.cursor("ES") == 4
        assert state.is_cleared("ES") is True

    @pytest.mark.parametrize("bad", [0, -3, "abc", "", None, "2.5", True])
    def test_invalid_batch_size_keeps_previous(self, props, bad):
        state = ConsolidationState(props)
        state.set_batch_size("20")
        with pytest.raises(ConfigurationError):
            state.set_batch_size(bad)
        assert state.batch_size() == 20

    def test_corrupt_stored_values_fall_back(self):
        props = MemoryPropertyStore({"CONSOLIDATE_BATCH_SIZE": "zero", level_cursor_key("HS"): "x"})
        state = ConsolidationState(props)
        assert state.batch_size() == 15
        assert state.cursor("HS") == 0

    def test_progress_is_clamped(self, props):
        state = ConsolidationState(props)
        state.set_cursor("ES", 50)
        assert state.progress("ES", 3) == (3, 3)


class TestBatches:
    def test_twenty_entries_batch_of_fifteen(self, tmp_path, store, props, lock):
        make_master(tmp_path / "master.xlsx", build_level(tmp_path, 20, level="es"))
        c = consolidator(store, props, lock)

        first = c.next_batch("ES")
        assert first.status == STATUS_BATCH_COMPLETE
        assert (first.start_index, first.end_index, first.total) == (0, 15, 20)
        assert first.batch_campuses == [f"C{i}" for i in range(15)]
        assert props.get(level_cursor_key("ES")) == "15"

        second = c.next_batch("ES")
        assert (second.start_index, second.end_index) == (15, 20)
        assert second.done is True
        assert props.get(level_cursor_key("ES")) == "20"

        third = c.next_batch("ES")
        assert third.status == STATUS_ALREADY_COMPLETE
        assert third.end_index == 20
        assert props.get(level_cursor_key("ES")) == "20"

        rows = data_rows(tmp_path, "AUGUST")
        assert [r[3] for r in rows] == [f"C{i}" for i in range(20)]

    def test_cursor_never_decreases_or_overshoots(self, tmp_path, store, props, lock):
        make_master(tmp_path / "master.xlsx", build_level(tmp_path, 7))
        props.set("CONSOLIDATE_BATCH_SIZE", "3")
        c = consolidator(store, props, lock)
        seen = []
        for _ in range(5):
            c.next_batch("ES")
            seen.append(c.state.cursor("ES"))
        assert seen == [3, 6, 7, 7, 7]

    def test_eligibility_skips_rows_without_campus_or_id(self, tmp_path, store, props, lock):
        roster = build_level(tmp_path, 3)
        roster.insert(1, ("x@example.org", "", "ES", "", "c_00.xlsx"))
        roster.insert(2, ("y@example.org", "No Sheet", "ES", "", ""))
        roster.append(("z@example.org", "Other", "MS", "", "c_01.xlsx"))
        make_master(tmp_path / "master.xlsx", roster)
        result = consolidator(store, props, lock).next_batch("es")
        assert result.total == 3
        assert result.batch_campuses == ["C0", "C1", "C2"]

    def test_no_campuses_for_level(self, tmp_path, store, props, lock):
        make_master(tmp_path / "master.xlsx", build_level(tmp_path, 2, level="ES"))
        result = consolidator(store, props, lock).start("HS")
        assert result.status == STATUS_NO_CAMPUSES
        assert "No campuses found for level HS" in format_batch_report(result)

    def test_start_without_campuses_keeps_state(self, tmp_path, store, props, lock):
        make_master(tmp_path / "master.xlsx", build_level(tmp_path, 2, level="ES"))
        props.set(level_cursor_key("HS"), "5")
        props.set(level_cleared_key("HS"), "true")
        before = props.as_dict()

        result = consolidator(store, props, lock).start("HS")

        assert result.status == STATUS_NO_CAMPUSES
        assert props.as_dict() == before

    def test_unknown_level_is_fatal(self, tmp_path, store, props, lock):
        make_master(tmp_path / "master.xlsx", [])
        with pytest.raises(ConfigurationError):
            consolidator(store, props, lock).next_batch("PK")

    def test_missing_info_sheet_is_fatal_without_side_effects(self, tmp_path, store, props, lock):
        make_master(tmp_path / "master.xlsx", [], with_info=False, month_rows={"AUGUST": [["old", 1, "A", "X", 1]]})
        with pytest.raises(ConfigurationError):
            consolidator(store, props, lock).next_batch("ES")
        assert props.as_dict() == {}
        assert data_rows(tmp_path, "AUGUST") == [["old", 1, "A", "X", 1]]
        assert not lock.path.exists()

    def test_resumes_across_instances_with_json_store(self, tmp_path, store, lock):
        make_master(tmp_path / "master.xlsx", build_level(tmp_path, 4))
        state_file = tmp_path / ".consolidation_state.json"
        JsonPropertyStore(state_file).set("CONSOLIDATE_BATCH_SIZE", "3")

        consolidator(store, JsonPropertyStore(state_file), lock).start("ES")
        second = consolidator(store, JsonPropertyStore(state_file), lock).next_batch("ES")

        assert (second.start_index, second.end_index) == (3, 4)
        assert len(data_rows(tmp_path, "AUGUST")) == 4


class TestClearOnce:
    def test_stale_rows_cleared_once_then_appended(self, tmp_path, store, props, lock):
        stale = {m: [["stale", 1, "A", "Old", 1], ["stale", 2, "B", "Old", 2]] for m in MONTH_SHEETS}
        make_master(tmp_path / "master.xlsx", build_level(tmp_path, 4), month_rows=stale)
        props.set("CONSOLIDATE_BATCH_SIZE", "2")
        c = consolidator(store, props, lock)

        first = c.start("ES")
        assert first.cleared is True
        assert props.get(level_cleared_key("ES")) == "true"
        after_first = data_rows(tmp_path, "AUGUST")
        assert [r[3] for r in after_first] == ["C0", "C1"]
        assert data_rows(tmp_path, "MARCH") == []

        second = c.next_batch("ES")
        assert second.cleared is False
        after_second = data_rows(tmp_path, "AUGUST")
        assert after_second[:2] == after_first
        assert [r[3] for r in after_second] == ["C0", "C1", "C2", "C3"]

    def test_headers_survive_clear(self, tmp_path, store, props, lock):
        make_master(tmp_path / "master.xlsx", build_level(tmp_path, 1), month_rows={"AUGUST": [["x", 1, 1, 1, 1]]})
        consolidator(store, props, lock).start("ES")
        ws = load_workbook(tmp_path / "master.xlsx")["AUGUST"]
        assert ws["A1"].value == "AUGUST"
        assert ws["B2"].value == "Grade"

    def test_restart_before_any_batch_does_not_duplicate(self, tmp_path, store, props, lock):
        make_master(tmp_path / "master.xlsx", build_level(tmp_path, 3, level="MS"))
        c = consolidator(store, props, lock)
        c.start("MS")
        c.start("MS")
        assert len(data_rows(tmp_path, "AUGUST")) == 3
        assert c.state.cursor("MS") == 3

    def test_clear_happens_even_when_batch_has_no_data(self, tmp_path, store, props, lock):
        roster = [("a@example.org", "Ghost", "HS", "", "missing.xlsx")]
        make_master(tmp_path / "master.xlsx", roster, month_rows={"AUGUST": [["old", 1, 1, 1, 1]]})
        result = consolidator(store, props, lock).start("HS")
        assert result.rows_by_month == {}
        assert data_rows(tmp_path, "AUGUST") == []
        assert "No data this run" in format_batch_report(result)


class TestExecutor:
    def test_row_filter_and_blank_rows(self, tmp_path, store, props, lock):
        make_campus(
            tmp_path / "c.xlsx",
            {"SEPTEMBER": [["", "", "", "North", ""], ["Smith", 2, "B", "North", 21], ["  ", None, None, "North", None]]},
        )
        make_master(tmp_path / "master.xlsx", [("a@example.org", "North", "ES", "", "c.xlsx")])
        result = consolidator(store, props, lock).start("ES")
        assert result.rows_by_month == {"SEPTEMBER": 1}
        assert data_rows(tmp_path, "SEPTEMBER") == [["Smith", 2, "B", "North", 21]]
        assert result.processed_campuses == ["North"]

    def test_wide_rows_truncated_narrow_rows_padded(self, tmp_path, store, props, lock):
        make_campus(tmp_path / "wide.xlsx", {"AUGUST": [[1, 2, 3, "W", 5, 6, 7]]})
        make_campus(tmp_path / "narrow.xlsx", {"AUGUST": [["n", 2, 3]]}, header=["Teacher", "Grade", "Class"])
        make_master(
            tmp_path / "master.xlsx",
            [("a@example.org", "Wide", "ES", "", "wide.xlsx"), ("b@example.org", "Narrow", "ES", "", "narrow.xlsx")],
        )
        consolidator(store, props, lock).start("ES")

        master = store.open_document("master.xlsx")
        sheet = store.get_sheet(master, "AUGUST")
        assert store.get_dimensions(sheet) == (4, 5)
        assert store.read_range(sheet, 3, 1, 2, 5) == [[1, 2, 3, "W", 5], ["n", 2, 3, "", ""]]

    def test_missing_destination_sheet_is_created_with_source_width(self, tmp_path, store, props, lock):
        months = [m for m in MONTH_SHEETS if m != "OCTOBER"]
        make_campus(tmp_path / "c.xlsx", {"OCTOBER": [["a", "b", "c", "d"]]}, header=["h1", "h2", "h3", "h4"])
        make_master(tmp_path / "master.xlsx", [("a@example.org", "North", "ES", "", "c.xlsx")], months=months)
        result = consolidator(store, props, lock).start("ES")

        assert result.rows_by_month == {"OCTOBER": 1}
        master = store.open_document("master.xlsx")
        sheet = store.get_sheet(master, "OCTOBER")
        assert sheet is not None
        assert store.get_dimensions(sheet) == (3, 4)

    def test_source_sheets_missing_or_header_only_are_skipped(self, tmp_path, store, props, lock):
        make_campus(tmp_path / "c.xlsx", {"MARCH": [["m", 1, 1, "North", 1]]}, months=["JANUARY", "MARCH"])
        make_master(tmp_path / "master.xlsx", [("a@example.org", "North", "ES", "", "c.xlsx")])
        result = consolidator(store, props, lock).start("ES")
        assert result.rows_by_month == {"MARCH": 1}
        assert result.errors == []

    def test_unreachable_document_is_skipped(self, tmp_path, store, props, lock):
        make_master(tmp_path / "master.xlsx", build_level(tmp_path, 5, missing=(2,)))
        result = consolidator(store, props, lock).start("ES")

        assert result.status == STATUS_BATCH_COMPLETE
        assert result.end_index == 5
        assert result.processed_campuses == ["C0", "C1", "C3", "C4"]
        assert result.errors == ["Skip C2: cannot open spreadsheet c_02.xlsx"]
        assert [r[3] for r in data_rows(tmp_path, "AUGUST")] == ["C0", "C1", "C3", "C4"]
        assert "Skip C2" in format_batch_report(result)

    def test_same_campus_name_twice_accumulates(self, tmp_path, store, props, lock):
        make_campus(tmp_path / "a.xlsx", {"AUGUST": [["a", 1, 1, "Dup", 1]]})
        make_campus(tmp_path / "b.xlsx", {"AUGUST": [["b", 1, 1, "Dup", 1]]})
        make_master(
            tmp_path / "master.xlsx",
            [("a@example.org", "Dup", "ES", "", "a.xlsx"), ("b@example.org", "Dup", "ES", "", "b.xlsx")],
        )
        result = consolidator(store, props, lock).start("ES")
        assert result.rows_by_month == {"AUGUST": 2}
        assert [r[0] for r in data_rows(tmp_path, "AUGUST")] == ["a", "b"]


class TestLocking:
    def test_busy_lock_leaves_state_untouched(self, tmp_path, store, props, lock):
        make_master(tmp_path / "master.xlsx", build_level(tmp_path, 2), month_rows={"AUGUST": [["old", 1, 1, 1, 1]]})
        other = ScriptLock(lock.path)
        assert other.acquire(0)
        try:
            result = consolidator(store, props, lock).start("ES")
        finally:
            other.release()

        assert result.status == STATUS_BUSY
        assert props.as_dict() == {}
        assert data_rows(tmp_path, "AUGUST") == [["old", 1, 1, 1, 1]]
        assert format_batch_report(result) == "Another instance is running. Try again later."

    def test_lock_released_after_already_complete(self, tmp_path, store, props, lock):
        make_master(tmp_path / "master.xlsx", build_level(tmp_path, 1))
        props.set(level_cursor_key("ES"), "1")
        result = consolidator(store, props, lock).next_batch("ES")
        assert result.status == STATUS_ALREADY_COMPLETE
        assert not lock.path.exists()


class TestReporting:
    def test_progress_and_status(self, tmp_path, store, props, lock):
        roster = build_level(tmp_path, 2, level="ES") + build_level(tmp_path, 1, level="HS", prefix="H")
        make_master(tmp_path / "master.xlsx", roster)
        c = consolidator(store, props, lock)
        c.set_batch_size(1)
        c.start("ES")
        c.start("HS")

        assert c.progress("es") == (1, 2)
        status = c.status()
        assert status.batch_size == 1
        assert status.progress == {"ES": (1, 2), "MS": (0, 0), "HS": (1, 1)}
        assert format_status(status) == "Batch size: 1\n\nES: 1 / 2\nMS: 0 / 0\nHS: 1 / 1 (DONE)"

    def test_batch_report_text(self, tmp_path, store, props, lock):
        make_master(tmp_path / "master.xlsx", build_level(tmp_path, 2))
        result = consolidator(store, props, lock).start("ES")
        assert format_batch_report(result) == (
            "Level ES batch complete.\nProcessed campuses: 2\nAUGUST: 2 rows\nProgress: 2 / 2 (DONE)"
        )

    def test_csv_report(self, tmp_path, store, props, lock):
        make_master(tmp_path / "master.xlsx", build_level(tmp_path, 2))
        result = consolidator(store, props, lock).start("ES")
        out = tmp_path / "report.csv"
        write_batch_report(result, out)
        df = pd.read_csv(out, encoding="utf-8-sig")
        assert list(df["month"]) == list(MONTH_SHEETS)
        assert int(df.loc[df["month"] == "AUGUST", "rows_appended"].iloc[0]) == 2

    def test_status_report_done_flag(self):
        status = StatusReport(batch_size=15, progress={"ES": (0, 0), "MS": (3, 3), "HS": (1, 2)})
        assert status.is_done("ES") is False
        assert status.is_done("MS") is True
        assert status.is_done("HS") is False
