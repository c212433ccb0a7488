"""
Tests for gradebook/exports.py — export_rankings_workbook.
"""

import os
import sys
from datetime import datetime, timezone

import pytest
from openpyxl import load_workbook

sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from gradebook.exports import HEADERS, export_rankings_workbook
from gradebook.models import RankingSnapshot

T0 = datetime(2025, 6, 1, 10, 0, tzinfo=timezone.utc)


def _snap(student, total, average, position, published=False):
    return RankingSnapshot(
        school_id="school-1",
        section_id="sec-1",
        term_id="t1",
        academic_year_id="2025",
        student_id=student,
        total_score=total,
        average=average,
        total_subjects=2,
        position=position,
        computed_at=T0,
        published=published,
    )


@pytest.fixture
def workbook_path(tmp_path):
    path = tmp_path / "rankings.xlsx"
    snapshots = [_snap("stu-c", 80, 40, 3), _snap("stu-a", 180, 90, 1, True), _snap("stu-b", 120, 60, 2)]
    export_rankings_workbook(str(path), snapshots, school_name="Hill School", pass_mark=50)
    return path


class TestExportRankingsWorkbook:
    def test_sheets(self, workbook_path):
        wb = load_workbook(workbook_path)
        assert wb.sheetnames == ["Rankings", "Info"]

    def test_rows_sorted_by_position(self, workbook_path):
        ws = load_workbook(workbook_path)["Rankings"]
        rows = list(ws.iter_rows(values_only=True))
        assert list(rows[0]) == HEADERS
        assert [r[1] for r in rows[1:]] == ["stu-a", "stu-b", "stu-c"]
        assert rows[1][5] == "Yes"
        assert rows[2][5] == "No"

    def test_rows_shaded_by_average(self, workbook_path):
        ws = load_workbook(workbook_path)["Rankings"]
        fills = [ws.cell(row=r, column=1).fill.start_color.rgb.lower() for r in (2, 3, 4)]
        assert fills[0].endswith("d5f5e3")
        assert fills[1].endswith("fef9e7")
        assert fills[2].endswith("fadbd8")

    def test_info_sheet(self, workbook_path):
        ws = load_workbook(workbook_path)["Info"]
        assert ws["B1"].value == "Hill School"
        assert ws["B3"].value == 3
