"""
exports.py — Excel workbook of a cohort's ranking snapshots.
"""

from datetime import datetime
from typing import List

from openpyxl import Workbook
from openpyxl.styles import Alignment, Border, Font, PatternFill, Side

from gradebook.models import RankingSnapshot

HEADERS = ["Position", "Student ID", "Total Score", "Average", "Subjects", "Published", "Computed At"]


def export_rankings_workbook(
    output_path: str,
    snapshots: List[RankingSnapshot],
    school_name: str,
    pass_mark: float = 50,
):
    """Write snapshots sorted by position, shading rows by average against the pass mark."""
    header_font = Font(bold=True, color="FFFFFF", size=11)
    header_fill = PatternFill(start_color="1a1a2e", end_color="1a1a2e", fill_type="solid")
    red_fill = PatternFill(start_color="fadbd8", end_color="fadbd8", fill_type="solid")
    green_fill = PatternFill(start_color="d5f5e3", end_color="d5f5e3", fill_type="solid")
    yellow_fill = PatternFill(start_color="fef9e7", end_color="fef9e7", fill_type="solid")
    thin_border = Border(
        left=Side(style="thin"), right=Side(style="thin"),
        top=Side(style="thin"), bottom=Side(style="thin"),
    )

    wb = Workbook()
    ws = wb.active
    ws.title = "Rankings"
    ws.sheet_properties.tabColor = "1a1a2e"
    ws.append(HEADERS)

    for s in sorted(snapshots, key=lambda s: (s.position, s.student_id)):
        ws.append([
            s.position,
            s.student_id,
            round(s.total_score, 2),
            round(s.average, 2),
            s.total_subjects,
            "Yes" if s.published else "No",
            s.computed_at.strftime("%Y-%m-%d %H:%M") if s.computed_at else "",
        ])

    for cell in ws[1]:
        cell.font = header_font
        cell.fill = header_fill
        cell.alignment = Alignment(horizontal="center")
        cell.border = thin_border

    for row in ws.iter_rows(min_row=2, max_row=ws.max_row):
        avg = row[3].value
        fill = green_fill if avg >= 70 else (yellow_fill if avg >= pass_mark else red_fill)
        for cell in row:
            cell.border = thin_border
            cell.alignment = Alignment(horizontal="center")
            cell.fill = fill

    ws.freeze_panes = "A2"
    for col_cells in ws.columns:
        max_len = max(len(str(cell.value or "")) for cell in col_cells)
        ws.column_dimensions[col_cells[0].column_letter].width = min(max_len + 4, 30)

    # ── Info sheet ──────────────────────────────────────────────────
    ws_info = wb.create_sheet("Info")
    ws_info.append(["School", school_name])
    ws_info.append(["Pass Mark", pass_mark])
    ws_info.append(["Students", len(snapshots)])
    ws_info.append(["Exported", datetime.now().strftime("%Y-%m-%d %H:%M")])
    for row in ws_info.iter_rows(min_row=1, max_row=ws_info.max_row):
        row[0].font = Font(bold=True)

    wb.save(output_path)
