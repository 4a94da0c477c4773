"""PDF export of a filtered transaction history."""

from __future__ import annotations

import datetime as dt
import re
from dataclasses import dataclass
from io import BytesIO
from typing import Optional
from xml.sax.saxutils import escape

from reportlab.lib import colors
from reportlab.lib.pagesizes import A4, landscape
from reportlab.lib.styles import getSampleStyleSheet
from reportlab.lib.units import mm
from reportlab.platypus import Paragraph, SimpleDocTemplate, Spacer, Table, TableStyle

from .schemas import FlowTotals, TransactionEntry

TRANSACTION_LABELS = {
    "ADD": "Incoming",
    "DISTRIBUTE": "Distribution",
    "DEATH": "Death",
    "DAMAGED": "Damaged",
}

HEADER = ["Type", "Lobster", "Weight", "Quantity", "Destination/Origin", "Notes", "Date"]
HEADER_COLOR = colors.HexColor("#3b82f6")
TEXT_COLOR = colors.HexColor("#212121")


@dataclass(frozen=True)
class ReportFilters:
    start_date: Optional[dt.date] = None
    end_date: Optional[dt.date] = None
    lobster_type: Optional[str] = None
    transaction_type: Optional[str] = None


def _long_date(value: dt.date) -> str:
    return value.strftime("%d %B %Y")


def totals_line(totals: FlowTotals) -> str:
    return f"Incoming: {totals.incoming} | Outgoing: {totals.outgoing}"


def filter_summary(filters: ReportFilters, totals: FlowTotals) -> str:
    parts = []
    if filters.start_date:
        parts.append(f"From: {_long_date(filters.start_date)}")
    if filters.end_date:
        parts.append(f"To: {_long_date(filters.end_date)}")
    parts.append(f"Lobster type: {filters.lobster_type or 'All'}")
    if filters.transaction_type:
        parts.append(f"Transaction type: {TRANSACTION_LABELS.get(filters.transaction_type, filters.transaction_type)}")
    parts.append(totals_line(totals))
    return " | ".join(parts)


def report_filename(filters: ReportFilters) -> str:
    parts = ["transactions"]
    if filters.start_date or filters.end_date:
        start = filters.start_date.strftime("%Y%m%d") if filters.start_date else "no_start"
        end = filters.end_date.strftime("%Y%m%d") if filters.end_date else "no_end"
        parts.append(f"{start}-{end}")
    if filters.lobster_type:
        parts.append(re.sub(r"[^a-zA-Z0-9_-]", "", re.sub(r"\s+", "_", filters.lobster_type)))
    else:
        parts.append("AllTypes")
    parts.append(filters.transaction_type or "AllTransactions")
    return "_".join(parts) + ".pdf"


def report_rows(entries: list[TransactionEntry]) -> list[list[str]]:
    return [
        [
            TRANSACTION_LABELS.get(entry.transaction_type, "Unknown"),
            entry.lobster_type,
            f"{entry.weight_range} g",
            str(abs(entry.quantity)),
            entry.destination or "-",
            entry.notes or "-",
            _long_date(entry.transaction_date.date()),
        ]
        for entry in entries
    ]


def render_transactions_pdf(entries: list[TransactionEntry], filters: ReportFilters, totals: FlowTotals) -> bytes:
    buffer = BytesIO()
    document = SimpleDocTemplate(
        buffer,
        pagesize=landscape(A4),
        leftMargin=14 * mm,
        rightMargin=14 * mm,
        topMargin=14 * mm,
        bottomMargin=14 * mm,
        title="Transaction history",
    )
    styles = getSampleStyleSheet()
    cell_style = styles["BodyText"]

    body = [[Paragraph(escape(value), cell_style) for value in row] for row in report_rows(entries)]
    footer = ["", "", "", totals_line(totals), "", "", ""]
    table = Table([HEADER, *body, footer], repeatRows=1)
    table.setStyle(
        TableStyle(
            [
                ("GRID", (0, 0), (-1, -1), 0.25, colors.grey),
                ("BACKGROUND", (0, 0), (-1, 0), HEADER_COLOR),
                ("TEXTCOLOR", (0, 0), (-1, 0), colors.white),
                ("TEXTCOLOR", (0, 1), (-1, -1), TEXT_COLOR),
                ("FONTNAME", (0, 0), (-1, 0), "Helvetica-Bold"),
                ("FONTSIZE", (0, 0), (-1, -1), 10),
                ("SPAN", (3, -1), (-1, -1)),
                ("FONTNAME", (0, -1), (-1, -1), "Helvetica-Bold"),
                ("VALIGN", (0, 0), (-1, -1), "TOP"),
            ]
        )
    )

    document.build(
        [
            Paragraph("Transaction history", styles["Title"]),
            Paragraph(escape(filter_summary(filters, totals)), styles["Normal"]),
            Spacer(1, 6 * mm),
            table,
        ]
    )
    pdf = buffer.getvalue()
    buffer.close()
    return pdf
