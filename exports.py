"""
Transaction history downloads.

Rows are flattened once by ``transaction_rows`` and then written either as
CSV or as a PDF table.
"""
import csv
import datetime
from io import BytesIO, StringIO
from typing import Dict, List, Optional
from xml.sax.saxutils import escape

from reportlab.lib import colors
from reportlab.lib.pagesizes import landscape, letter
from reportlab.lib.styles import ParagraphStyle, getSampleStyleSheet
from reportlab.lib.units import inch
from reportlab.platypus import Paragraph, SimpleDocTemplate, Spacer, Table, TableStyle

import lending

FIELDS = ['date', 'book', 'author', 'action', 'due_date', 'late_fee']
USER_FIELDS = ['user', 'role']


def _fmt(value: Optional[datetime.datetime]) -> str:
    return value.strftime('%Y-%m-%d %H:%M') if value else ''


def transaction_rows(transactions: List[lending.Transaction], books: Dict[str, dict],
                     users: Optional[Dict[str, dict]] = None, now=None,
                     per_day: int = lending.DEFAULT_LATE_FEE) -> List[dict]:
    """Flatten parsed transactions for export, most recent first."""
    rows = []
    for index, t in enumerate(transactions):
        book = books.get(t.book_id) or {}
        row = {
            'date': _fmt(t.transaction_date),
            'book': book.get('title') or 'Unknown book',
            'author': book.get('author') or '',
            'action': t.action,
            'due_date': _fmt(t.due_date),
            'late_fee': lending.late_fee(transactions, index, now, per_day),
        }
        if users is not None:
            user = users.get(t.user_id or '') or {}
            row['user'] = user.get('email') or f'User {(t.user_id or "")[:8]}'
            row['role'] = user.get('role') or 'student'
        rows.append(row)
    return rows


def filter_rows(rows: List[dict], query: str = '', action: str = 'all') -> List[dict]:
    """Rows whose book, author or user contains ``query`` and whose action matches."""
    query = (query or '').strip().lower()
    action = action or 'all'
    matched = []
    for row in rows:
        if action != 'all' and row['action'] != action:
            continue
        if query and not any(query in (row.get(field) or '').lower()
                             for field in ('book', 'author', 'user')):
            continue
        matched.append(row)
    return matched


def transactions_csv(rows: List[dict], include_user: bool = False) -> str:
    fieldnames = FIELDS + (USER_FIELDS if include_user else [])
    si = StringIO()
    writer = csv.DictWriter(si, fieldnames=fieldnames, extrasaction='ignore')
    writer.writeheader()
    for row in rows:
        writer.writerow(row)
    return si.getvalue()


def transactions_pdf(rows: List[dict], title: str, include_user: bool = False) -> bytes:
    buffer = BytesIO()
    doc = SimpleDocTemplate(buffer, pagesize=landscape(letter),
                            rightMargin=inch / 2, leftMargin=inch / 2,
                            topMargin=inch / 2, bottomMargin=inch / 2)
    styles = getSampleStyleSheet()
    normal_style = ParagraphStyle('normal', parent=styles['Normal'], fontSize=9, leading=11)
    small_style = ParagraphStyle('small', parent=styles['Normal'], fontSize=8, leading=10)
    header_style = ParagraphStyle('header', parent=styles['Normal'], fontSize=8, leading=9)

    labels = ['Date', 'Book', 'Author', 'Action', 'Due date', 'Late fee']
    col_widths = [90, 200, 120, 50, 90, 50]
    if include_user:
        labels += ['User', 'Role']
        col_widths = [80, 170, 100, 50, 80, 45, 120, 55]

    data = [[Paragraph(label, header_style) for label in labels]]
    for row in rows:
        cells = [
            row['date'],
            Paragraph(escape(row['book']), normal_style),
            Paragraph(escape(row['author']), small_style),
            row['action'],
            row['due_date'],
            str(row['late_fee']),
        ]
        if include_user:
            cells += [Paragraph(escape(row.get('user', '')), small_style), row.get('role', '')]
        data.append(cells)

    table = Table(data, colWidths=col_widths, repeatRows=1)
    table.setStyle(TableStyle([
        ('BACKGROUND', (0, 0), (-1, 0), colors.lightgrey),
        ('TEXTCOLOR', (0, 0), (-1, 0), colors.black),
        ('VALIGN', (0, 0), (-1, -1), 'TOP'),
        ('INNERGRID', (0, 0), (-1, -1), 0.25, colors.grey),
        ('BOX', (0, 0), (-1, -1), 0.5, colors.black),
        ('FONTSIZE', (0, 1), (-1, -1), 8),
        ('ALIGN', (5, 1), (5, -1), 'RIGHT'),
        ('LEFTPADDING', (0, 0), (-1, -1), 4),
        ('RIGHTPADDING', (0, 0), (-1, -1), 4),
    ]))

    generated = datetime.datetime.now().strftime('%Y-%m-%d %H:%M')
    flowables = [
        Paragraph(escape(title), styles['Title']),
        Paragraph(f'Generated {generated}, {len(rows)} transactions', normal_style),
        Spacer(1, 12),
        table,
    ]
    doc.build(flowables)
    return buffer.getvalue()
