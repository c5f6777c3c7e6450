# report_pdf.py
from io import BytesIO
from reportlab.lib.pagesizes import A4
from reportlab.lib.units import mm
from reportlab.lib import colors
from reportlab.pdfgen import canvas
from reportlab.platypus import Table, TableStyle, Paragraph
from reportlab.lib.styles import getSampleStyleSheet
from datetime import datetime
from zoneinfo import ZoneInfo  # Kolkata timestamp

import aggregator


def _fmt_money(v):
    try:
        return f"{float(v):,.2f}"
    except Exception:
        return "—"


def _fmt_count(v):
    try:
        f = float(v)
        return str(int(f)) if f == int(f) else f"{f:,.2f}"
    except Exception:
        return "—"


def _draw_paragraph(c, text, style, x, y, max_width):
    p = Paragraph(text, style)
    w, h = p.wrapOn(c, max_width, 1000)
    p.drawOn(c, x, y - h)
    return y - h


_TABLE_STYLE = TableStyle([
    ("FONT", (0, 0), (-1, 0), "Helvetica-Bold", 10),
    ("TEXTCOLOR", (0, 0), (-1, 0), colors.white),
    ("BACKGROUND", (0, 0), (-1, 0), colors.HexColor("#233b64")),
    ("FONTSIZE", (0, 0), (-1, -1), 9),
    ("GRID", (0, 0), (-1, -1), 0.25, colors.HexColor("#d8e2f0")),
    ("ROWBACKGROUNDS", (0, 1), (-1, -1), [colors.whitesmoke, colors.HexColor("#f7f9fc")]),
    ("VALIGN", (0, 0), (-1, -1), "MIDDLE"),
    ("ALIGN", (1, 1), (-1, -1), "RIGHT"),
    ("LEFTPADDING", (0, 0), (-1, -1), 6),
    ("RIGHTPADDING", (0, 0), (-1, -1), 6),
])


def build_dashboard_pdf(*, sales, subjects, title="Study Material Sales – Dashboard") -> bytes:
    """
    Dashboard report (A4 portrait)

    Sections:
      - Headline figures (revenue, deliveries, profit)
      - Subject sales counts per category
      - Student profit table
      - Student page totals
    """
    stats = aggregator.summarize(sales or [], subjects or {})

    buf = BytesIO()
    c = canvas.Canvas(buf, pagesize=A4)
    page_w, page_h = A4

    x_margin = 14 * mm
    y_margin = 14 * mm
    y = page_h - y_margin
    max_width = page_w - 2 * x_margin

    styles = getSampleStyleSheet()
    title_style = styles["Heading2"]
    title_style.spaceAfter = 0
    section_style = styles["Heading3"]
    subtitle_style = styles["Normal"]
    subtitle_style.leading = 14

    def ensure_space(h_needed):
        nonlocal y
        if y - h_needed < 18 * mm:
            c.showPage()
            y = page_h - y_margin

    def draw_table(data, col_widths):
        nonlocal y
        table = Table(data, colWidths=col_widths, repeatRows=1)
        table.setStyle(_TABLE_STYLE)
        pending = [table]
        while pending:
            t = pending.pop(0)
            avail = y - y_margin
            tw, th = t.wrapOn(c, max_width, avail)
            fresh_page = y >= page_h - y_margin
            if th <= avail or fresh_page and len(t.split(max_width, avail)) < 2:
                t.drawOn(c, x_margin, y - th)
                y -= th
                continue
            parts = t.split(max_width, avail)
            if len(parts) < 2:
                # nothing fits below the current position
                c.showPage()
                y = page_h - y_margin
                pending.insert(0, t)
                continue
            pending[0:0] = parts
        y -= 8 * mm

    def draw_section(text):
        nonlocal y
        ensure_space(30 * mm)
        y = _draw_paragraph(c, text, section_style, x_margin, y, max_width)
        y -= 2 * mm

    y = _draw_paragraph(c, title, title_style, x_margin, y, max_width)
    ts = datetime.now(ZoneInfo("Asia/Kolkata")).strftime("%Y-%m-%d %H:%M")
    y = _draw_paragraph(c, f"Generated: {ts}", subtitle_style, x_margin, y, max_width)
    y -= 6 * mm

    draw_table([
        ["Figure", "Value"],
        ["Total entries", str(stats["total_entries"])],
        ["Revenue (total)", _fmt_money(stats["total_revenue"])],
        ["Revenue (pending)", _fmt_money(stats["pending_revenue"])],
        ["Deliveries pending / delivered", f"{stats['pending_deliveries']} / {stats['delivered_count']}"],
        ["Payments pending", str(stats["pending_payments"])],
        ["Total profit", _fmt_money(stats["total_profit"])],
    ], [90 * mm, 60 * mm])

    draw_section("Subject sales")
    counts_rows = [["Category", "Subject", "Sold"]]
    for category, counts in stats["subject_counts"].items():
        for code in sorted(counts):
            counts_rows.append([category, code, str(counts[code])])
    if len(counts_rows) == 1:
        counts_rows.append(["—"] * 3)
    draw_table(counts_rows, [40 * mm, 60 * mm, 40 * mm])

    draw_section("Student profit")
    profit_rows = [["Student", "Amount", "Actual price", "Profit"]]
    for r in stats["student_profits"]:
        profit_rows.append([
            r["name"], _fmt_money(r["amount"]), _fmt_money(r["totalActualPrice"]), _fmt_money(r["profit"]),
        ])
    if len(profit_rows) == 1:
        profit_rows.append(["—"] * 4)
    draw_table(profit_rows, [70 * mm, 35 * mm, 35 * mm, 35 * mm])

    draw_section("Student pages")
    page_rows = [["Student", "Subjects", "Pages"]]
    for r in stats["student_pages"]:
        page_rows.append([r["name"], ", ".join(r["subjects"]), _fmt_count(r["pages"])])
    if len(page_rows) == 1:
        page_rows.append(["—"] * 3)
    draw_table(page_rows, [60 * mm, 85 * mm, 30 * mm])

    c.showPage()
    c.save()
    return buf.getvalue()
