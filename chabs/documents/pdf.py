"""
Quotation and order PDFs.

    quotation_pdf(provider, quotation_id) -> bytes
    order_pdf(provider, order_id)         -> bytes
    render_document(kind, record, customer, product_names) -> bytes

Drawn straight onto a reportlab canvas: header with document number and
date, customer block, line items table (paged), totals box. Totals are
printed from the stored record; they are never recomputed here.
"""

import io
import os
import logging
from datetime import datetime

from reportlab.lib.pagesizes import letter
from reportlab.lib.colors import HexColor, black
from reportlab.pdfgen import canvas

log = logging.getLogger("chabs.documents")

COMPANY = {
    "name": os.environ.get("CHABS_COMPANY_NAME", "CHABS Inventory"),
    "address": os.environ.get("CHABS_COMPANY_ADDRESS", ""),
    "email": os.environ.get("CHABS_COMPANY_EMAIL", ""),
    "phone": os.environ.get("CHABS_COMPANY_PHONE", ""),
}

TITLES = {"quotations": "QUOTATION", "orders": "ORDER"}
NUMBER_FIELDS = {"quotations": "quote_number", "orders": "order_number"}

HEADER_BG = HexColor("#b8c6e0")
ROW_LINE_CLR = HexColor("#bbbbbb")
PAD = 4
ROW_H = 18

# Line table: (header, share of table width, alignment)
COLUMNS = [
    ("#", 0.06, "C"),
    ("Product", 0.44, "L"),
    ("Qty", 0.10, "R"),
    ("Unit Price", 0.14, "R"),
    ("Disc %", 0.10, "R"),
    ("Total", 0.16, "R"),
]


def _money(value) -> str:
    try:
        return f"${float(value):,.2f}"
    except (TypeError, ValueError):
        return "$0.00"


def _fmt_date(iso: str) -> str:
    try:
        return datetime.fromisoformat(iso).strftime("%b %d, %Y")
    except (TypeError, ValueError):
        return iso or ""


def _fit(c, text, width, font="Helvetica", size=9) -> str:
    """Truncate text with an ellipsis so it fits `width` points."""
    text = str(text)
    if c.stringWidth(text, font, size) <= width:
        return text
    while text and c.stringWidth(text + "…", font, size) > width:
        text = text[:-1]
    return text + "…"


def _cell(c, text, x, w, y, align):
    if align == "L":
        c.drawString(x + PAD, y, text)
    elif align == "R":
        c.drawRightString(x + w - PAD, y, text)
    else:
        c.drawCentredString(x + w / 2, y, text)


def _draw_header(c, kind, record, customer, page):
    W, H = letter
    LM, RM = 40, W - 40
    y = H - 55
    c.setFillColor(black)
    c.setFont("Helvetica-Bold", 26)
    c.drawRightString(RM, y, TITLES[kind])
    c.setFont("Helvetica-Bold", 14)
    c.drawString(LM, y, COMPANY["name"])
    c.setFont("Helvetica", 9)
    cy = y - 14
    for ln in (COMPANY["address"], COMPANY["email"], COMPANY["phone"]):
        if ln:
            c.drawString(LM, cy, ln)
            cy -= 12

    number = record.get(NUMBER_FIELDS[kind], "")
    c.setFont("Helvetica-Bold", 10)
    c.drawRightString(RM, y - 20, f"No. {number}")
    c.setFont("Helvetica", 9)
    c.drawRightString(RM, y - 33, f"Date: {_fmt_date(record.get('created_at'))}")
    if kind == "quotations" and record.get("valid_until"):
        c.drawRightString(RM, y - 45, f"Valid until: {_fmt_date(record['valid_until'])}")
    c.drawRightString(RM, y - 57, f"Status: {record.get('status', '')}")
    if page > 1:
        c.drawRightString(RM, y - 69, f"Page {page}")

    by = min(cy, y - 69) - 16
    c.setFont("Helvetica-Bold", 10)
    c.drawString(LM, by, "Customer:")
    c.setFont("Helvetica", 9)
    ly = by
    for ln in (customer.get("name"), customer.get("company"),
               customer.get("address"), customer.get("email"), customer.get("phone")):
        if ln:
            c.drawString(LM + 60, ly, str(ln))
            ly -= 12
    return ly - 14


def _draw_table_head(c, y, edges, widths):
    c.setFillColor(HEADER_BG)
    c.rect(edges[0], y - ROW_H, sum(widths), ROW_H, fill=1, stroke=0)
    c.setFillColor(black)
    c.setFont("Helvetica-Bold", 9)
    for (label, _, align), x, w in zip(COLUMNS, edges, widths):
        _cell(c, label, x, w, y - ROW_H + 5, align)
    return y - ROW_H


def render_document(kind: str, record: dict, customer: dict, product_names: dict = None) -> bytes:
    """Draw one quotation or order. Returns the PDF bytes."""
    if kind not in TITLES:
        raise ValueError(f"no document layout for '{kind}'")
    product_names = product_names or {}
    buf = io.BytesIO()
    c = canvas.Canvas(buf, pagesize=letter)
    c.setTitle(f"{TITLES[kind].title()} {record.get(NUMBER_FIELDS[kind], '')}")
    W, H = letter
    LM, RM = 40, W - 40
    TW = RM - LM
    widths = [TW * share for _, share, _ in COLUMNS]
    edges = [LM + sum(widths[:i]) for i in range(len(widths))]

    page = 1
    y = _draw_table_head(c, _draw_header(c, kind, record, customer, page), edges, widths)
    c.setFont("Helvetica", 9)
    for n, item in enumerate(record.get("items") or [], 1):
        if y - ROW_H < 140:
            c.showPage()
            page += 1
            y = _draw_table_head(c, _draw_header(c, kind, record, customer, page), edges, widths)
            c.setFont("Helvetica", 9)
        pid = item.get("product_id", "")
        name = item.get("name") or product_names.get(pid) or pid
        values = [
            str(n),
            _fit(c, name, widths[1] - 2 * PAD),
            f"{item.get('quantity', 0):g}",
            _money(item.get("unit_price")),
            f"{item.get('discount', 0) or 0:g}",
            _money(item.get("total")),
        ]
        row_y = y - ROW_H
        for (_, _, align), x, w, text in zip(COLUMNS, edges, widths, values):
            _cell(c, text, x, w, row_y + 5, align)
        c.setStrokeColor(ROW_LINE_CLR)
        c.setLineWidth(0.3)
        c.line(LM, row_y, RM, row_y)
        y = row_y

    # Totals
    rows = [("Subtotal", record.get("subtotal"))]
    if kind == "quotations" and record.get("discount_amount"):
        rows.append((f"Discount ({record.get('discount', 0):g}%)",
                     -float(record["discount_amount"])))
    rows.append((f"Tax ({record.get('tax_rate', 0) or 0:g}%)", record.get("tax_amount")))
    rows.append(("Total", record.get("total")))
    ty = y - 24
    for label, value in rows:
        bold = label == "Total"
        c.setFont("Helvetica-Bold" if bold else "Helvetica", 11 if bold else 9.5)
        c.drawString(RM - 200, ty, label)
        c.drawRightString(RM, ty, _money(value))
        ty -= 16

    if record.get("notes"):
        c.setFont("Helvetica-Oblique", 9)
        c.drawString(LM, ty - 10, _fit(c, f"Notes: {record['notes']}", TW, "Helvetica-Oblique"))

    c.showPage()
    c.save()
    data = buf.getvalue()
    log.info("Rendered %s %s (%d pages, %d bytes)", kind,
             record.get(NUMBER_FIELDS[kind]), page, len(data),
             extra={"collection": kind, "record_id": record.get("id")})
    return data


def render_record(provider, kind: str, record_id: str) -> bytes:
    """Look up a record with its customer and product names, then render it."""
    record = provider.get(kind, record_id)
    customer = provider.resolve_customer(record.get("customer_id"))
    names = {p["id"]: p.get("name", "") for p in provider.list("products")}
    return render_document(kind, record, customer, names)


def quotation_pdf(provider, quotation_id: str) -> bytes:
    return render_record(provider, "quotations", quotation_id)


def order_pdf(provider, order_id: str) -> bytes:
    return render_record(provider, "orders", order_id)


def save_pdf(data: bytes, output_path: str) -> str:
    os.makedirs(os.path.dirname(output_path) or ".", exist_ok=True)
    with open(output_path, "wb") as f:
        f.write(data)
    return output_path
