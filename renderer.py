"""PDF rendering of invoices. Pure function of the invoice data."""
from datetime import datetime
from io import BytesIO
from typing import Any, Dict

from reportlab.lib.colors import HexColor, white
from reportlab.lib.pagesizes import A4
from reportlab.pdfgen import canvas

BRAND = HexColor("#4177BC")
MUTED = HexColor("#475569")
BAND = HexColor("#f1f5f9")


def _fmt(value: Any) -> str:
    try:
        return f"{float(value):,.2f}"
    except (TypeError, ValueError):
        return str(value or "")


def render(invoice: Dict[str, Any]) -> bytes:
    buffer = BytesIO()
    width, height = A4
    pdf = canvas.Canvas(buffer, pagesize=A4)
    pdf.setTitle(f"Invoice {invoice.get('invoiceId', '')}")

    pdf.setFillColor(BRAND)
    pdf.rect(0, height - 120, width, 120, stroke=0, fill=1)
    pdf.setFillColor(white)
    pdf.setFont("Helvetica-Bold", 25)
    pdf.drawString(50, height - 65, "INVOICE")
    pdf.setFont("Helvetica", 10)
    pdf.drawString(50, height - 85, f"Invoice Number: {invoice.get('invoiceId', '')}")
    created = invoice.get("createdAt")
    if isinstance(created, datetime):
        created = created.date().isoformat()
    pdf.drawString(50, height - 100, f"Date: {created or ''}")

    pdf.setFillColor(MUTED)
    pdf.setFont("Helvetica", 12)
    pdf.drawString(50, height - 150, "BILL TO:")
    pdf.setFont("Helvetica-Bold", 11)
    pdf.drawString(50, height - 168, str(invoice.get("clientName") or "N/A"))
    pdf.setFont("Helvetica", 11)
    pdf.drawString(50, height - 183, str(invoice.get("clientEmail") or ""))
    pdf.drawString(300, height - 150, f"Project: {invoice.get('projectTitle', '')}")
    pdf.drawString(300, height - 168, f"Status: {invoice.get('status', '')}")

    y = height - 230
    pdf.setFillColor(BAND)
    pdf.rect(50, y - 5, 500, 20, stroke=0, fill=1)
    pdf.setFillColor(MUTED)
    pdf.setFont("Helvetica", 10)
    for x, label in ((60, "Item Description"), (350, "Qty"), (420, "Price"), (490, "Total")):
        pdf.drawString(x, y, label)

    y -= 25
    for item in invoice.get("items") or []:
        qty = item.get("qty", 0)
        price = item.get("price", 0)
        pdf.drawString(60, y, str(item.get("name", "")))
        pdf.drawString(350, y, str(qty))
        pdf.drawString(420, y, _fmt(price))
        pdf.drawString(490, y, _fmt(float(qty or 0) * float(price or 0)))
        y -= 20
        if y < 100:
            pdf.showPage()
            pdf.setFont("Helvetica", 10)
            y = height - 60

    pdf.setFillColor(BRAND)
    pdf.rect(330, y - 30, 220, 30, stroke=0, fill=1)
    pdf.setFillColor(white)
    pdf.setFont("Helvetica-Bold", 10)
    pdf.drawString(340, y - 19, f"GRAND TOTAL: {invoice.get('currency') or ''} {_fmt(invoice.get('grandTotal'))}")
    pdf.setFillColor(MUTED)
    pdf.setFont("Helvetica", 10)
    pdf.drawString(340, y - 45, f"Remaining due: {_fmt(invoice.get('remainingDue'))}")

    pdf.showPage()
    pdf.save()
    return buffer.getvalue()
