from __future__ import annotations

import io
import logging

from reportlab.lib.pagesizes import A4
from reportlab.pdfgen import canvas

from models.d4_models import Invoice, Reservation
from services.errors import ExternalServiceError
from services.pricing_service import format_amount

LOGGER = logging.getLogger("d4_media.documents")

FONT = "Helvetica"
FONT_BOLD = "Helvetica-Bold"
MARGIN = 56
LINE = 16


class _PageWriter:
    def __init__(self, title: str):
        self.buffer = io.BytesIO()
        self.width, self.height = A4
        self.canvas = canvas.Canvas(self.buffer, pagesize=A4)
        self.canvas.setTitle(title)
        self.y = self.height - MARGIN

    def heading(self, text: str) -> None:
        self.canvas.setFont(FONT_BOLD, 16)
        self.canvas.drawString(MARGIN, self.y, text)
        self.y -= LINE * 2

    def line(self, text: str, bold: bool = False, indent: int = 0) -> None:
        if self.y < MARGIN:
            self.canvas.showPage()
            self.y = self.height - MARGIN
        self.canvas.setFont(FONT_BOLD if bold else FONT, 10)
        self.canvas.drawString(MARGIN + indent, self.y, text)
        self.y -= LINE

    def row(self, columns: list[tuple[int, str]], bold: bool = False) -> None:
        if self.y < MARGIN:
            self.canvas.showPage()
            self.y = self.height - MARGIN
        self.canvas.setFont(FONT_BOLD if bold else FONT, 10)
        for offset, text in columns:
            self.canvas.drawString(MARGIN + offset, self.y, text)
        self.y -= LINE

    def gap(self) -> None:
        self.y -= LINE / 2

    def finish(self) -> bytes:
        self.canvas.showPage()
        self.canvas.save()
        return self.buffer.getvalue()


def _fmt_dt(value) -> str:
    return value.strftime("%Y-%m-%d %H:%M") if value else "-"


def render_reservation_pdf(reservation: Reservation) -> bytes:
    try:
        page = _PageWriter(reservation.ReservationNumber)
        page.heading(f"D4 Media - {reservation.ReservationNumber}")
        page.line(f"Type: {reservation.Kind.replace('_', ' ')}")
        page.line(f"Status: {reservation.Status}")
        page.line(f"Client: {reservation.ClientName or reservation.ContactName or '-'}")
        if reservation.ContactPhone:
            page.line(f"Phone: {reservation.ContactPhone}")
        if reservation.StudioRoom:
            page.line(f"Studio: {reservation.StudioRoom}")
        if reservation.EventName:
            page.line(f"Event: {reservation.EventName}")
        page.line(f"From: {_fmt_dt(reservation.WindowStart)}    To: {_fmt_dt(reservation.WindowEnd)}")
        if reservation.ActualReturn:
            page.line(f"Returned: {_fmt_dt(reservation.ActualReturn)} ({reservation.ReturnCondition or '-'})")
        page.gap()

        page.row([(0, "Item"), (260, "Qty"), (310, "Rate"), (390, "Amount"), (460, "Status")], bold=True)
        for item in reservation.Items:
            name = item.Equipment.Name if item.Equipment else (item.Description or "Item")
            page.row(
                [
                    (0, name[:45]),
                    (260, str(item.Quantity)),
                    (310, format_amount(item.Rate)),
                    (390, format_amount(item.TotalAmount)),
                    (460, item.Status or ""),
                ]
            )
        page.gap()
        page.line(f"Subtotal: {format_amount(reservation.Subtotal)}")
        if float(reservation.Discount or 0):
            page.line(f"Discount: {format_amount(reservation.Discount)}")
        page.line(f"Total: {format_amount(reservation.TotalAmount)}", bold=True)
        if reservation.Notes:
            page.gap()
            page.line("Notes:", bold=True)
            for note in reservation.Notes.splitlines():
                page.line(note[:95], indent=10)
        return page.finish()
    except Exception as exc:
        LOGGER.exception("Reservation PDF failed for %s", reservation.ReservationNumber)
        raise ExternalServiceError(f"Could not render document for {reservation.ReservationNumber}: {exc}") from exc


def render_invoice_pdf(invoice: Invoice) -> bytes:
    try:
        page = _PageWriter(invoice.InvoiceNumber)
        page.heading(f"Invoice {invoice.InvoiceNumber}")
        page.line(f"Client: {invoice.ClientName or '-'}")
        if invoice.ClientPhone:
            page.line(f"Phone: {invoice.ClientPhone}")
        page.line(f"Issued: {_fmt_dt(invoice.CreatedDate)}")
        page.line(f"Due: {_fmt_dt(invoice.DueDate)}")
        page.gap()

        page.row([(0, "Description"), (280, "Qty"), (330, "Rate"), (410, "Amount")], bold=True)
        for item in invoice.Items:
            quantity = item.Quantity or 0
            page.row(
                [
                    (0, (item.Description or "")[:48]),
                    (280, f"{quantity:g}"),
                    (330, format_amount(item.Rate)),
                    (410, format_amount(item.Amount)),
                ]
            )
        page.gap()
        page.line(f"Subtotal: {format_amount(invoice.Subtotal)}")
        if float(invoice.Discount or 0):
            page.line(f"Discount: {format_amount(invoice.Discount)}")
        page.line(f"Total due: {format_amount(invoice.Total)}", bold=True)
        return page.finish()
    except Exception as exc:
        LOGGER.exception("Invoice PDF failed for %s", invoice.InvoiceNumber)
        raise ExternalServiceError(f"Could not render invoice {invoice.InvoiceNumber}: {exc}") from exc
