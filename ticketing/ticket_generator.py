"""
Ticket artifacts: ticket numbers, signed QR payloads, QR images, PDF and
printable HTML tickets.
"""

import base64
import hashlib
import hmac
import io
import json
import logging
import random
import string
import time
from typing import Any, Dict, Optional

import qrcode
from jinja2 import DictLoader, Environment, select_autoescape
from reportlab.lib import colors
from reportlab.lib.pagesizes import A4
from reportlab.lib.utils import ImageReader
from reportlab.pdfgen import canvas

from ticketing.constants import SUPPORTED_CURRENCIES

logger = logging.getLogger(__name__)

TICKET_NUMBER_PREFIX = "TKT"
BASE36_ALPHABET = string.digits + string.ascii_uppercase
SIGNATURE_LENGTH = 32

HTML_TICKET_TEMPLATE = """<!DOCTYPE html>
<html lang="en">
<head>
  <meta charset="utf-8">
  <title>Ticket {{ ticket.ticket_number }}</title>
  <style>
    body { font-family: Arial, sans-serif; background: #f5f6fa; margin: 0; padding: 24px; }
    .ticket { max-width: 640px; margin: 0 auto; background: #fff; border: 2px solid #2c3e50; border-radius: 8px; }
    .header { background: #2c3e50; color: #fff; padding: 16px 24px; }
    .header h1 { margin: 0; font-size: 22px; letter-spacing: 2px; }
    .header h2 { margin: 4px 0 0; font-size: 18px; font-weight: normal; }
    .body { display: flex; padding: 24px; }
    .details { flex: 1; }
    .details dt { font-weight: bold; color: #2c3e50; margin-top: 8px; }
    .details dd { margin: 0; color: #34495e; }
    .qr { text-align: center; margin-left: 24px; }
    .qr img { width: 160px; height: 160px; }
    .qr p { font-size: 11px; color: #7f8c8d; }
    .footer { border-top: 1px dashed #bdc3c7; padding: 12px 24px; font-size: 11px; color: #7f8c8d; }
    @media print { body { background: #fff; } }
  </style>
</head>
<body>
  <div class="ticket">
    <div class="header">
      <h1>EVENT TICKET</h1>
      <h2>{{ event.title }}</h2>
    </div>
    <div class="body">
      <dl class="details">
        <dt>Ticket Number</dt><dd>{{ ticket.ticket_number }}</dd>
        <dt>Date</dt><dd>{{ event.date.strftime("%A, %B %d, %Y") }}</dd>
        <dt>Time</dt><dd>{{ event.date.strftime("%H:%M") }} - {{ event.end_date.strftime("%H:%M") }} UTC</dd>
        <dt>Venue</dt><dd>{{ event.venue }}</dd>
        <dt>Attendee</dt><dd>{{ attendee_name }}</dd>
        <dt>Quantity</dt><dd>{{ ticket.quantity }}</dd>
        <dt>Total</dt><dd>{{ amount }}</dd>
        <dt>Status</dt><dd>{{ ticket.status | upper }}</dd>
      </dl>
      {% if qr_code %}
      <div class="qr">
        <img src="{{ qr_code }}" alt="QR code">
        <p>Scan for verification</p>
      </div>
      {% endif %}
    </div>
    <div class="footer">
      Present this ticket at the entrance. Gates open two hours before the event.
      Booked on {{ ticket.booking_date.strftime("%B %d, %Y") }}.
    </div>
  </div>
</body>
</html>
"""


def format_amount(amount: float, currency: str) -> str:
    symbol = SUPPORTED_CURRENCIES.get(currency, {}).get("symbol", "")
    return f"{symbol}{amount:,.2f} {currency}"


class TicketGenerator():
    """
    Everything needed to print and check a ticket. QR payloads are signed
    with an HMAC so a scanner can tell a forged code from a real one
    """

    def __init__(self, signing_secret: str, rng: Optional[random.Random] = None):
        self.signing_secret = signing_secret.encode("utf-8")
        self.rng = rng or random.SystemRandom()
        self.templates = Environment(
            loader=DictLoader({"ticket.html": HTML_TICKET_TEMPLATE}),
            autoescape=select_autoescape(["html"]),
        )

    def generate_ticket_number(self) -> str:
        millis = str(int(time.time() * 1000))[-8:]
        suffix = "".join(self.rng.choice(BASE36_ALPHABET) for _ in range(4))
        return f"{TICKET_NUMBER_PREFIX}{millis}{suffix}"

    def sign(self, ticket_number: str, event_id: str, user_id: str) -> str:
        message = f"{ticket_number}-{event_id}-{user_id}".encode("utf-8")
        digest = hmac.new(self.signing_secret, message, hashlib.sha256)
        return digest.hexdigest()[:SIGNATURE_LENGTH]

    def verify_signature(self, signature: str, ticket_number: str,
                         event_id: str, user_id: str) -> bool:
        expected = self.sign(ticket_number, event_id, user_id)
        return hmac.compare_digest(
            str(signature).encode("utf-8"), expected.encode("utf-8"))

    def build_qr_payload(self, ticket_number: str, event_id: str,
                         user_id: str) -> str:
        return json.dumps({
            "ticket_number": ticket_number,
            "event_id": str(event_id),
            "user_id": str(user_id),
            "timestamp": int(time.time() * 1000),
            "signature": self.sign(ticket_number, str(event_id),
                                   str(user_id)),
        })

    @staticmethod
    def parse_qr_payload(qr_data: str) -> Dict[str, Any]:
        """
        Raises ValueError when the scanned text is not a ticket payload
        """
        payload = json.loads(qr_data)
        if not isinstance(payload, dict) or not payload.get("ticket_number"):
            raise ValueError("QR payload has no ticket number")
        return payload

    @staticmethod
    def _png_bytes(data: str) -> bytes:
        qr = qrcode.QRCode(
            error_correction=qrcode.constants.ERROR_CORRECT_H,
            box_size=8,
            border=1,
        )
        qr.add_data(data)
        qr.make(fit=True)
        image = qr.make_image(fill_color="black", back_color="white")
        buffer = io.BytesIO()
        image.save(buffer)
        return buffer.getvalue()

    def qr_data_url(self, ticket_number: str, event_id: str,
                    user_id: str) -> str:
        payload = self.build_qr_payload(ticket_number, event_id, user_id)
        encoded = base64.b64encode(self._png_bytes(payload)).decode("ascii")
        return f"data:image/png;base64,{encoded}"

    @staticmethod
    def data_url_to_bytes(data_url: str) -> bytes:
        _, _, encoded = data_url.partition("base64,")
        return base64.b64decode(encoded)

    def render_pdf(self, ticket, event, attendee_name: str) -> bytes:
        buffer = io.BytesIO()
        pdf = canvas.Canvas(buffer, pagesize=A4)
        pdf.setTitle(f"Ticket {ticket.ticket_number}")
        _, height = A4

        # Header
        pdf.setFillColor(colors.HexColor("#2c3e50"))
        pdf.rect(0, height - 110, A4[0], 110, fill=1, stroke=0)
        pdf.setFillColor(colors.white)
        pdf.setFont("Helvetica-Bold", 24)
        pdf.drawCentredString(A4[0] / 2, height - 55, "EVENT TICKET")
        pdf.setFont("Helvetica", 16)
        pdf.drawCentredString(A4[0] / 2, height - 85, event.title)

        rows = [
            ("Ticket Number:", ticket.ticket_number),
            ("Event Date:", event.date.strftime("%A, %B %d, %Y")),
            ("Event Time:", f"{event.date.strftime('%H:%M')} - "
             f"{event.end_date.strftime('%H:%M')} UTC"),
            ("Venue:", event.venue),
            ("Attendee:", attendee_name),
            ("Quantity:", str(ticket.quantity)),
            ("Total Amount:", format_amount(ticket.total_amount,
                                            ticket.currency)),
            ("Booking Date:", ticket.booking_date.strftime("%B %d, %Y")),
            ("Status:", ticket.status.upper()),
        ]
        y = height - 160
        for label, value in rows:
            pdf.setFillColor(colors.HexColor("#2c3e50"))
            pdf.setFont("Helvetica-Bold", 12)
            pdf.drawString(50, y, label)
            pdf.setFillColor(colors.HexColor("#34495e"))
            pdf.setFont("Helvetica", 12)
            pdf.drawString(170, y, str(value))
            y -= 25

        if ticket.qr_code:
            image = ImageReader(
                io.BytesIO(self.data_url_to_bytes(ticket.qr_code)))
            pdf.drawImage(image, 400, height - 300, width=140, height=140)
            pdf.setFillColor(colors.HexColor("#7f8c8d"))
            pdf.setFont("Helvetica", 9)
            pdf.drawCentredString(470, height - 315, "Scan for verification")

        # Footer
        pdf.setStrokeColor(colors.HexColor("#bdc3c7"))
        pdf.line(50, 110, A4[0] - 50, 110)
        pdf.setFillColor(colors.HexColor("#7f8c8d"))
        pdf.setFont("Helvetica", 9)
        pdf.drawString(50, 90, "Present this ticket at the entrance.")
        pdf.drawString(50, 76,
                       "Gates open two hours before the event starts.")

        pdf.showPage()
        pdf.save()
        logger.debug("rendered pdf for ticket %s", ticket.ticket_number)
        return buffer.getvalue()

    def render_html(self, ticket, event, attendee_name: str) -> str:
        template = self.templates.get_template("ticket.html")
        return template.render(
            ticket=ticket,
            event=event,
            attendee_name=attendee_name,
            qr_code=ticket.qr_code,
            amount=format_amount(ticket.total_amount, ticket.currency),
        )
