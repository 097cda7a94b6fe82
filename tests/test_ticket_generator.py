import base64
import json
import random
import re

import pytest

from ticketing.ticket_generator import TicketGenerator, format_amount
from tests.fakes import make_event, make_ticket


@pytest.fixture
def generator():
    return TicketGenerator("test-qr-secret", rng=random.Random(7))


def test_ticket_number_format(generator):
    number = generator.generate_ticket_number()

    assert re.fullmatch(r"TKT\d{8}[0-9A-Z]{4}", number)


def test_signature_is_deterministic(generator):
    first = generator.sign("TKT12345678ABCD", "event", "user")
    second = generator.sign("TKT12345678ABCD", "event", "user")

    assert first == second
    assert re.fullmatch(r"[0-9a-f]{32}", first)


def test_signature_depends_on_the_secret(generator):
    other = TicketGenerator("another-secret")

    assert generator.sign("TKT1", "e", "u") != other.sign("TKT1", "e", "u")


def test_verify_signature(generator):
    signature = generator.sign("TKT12345678ABCD", "event", "user")

    assert generator.verify_signature(signature, "TKT12345678ABCD", "event",
                                      "user")
    assert not generator.verify_signature(signature, "TKT12345678ABCD",
                                          "event", "someone-else")
    assert not generator.verify_signature("0" * 32, "TKT12345678ABCD",
                                          "event", "user")


@pytest.mark.parametrize("signature", ["é" * 32, "签名", 12345, None])
def test_verify_signature_refuses_garbage(generator, signature):
    assert generator.verify_signature(signature, "TKT12345678ABCD", "event",
                                      "user") is False


def test_qr_payload_carries_a_valid_signature(generator):
    payload = json.loads(
        generator.build_qr_payload("TKT12345678ABCD", "event", "user"))

    assert payload["ticket_number"] == "TKT12345678ABCD"
    assert isinstance(payload["timestamp"], int)
    assert generator.verify_signature(payload["signature"],
                                      payload["ticket_number"],
                                      payload["event_id"], payload["user_id"])


def test_parse_qr_payload(generator):
    raw = generator.build_qr_payload("TKT12345678ABCD", "event", "user")

    assert TicketGenerator.parse_qr_payload(raw)["event_id"] == "event"


@pytest.mark.parametrize("qr_data", [
    "not json at all",
    "[1, 2, 3]",
    '{"event_id": "abc"}',
    '{"ticket_number": ""}',
])
def test_parse_qr_payload_rejects_garbage(qr_data):
    """json.JSONDecodeError is a ValueError too"""
    with pytest.raises(ValueError):
        TicketGenerator.parse_qr_payload(qr_data)


def test_qr_data_url_is_a_png(generator):
    data_url = generator.qr_data_url("TKT12345678ABCD", "event", "user")

    assert data_url.startswith("data:image/png;base64,")
    png = TicketGenerator.data_url_to_bytes(data_url)
    assert png.startswith(b"\x89PNG\r\n\x1a\n")


def test_render_pdf(generator):
    ticket = make_ticket(
        qr_code=generator.qr_data_url("TKT12345678ABCD", "event", "user"))

    pdf = generator.render_pdf(ticket, make_event(), "Ada Lovelace")

    assert pdf.startswith(b"%PDF")


def test_render_html_escapes_user_content(generator):
    event = make_event(title="<script>alert(1)</script>")

    html = generator.render_html(make_ticket(), event, "Ada & Bob")

    assert "<script>alert(1)</script>" not in html
    assert "&lt;script&gt;" in html
    assert "Ada &amp; Bob" in html
    assert "TKT12345678ABCD" in html
    # No QR block without a stored image
    assert "Scan for verification" not in html


def test_render_html_embeds_the_qr_image(generator):
    qr_code = "data:image/png;base64," + base64.b64encode(b"png").decode()

    html = generator.render_html(make_ticket(qr_code=qr_code), make_event(),
                                 "Ada")

    assert qr_code in html


def test_format_amount():
    assert format_amount(1234.5, "USD") == "$1,234.50 USD"
    assert format_amount(10, "XYZ") == "10.00 XYZ"
