from __future__ import annotations

import logging

from loadhunter.parsers.detect import detect_email_source, sender_address
from loadhunter.parsers.hints import apply_parser_hints
from loadhunter.parsers.pipeline import parse_email
from loadhunter.schemas.loads import ParsedLoad, ParserHint

SYLECTUS_SUBJECT = (
    "SPRINTER from Dallas, TX to Atlanta, GA: 781 miles 1200 lbs - Posted by Acme Logistics (dispatch@acme.com)"
)
SYLECTUS_TEXT = """Bid on Order #123456
Pick-Up: Dallas, TX 75201 01/19/26 08:00 CST
Delivery: Atlanta, GA 30301 01/20/26 ASAP
Pieces: 3
Commodity: Auto parts
"""


def test_source_detection_rules() -> None:
    assert detect_email_source("Loads <loads@fullcircletms.com>", "x", "", "") == "fullcircle"
    assert detect_email_source("ops@fctms.com", "x", "", "") == "fullcircle"
    assert detect_email_source("a@b.com", "x", "Reply and bid YES to this load", "") == "fullcircle"
    assert detect_email_source("a@b.com", "x", "", "<a href='https://app.fullcircletms.com/l/1'>") == "fullcircle"
    assert detect_email_source("a@b.com", "Load Available: OH - GA", "", "") == "fullcircle"
    assert detect_email_source("alerts@sylectus.com", SYLECTUS_SUBJECT, SYLECTUS_TEXT, "") == "sylectus"


def test_sender_address_strips_display_name() -> None:
    assert sender_address("Acme Dispatch <dispatch@acme.com>") == "dispatch@acme.com"
    assert sender_address("dispatch@acme.com") == "dispatch@acme.com"
    assert sender_address(None) == ""


def test_subject_wins_over_body_and_sources_are_recorded() -> None:
    outcome = parse_email(
        sender="alerts@sylectus.com",
        subject=SYLECTUS_SUBJECT,
        body_text=SYLECTUS_TEXT,
        body_html=None,
    )

    load = outcome.load
    assert outcome.source == "sylectus"
    assert load.origin_city == "Dallas"
    assert load.broker_company == "Acme Logistics"
    assert load.order_number == "123456"
    assert load.pieces == 3
    assert load.pickup_date == "2026-01-19"
    assert outcome.field_sources["origin_city"] == "subject"
    assert outcome.field_sources["weight"] == "subject"
    assert outcome.field_sources["order_number"] == "body"
    assert outcome.field_sources["origin_zip"] == "body"


def test_hints_fill_only_absent_fields_for_the_detected_source() -> None:
    hints = [
        ParserHint(email_source="sylectus", field_name="commodity", pattern=r"Commodity:\s*([^\n]+)"),
        ParserHint(email_source="sylectus", field_name="order_number", pattern=r"Order #(\d+)"),
        ParserHint(email_source="fullcircle", field_name="special_instructions", pattern=r"Pieces"),
    ]

    outcome = parse_email(
        sender="alerts@sylectus.com",
        subject=SYLECTUS_SUBJECT,
        body_text=SYLECTUS_TEXT,
        body_html=None,
        hints=hints,
    )

    assert outcome.load.commodity == "Auto parts"
    assert outcome.field_sources["commodity"] == "hint"
    assert outcome.field_sources["order_number"] == "body"
    assert outcome.load.special_instructions is None


def test_apply_parser_hints_coerces_skips_and_falls_back(caplog) -> None:
    html = (
        "<p>Order: 999</p><p>Commodity: Auto parts</p><p>Ref: Handle with care</p>"
        "<p>Boxes: 12 cartons</p><p>Notes: ignored</p><p>Hazmat: yes</p>"
    )
    load = ParsedLoad(order_number="1")
    hints = [
        ParserHint(email_source="sylectus", field_name="order_number", pattern=r"Order:\s*(\d+)"),
        ParserHint(email_source="sylectus", field_name="commodity", pattern=r"Commodity:\s*([^<]+)"),
        ParserHint(
            email_source="sylectus",
            field_name="special_instructions",
            pattern=r"Ref:\s*([",
            context_before="Ref: ",
            context_after="</p>",
        ),
        ParserHint(email_source="sylectus", field_name="pieces", pattern=r"Boxes:\s*([^<]+)"),
        ParserHint(email_source="sylectus", field_name="notes", pattern=r"Notes:\s*([^<]+)", is_active=False),
        ParserHint(email_source="sylectus", field_name="hazmat", pattern=r"Hazmat:\s*(\w+)"),
        ParserHint(email_source="sylectus", field_name="not_a_field", pattern=r"Order"),
        ParserHint(email_source="sylectus", field_name="rate", pattern=r"(unclosed"),
    ]

    with caplog.at_level(logging.WARNING):
        filled = apply_parser_hints(load, hints, None, html)

    assert filled == ["commodity", "special_instructions", "pieces"]
    assert load.order_number == "1"
    assert load.commodity == "Auto parts"
    assert load.special_instructions == "Handle with care"
    assert load.pieces == 12
    assert load.notes is None
    assert load.hazmat is None
    assert load.rate is None
    assert "parser hint pattern invalid field=rate" in caplog.text


def test_hints_search_text_when_html_is_empty() -> None:
    load = ParsedLoad()
    hints = [ParserHint(email_source="sylectus", field_name="rate", pattern=r"Rate:\s*\$?([\d,]+)")]

    assert apply_parser_hints(load, hints, "Rate: $1,450", "") == ["rate"]
    assert load.rate == "1,450"
