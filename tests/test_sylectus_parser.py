from __future__ import annotations

from datetime import datetime, timezone

from loadhunter.parsers.sylectus import parse_subject_line, parse_sylectus_body

SUBJECT = "SPRINTER from Dallas, TX to Atlanta, GA: 781 miles 1200 lbs - Posted by Acme Logistics (dispatch@acme.com)"

BODY_HTML = """<html><body>
<p>Bid on Order #123456</p>
<p><strong>Broker Name: </strong>Jane Smith</p>
<p><strong>Broker Phone: </strong>555-123-4567</p>
<p>Posted: 01/18/26 10:30 AM CST</p>
<p>Expires: 01/18/26 11:30 AM CST</p>
<p>Pick-Up: Dallas, TX 75201 01/19/26 08:00 CST</p>
<p>Delivery: Atlanta, GA 30301 01/20/26 ASAP</p>
<p><strong>Pieces: </strong>3</p>
<p><strong>Weight: </strong>1,200 lbs</p>
<p><strong>Dimensions: </strong>48L x 40W x 36H</p>
<div class="notes-section"><p>Hand unload</p><p>Call ahead</p></div>
</body></html>"""


def test_subject_line_extracts_route_equipment_and_broker() -> None:
    load = parse_subject_line(SUBJECT)

    assert load.vehicle_type == "SPRINTER"
    assert (load.origin_city, load.origin_state) == ("Dallas", "TX")
    assert (load.destination_city, load.destination_state) == ("Atlanta", "GA")
    assert load.broker_email == "dispatch@acme.com"
    assert load.loaded_miles == 781
    assert load.weight == "1200"
    assert load.customer == "Acme Logistics"
    assert load.broker_company == "Acme Logistics"


def test_subject_line_normalizes_lift_gate() -> None:
    load = parse_subject_line("LIFT GATE from Reno, NV to Boise, ID")

    assert load.vehicle_type == "LIFTGATE"
    assert load.origin_city == "Reno"


def test_subject_posted_by_with_leading_dash_and_separator() -> None:
    dashed = parse_subject_line("VAN from Reno, NV to Boise, ID - Posted by -Quick Freight (ops@qf.com)")
    split = parse_subject_line("VAN from Reno, NV to Boise, ID - Posted by Jane Doe - Quick Freight (ops@qf.com)")

    assert dashed.customer == "Quick Freight"
    assert dashed.broker_company == "Quick Freight"
    assert split.customer == "Jane Doe"
    assert split.broker_company == "Quick Freight"


def test_empty_subject_yields_empty_load() -> None:
    assert parse_subject_line(None).populated_fields() == []


def test_body_extracts_labelled_fields_and_schedule() -> None:
    load = parse_sylectus_body("Load offer", BODY_HTML)

    assert load.order_number == "123456"
    assert load.broker_name == "Jane Smith"
    assert load.broker_phone == "555-123-4567"
    assert load.pickup_date == "2026-01-19"
    assert load.pickup_time == "08:00 CST"
    assert load.delivery_date == "2026-01-20"
    assert load.delivery_time == "ASAP"
    assert load.origin_zip == "75201"
    assert load.destination_zip == "30301"
    assert load.pieces == 3
    assert load.weight == "1200"
    assert load.dimensions == "48L x 40W x 36H"
    assert load.notes == "Hand unload, Call ahead"


def test_body_posted_and_expires_convert_to_utc() -> None:
    load = parse_sylectus_body(None, BODY_HTML)

    assert load.posted_datetime == "01/18/26 10:30 AM CST"
    assert load.posted_at == datetime(2026, 1, 18, 16, 30, tzinfo=timezone.utc)
    assert load.expires_at == datetime(2026, 1, 18, 17, 30, tzinfo=timezone.utc)


def test_body_notes_line_fallback() -> None:
    load = parse_sylectus_body(None, "Order Number: 77\nNotes: Dock high only\n")

    assert load.order_number == "77"
    assert load.notes == "Dock high only"
