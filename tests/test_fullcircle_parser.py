from __future__ import annotations

from datetime import datetime, timezone

from loadhunter.parsers.fullcircle import (
    extract_notes,
    extract_stops,
    normalize_vehicle_class,
    parse_fullcircle_email,
    split_stop_datetime,
)

SUBJECT = "SPRINTER VAN from Columbus, OH to Atlanta, GA"

BODY_TEXT = """ORDER NUMBER: 98765 or 4321
Stop Type City State Zip Country Date
1 Pick Up Columbus OH 43215 USA 2026-01-19 08:00 EST
2 Delivery Atlanta GA 30301 USA 2026-01-20 14:00 EST
3 Delivery Macon GA 31201 USA 2026-01-20 17:00 EST
Load posted: 2026-01-18 09:00 EST
This posting expires: 2026-01-18 10:00 EST
Total Pieces: 4
Total Weight: 1,250 lbs
Distance: 560 mi
Requested Vehicle Class: Sprinter Van
Dock Level Required: No
Hazardous?: No
Driver TEAM Required: Yes
please contact:
Acme Freight LLC (MC# 123456)
100 Main St
Columbus, OH 43215
Load posted by: Jane Doe
Phone: 614-555-0100
Fax: 614-555-0101
Notes: Call before arrival
https://app.fullcircletms.com/bid
"""


def test_parses_stops_route_and_schedule() -> None:
    load = parse_fullcircle_email(SUBJECT, BODY_TEXT)

    assert load.order_number == "98765"
    assert load.order_number_secondary == "4321"
    assert [stop.sequence for stop in load.stops] == [1, 2, 3]
    assert load.stops[0].type == "pick up"
    assert (load.origin_city, load.origin_state, load.origin_zip) == ("Columbus", "OH", "43215")
    assert (load.destination_city, load.destination_state, load.destination_zip) == ("Atlanta", "GA", "30301")
    assert load.pickup_date == "2026-01-19"
    assert load.pickup_time == "08:00 EST"
    assert load.delivery_time == "14:00 EST"
    assert load.stop_count == 3
    assert load.has_multiple_stops is True


def test_parses_totals_flags_and_timestamps() -> None:
    load = parse_fullcircle_email(SUBJECT, BODY_TEXT)

    assert load.pieces == 4
    assert load.weight == "1250"
    assert load.loaded_miles == 560
    assert load.vehicle_type == "SPRINTER"
    assert load.dock_level is False
    assert load.hazmat is False
    assert load.team_required is True
    assert load.posted_at == datetime(2026, 1, 18, 14, 0, tzinfo=timezone.utc)
    assert load.expires_at == datetime(2026, 1, 18, 15, 0, tzinfo=timezone.utc)
    assert load.expires_datetime == "2026-01-18 10:00 EST"


def test_parses_broker_contact_block() -> None:
    load = parse_fullcircle_email(SUBJECT, BODY_TEXT)

    assert load.broker_company == "Acme Freight LLC"
    assert load.mc_number == "123456"
    assert load.broker_address == "100 Main St"
    assert (load.broker_city, load.broker_state, load.broker_zip) == ("Columbus", "OH", "43215")
    assert load.broker_name == "Jane Doe"
    assert load.broker_phone == "614-555-0100"
    assert load.broker_fax == "614-555-0101"
    assert load.notes == "Call before arrival"


def test_html_contact_and_red_notes() -> None:
    html = (
        "<p>please contact:<br/>Acme &amp; Sons (MC# 555)</p>"
        '<p style="color: red">Notes: Liftgate needed</p>'
        '<h4 style="color:red">Submit your bid via the portal</h4>'
        '<h4 style="color:red">No weekend delivery</h4>'
    )

    load = parse_fullcircle_email("Load Available: OH - GA", "", html)

    assert load.broker_company == "Acme & Sons"
    assert load.mc_number == "555"
    assert load.notes == "Liftgate needed | No weekend delivery"
    assert (load.origin_state, load.destination_state) == ("OH", "GA")


def test_html_stop_rows_take_precedence() -> None:
    row = (
        "<td>1</td><td>Pick Up</td><td>Dayton</td><td>OH</td><td>45402</td><td>USA</td>"
        "<td>2026-02-01 09:30 EST</td>"
    )

    stops = extract_stops(row)

    assert len(stops) == 1
    assert stops[0].city == "Dayton"
    assert stops[0].date == "2026-02-01"
    assert stops[0].time == "09:30 EST"


def test_flexible_stop_times() -> None:
    assert split_stop_datetime("ASAP", "EST") == (None, "ASAP")
    assert split_stop_datetime("2026-01-20 Flexible", "EST") == ("2026-01-20", "Flexible")
    assert split_stop_datetime("2026-01-20 08:15", "cst") == ("2026-01-20", "08:15 CST")


def test_vehicle_class_normalization() -> None:
    assert normalize_vehicle_class("Large Straight Truck") == "LARGE STRAIGHT"
    assert normalize_vehicle_class("Cargo Van (1 pallet)") == "CARGO VAN"
    assert normalize_vehicle_class("Flatbed") == "Flatbed"


def test_notes_absent_when_only_boilerplate() -> None:
    assert extract_notes('<p style="color:red">Submitted bids must include your rate</p>') is None
