"""Property-based tests for mapping upstream bookings onto local tours."""

from datetime import date, datetime, time, timezone
from zoneinfo import ZoneInfo

from hypothesis import given
from hypothesis import strategies as st

from booking_sync.services.booking_transformer import parse_start, to_minor_units, transform_booking

# Strategies for generating test data
party_sizes = st.integers(min_value=1, max_value=15)
titles = st.text(min_size=0, max_size=60, alphabet=st.characters(whitelist_categories=("L", "N", "Zs")))
instants = st.datetimes(min_value=datetime(2020, 1, 1), max_value=datetime(2035, 12, 31)).map(
    lambda value: value.replace(second=0, microsecond=0)
)

ROME = ZoneInfo("Europe/Rome")


@given(cents=st.integers(min_value=0, max_value=10_000_000))
def test_minor_units_round_trip_two_decimals(cents):
    assert to_minor_units(f"{cents // 100}.{cents % 100:02d}") == cents


@given(moment=instants)
def test_utc_instant_converts_to_local_wall_clock(moment):
    stamp = moment.strftime("%Y-%m-%dT%H:%M:%SZ")
    local = moment.replace(tzinfo=timezone.utc).astimezone(ROME)

    assert parse_start(stamp, ROME) == (local.date(), local.time())


@given(participants=party_sizes, title=titles)
def test_transform_always_yields_valid_booking(participants, title):
    raw = {
        "id": 1,
        "startTime": "2026-11-10",
        "productBookings": [{"product": {"title": title}, "participants": [{"count": participants}]}],
    }

    booking = transform_booking(raw, ROME)

    assert booking.participants == participants
    assert booking.title
    assert booking.time == time(9, 0)


@given(millis=st.integers())
def test_any_epoch_value_parses_or_is_skipped(millis):
    parsed = parse_start(millis, ROME)

    assert parsed is None or isinstance(parsed[0], date)
