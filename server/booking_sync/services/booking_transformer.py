"""Mapping of upstream booking documents onto local tour fields.

Upstream payloads differ by integration path, so every field is resolved by
an ordered chain of extractors. The first extractor that yields a value
wins. Nothing here performs I/O.
"""

import re
from datetime import date, datetime, time, timezone, tzinfo
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple
from zoneinfo import ZoneInfo

from ..core.config import settings
from ..core.errors import BookingTransformError
from ..models.tour import PaymentStatus
from ..schemas.booking import TransformedBooking

DEFAULT_TITLE = "Tour Booking"
DEFAULT_CHANNEL = "Direct"
DEFAULT_TIME = time(9, 0)
DEFAULT_CURRENCY = "EUR"

PAYMENT_STATUS_MAP = {
    "PAID": PaymentStatus.PAID,
    "INVOICED": PaymentStatus.PAID,
    "PARTIALLY_PAID": PaymentStatus.PARTIAL,
}

LANGUAGE_KEYWORDS = ("italian", "spanish", "french", "german", "english")

GUIDE_LANGUAGE_RE = re.compile(r"GUIDE\s*:\s*([A-Za-z]+)", re.IGNORECASE)
BOOKING_LANGUAGES_RE = re.compile(r"Booking languages.*?:\s*([A-Za-z]+)", re.IGNORECASE | re.DOTALL)
TRAVELER_RE = re.compile(
    r"Traveler\s+(\d+):\s*\n?First Name:\s*(.+?)\s*\n?Last Name:\s*(.+?)(?:\n|$)",
    re.IGNORECASE,
)
HH_MM_RE = re.compile(r"^\s*(\d{1,2}):(\d{2})")


class BookingDocument:
    """Read-only view over a raw upstream booking."""

    def __init__(self, raw: Dict[str, Any]):
        self.raw = raw
        product_bookings = raw.get("productBookings")
        if isinstance(product_bookings, list) and product_bookings and isinstance(product_bookings[0], dict):
            self.product_booking: Dict[str, Any] = product_bookings[0]
        else:
            self.product_booking = {}

    @property
    def fields(self) -> Dict[str, Any]:
        fields = self.product_booking.get("fields")
        return fields if isinstance(fields, dict) else {}

    @property
    def product(self) -> Dict[str, Any]:
        product = self.product_booking.get("product")
        return product if isinstance(product, dict) else {}

    @property
    def customer(self) -> Dict[str, Any]:
        customer = self.raw.get("customer")
        return customer if isinstance(customer, dict) else {}


Extractor = Callable[[BookingDocument], Any]


def first_match(chain: Sequence[Extractor], doc: BookingDocument) -> Any:
    """Return the first non-None value produced by the chain."""
    for extractor in chain:
        value = extractor(doc)
        if value is not None:
            return value
    return None


def _text(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _title_of(mapping: Any) -> Optional[str]:
    return _text(mapping.get("title")) if isinstance(mapping, dict) else None


def _positive_int(value: Any) -> Optional[int]:
    try:
        number = int(value)
    except (TypeError, ValueError):
        return None
    return number if number > 0 else None


def _is_numeric(value: Any) -> bool:
    if isinstance(value, bool):
        return False
    if isinstance(value, (int, float)):
        return True
    return isinstance(value, str) and value.strip().isdigit()


def parse_start(value: Any, tz: tzinfo) -> Optional[Tuple[date, Optional[time]]]:
    """
    Parse an upstream start value into a local date and time.

    Epoch milliseconds and ISO-8601 instants are converted to ``tz``; naive
    ISO values are taken as UTC. A bare ISO date yields no time.
    """
    if value is None or value == "":
        return None

    if _is_numeric(value):
        try:
            moment = datetime.fromtimestamp(float(value) / 1000, tz=timezone.utc).astimezone(tz)
        except (OverflowError, OSError, ValueError):
            return None
        return moment.date(), moment.time().replace(second=0, microsecond=0)

    if not isinstance(value, str):
        return None

    text = value.strip()
    if len(text) == 10:
        try:
            return date.fromisoformat(text), None
        except ValueError:
            return None

    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        moment = datetime.fromisoformat(text)
    except ValueError:
        return None
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    try:
        moment = moment.astimezone(tz)
    except (OverflowError, ValueError):
        return None
    return moment.date(), moment.time().replace(second=0, microsecond=0)


def parse_clock(value: Any) -> Optional[time]:
    """Parse an ``HH:MM`` string."""
    if not isinstance(value, str):
        return None
    match = HH_MM_RE.match(value)
    if not match:
        return None
    hour, minute = int(match.group(1)), int(match.group(2))
    if hour > 23 or minute > 59:
        return None
    return time(hour, minute)


def to_minor_units(value: Any) -> Optional[int]:
    """Convert a decimal amount to minor units."""
    if value is None or isinstance(value, bool):
        return None
    try:
        amount = Decimal(str(value))
    except (InvalidOperation, ValueError):
        return None
    if not amount.is_finite():
        return None
    minor = int((amount * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))
    return max(minor, 0)


# Title

TITLE_CHAIN: Tuple[Extractor, ...] = (
    lambda doc: _title_of(doc.product),
    lambda doc: _text(doc.raw.get("productTitle")),
)


# Start date and time

def _start_chain(tz: tzinfo) -> Tuple[Callable[[BookingDocument], Optional[Tuple[date, Optional[time]]]], ...]:
    def creation_date(doc: BookingDocument) -> Optional[Tuple[date, Optional[time]]]:
        parsed = parse_start(doc.raw.get("creationDate"), tz)
        return (parsed[0], None) if parsed else None

    return (
        lambda doc: parse_start(doc.product_booking.get("startDateTime"), tz),
        lambda doc: parse_start(doc.product_booking.get("startTime"), tz),
        lambda doc: parse_start(doc.product_booking.get("startDate"), tz),
        lambda doc: parse_start(doc.raw.get("startTime"), tz),
        creation_date,
    )


# Participants

def _nested_participant_count(doc: BookingDocument) -> Optional[int]:
    categories = doc.fields.get("priceCategoryBookings")
    key = "quantity"
    if not isinstance(categories, list):
        categories = doc.product_booking.get("participants")
        key = "count"
    if not isinstance(categories, list):
        return None

    total = 0
    for category in categories:
        if isinstance(category, dict):
            total += _positive_int(category.get(key)) or 0
    return total or None


PARTICIPANTS_CHAIN: Tuple[Extractor, ...] = (
    _nested_participant_count,
    lambda doc: _positive_int(doc.fields.get("totalParticipants")),
    lambda doc: _positive_int(doc.product_booking.get("totalParticipants")),
    lambda doc: _positive_int(doc.raw.get("totalParticipants")),
)


# Duration

def _minutes(value: Any) -> Optional[str]:
    minutes = _positive_int(value)
    return f"{minutes} minutes" if minutes else None


DURATION_CHAIN: Tuple[Extractor, ...] = (
    lambda doc: _minutes(doc.product_booking.get("duration")),
    lambda doc: _minutes(doc.product.get("duration")),
    lambda doc: _minutes(doc.raw.get("duration")),
)


# Channel

CHANNEL_CHAIN: Tuple[Extractor, ...] = (
    lambda doc: _title_of(doc.raw.get("channel")),
    lambda doc: _title_of(doc.raw.get("seller")),
)


# Amount

AMOUNT_CHAIN: Tuple[Extractor, ...] = (
    lambda doc: to_minor_units(doc.raw.get("totalPrice")),
    lambda doc: to_minor_units(doc.raw.get("paidAmount")),
)


# Language

def _language_from_notes(doc: BookingDocument) -> Optional[str]:
    notes = doc.product_booking.get("notes")
    if not isinstance(notes, list):
        return None

    for note in notes:
        body = note.get("body") if isinstance(note, dict) else None
        if not isinstance(body, str):
            continue
        for pattern in (GUIDE_LANGUAGE_RE, BOOKING_LANGUAGES_RE):
            match = pattern.search(body)
            if match:
                return match.group(1).capitalize()
    return None


def _language_from_title(doc: BookingDocument) -> Optional[str]:
    title = (first_match(TITLE_CHAIN, doc) or "").lower()
    for keyword in LANGUAGE_KEYWORDS:
        if keyword in title:
            return keyword.capitalize()
    return None


LANGUAGE_CHAIN: Tuple[Extractor, ...] = (
    _language_from_notes,
    lambda doc: _text(doc.fields.get("language")),
    lambda doc: _text(doc.product.get("language")),
    lambda doc: _text(doc.raw.get("language")),
    _language_from_title,
)


def parse_participant_names(raw: Dict[str, Any]) -> Optional[List[Dict[str, str]]]:
    """
    Extract traveller names from the free-text special requests.

    Some resellers send names as ``Traveler 1: First Name: ... Last Name: ...``
    blocks. Names are title-cased; None is returned when nothing is found.
    """
    special_requests = BookingDocument(raw).product_booking.get("specialRequests")
    if not isinstance(special_requests, str) or len(special_requests.strip()) < 2:
        return None

    names = []
    for match in TRAVELER_RE.finditer(special_requests):
        first = match.group(2).strip().lower().title()
        last = match.group(3).strip().lower().title()
        if first or last:
            names.append({"first": first, "last": last})

    return names or None


def _customer_name(doc: BookingDocument) -> Optional[str]:
    if not doc.customer:
        return None
    first = _text(doc.customer.get("firstName")) or ""
    last = _text(doc.customer.get("lastName")) or ""
    return _text(f"{first} {last}")


def _is_cancelled(doc: BookingDocument) -> bool:
    statuses = (doc.product_booking.get("status"), doc.raw.get("status"))
    return any(str(status).upper() == "CANCELLED" for status in statuses if status is not None)


def _currency(raw: Dict[str, Any]) -> str:
    currency = (_text(raw.get("currency")) or "").upper()
    return currency if len(currency) == 3 and currency.isalpha() else DEFAULT_CURRENCY


def _payment_status(doc: BookingDocument) -> str:
    raw_status = doc.raw.get("paymentStatus") or doc.product_booking.get("paymentStatus")
    return PAYMENT_STATUS_MAP.get(str(raw_status or "").upper(), PaymentStatus.UNPAID)


def transform_booking(raw: Dict[str, Any], tz: Optional[tzinfo] = None) -> TransformedBooking:
    """
    Map an upstream booking onto local tour fields.

    Args:
        raw: Upstream booking document
        tz: Timezone in which dates and times are stored, defaults to the configured one

    Returns:
        Transformed booking carrying the verbatim payload

    Raises:
        BookingTransformError: If the booking has no identity or no resolvable date
    """
    if not isinstance(raw, dict):
        raise BookingTransformError("Upstream booking is not a JSON object")

    tz = tz or ZoneInfo(settings.local_timezone)
    doc = BookingDocument(raw)

    booking_id = _text(raw.get("id"))
    confirmation_code = _text(raw.get("confirmationCode"))
    if booking_id is None and confirmation_code is None:
        raise BookingTransformError("Upstream booking has neither an id nor a confirmation code")

    start = first_match(_start_chain(tz), doc)
    if start is None:
        raise BookingTransformError(
            f"No tour date found for booking {confirmation_code or booking_id}",
            details={"booking_id": booking_id, "confirmation_code": confirmation_code},
        )
    start_date, start_time = start

    local_time = parse_clock(doc.fields.get("startTimeStr")) or start_time or DEFAULT_TIME
    amount = first_match(AMOUNT_CHAIN, doc) or 0
    payment_status = _payment_status(doc)

    return TransformedBooking(
        external_booking_id=booking_id,
        external_confirmation_code=confirmation_code,
        title=first_match(TITLE_CHAIN, doc) or DEFAULT_TITLE,
        date=start_date,
        time=local_time,
        duration=first_match(DURATION_CHAIN, doc),
        language=first_match(LANGUAGE_CHAIN, doc),
        participants=first_match(PARTICIPANTS_CHAIN, doc) or 1,
        participant_names=parse_participant_names(raw),
        customer_name=_customer_name(doc),
        customer_email=_text(doc.customer.get("email")),
        customer_phone=_text(doc.customer.get("phoneNumber")),
        booking_channel=first_match(CHANNEL_CHAIN, doc) or DEFAULT_CHANNEL,
        total_amount_minor=amount,
        currency=_currency(raw),
        payment_status=payment_status,
        paid=payment_status == PaymentStatus.PAID,
        cancelled=_is_cancelled(doc),
        raw_payload=raw,
    )
