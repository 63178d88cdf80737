"""
Listing history derivation.

Builds one listing period per ListingKey (grouped by UnparsedAddress) and a
price-change log for the current period of each address. Every write is an
upsert, so replaying the same payload leaves the same rows behind.
"""

import logging
from typing import Optional

from .exceptions import ListingNotFoundError
from .field_mapper import coerce_number, normalize_timestamp
from .models import ListingPeriod, PriceChange

logger = logging.getLogger(__name__)

# Evaluated in order, first substring match wins. Anything else is Active.
STATUS_KEYWORDS = (
    ('sold', 'Sold'),
    ('leased', 'Leased'),
    ('terminated', 'Terminated'),
    ('expired', 'Expired'),
    ('suspended', 'Suspended'),
    ('withdrawn', 'Withdrawn'),
    ('cancelled', 'Cancelled'),
)

ACTIVE = 'Active'

# Where each terminal status finds its end date, in preference order
END_DATE_FIELDS = {
    'Sold': ('CloseDate',),
    'Leased': ('CloseDate',),
    'Terminated': ('TerminatedDate', 'TerminatedEntryTimestamp'),
    'Expired': ('ExpirationDate',),
    'Suspended': ('SuspendedDate', 'SuspendedEntryTimestamp'),
    'Withdrawn': ('UnavailableDate', 'ModificationTimestamp'),
    'Cancelled': ('UnavailableDate', 'ModificationTimestamp'),
}

PRICE_HINT_FIELDS = ('OriginalListPrice', 'PreviousListPrice')
TIMESTAMP_HINT_FIELDS = (
    'PriceChangeTimestamp',
    'BackOnMarketEntryTimestamp',
    'LeasedEntryTimestamp',
    'LeasedConditionalEntryTimestamp',
    'DealFellThroughEntryTimestamp',
    'ExtensionEntryTimestamp',
)


def classify_status(mls_status: Optional[str]) -> tuple[str, bool]:
    """Return (normalized status, is_terminal) for an upstream status string."""
    if not mls_status:
        return ACTIVE, False
    lowered = mls_status.lower()
    for keyword, normalized in STATUS_KEYWORDS:
        if keyword in lowered:
            return normalized, True
    return ACTIVE, False


def extract_history_fields(raw: dict) -> Optional[dict]:
    """History hints present on a payload, or None when there are none."""
    has_hints = (
        any(name in raw for name in PRICE_HINT_FIELDS)
        or any(raw.get(name) for name in TIMESTAMP_HINT_FIELDS)
    )
    if not has_hints:
        return None

    fields = {name: coerce_number(raw.get(name)) for name in PRICE_HINT_FIELDS}
    for name in TIMESTAMP_HINT_FIELDS:
        fields[name] = normalize_timestamp(raw.get(name))
    return fields


def _hint(history_fields: Optional[dict], raw: dict, name: str):
    if history_fields and history_fields.get(name) is not None:
        return history_fields[name]
    return raw.get(name)


def _first_timestamp(raw: dict, names) -> Optional[str]:
    for name in names:
        value = normalize_timestamp(raw.get(name))
        if value:
            return value
    return None


def build_listing_period(raw: dict, history_fields: Optional[dict] = None) -> Optional[ListingPeriod]:
    """
    Derive the listing period for one property payload.

    Returns None (and logs) when the payload has no address or no usable
    start date.
    """
    listing_key = raw.get('ListingKey')
    address = raw.get('UnparsedAddress')
    if not listing_key or not address:
        logger.warning(f"Listing {listing_key}: missing UnparsedAddress or ListingKey, no period")
        return None

    back_on_market = normalize_timestamp(_hint(history_fields, raw, 'BackOnMarketEntryTimestamp'))
    date_start = back_on_market or _first_timestamp(
        raw, ('OriginalEntryTimestamp', 'ModificationTimestamp', 'EntryTimestamp')
    )
    if not date_start:
        logger.warning(f"Listing {listing_key}: no valid start date, skipping listing period")
        return None

    list_price = coerce_number(raw.get('ListPrice'))
    initial_price = (
        coerce_number(_hint(history_fields, raw, 'OriginalListPrice'))
        or list_price
        or 0
    )
    final_price = list_price or initial_price

    status, terminal = classify_status(raw.get('MlsStatus'))

    date_end = None
    if terminal:
        # A terminal period always gets an end date
        date_end = (
            _first_timestamp(raw, END_DATE_FIELDS[status])
            or normalize_timestamp(raw.get('ModificationTimestamp'))
            or date_start
        )

    sold_price = None
    close_date = None
    if status in ('Sold', 'Leased'):
        sold_price = coerce_number(raw.get('ClosePrice')) or None
        close_date = normalize_timestamp(raw.get('CloseDate'))

    return ListingPeriod(
        listing_key=listing_key,
        unparsed_address=address,
        date_start=date_start,
        date_end=date_end,
        status=status,
        initial_price=initial_price,
        final_price=final_price if final_price != initial_price else None,
        sold_price=sold_price,
        close_date=close_date,
    )


def build_price_change(raw: dict, history_fields: Optional[dict] = None) -> Optional[PriceChange]:
    """
    Derive a price event from one payload, or None when there is nothing
    to record.

    An event needs either a price-change timestamp with a previous price, or
    an initial-listing marker (original entry / back on market).
    """
    change_timestamp = normalize_timestamp(_hint(history_fields, raw, 'PriceChangeTimestamp'))
    previous_price = coerce_number(_hint(history_fields, raw, 'PreviousListPrice'))
    back_on_market = normalize_timestamp(_hint(history_fields, raw, 'BackOnMarketEntryTimestamp'))
    original_entry = normalize_timestamp(raw.get('OriginalEntryTimestamp'))

    has_price_change = bool(change_timestamp) and previous_price is not None
    is_initial_listing = bool(original_entry or back_on_market)
    if not has_price_change and not is_initial_listing:
        return None

    change_date = change_timestamp or back_on_market or original_entry
    if not change_date:
        return None

    current_price = coerce_number(raw.get('ListPrice'))
    if current_price is None:
        logger.debug(f"Listing {raw.get('ListingKey')}: no ListPrice, price event not recorded")
        return None

    change_percent = None
    event_type = 'Listed'
    if previous_price is not None and previous_price > 0:
        change_percent = round((current_price - previous_price) * 100 / previous_price, 2)
        if change_percent < 0:
            event_type = 'Price Reduced'
        elif change_percent > 0:
            event_type = 'Price Increased'

    return PriceChange(
        listing_key=raw['ListingKey'],
        unparsed_address=raw.get('UnparsedAddress'),
        change_date=change_date,
        price=current_price,
        previous_price=previous_price,
        change_percent=change_percent,
        event_type=event_type,
    )


def current_period(periods: list[ListingPeriod]) -> Optional[ListingPeriod]:
    """The Active period of an address, else its newest (periods are newest first)."""
    if not periods:
        return None
    for period in periods:
        if period.status == ACTIVE:
            return period
    return periods[0]


async def process_property_listing_history(store, raw: dict):
    """
    Update listing history for one raw property payload.

    Order matters: hints are saved first, then the period, then the price
    change (which requires the period to exist). Store errors propagate.
    """
    listing_key = raw.get('ListingKey') if raw else None
    if not listing_key:
        logger.warning("Listing history called without ListingKey")
        return

    hints = extract_history_fields(raw)
    if hints:
        await store.upsert_history_fields(listing_key, hints)

    history_fields = await store.get_history_fields(listing_key)

    period = build_listing_period(raw, history_fields)
    if period:
        await store.upsert_listing_period(period)
        logger.debug(f"Listing {listing_key}: period {period.status} from {period.date_start}")

    await _track_price_change(store, raw, history_fields)


async def _track_price_change(store, raw: dict, history_fields: Optional[dict]):
    listing_key = raw['ListingKey']
    address = raw.get('UnparsedAddress')
    if not address:
        return

    if await store.get_listing_period(listing_key) is None:
        return

    current = current_period(await store.get_listing_periods(address))
    if current is not None and current.listing_key != listing_key:
        logger.info(
            f"Listing {listing_key}: price update for a superseded period of "
            f"'{address}' (current is {current.listing_key}), skipping"
        )
        return

    change = build_price_change(raw, history_fields)
    if change:
        await store.upsert_price_change(change)
        logger.debug(f"Listing {listing_key}: {change.event_type} {change.change_percent}")


async def get_listing_history(store, identifier: str, is_listing_key: bool = False) -> dict:
    """
    All listing periods for an address (newest first) plus the price
    changes of its current period.
    """
    address = identifier
    if is_listing_key:
        record = await store.get_property(identifier)
        address = record.get('UnparsedAddress') if record else None
        if not address:
            raise ListingNotFoundError(f"Property not found for ListingKey: {identifier}")

    if not address:
        raise ValueError("UnparsedAddress is required")

    periods = await store.get_listing_periods(address)
    current = current_period(periods)
    price_changes = await store.get_price_changes(current.listing_key) if current else []

    return {
        'property_address': address,
        'current_listing_key': current.listing_key if current else None,
        'listing_history': periods,
        'price_changes': price_changes,
    }


async def rebuild_listing_history(store, batch_size: int = 500) -> dict:
    """Replay every stored property through the history deriver."""
    stats = {'processed': 0, 'skipped': 0, 'errors': 0}
    offset = 0

    while True:
        records = await store.list_properties(offset, batch_size)
        if not records:
            break
        offset += len(records)

        for record in records:
            if not record.get('ListingKey') or not record.get('UnparsedAddress'):
                stats['skipped'] += 1
                continue
            try:
                await process_property_listing_history(store, record)
                stats['processed'] += 1
            except Exception as e:
                stats['errors'] += 1
                logger.error(f"Listing {record.get('ListingKey')}: history rebuild failed: {e}")

        logger.info(
            f"History rebuild: {stats['processed']} processed, "
            f"{stats['skipped']} skipped, {stats['errors']} errors"
        )

    return stats
