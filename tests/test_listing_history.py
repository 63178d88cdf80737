"""
Tests for listing period and price change derivation.
"""
import asyncio

import pytest

from conftest import MemoryStore
from modules.listing_sync.exceptions import ListingNotFoundError
from modules.listing_sync.listing_history import (
    STATUS_KEYWORDS,
    build_listing_period,
    build_price_change,
    classify_status,
    current_period,
    extract_history_fields,
    get_listing_history,
    process_property_listing_history,
    rebuild_listing_history,
)
from modules.listing_sync.models import ListingPeriod


# =============================================================================
# Status classification
# =============================================================================

def test_sold_conditional_is_terminal_sold():
    assert classify_status('Sold Conditional') == ('Sold', True)


def test_active_is_not_terminal():
    assert classify_status('Active') == ('Active', False)


def test_missing_status_is_active():
    assert classify_status(None) == ('Active', False)
    assert classify_status('') == ('Active', False)


def test_keyword_priority_order():
    # Both keywords present: the earlier entry wins
    assert classify_status('Leased - Terminated') == ('Leased', True)
    assert classify_status('TERMINATED') == ('Terminated', True)
    assert [keyword for keyword, _ in STATUS_KEYWORDS] == [
        'sold', 'leased', 'terminated', 'expired', 'suspended', 'withdrawn', 'cancelled',
    ]


def test_active_period_has_no_end_date():
    period = build_listing_period({
        'ListingKey': 'A1',
        'UnparsedAddress': '1 King St',
        'MlsStatus': 'Active',
        'OriginalEntryTimestamp': '2024-02-01T10:00:00Z',
        'ListPrice': 900000,
    })
    assert period.status == 'Active'
    assert period.date_end is None
    assert period.date_start == '2024-02-01T10:00:00.000Z'


# =============================================================================
# Listing periods
# =============================================================================

def test_sold_period_uses_close_date_and_price():
    period = build_listing_period({
        'ListingKey': 'S1',
        'UnparsedAddress': '1 King St',
        'MlsStatus': 'Sold Conditional',
        'OriginalEntryTimestamp': '2024-02-01T10:00:00Z',
        'CloseDate': '2024-03-15',
        'ClosePrice': '880000',
        'OriginalListPrice': 900000,
        'ListPrice': 890000,
    })
    assert period.status == 'Sold'
    assert period.date_end == '2024-03-15T00:00:00.000Z'
    assert period.close_date == '2024-03-15T00:00:00.000Z'
    assert period.sold_price == 880000
    assert period.initial_price == 900000
    assert period.final_price == 890000


def test_terminated_falls_back_to_entry_timestamp():
    period = build_listing_period({
        'ListingKey': 'T1',
        'UnparsedAddress': '1 King St',
        'MlsStatus': 'Terminated',
        'OriginalEntryTimestamp': '2024-02-01T10:00:00Z',
        'TerminatedEntryTimestamp': '2024-04-02T08:15:00Z',
    })
    assert period.date_end == '2024-04-02T08:15:00.000Z'
    assert period.sold_price is None


def test_terminal_period_without_specific_end_date_still_ends():
    period = build_listing_period({
        'ListingKey': 'E1',
        'UnparsedAddress': '1 King St',
        'MlsStatus': 'Expired',
        'OriginalEntryTimestamp': '2024-02-01T10:00:00Z',
        'ModificationTimestamp': '2024-06-01T00:00:00Z',
    })
    assert period.status == 'Expired'
    assert period.date_end == '2024-06-01T00:00:00.000Z'


def test_back_on_market_preferred_for_start():
    period = build_listing_period(
        {
            'ListingKey': 'B1',
            'UnparsedAddress': '1 King St',
            'OriginalEntryTimestamp': '2024-01-01T00:00:00Z',
        },
        {'BackOnMarketEntryTimestamp': '2024-05-05T12:00:00.000Z'},
    )
    assert period.date_start == '2024-05-05T12:00:00.000Z'


def test_unchanged_price_leaves_final_price_empty():
    period = build_listing_period({
        'ListingKey': 'P1',
        'UnparsedAddress': '1 King St',
        'ModificationTimestamp': '2024-01-01T00:00:00Z',
        'ListPrice': 700000,
    })
    assert period.initial_price == 700000
    assert period.final_price is None


def test_period_skipped_without_start_date_or_address():
    assert build_listing_period({'ListingKey': 'N1', 'UnparsedAddress': '1 King St'}) is None
    assert build_listing_period({
        'ListingKey': 'N2', 'ModificationTimestamp': '2024-01-01T00:00:00Z',
    }) is None
    assert build_listing_period({
        'ListingKey': 'N3', 'UnparsedAddress': '1 King St',
        'ModificationTimestamp': 'yesterday',
    }) is None


# =============================================================================
# Price changes
# =============================================================================

def test_price_reduction_math():
    change = build_price_change({
        'ListingKey': 'C1',
        'UnparsedAddress': '1 King St',
        'ListPrice': 475000,
        'PreviousListPrice': 500000,
        'PriceChangeTimestamp': '2024-05-10T14:30:00Z',
    })
    assert change.change_percent == -5.0
    assert change.event_type == 'Price Reduced'
    assert change.change_date == '2024-05-10T14:30:00.000Z'
    assert change.previous_price == 500000


def test_price_increase():
    change = build_price_change({
        'ListingKey': 'C1',
        'ListPrice': 510000,
        'PreviousListPrice': 500000,
        'PriceChangeTimestamp': '2024-05-10T14:30:00Z',
    })
    assert change.change_percent == 2.0
    assert change.event_type == 'Price Increased'


def test_initial_listing_without_previous_price():
    change = build_price_change({
        'ListingKey': 'C2',
        'ListPrice': 650000,
        'OriginalEntryTimestamp': '2024-04-01T09:00:00Z',
    })
    assert change.event_type == 'Listed'
    assert change.change_percent is None
    assert change.change_date == '2024-04-01T09:00:00.000Z'


def test_no_price_event_without_markers():
    assert build_price_change({
        'ListingKey': 'C3',
        'ListPrice': 650000,
        'ModificationTimestamp': '2024-04-01T09:00:00Z',
    }) is None


def test_history_fields_only_when_hints_present():
    assert extract_history_fields({'ListingKey': 'H1', 'ListPrice': 1}) is None
    fields = extract_history_fields({
        'ListingKey': 'H2',
        'PreviousListPrice': None,
        'BackOnMarketEntryTimestamp': '2024-05-05T12:00:00Z',
    })
    assert fields['PreviousListPrice'] is None
    assert fields['BackOnMarketEntryTimestamp'] == '2024-05-05T12:00:00.000Z'


def test_current_period_prefers_active():
    sold = ListingPeriod('OLD', 'a', '2024-05-01T00:00:00.000Z', '2024-06-01T00:00:00.000Z', 'Sold')
    active = ListingPeriod('MID', 'a', '2024-01-01T00:00:00.000Z')
    assert current_period([sold, active]).listing_key == 'MID'
    assert current_period([sold]).listing_key == 'OLD'
    assert current_period([]) is None


# =============================================================================
# Processing against a store
# =============================================================================

def test_processing_twice_is_idempotent(sample_property):
    store = MemoryStore()

    asyncio.run(process_property_listing_history(store, sample_property))
    periods_once = dict(store.periods)
    changes_once = dict(store.price_changes)

    asyncio.run(process_property_listing_history(store, sample_property))

    assert store.periods == periods_once
    assert store.price_changes == changes_once
    assert len(store.price_changes) == 1
    change = next(iter(store.price_changes.values()))
    assert change.event_type == 'Price Reduced'
    assert change.change_percent == -5.0


def test_stored_history_fields_are_used_on_later_passes(sample_property):
    store = MemoryStore()
    asyncio.run(process_property_listing_history(store, sample_property))

    # Later payload without the hint fields still sees the stored ones
    later = {
        key: value for key, value in sample_property.items()
        if key not in ('OriginalListPrice', 'PreviousListPrice', 'PriceChangeTimestamp')
    }
    asyncio.run(process_property_listing_history(store, later))

    period = store.periods['C9000001']
    assert period.initial_price == 500000
    assert period.final_price == 475000
    assert len(store.price_changes) == 1


def test_late_update_for_superseded_period_is_skipped():
    store = MemoryStore()
    address = '77 Bay St, Toronto'
    relisted = {
        'ListingKey': 'NEW',
        'UnparsedAddress': address,
        'MlsStatus': 'Active',
        'OriginalEntryTimestamp': '2024-06-01T00:00:00Z',
        'ListPrice': 800000,
    }
    late_old = {
        'ListingKey': 'OLD',
        'UnparsedAddress': address,
        'MlsStatus': 'Terminated',
        'OriginalEntryTimestamp': '2024-01-01T00:00:00Z',
        'TerminatedDate': '2024-03-01',
        'ListPrice': 780000,
        'PreviousListPrice': 820000,
        'PriceChangeTimestamp': '2024-02-15T00:00:00Z',
    }

    asyncio.run(process_property_listing_history(store, relisted))
    asyncio.run(process_property_listing_history(store, late_old))

    assert set(store.periods) == {'NEW', 'OLD'}
    assert store.periods['OLD'].date_end == '2024-03-01T00:00:00.000Z'
    assert [key for key, _ in store.price_changes] == ['NEW']


def test_get_listing_history_by_listing_key(sample_property):
    store = MemoryStore()
    store.properties['C9000001'] = dict(sample_property)
    asyncio.run(process_property_listing_history(store, sample_property))

    history = asyncio.run(get_listing_history(store, 'C9000001', is_listing_key=True))

    assert history['property_address'] == sample_property['UnparsedAddress']
    assert history['current_listing_key'] == 'C9000001'
    assert [p.listing_key for p in history['listing_history']] == ['C9000001']
    assert len(history['price_changes']) == 1


def test_get_listing_history_unknown_key():
    with pytest.raises(ListingNotFoundError):
        asyncio.run(get_listing_history(MemoryStore(), 'MISSING', is_listing_key=True))


def test_rebuild_history_from_stored_properties():
    store = MemoryStore()
    store.properties = {
        'R1': {'ListingKey': 'R1', 'UnparsedAddress': '1 A St',
               'OriginalEntryTimestamp': '2024-01-01T00:00:00Z', 'ListPrice': 1},
        'R2': {'ListingKey': 'R2', 'UnparsedAddress': '2 A St',
               'ModificationTimestamp': '2024-01-02T00:00:00Z', 'ListPrice': 2},
        'R3': {'ListingKey': 'R3', 'ModificationTimestamp': '2024-01-03T00:00:00Z'},
    }

    stats = asyncio.run(rebuild_listing_history(store, batch_size=2))

    assert stats == {'processed': 2, 'skipped': 1, 'errors': 0}
    assert set(store.periods) == {'R1', 'R2'}


def test_no_price_event_without_list_price():
    assert build_price_change({
        'ListingKey': 'C4',
        'PreviousListPrice': 500000,
        'PriceChangeTimestamp': '2024-05-10T14:30:00Z',
    }) is None
