"""
Field mapping between the RESO feed and the local listing tables.

Every mapper whitelists its output keys, coerces designated numeric
fields, and never raises: bad upstream values become None.
"""

import math
import re
from datetime import datetime, timezone
from typing import Any, Iterable, Mapping, Optional


# =============================================================================
# FIELD WHITELISTS
# =============================================================================

PROPERTY_FIELDS = (
    'ListingKey', 'ListPrice', 'ClosePrice', 'MlsStatus', 'ContractStatus',
    'StandardStatus', 'TransactionType', 'PropertyType', 'PropertySubType',
    'ArchitecturalStyle', 'UnparsedAddress', 'StreetNumber', 'StreetName',
    'StreetSuffix', 'City', 'StateOrProvince', 'PostalCode', 'CountyOrParish',
    'CityRegion', 'UnitNumber', 'KitchensAboveGrade', 'BedroomsAboveGrade',
    'BedroomsBelowGrade', 'BathroomsTotalInteger', 'KitchensBelowGrade',
    'KitchensTotal', 'DenFamilyRoomYN', 'PublicRemarks', 'PossessionDetails',
    'PhotosChangeTimestamp', 'MediaChangeTimestamp', 'ModificationTimestamp',
    'SystemModificationTimestamp', 'OriginalEntryTimestamp',
    'SoldConditionalEntryTimestamp', 'SoldEntryTimestamp',
    'SuspendedEntryTimestamp', 'TerminatedEntryTimestamp', 'CloseDate',
    'ConditionalExpiryDate', 'PurchaseContractDate', 'SuspendedDate',
    'TerminatedDate', 'UnavailableDate', 'ExpirationDate', 'Cooling', 'Sewer',
    'Basement', 'BasementStatus', 'BasementEntrance', 'BasementBedroom',
    'BasementKitchen', 'BasementRental', 'ExteriorFeatures',
    'InteriorFeatures', 'PoolFeatures', 'PropertyFeatures', 'HeatType',
    'FireplaceYN', 'LivingAreaRange', 'WaterfrontYN', 'PossessionType',
    'CoveredSpaces', 'ParkingSpaces', 'ParkingTotal', 'AssociationAmenities',
    'Locker', 'BalconyType', 'PetsAllowed', 'AssociationFee',
    'AssociationFeeIncludes', 'ApproximateAge', 'AdditionalMonthlyFee',
    'TaxAnnualAmount', 'TaxYear', 'LotDepth', 'LotWidth', 'LotSizeUnits',
    'Furnished', 'RentIncludes',
)

PROPERTY_NUMERIC_FIELDS = frozenset({
    'ListPrice', 'ClosePrice', 'KitchensAboveGrade', 'BedroomsAboveGrade',
    'BedroomsBelowGrade', 'BathroomsTotalInteger', 'KitchensBelowGrade',
    'KitchensTotal', 'CoveredSpaces', 'ParkingSpaces', 'ParkingTotal',
    'AssociationFee', 'AdditionalMonthlyFee', 'TaxAnnualAmount', 'TaxYear',
    'LotDepth', 'LotWidth',
})

MEDIA_FIELDS = (
    'MediaKey', 'ResourceRecordKey', 'MediaObjectID', 'MediaURL',
    'MediaCategory', 'MediaType', 'MediaStatus', 'ImageOf', 'ClassName',
    'ImageSizeDescription', 'Order', 'PreferredPhotoYN', 'ShortDescription',
    'ResourceName', 'OriginatingSystemID', 'MediaModificationTimestamp',
    'ModificationTimestamp',
)

MEDIA_NUMERIC_FIELDS = frozenset({'Order'})

ROOM_FIELDS = (
    'RoomKey', 'ListingKey', 'RoomType', 'RoomLevel', 'RoomLength',
    'RoomWidth', 'RoomDescription', 'RoomAreaUnits', 'RoomFeature1',
    'RoomFeature2', 'RoomFeature3', 'ModificationTimestamp',
)

ROOM_NUMERIC_FIELDS = frozenset({'RoomLength', 'RoomWidth'})

OPEN_HOUSE_FIELDS = (
    'OpenHouseKey', 'ListingKey', 'OpenHouseDate', 'OpenHouseStartTime',
    'OpenHouseEndTime', 'OpenHouseRemarks', 'OpenHouseStatus',
    'OpenHouseType', 'ShowingAgentKey', 'ShowingAgentKeyNumeric',
    'ModificationTimestamp',
)

OPEN_HOUSE_INTEGER_FIELDS = frozenset({'ShowingAgentKeyNumeric'})
OPEN_HOUSE_TIME_FIELDS = frozenset({'OpenHouseStartTime', 'OpenHouseEndTime'})

TIME_PATTERN = re.compile(r'(\d{2}:\d{2}:\d{2})')


# =============================================================================
# COERCION HELPERS
# =============================================================================

def coerce_number(value: Any) -> Any:
    """
    Coerce a numeric-looking value.

    None stays None, numbers pass through, strings are parsed as int then
    float. Anything unparseable (including NaN/inf) becomes None.
    """
    if value is None or isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return value if math.isfinite(value) else None
    if isinstance(value, str):
        text = value.strip()
        # int()/float() accept digit separators the feed never sends
        if not text or '_' in text:
            return None
        try:
            return int(text)
        except ValueError:
            pass
        try:
            number = float(text)
        except ValueError:
            return None
        return number if math.isfinite(number) else None
    return None


def coerce_integer(value: Any) -> Optional[int]:
    """Coerce to a floored int, or None."""
    number = coerce_number(value)
    if number is None or isinstance(number, bool):
        return number
    return math.floor(number)


def extract_time(value: Any) -> Optional[str]:
    """'2025-04-06T20:00:00Z' -> '20:00:00'"""
    if value is None:
        return None
    if not isinstance(value, str):
        return None
    match = TIME_PATTERN.search(value)
    return match.group(1) if match else None


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Parse an ISO-8601 timestamp or date into an aware UTC datetime."""
    if not value or not isinstance(value, str):
        return None
    text = value.strip()
    if text.endswith('Z'):
        text = text[:-1] + '+00:00'
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def normalize_timestamp(value: Any) -> Optional[str]:
    """Normalize to 'YYYY-MM-DDTHH:MM:SS.mmmZ', or None when unparseable."""
    parsed = parse_timestamp(value)
    if parsed is None:
        return None
    return parsed.strftime('%Y-%m-%dT%H:%M:%S.') + f"{parsed.microsecond // 1000:03d}Z"


# =============================================================================
# MAPPERS
# =============================================================================

def _map_fields(
    raw: Any,
    allowed: Iterable[str],
    numeric: frozenset = frozenset(),
) -> dict:
    if not isinstance(raw, Mapping):
        return {}
    mapped = {}
    for name in allowed:
        if name not in raw:
            continue
        value = raw[name]
        if name in numeric:
            value = coerce_number(value)
        mapped[name] = value
    return mapped


def map_property(raw: Any) -> dict:
    """Map a raw Property record to the local property shape."""
    return _map_fields(raw, PROPERTY_FIELDS, PROPERTY_NUMERIC_FIELDS)


def map_media(raw: Any) -> dict:
    """Map a raw Media record."""
    return _map_fields(raw, MEDIA_FIELDS, MEDIA_NUMERIC_FIELDS)


def map_room(raw: Any) -> dict:
    """Map a raw PropertyRooms record."""
    return _map_fields(raw, ROOM_FIELDS, ROOM_NUMERIC_FIELDS)


def map_open_house(raw: Any) -> dict:
    """Map a raw OpenHouse record; start/end reduced to HH:MM:SS."""
    mapped = _map_fields(raw, OPEN_HOUSE_FIELDS)
    for name in OPEN_HOUSE_INTEGER_FIELDS & mapped.keys():
        mapped[name] = coerce_integer(mapped[name])
    for name in OPEN_HOUSE_TIME_FIELDS & mapped.keys():
        mapped[name] = extract_time(mapped[name])
    return mapped
