from __future__ import annotations

from pydantic import ValidationError

from listing_sync.domain.errors import NormalizationError
from listing_sync.domain.listing import (
    ListingDetail,
    StandardAgent,
    StandardAmenities,
    StandardCoordinates,
    StandardDetails,
    StandardListing,
    StandardLocation,
    StandardStatus,
    TransactionType,
)

SQM_TO_SQFT = 10.7639

PROPERTY_TYPE_MAP: dict[str, str] = {
    "apartment": "apartment",
    "flat": "apartment",
    "mieszkanie": "apartment",
    "house": "house",
    "dom": "house",
    "land": "land",
    "terrain": "land",
    "dzialka": "land",
    "działka": "land",
    "commercial": "commercial",
    "lokal": "commercial",
}

TRANSACTION_TYPE_MAP: dict[str, TransactionType] = {
    "sale": "sale",
    "sell": "sale",
    "rent": "rent",
    "lease": "lease",
}

POLISH_PROPERTY_TYPE: dict[str, str] = {
    "apartment": "mieszkanie",
    "house": "dom",
    "land": "dzialka",
    "commercial": "lokal",
}

AMENITY_KEYWORDS: dict[str, tuple[str, ...]] = {
    "has_parking": ("parking", "garaż", "miejsce parkingowe"),
    "has_garage": ("garage", "garaż"),
    "has_balcony": ("balcony", "balkon"),
    "has_terrace": ("terrace", "taras"),
    "has_garden": ("garden", "ogród", "ogrod"),
    "has_elevator": ("elevator", "lift", "winda"),
    "has_air_conditioning": ("air conditioning", "klimatyzacja"),
    "has_heating": ("heating", "ogrzewanie", "centralne"),
    "has_security": ("security", "alarm", "ochrona", "monitoring"),
    "is_furnished": ("furnished", "umeblowane", "wyposażone"),
}

COUNTRY_FEATURE_KEYWORDS: dict[str, tuple[str, ...]] = {
    "balkon": ("balkon", "balcony"),
    "taras": ("taras", "terrace"),
    "ogrod": ("ogród", "ogrod", "garden"),
    "garaz": ("garaż", "garaz", "garage"),
    "piwnica": ("piwnica", "basement", "cellar"),
    "poddasze": ("poddasze", "attic"),
    "winda": ("winda", "elevator", "lift"),
}

# Characteristic keys copied verbatim into the country-specific block.
COUNTRY_CHARACTERISTICS: dict[str, str] = {
    "building_type": "typ_budynku",
    "construction_status": "stan_wykonczenia",
    "building_material": "material_budynku",
    "building_ownership": "forma_wlasnosci",
    "market": "rynek",
    "heating": "ogrzewanie",
    "rent": "czynsz",
}


def normalize_listing(detail: ListingDetail, *, country: str) -> StandardListing:
    """Map a validated source payload into the sink's record shape.

    Pure: the same payload always yields the same record. A payload the sink
    schema rejects raises NormalizationError.
    """
    try:
        return _build_record(detail, country=country)
    except ValidationError as exc:
        raise NormalizationError(f"listing {detail.id} does not fit the sink schema: {exc.error_count()} errors") from exc


def _build_record(detail: ListingDetail, *, country: str) -> StandardListing:
    property_type = PROPERTY_TYPE_MAP.get((detail.estate or "").lower(), "other")
    transaction_type = TRANSACTION_TYPE_MAP.get((detail.transaction or "").lower(), "other")
    characteristics = {item.key: item.value for item in detail.characteristics if item.value is not None}

    price, currency = _select_price(detail, transaction_type)
    sqm = detail.area_in_square_meters
    price_per_sqm = detail.price_per_square_meter.value if detail.price_per_square_meter else None
    if price_per_sqm is None and price is not None and sqm:
        price_per_sqm = round(price / sqm, 2)

    rooms = _as_int(detail.rooms_number or characteristics.get("rooms_num"))
    total_floors = _as_int(characteristics.get("building_floors_num"))
    year_built = _as_int(characteristics.get("build_year"))
    features = list(detail.features)

    details = StandardDetails(
        sqm=sqm,
        sqft=round(sqm * SQM_TO_SQFT, 1) if sqm else None,
        rooms=rooms,
        floor=detail.floor_number or characteristics.get("floor_no"),
        total_floors=total_floors,
        year_built=year_built,
        land_area_sqm=detail.terrain_area_in_square_meters,
    )

    return StandardListing(
        source_id=detail.id,
        title=detail.title or "Untitled Property",
        description=detail.description or detail.short_description,
        url=detail.url,
        price=price,
        currency=currency,
        price_per_sqm=price_per_sqm,
        price_per_sqft=round(price_per_sqm / SQM_TO_SQFT) if price_per_sqm and sqm else None,
        property_type=property_type,
        transaction_type=transaction_type,
        location=_build_location(detail, country=country),
        details=details,
        features=features,
        amenities=StandardAmenities(**_match_keywords(features, AMENITY_KEYWORDS)),
        images=[image.large or image.medium for image in detail.images if image.large or image.medium],
        agent=StandardAgent(
            agency=detail.agency.name,
            phone=detail.agency.phone,
            email=detail.agency.email,
        )
        if detail.agency is not None
        else None,
        status=StandardStatus(
            is_promoted=detail.is_promoted,
            is_exclusive=detail.is_exclusive_offer,
            is_private_owner=detail.is_private_owner,
        ),
        created_at=detail.created_at_first,
        updated_at=detail.modified_at or detail.date_created,
        country_specific=_build_country_specific(
            detail,
            property_type=property_type,
            details=details,
            characteristics=characteristics,
        ),
    )


def _select_price(detail: ListingDetail, transaction_type: str) -> tuple[float | None, str]:
    if transaction_type == "rent" and detail.rent_price is not None:
        return detail.rent_price.value, detail.rent_price.currency
    if detail.total_price is not None:
        return detail.total_price.value, detail.total_price.currency
    if detail.rent_price is not None:
        return detail.rent_price.value, detail.rent_price.currency
    return None, "PLN"


def _build_location(detail: ListingDetail, *, country: str) -> StandardLocation:
    location = detail.location
    if location is None:
        return StandardLocation(country=country)

    address = location.address
    street_line: str | None = None
    if address is not None and address.street is not None and address.street.name:
        street_line = f"{address.street.name} {address.street.number or ''}".strip()

    district = address.district.name if address is not None and address.district is not None else None
    if district is None and location.reverse_geocoding is not None:
        for geo in location.reverse_geocoding.locations:
            if geo.location_level == "district" and geo.full_name:
                district = geo.full_name.split(",")[0].strip()
                break

    coordinates = (
        StandardCoordinates(lat=location.coordinates.latitude, lon=location.coordinates.longitude)
        if location.coordinates is not None
        else None
    )
    return StandardLocation(
        address=street_line,
        city=address.city.name if address is not None and address.city is not None else None,
        district=district,
        province=address.province.name if address is not None and address.province is not None else None,
        postal_code=address.postal_code if address is not None else None,
        country=country,
        coordinates=coordinates,
    )


def _build_country_specific(
    detail: ListingDetail,
    *,
    property_type: str,
    details: StandardDetails,
    characteristics: dict[str, str],
) -> dict[str, object]:
    specific: dict[str, object] = {}
    polish_type = POLISH_PROPERTY_TYPE.get(property_type)
    if polish_type is not None:
        specific["typ_nieruchomosci"] = polish_type
    if details.floor is not None:
        specific["pietro"] = details.floor
    if details.total_floors is not None:
        specific["liczba_pieter"] = details.total_floors
    if details.rooms is not None:
        specific["liczba_pokoi"] = details.rooms
    if details.year_built is not None:
        specific["rok_budowy"] = details.year_built
    if detail.market:
        specific["rynek"] = detail.market.lower()

    for key, target in COUNTRY_CHARACTERISTICS.items():
        value = characteristics.get(key)
        if value is not None:
            specific[target] = value

    specific.update(_match_keywords(detail.features, COUNTRY_FEATURE_KEYWORDS))

    if detail.development_id is not None:
        specific["inwestycja_id"] = detail.development_id
        specific["inwestycja_nazwa"] = detail.development_title
        specific["inwestycja_url"] = detail.development_url
    return specific


def _match_keywords(features: list[str], keywords: dict[str, tuple[str, ...]]) -> dict[str, bool]:
    text = " ".join(features).lower()
    return {name: any(word in text for word in words) for name, words in keywords.items()}


def _as_int(value: object) -> int | None:
    if value is None:
        return None
    text = str(value).strip().lower()
    # Source enums look like "three" / "floor_2"; only digits are trusted.
    digits = "".join(ch for ch in text if ch.isdigit())
    if not digits:
        return None
    return int(digits)
