from __future__ import annotations

import pytest
from pydantic import ValidationError

from listing_sync.domain.errors import NormalizationError
from listing_sync.domain.hashing import payload_digest
from listing_sync.domain.listing import ListingDetail
from listing_sync.domain.normalization import SQM_TO_SQFT, normalize_listing


def _sample_ad(**overrides: object) -> dict[str, object]:
    ad: dict[str, object] = {
        "id": 65123456,
        "title": "Mieszkanie 3-pokojowe, Mokotów",
        "url": "https://www.otodom.pl/pl/oferta/mieszkanie-3-pokojowe-ID4abc",
        "description": "Jasne mieszkanie z balkonem.",
        "estate": "FLAT",
        "transaction": "SELL",
        "market": "SECONDARY",
        "totalPrice": {"value": 990000, "currency": "PLN"},
        "areaInSquareMeters": 55.0,
        "roomsNumber": "THREE_3",
        "floorNumber": "floor_2",
        "features": ["balkon", "winda", "piwnica", "klimatyzacja"],
        "characteristics": [
            {"key": "build_year", "value": "2015"},
            {"key": "building_floors_num", "value": "8"},
            {"key": "building_type", "value": "block"},
            {"key": "heating", "value": "urban"},
        ],
        "location": {
            "address": {
                "street": {"name": "ul. Puławska", "number": "12"},
                "city": {"name": "Warszawa"},
                "province": {"name": "mazowieckie"},
                "postalCode": "02-512",
            },
            "coordinates": {"latitude": 52.2, "longitude": 21.02},
            "reverseGeocoding": {
                "locations": [
                    {"id": "mazowieckie", "fullName": "mazowieckie", "locationLevel": "region"},
                    {"id": "mokotow", "fullName": "Mokotów, Warszawa", "locationLevel": "district"},
                ]
            },
        },
        "images": [{"large": "https://img/1-large.jpg"}, {"medium": "https://img/2-medium.jpg"}, {}],
        "agency": {"name": "Dom Nieruchomości", "phone": "+48 600 000 000"},
        "isPromoted": True,
        "createdAtFirst": "2025-12-01T10:00:00Z",
        "modifiedAt": "2026-01-02T10:00:00Z",
        "developmentId": 991,
        "developmentTitle": "Osiedle Zielone",
        "developmentUrl": "https://www.otodom.pl/pl/inwestycja/osiedle-zielone",
        "unmappedSourceField": {"kept": True},
    }
    ad.update(overrides)
    return ad


@pytest.mark.unit
def test_sale_listing_maps_price_area_and_location() -> None:
    detail = ListingDetail.model_validate(_sample_ad())

    record = normalize_listing(detail, country="poland")

    assert record.source_id == "65123456"
    assert record.property_type == "apartment"
    assert record.transaction_type == "sale"
    assert record.price == 990000
    assert record.currency == "PLN"
    assert record.price_per_sqm == 18000.0
    assert record.price_per_sqft == round(18000.0 / SQM_TO_SQFT)
    assert record.details.sqft == round(55.0 * SQM_TO_SQFT, 1)
    assert record.details.rooms == 3
    assert record.details.total_floors == 8
    assert record.details.year_built == 2015
    assert record.location.address == "ul. Puławska 12"
    assert record.location.city == "Warszawa"
    assert record.location.district == "Mokotów"
    assert record.location.postal_code == "02-512"
    assert record.location.coordinates is not None and record.location.coordinates.lon == 21.02
    assert record.images == ["https://img/1-large.jpg", "https://img/2-medium.jpg"]
    assert record.agent is not None and record.agent.agency == "Dom Nieruchomości"
    assert record.status.is_promoted is True
    assert record.updated_at == "2026-01-02T10:00:00Z"


@pytest.mark.unit
def test_amenities_and_polish_market_block() -> None:
    record = normalize_listing(ListingDetail.model_validate(_sample_ad()), country="poland")

    assert record.amenities.has_balcony is True
    assert record.amenities.has_elevator is True
    assert record.amenities.has_air_conditioning is True
    assert record.amenities.has_garden is False

    specific = record.country_specific
    assert specific["typ_nieruchomosci"] == "mieszkanie"
    assert specific["rynek"] == "secondary"
    assert specific["typ_budynku"] == "block"
    assert specific["piwnica"] is True
    assert specific["ogrod"] is False
    assert specific["inwestycja_id"] == 991
    assert specific["inwestycja_nazwa"] == "Osiedle Zielone"


@pytest.mark.unit
def test_rent_listing_prefers_rent_price() -> None:
    detail = ListingDetail.model_validate(
        _sample_ad(transaction="RENT", rentPrice={"value": 4200, "currency": "PLN"}, totalPrice=None)
    )

    record = normalize_listing(detail, country="poland")

    assert record.transaction_type == "rent"
    assert record.price == 4200
    assert record.price_per_sqm == round(4200 / 55.0, 2)


@pytest.mark.unit
def test_minimal_payload_normalizes_with_defaults() -> None:
    record = normalize_listing(ListingDetail.model_validate({"id": "9"}), country="poland")

    assert record.title == "Untitled Property"
    assert record.property_type == "other"
    assert record.transaction_type == "other"
    assert record.price is None
    assert record.location.country == "poland"
    assert record.schema_version == "listing:v1"


@pytest.mark.unit
@pytest.mark.parametrize("bad_ad", [{"id": ""}, {"title": "no id"}, {"id": "1", "totalPrice": {"currency": "PLN"}}])
def test_schema_rejects_malformed_payloads(bad_ad: dict[str, object]) -> None:
    with pytest.raises(ValidationError):
        ListingDetail.model_validate(bad_ad)


@pytest.mark.unit
def test_payload_digest_ignores_key_order_but_not_values() -> None:
    first = {"id": "1", "price": {"value": 10, "currency": "PLN"}}
    reordered = {"price": {"currency": "PLN", "value": 10}, "id": "1"}
    changed = {"id": "1", "price": {"value": 11, "currency": "PLN"}}

    assert payload_digest(first) == payload_digest(reordered)
    assert payload_digest(first) != payload_digest(changed)


@pytest.mark.unit
def test_record_rejected_by_sink_schema_raises_normalization_error() -> None:
    detail = ListingDetail.model_construct(id="1", title=123)

    with pytest.raises(NormalizationError):
        normalize_listing(detail, country="poland")
