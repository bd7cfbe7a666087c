from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator

# Schema of the detail payload read from the source page, validated at the fetch
# boundary. Unknown keys are kept so the raw payload can be forwarded as-is.


class _SourceModel(BaseModel):
    model_config = ConfigDict(extra="allow", populate_by_name=True)


class Money(_SourceModel):
    value: float
    currency: str = "PLN"


class NamedRef(_SourceModel):
    name: str | None = None


class Street(_SourceModel):
    name: str | None = None
    number: str | None = None


class Address(_SourceModel):
    street: Street | None = None
    city: NamedRef | None = None
    district: NamedRef | None = None
    province: NamedRef | None = None
    postal_code: str | None = Field(default=None, alias="postalCode")


class Coordinates(_SourceModel):
    latitude: float
    longitude: float


class GeoLocation(_SourceModel):
    id: str
    full_name: str | None = Field(default=None, alias="fullName")
    location_level: str | None = Field(default=None, alias="locationLevel")


class ReverseGeocoding(_SourceModel):
    locations: list[GeoLocation] = Field(default_factory=list)


class Location(_SourceModel):
    address: Address | None = None
    coordinates: Coordinates | None = None
    reverse_geocoding: ReverseGeocoding | None = Field(default=None, alias="reverseGeocoding")


class Image(_SourceModel):
    large: str | None = None
    medium: str | None = None


class Characteristic(_SourceModel):
    key: str
    value: str | None = None
    label: str | None = None
    localized_value: str | None = Field(default=None, alias="localizedValue")


class Agency(_SourceModel):
    name: str | None = None
    phone: str | None = None
    email: str | None = None


class ListingDetail(_SourceModel):
    id: str
    title: str = ""
    slug: str | None = None
    url: str | None = None
    description: str | None = None
    short_description: str | None = Field(default=None, alias="shortDescription")
    estate: str | None = None
    transaction: str | None = None
    market: str | None = None
    total_price: Money | None = Field(default=None, alias="totalPrice")
    rent_price: Money | None = Field(default=None, alias="rentPrice")
    price_per_square_meter: Money | None = Field(default=None, alias="pricePerSquareMeter")
    area_in_square_meters: float | None = Field(default=None, alias="areaInSquareMeters")
    terrain_area_in_square_meters: float | None = Field(default=None, alias="terrainAreaInSquareMeters")
    rooms_number: str | None = Field(default=None, alias="roomsNumber")
    floor_number: str | None = Field(default=None, alias="floorNumber")
    location: Location | None = None
    images: list[Image] = Field(default_factory=list)
    features: list[str] = Field(default_factory=list)
    characteristics: list[Characteristic] = Field(default_factory=list)
    agency: Agency | None = None
    is_private_owner: bool = Field(default=False, alias="isPrivateOwner")
    is_promoted: bool = Field(default=False, alias="isPromoted")
    is_exclusive_offer: bool = Field(default=False, alias="isExclusiveOffer")
    created_at_first: str | None = Field(default=None, alias="createdAtFirst")
    date_created: str | None = Field(default=None, alias="dateCreated")
    modified_at: str | None = Field(default=None, alias="modifiedAt")
    development_id: int | None = Field(default=None, alias="developmentId")
    development_title: str | None = Field(default=None, alias="developmentTitle")
    development_url: str | None = Field(default=None, alias="developmentUrl")

    @field_validator("id", mode="before")
    @classmethod
    def _coerce_id(cls, value: object) -> str:
        text = str(value).strip() if value is not None else ""
        if not text:
            raise ValueError("listing id must be a non-empty string")
        return text

    @field_validator("rooms_number", "floor_number", mode="before")
    @classmethod
    def _coerce_text(cls, value: object) -> str | None:
        if value is None:
            return None
        return str(value)


# Normalized record shape accepted by the sink.

TransactionType = Literal["sale", "rent", "lease", "other"]


class StandardCoordinates(BaseModel):
    lat: float
    lon: float


class StandardLocation(BaseModel):
    address: str | None = None
    city: str | None = None
    district: str | None = None
    province: str | None = None
    postal_code: str | None = None
    country: str
    coordinates: StandardCoordinates | None = None


class StandardDetails(BaseModel):
    sqm: float | None = None
    sqft: float | None = None
    rooms: int | None = None
    floor: str | None = None
    total_floors: int | None = None
    year_built: int | None = None
    land_area_sqm: float | None = None


class StandardAmenities(BaseModel):
    has_parking: bool = False
    has_garage: bool = False
    has_balcony: bool = False
    has_terrace: bool = False
    has_garden: bool = False
    has_elevator: bool = False
    has_air_conditioning: bool = False
    has_heating: bool = False
    has_security: bool = False
    is_furnished: bool = False


class StandardAgent(BaseModel):
    name: str | None = None
    agency: str | None = None
    phone: str | None = None
    email: str | None = None


class StandardStatus(BaseModel):
    is_promoted: bool = False
    is_exclusive: bool = False
    is_private_owner: bool = False


class StandardListing(BaseModel):
    source_id: str
    title: str
    description: str | None = None
    url: str | None = None
    price: float | None = None
    currency: str = "PLN"
    price_per_sqm: float | None = None
    price_per_sqft: float | None = None
    property_type: str
    transaction_type: TransactionType
    location: StandardLocation
    details: StandardDetails
    features: list[str] = Field(default_factory=list)
    amenities: StandardAmenities = Field(default_factory=StandardAmenities)
    images: list[str] = Field(default_factory=list)
    agent: StandardAgent | None = None
    status: StandardStatus = Field(default_factory=StandardStatus)
    created_at: str | None = None
    updated_at: str | None = None
    country_specific: dict[str, object] = Field(default_factory=dict)
    schema_version: str = Field(default="listing:v1")
