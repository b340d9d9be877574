"""
Provider response schemas and the normalized DTOs handed to callers

Raw RentCast payloads are validated against the ``RentCast*`` models before
normalization. A payload that fails validation is a SchemaError, never a
loosely typed passthrough.
"""
from datetime import date, datetime, timezone
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from .types import EnrichmentStage, EnrichmentStatus

# Provider payloads


class _ProviderModel(BaseModel):
    # New upstream fields must not break validation
    model_config = ConfigDict(extra="ignore")


class RentCastMailingAddress(_ProviderModel):
    addressLine1: Optional[str] = None
    addressLine2: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    zipCode: Optional[str] = None


class RentCastOwner(_ProviderModel):
    names: Optional[List[str]] = None
    mailingAddress: Optional[RentCastMailingAddress] = None
    ownerType: Optional[str] = None


class RentCastTaxAssessment(_ProviderModel):
    assessedValue: Optional[float] = None
    marketValue: Optional[float] = None
    taxYear: Optional[int] = None
    taxAmount: Optional[float] = None


class RentCastFeatures(_ProviderModel):
    cooling: Optional[bool] = None
    heating: Optional[bool] = None
    fireplace: Optional[bool] = None
    pool: Optional[bool] = None
    garage: Optional[bool] = None
    garageSpaces: Optional[int] = None
    stories: Optional[float] = None


class RentCastProperty(_ProviderModel):
    id: str
    formattedAddress: str
    addressLine1: Optional[str] = None
    addressLine2: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    zipCode: Optional[str] = None
    county: Optional[str] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    propertyType: Optional[str] = None
    bedrooms: Optional[float] = None
    bathrooms: Optional[float] = None
    squareFootage: Optional[float] = None
    lotSize: Optional[float] = None
    yearBuilt: Optional[int] = None
    lastSaleDate: Optional[str] = None
    lastSalePrice: Optional[float] = None
    ownerOccupied: Optional[bool] = None
    owner: Optional[RentCastOwner] = None
    taxAssessment: Optional[RentCastTaxAssessment] = None
    features: Optional[RentCastFeatures] = None


class RentCastComparable(_ProviderModel):
    id: str
    formattedAddress: str
    price: Optional[float] = None
    rent: Optional[float] = None
    squareFootage: Optional[float] = None
    bedrooms: Optional[float] = None
    bathrooms: Optional[float] = None
    distance: Optional[float] = None
    correlation: Optional[float] = None


class RentCastValuation(_ProviderModel):
    price: float
    priceRangeLow: float
    priceRangeHigh: float
    pricePerSquareFoot: Optional[float] = None
    confidence: Optional[float] = None
    comparables: Optional[List[RentCastComparable]] = None


class RentCastRentEstimate(_ProviderModel):
    rent: float
    rentRangeLow: float
    rentRangeHigh: float
    rentPerSquareFoot: Optional[float] = None
    comparables: Optional[List[RentCastComparable]] = None


class RentCastMarketData(_ProviderModel):
    zipCode: str
    city: Optional[str] = None
    state: Optional[str] = None
    county: Optional[str] = None
    medianSalePrice: Optional[float] = None
    medianListPrice: Optional[float] = None
    medianRent: Optional[float] = None
    pricePerSquareFoot: Optional[float] = None
    rentPerSquareFoot: Optional[float] = None
    daysOnMarket: Optional[float] = None
    inventory: Optional[int] = None
    yearOverYearChange: Optional[float] = None


class RentCastListing(_ProviderModel):
    id: str
    formattedAddress: str
    city: Optional[str] = None
    state: Optional[str] = None
    zipCode: Optional[str] = None
    status: Optional[str] = None
    price: Optional[float] = None
    listDate: Optional[str] = None
    daysOnMarket: Optional[float] = None
    bedrooms: Optional[float] = None
    bathrooms: Optional[float] = None
    squareFootage: Optional[float] = None
    propertyType: Optional[str] = None


# Normalized DTOs


class PropertyDTO(BaseModel):
    """Property record as seen by business services"""

    provider_id: str
    address: str
    city: Optional[str] = None
    state: Optional[str] = None
    zip_code: Optional[str] = None
    county: Optional[str] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    property_type: Optional[str] = None
    bedrooms: Optional[float] = None
    bathrooms: Optional[float] = None
    square_footage: Optional[float] = None
    lot_size: Optional[float] = None
    year_built: Optional[int] = None
    owner_name: Optional[str] = None
    owner_type: Optional[str] = None
    owner_occupied: Optional[bool] = None
    is_absentee: bool = False
    mailing_address: Optional[str] = None
    last_sale_date: Optional[date] = None
    last_sale_price: Optional[float] = None
    assessed_value: Optional[float] = None
    market_value: Optional[float] = None
    tax_amount: Optional[float] = None
    equity_percent: Optional[float] = None


class ValuationDTO(BaseModel):
    property_id: str
    estimated_value: float
    price_range_low: float
    price_range_high: float
    price_per_sqft: Optional[float] = None
    confidence: Optional[float] = None
    comparable_count: int = 0
    data_source: str = "rentcast"
    valuation_date: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class RentEstimateDTO(BaseModel):
    property_id: str
    rent_estimate: float
    rent_range_low: float
    rent_range_high: float
    rent_per_sqft: Optional[float] = None
    comparable_count: int = 0
    data_source: str = "rentcast"
    estimate_date: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class MarketDataDTO(BaseModel):
    zip_code: str
    city: Optional[str] = None
    state: Optional[str] = None
    county: Optional[str] = None
    median_sale_price: Optional[float] = None
    median_list_price: Optional[float] = None
    median_rent: Optional[float] = None
    price_per_sqft: Optional[float] = None
    rent_per_sqft: Optional[float] = None
    days_on_market_avg: Optional[float] = None
    inventory_count: Optional[int] = None
    year_over_year_change: Optional[float] = None
    data_source: str = "rentcast"


class ListingDTO(BaseModel):
    provider_id: str
    address: str
    city: Optional[str] = None
    state: Optional[str] = None
    zip_code: Optional[str] = None
    status: Optional[str] = None
    price: Optional[float] = None
    listed_date: Optional[date] = None
    days_on_market: Optional[float] = None
    bedrooms: Optional[float] = None
    bathrooms: Optional[float] = None
    square_footage: Optional[float] = None
    property_type: Optional[str] = None


class EnrichmentResult(BaseModel):
    """
    A property record with whatever enrichment data could be fetched

    A failed stage leaves its field unset and adds a message to ``errors``;
    the other stages still run.
    """

    property: PropertyDTO
    valuation: Optional[ValuationDTO] = None
    rent_estimate: Optional[RentEstimateDTO] = None
    market_data: Optional[MarketDataDTO] = None
    requested_stages: List[EnrichmentStage] = Field(default_factory=list)
    completed_stages: List[EnrichmentStage] = Field(default_factory=list)
    errors: List[str] = Field(default_factory=list)
    enriched_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def status(self) -> EnrichmentStatus:
        if not self.completed_stages:
            return EnrichmentStatus.NONE
        if len(self.completed_stages) == len(self.requested_stages):
            return EnrichmentStatus.COMPLETE
        return EnrichmentStatus.PARTIAL


class ListingSearchCriteria(BaseModel):
    """Caller-supplied listing search. At least one location field is required"""

    model_config = ConfigDict(extra="forbid", str_strip_whitespace=True)

    city: Optional[str] = None
    state: Optional[str] = Field(default=None, min_length=2, max_length=2)
    zip_code: Optional[str] = Field(default=None, pattern=r"^\d{5}$")
    status: Optional[str] = None
    property_type: Optional[str] = None
    price_min: Optional[int] = Field(default=None, ge=0)
    price_max: Optional[int] = Field(default=None, ge=0)
    bedrooms_min: Optional[int] = Field(default=None, ge=0)
    bedrooms_max: Optional[int] = Field(default=None, ge=0)
    offset: int = Field(default=0, ge=0)
    limit: int = Field(default=50, ge=1, le=500)

    @field_validator("state")
    @classmethod
    def upper_state(cls, v):
        return v.upper() if v else v

    @model_validator(mode="after")
    def check_location_and_ranges(self):
        if not (self.city or self.state or self.zip_code):
            raise ValueError("one of city, state or zip_code is required")
        if self.price_min is not None and self.price_max is not None and self.price_min > self.price_max:
            raise ValueError("price_min cannot exceed price_max")
        if (
            self.bedrooms_min is not None
            and self.bedrooms_max is not None
            and self.bedrooms_min > self.bedrooms_max
        ):
            raise ValueError("bedrooms_min cannot exceed bedrooms_max")
        return self

    def to_query_params(self) -> dict:
        """Provider query parameters, omitting unset fields"""
        mapping = {
            "city": self.city,
            "state": self.state,
            "zipCode": self.zip_code,
            "status": self.status,
            "propertyType": self.property_type,
            "priceMin": self.price_min,
            "priceMax": self.price_max,
            "bedroomsMin": self.bedrooms_min,
            "bedroomsMax": self.bedrooms_max,
            "offset": self.offset,
            "limit": self.limit,
        }
        return {k: v for k, v in mapping.items() if v is not None}


# Normalization


def _parse_date(value: Optional[str]) -> Optional[date]:
    if not value:
        return None
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00")).date()
    except ValueError:
        return None


def _format_mailing_address(address: Optional[RentCastMailingAddress]) -> Optional[str]:
    if address is None:
        return None
    locality = " ".join(p for p in [address.state, address.zipCode] if p)
    parts = [address.addressLine1, address.addressLine2, address.city, locality]
    return ", ".join(p for p in parts if p) or None


def normalize_property(raw: RentCastProperty) -> PropertyDTO:
    owner = raw.owner
    tax = raw.taxAssessment

    equity_percent = None
    if tax and tax.marketValue and raw.lastSalePrice:
        equity_percent = round((tax.marketValue - raw.lastSalePrice) / tax.marketValue * 100, 2)

    return PropertyDTO(
        provider_id=raw.id,
        address=raw.formattedAddress,
        city=raw.city,
        state=raw.state,
        zip_code=raw.zipCode,
        county=raw.county,
        latitude=raw.latitude,
        longitude=raw.longitude,
        property_type=raw.propertyType,
        bedrooms=raw.bedrooms,
        bathrooms=raw.bathrooms,
        square_footage=raw.squareFootage,
        lot_size=raw.lotSize,
        year_built=raw.yearBuilt,
        owner_name=", ".join(owner.names) if owner and owner.names else None,
        owner_type=owner.ownerType if owner else None,
        owner_occupied=raw.ownerOccupied,
        is_absentee=raw.ownerOccupied is False,
        mailing_address=_format_mailing_address(owner.mailingAddress) if owner else None,
        last_sale_date=_parse_date(raw.lastSaleDate),
        last_sale_price=raw.lastSalePrice,
        assessed_value=tax.assessedValue if tax else None,
        market_value=tax.marketValue if tax else None,
        tax_amount=tax.taxAmount if tax else None,
        equity_percent=equity_percent,
    )


def normalize_valuation(raw: RentCastValuation, property_id: str) -> ValuationDTO:
    return ValuationDTO(
        property_id=property_id,
        estimated_value=raw.price,
        price_range_low=raw.priceRangeLow,
        price_range_high=raw.priceRangeHigh,
        price_per_sqft=raw.pricePerSquareFoot,
        confidence=raw.confidence,
        comparable_count=len(raw.comparables or []),
    )


def normalize_rent_estimate(raw: RentCastRentEstimate, property_id: str) -> RentEstimateDTO:
    return RentEstimateDTO(
        property_id=property_id,
        rent_estimate=raw.rent,
        rent_range_low=raw.rentRangeLow,
        rent_range_high=raw.rentRangeHigh,
        rent_per_sqft=raw.rentPerSquareFoot,
        comparable_count=len(raw.comparables or []),
    )


def normalize_market_data(raw: RentCastMarketData) -> MarketDataDTO:
    return MarketDataDTO(
        zip_code=raw.zipCode,
        city=raw.city,
        state=raw.state,
        county=raw.county,
        median_sale_price=raw.medianSalePrice,
        median_list_price=raw.medianListPrice,
        median_rent=raw.medianRent,
        price_per_sqft=raw.pricePerSquareFoot,
        rent_per_sqft=raw.rentPerSquareFoot,
        days_on_market_avg=raw.daysOnMarket,
        inventory_count=raw.inventory,
        year_over_year_change=raw.yearOverYearChange,
    )


def normalize_listing(raw: RentCastListing) -> ListingDTO:
    return ListingDTO(
        provider_id=raw.id,
        address=raw.formattedAddress,
        city=raw.city,
        state=raw.state,
        zip_code=raw.zipCode,
        status=raw.status,
        price=raw.price,
        listed_date=_parse_date(raw.listDate),
        days_on_market=raw.daysOnMarket,
        bedrooms=raw.bedrooms,
        bathrooms=raw.bathrooms,
        square_footage=raw.squareFootage,
        property_type=raw.propertyType,
    )
