"""
RentCast property data API client implementation
"""
from typing import Any, Dict, List, Optional

import httpx

from ..base import BaseAPIClient


class RentCastClient(BaseAPIClient):
    """RentCast API v1 client"""

    # Every RentCast request is billed as one call regardless of endpoint
    COST_UNITS = {
        "property": 1,
        "valuation": 1,
        "rent_estimate": 1,
        "market_data": 1,
        "listings": 1,
    }

    def __init__(
        self,
        api_key: Optional[str] = None,
        base_url: Optional[str] = None,
        client: Optional[httpx.AsyncClient] = None,
        timeout: Optional[float] = None,
    ):
        super().__init__(provider="rentcast", api_key=api_key, base_url=base_url, client=client, timeout=timeout)

    def _get_base_url(self) -> str:
        """Get RentCast API base URL"""
        return self.settings.rentcast_base_url

    def _get_headers(self) -> Dict[str, str]:
        """Get RentCast API headers"""
        return {
            "X-Api-Key": self.api_key or "",
            "Accept": "application/json",
        }

    def calculate_cost(self, operation: str, **kwargs) -> int:
        """Cost units for a RentCast operation"""
        return self.COST_UNITS.get(operation, 1)

    async def get_property(self, property_id: str, request_id: Optional[str] = None) -> Dict[str, Any]:
        """
        Get a property record by RentCast id

        Args:
            property_id: RentCast property identifier

        Returns:
            Raw property record
        """
        return await self.make_request(
            "GET", f"/properties/{property_id}", request_id=request_id, resource="property"
        )

    async def get_value_estimate(self, address: str, request_id: Optional[str] = None) -> Dict[str, Any]:
        """Automated valuation for a formatted address"""
        return await self.make_request(
            "GET", "/avm/value", params={"address": address}, request_id=request_id, resource="valuation"
        )

    async def get_rent_estimate(self, address: str, request_id: Optional[str] = None) -> Dict[str, Any]:
        """Long-term rent estimate for a formatted address"""
        return await self.make_request(
            "GET",
            "/avm/rent/long-term",
            params={"address": address},
            request_id=request_id,
            resource="rent estimate",
        )

    async def get_market_data(self, zip_code: str, request_id: Optional[str] = None) -> Dict[str, Any]:
        """Aggregate market statistics for a zip code"""
        return await self.make_request(
            "GET", "/markets", params={"zipCode": zip_code}, request_id=request_id, resource="market"
        )

    async def search_sale_listings(
        self, params: Dict[str, Any], request_id: Optional[str] = None
    ) -> List[Dict[str, Any]]:
        """
        Search active sale listings

        Args:
            params: RentCast query parameters (city, state, zipCode, priceMin, ...)

        Returns:
            List of raw listing records
        """
        return await self.make_request(
            "GET", "/listings/sale", params=params, request_id=request_id, resource="listings"
        )
