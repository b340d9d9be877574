"""
Provider-specific API clients for the property data gateway
"""

from .rentcast import RentCastClient

__all__ = [
    "RentCastClient",
]
