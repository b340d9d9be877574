"""Core utilities and configuration for RealtyFlow"""
from core.config import settings
from core.exceptions import ConfigurationError, RealtyFlowError
from core.logging import get_logger

__all__ = [
    "settings",
    "get_logger",
    "RealtyFlowError",
    "ConfigurationError",
]
