"""Core utilities and configuration for the storefront"""
from core.config import settings
from core.exceptions import StorefrontError, ValidationError
from core.logging import get_logger

__all__ = [
    "settings",
    "get_logger",
    "StorefrontError",
    "ValidationError",
]
