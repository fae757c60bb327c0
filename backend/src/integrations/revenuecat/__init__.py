"""
RevenueCat integration module.
"""

from src.integrations.revenuecat.provider import PurchaseProvider
from src.integrations.revenuecat.client import (
    RevenueCatClient,
    StoreBridge,
    get_revenuecat_client,
)

__all__ = [
    "PurchaseProvider",
    "RevenueCatClient",
    "StoreBridge",
    "get_revenuecat_client",
]
