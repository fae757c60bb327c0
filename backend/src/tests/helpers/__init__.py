"""Test helper utilities for entitlement engine tests."""

from .fake_purchase_provider import (
    ORG_A,
    ORG_B,
    TEST_ENTITLEMENT_ID,
    FakePurchaseProvider,
    FixedClock,
    RecordingSleep,
)

__all__ = [
    "ORG_A",
    "ORG_B",
    "TEST_ENTITLEMENT_ID",
    "FakePurchaseProvider",
    "FixedClock",
    "RecordingSleep",
]
