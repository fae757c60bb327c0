"""
Root test configuration and fixtures.

Shared fixtures:
- fixed_now / clock: Deterministic time source for expiry and policy tests
- fake_provider: In-memory PurchaseProvider
- purchase_config: PurchaseConfig with test keys and a fast configure poll
- make_service: Factory for a fully wired EntitlementService
- temp_config_dir / make_yaml_config: YAML config files in a temp dir
"""

import os
import tempfile
from datetime import datetime, timezone
from pathlib import Path

import pytest
import yaml

from src.config.purchase_config import PurchaseConfig, reset_purchase_config_loader
from src.entitlements.audit import EntitlementAuditLogger
from src.entitlements.models import AccountRecord, Platform, SubscriptionStatus
from src.entitlements.service import EntitlementService
from src.tests.helpers.fake_purchase_provider import (
    FakePurchaseProvider,
    FixedClock,
    RecordingSleep,
    ORG_A,
    TEST_ENTITLEMENT_ID,
)

# Set test environment
os.environ.setdefault("ENV", "test")


@pytest.fixture(autouse=True)
def _reset_purchase_config():
    """Each test gets a fresh config loader singleton."""
    reset_purchase_config_loader()
    yield
    reset_purchase_config_loader()


@pytest.fixture
def fixed_now() -> datetime:
    return datetime(2026, 3, 1, 12, 0, 0, tzinfo=timezone.utc)


@pytest.fixture
def clock(fixed_now) -> FixedClock:
    return FixedClock(fixed_now)


@pytest.fixture
def recording_sleep() -> RecordingSleep:
    return RecordingSleep()


@pytest.fixture
def fake_provider() -> FakePurchaseProvider:
    return FakePurchaseProvider()


@pytest.fixture
def audit_log() -> EntitlementAuditLogger:
    return EntitlementAuditLogger()


@pytest.fixture
def purchase_config() -> PurchaseConfig:
    return PurchaseConfig(
        ios_api_key="appl_test_key",
        android_api_key="goog_test_key",
        entitlement_id=TEST_ENTITLEMENT_ID,
        configure_poll_interval_seconds=0.5,
        configure_max_attempts=3,
    )


@pytest.fixture
def make_service(fake_provider, purchase_config, audit_log, clock, recording_sleep):
    """
    Factory fixture for EntitlementService wired to the fake provider.

    Usage:
        service = make_service()
        service = make_service(platform=Platform.WEB)
    """
    def _make(**overrides) -> EntitlementService:
        kwargs = {
            "provider": fake_provider,
            "config": purchase_config,
            "platform": Platform.IOS,
            "audit_logger": audit_log,
            "clock": clock,
            "sleep": recording_sleep,
        }
        kwargs.update(overrides)
        return EntitlementService(**kwargs)
    return _make


@pytest.fixture
def make_account(fixed_now):
    """Factory for AccountRecord instances for ORG_A."""
    def _make(
        status=None,
        subscription_end_date=None,
        trial_end_date=None,
        organization_id=ORG_A,
    ) -> AccountRecord:
        return AccountRecord(
            organization_id=organization_id,
            subscription_status=SubscriptionStatus.parse(status) if isinstance(status, str) else status,
            subscription_end_date=subscription_end_date,
            trial_end_date=trial_end_date,
        )
    return _make


@pytest.fixture
def temp_config_dir():
    """Create a temporary directory for YAML config files."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def make_yaml_config(temp_config_dir):
    """
    Factory fixture that writes a YAML config file and returns its path.

    Usage:
        config_path = make_yaml_config("purchases.yml", {"revenuecat": {...}})
    """
    def _make(filename: str, config: dict) -> Path:
        config_path = temp_config_dir / filename
        with open(config_path, "w") as f:
            yaml.dump(config, f)
        return config_path
    return _make
