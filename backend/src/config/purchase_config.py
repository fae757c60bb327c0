"""
Purchase configuration loader.

Loads purchase provider settings from config/purchases.yml, with
environment variable overrides for keys that differ per deployment.

Consumers:
  - EntitlementService: entitlement id, poll settings, offering defaults
  - IdentityBinder: platform API key
  - RevenueCatClient / LibraryAPIClient: base URLs and timeouts

Usage:
    from src.config.purchase_config import get_purchase_config

    config = get_purchase_config()
    key = config.api_key_for_platform("ios")

Environment overrides:
    PURCHASES_CONFIG_PATH, REVENUECAT_IOS_API_KEY, REVENUECAT_ANDROID_API_KEY,
    REVENUECAT_ENTITLEMENT_ID, REVENUECAT_BASE_URL, LIBRARY_API_BASE_URL
"""

import logging
import os
from dataclasses import dataclass, replace
from pathlib import Path
from threading import Lock
from typing import Any, Dict, Optional, Union

import yaml

from src.entitlements.models import Platform

logger = logging.getLogger(__name__)

DEFAULT_ENTITLEMENT_ID = "Library Manager TrackMyLibrary Pro"
DEFAULT_REVENUECAT_BASE_URL = "https://api.revenuecat.com/v1"
DEFAULT_LIBRARY_API_BASE_URL = "http://localhost:3000/api"

_ENV_OVERRIDES = {
    "REVENUECAT_IOS_API_KEY": "ios_api_key",
    "REVENUECAT_ANDROID_API_KEY": "android_api_key",
    "REVENUECAT_ENTITLEMENT_ID": "entitlement_id",
    "REVENUECAT_BASE_URL": "revenuecat_base_url",
    "LIBRARY_API_BASE_URL": "library_api_base_url",
}


@dataclass(frozen=True)
class PurchaseConfig:
    """Resolved purchase settings."""

    ios_api_key: Optional[str] = None
    android_api_key: Optional[str] = None
    entitlement_id: str = DEFAULT_ENTITLEMENT_ID
    configure_poll_interval_seconds: float = 0.5
    configure_max_attempts: int = 10
    expiring_soon_days: int = 3
    default_offering_id: str = "default"
    preferred_package_type: str = "ANNUAL"
    revenuecat_base_url: str = DEFAULT_REVENUECAT_BASE_URL
    library_api_base_url: str = DEFAULT_LIBRARY_API_BASE_URL
    request_timeout_seconds: float = 30.0

    def __post_init__(self):
        if not self.entitlement_id:
            raise ValueError("entitlement_id must not be empty")
        if self.configure_poll_interval_seconds < 0:
            raise ValueError("configure_poll_interval_seconds must be >= 0")
        if self.configure_max_attempts < 1:
            raise ValueError("configure_max_attempts must be >= 1")
        if self.expiring_soon_days < 0:
            raise ValueError("expiring_soon_days must be >= 0")

    def api_key_for_platform(self, platform: Union[Platform, str]) -> Optional[str]:
        """API key for the OS; None where purchases are unsupported (web)."""
        try:
            platform = Platform(platform)
        except ValueError:
            return None
        if platform == Platform.IOS:
            return self.ios_api_key or None
        if platform == Platform.ANDROID:
            return self.android_api_key or None
        return None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PurchaseConfig":
        """Build from the YAML mapping; unknown keys are ignored."""
        revenuecat = data.get("revenuecat", {}) or {}
        api_keys = revenuecat.get("api_keys", {}) or {}
        polling = data.get("configure_polling", {}) or {}
        paywall = data.get("paywall", {}) or {}
        library_api = data.get("library_api", {}) or {}

        kwargs: Dict[str, Any] = {
            "ios_api_key": api_keys.get("ios"),
            "android_api_key": api_keys.get("android"),
            "entitlement_id": revenuecat.get("entitlement_id", DEFAULT_ENTITLEMENT_ID),
            "revenuecat_base_url": revenuecat.get("base_url", DEFAULT_REVENUECAT_BASE_URL),
            "configure_poll_interval_seconds": float(polling.get("interval_seconds", 0.5)),
            "configure_max_attempts": int(polling.get("max_attempts", 10)),
            "expiring_soon_days": int(paywall.get("expiring_soon_days", 3)),
            "default_offering_id": paywall.get("default_offering_id", "default"),
            "preferred_package_type": paywall.get("preferred_package_type", "ANNUAL"),
            "library_api_base_url": library_api.get("base_url", DEFAULT_LIBRARY_API_BASE_URL),
            "request_timeout_seconds": float(data.get("request_timeout_seconds", 30.0)),
        }
        return cls(**kwargs)


def _apply_env_overrides(config: PurchaseConfig) -> PurchaseConfig:
    overrides = {
        field_name: os.environ[env_name]
        for env_name, field_name in _ENV_OVERRIDES.items()
        if os.environ.get(env_name)
    }
    if not overrides:
        return config
    return replace(config, **overrides)


class PurchaseConfigLoader:
    """Thread-safe singleton loader for config/purchases.yml."""

    _instance: Optional["PurchaseConfigLoader"] = None
    _lock = Lock()

    def __new__(cls, config_path: Optional[str] = None):
        if cls._instance is None:
            with cls._lock:
                if cls._instance is None:
                    cls._instance = super().__new__(cls)
                    cls._instance._initialized = False
        return cls._instance

    def __init__(self, config_path: Optional[str] = None):
        if self._initialized:
            return

        self._config_path = config_path or os.getenv("PURCHASES_CONFIG_PATH")
        self._config = PurchaseConfig()
        self._load_lock = Lock()

        self._load()
        self._initialized = True

    def _resolve_path(self) -> Optional[Path]:
        if self._config_path:
            return Path(self._config_path)

        candidates = [
            # Repository root (typical layout)
            Path(__file__).parent.parent.parent.parent / "config" / "purchases.yml",
            Path(os.getcwd()) / "config" / "purchases.yml",
            Path(os.getcwd()) / ".." / "config" / "purchases.yml",
        ]
        for p in candidates:
            resolved = p.resolve()
            if resolved.exists():
                return resolved
        return None

    def _load(self) -> None:
        with self._load_lock:
            path = self._resolve_path()
            if path is None or not path.exists():
                logger.warning("purchases.yml not found, using built-in defaults")
                raw: Dict[str, Any] = {}
            else:
                logger.info("Loading purchase config from %s", path)
                with open(path, "r") as f:
                    raw = yaml.safe_load(f) or {}

            self._config = _apply_env_overrides(PurchaseConfig.from_dict(raw))

    def reload(self) -> None:
        """Re-read the YAML from disk."""
        self._load()

    @property
    def config(self) -> PurchaseConfig:
        return self._config


# ------------------------------------------------------------------
# Module-level accessors
# ------------------------------------------------------------------

def get_purchase_config(config_path: Optional[str] = None) -> PurchaseConfig:
    """Return the loaded PurchaseConfig (singleton loader)."""
    return PurchaseConfigLoader(config_path).config


def reset_purchase_config_loader() -> None:
    """Reset singleton (for tests only)."""
    PurchaseConfigLoader._instance = None
