"""
Library backend API client.

Fetches the signed-in user's profile and extracts the organization's
account record (subscription status, subscription end date, trial end date).

The profile endpoint has returned two shapes over time:
- flat: {"organizationId", "subscriptionStatus", "subscriptionEndDate", "trialEndDate"}
- nested: {"user": {"company": {"_id", "subscriptionStatus", "subscriptionEndDate", "trialEnd"}}}
Both are accepted.
"""

import logging
from datetime import datetime
from typing import Any, Dict, Optional

import httpx
from pydantic import AliasChoices, BaseModel, ConfigDict, Field, ValidationError, field_validator

from src.entitlements.errors import AccountFetchError
from src.entitlements.models import AccountRecord, SubscriptionStatus, parse_timestamp

logger = logging.getLogger(__name__)

PROFILE_PATH = "/user/profile"


class AccountProfile(BaseModel):
    """Account fields extracted from a profile payload."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    organization_id: Optional[str] = Field(
        None, validation_alias=AliasChoices("organizationId", "_id", "organization_id"),
    )
    subscription_status: Optional[str] = Field(
        None, validation_alias=AliasChoices("subscriptionStatus", "subscription_status"),
    )
    subscription_end_date: Optional[datetime] = Field(
        None, validation_alias=AliasChoices("subscriptionEndDate", "subscription_end_date"),
    )
    trial_end_date: Optional[datetime] = Field(
        None, validation_alias=AliasChoices("trialEndDate", "trialEnd", "trial_end_date"),
    )

    @field_validator("subscription_end_date", "trial_end_date", mode="before")
    @classmethod
    def lenient_timestamp(cls, v: Any) -> Optional[datetime]:
        # Bad dates are treated as absent rather than failing the whole profile.
        return parse_timestamp(v)

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "AccountProfile":
        """Unwrap {"user": ...} and {"company": ...} envelopes, then validate."""
        body = payload.get("user", payload) if isinstance(payload, dict) else payload
        if isinstance(body, dict) and isinstance(body.get("company"), dict):
            body = body["company"]
        return cls.model_validate(body)

    def to_record(self) -> AccountRecord:
        return AccountRecord(
            organization_id=self.organization_id,
            subscription_status=SubscriptionStatus.parse(self.subscription_status),
            subscription_end_date=self.subscription_end_date,
            trial_end_date=self.trial_end_date,
        )


class LibraryAPIClient:
    """
    Read-only client for the library backend's profile endpoint.

    The engine never writes account fields; this client only reads them.
    """

    def __init__(
        self,
        base_url: str,
        token: str,
        timeout_seconds: float = 30.0,
    ):
        if not base_url:
            raise ValueError("base_url is required")
        if not token:
            raise ValueError("token is required")

        self.base_url = base_url.rstrip("/")
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            timeout=httpx.Timeout(timeout_seconds, connect=10.0),
            headers={
                "Authorization": f"Bearer {token}",
                "Accept": "application/json",
            },
        )

    async def close(self):
        """Close the HTTP client."""
        await self._client.aclose()

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    async def fetch_profile(self) -> AccountProfile:
        """
        GET /user/profile.

        Raises:
            AccountFetchError: HTTP, transport or payload failure
        """
        try:
            response = await self._client.get(PROFILE_PATH)
        except httpx.TimeoutException as e:
            logger.error("Profile request timeout", extra={"error": str(e)})
            raise AccountFetchError(f"Request timeout: {e}", code="timeout")
        except httpx.RequestError as e:
            logger.error("Profile request error", extra={"error": str(e)})
            raise AccountFetchError(f"Request error: {e}", code="network_error")

        if response.status_code == 401:
            raise AccountFetchError(
                "Session token rejected by the backend",
                code="unauthorized",
                status_code=401,
            )
        if response.status_code == 404:
            raise AccountFetchError("Profile not found", code="not_found", status_code=404)
        if response.status_code >= 400:
            logger.error("Profile request failed", extra={
                "status_code": response.status_code,
                "response_text": response.text[:500],
            })
            raise AccountFetchError(
                f"Backend API error: {response.status_code}",
                status_code=response.status_code,
            )

        try:
            return AccountProfile.from_payload(response.json())
        except (ValueError, ValidationError) as e:
            raise AccountFetchError(f"Invalid profile payload: {e}", code="invalid_response")

    async def fetch_account(self) -> AccountRecord:
        profile = await self.fetch_profile()
        record = profile.to_record()
        logger.info("Account record fetched", extra={
            "organization_id": record.organization_id,
            "subscription_status": record.subscription_status.value if record.subscription_status else None,
        })
        return record


def get_library_api_client(token: str, config=None) -> LibraryAPIClient:
    """Factory function to create a LibraryAPIClient from PurchaseConfig."""
    if config is None:
        from src.config.purchase_config import get_purchase_config
        config = get_purchase_config()
    return LibraryAPIClient(
        base_url=config.library_api_base_url,
        token=token,
        timeout_seconds=config.request_timeout_seconds,
    )
