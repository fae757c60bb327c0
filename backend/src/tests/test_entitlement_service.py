"""
End-to-end tests for the entitlement service.

Tests cover:
- Access resolution scenarios (backend active, elapsed end date, trial)
- Purchase from a blocking paywall and user cancellation
- isBlocked never true while anything is loading
- Sign-out and switch-account reset
- Account management and paywall analytics
- Platforms without purchase support
"""

import asyncio
from datetime import timedelta

import pytest

from src.entitlements import audit
from src.entitlements.models import (
    AuthSession,
    FlowStatus,
    PackageInfo,
    PaywallState,
    Platform,
    SubscriptionStatus,
)
from src.tests.helpers.fake_purchase_provider import ORG_A, ORG_B

ANNUAL = PackageInfo(
    identifier="$rc_annual",
    product_identifier="trackmylibrary_pro_annual",
    package_type="ANNUAL",
    price=49.99,
)

SESSION_A = AuthSession(token="session-token", organization_id=ORG_A)


async def sign_in(service, account, session=SESSION_A):
    await service.set_account(account)
    return await service.on_auth_changed(session)


class TestInitialState:

    def test_signed_out_defaults(self, make_service):
        service = make_service()

        assert service.is_pro is False
        assert service.is_blocked is False
        assert service.is_loading is False
        assert service.paywall_state == PaywallState.HIDDEN


class TestAccessScenarios:
    """Access resolution through the full service."""

    @pytest.mark.asyncio
    async def test_backend_active_expiring_soon(self, make_service, make_account, fixed_now):
        service = make_service()
        account = make_account(status="Active", subscription_end_date=fixed_now + timedelta(days=2))

        state = await sign_in(service, account)

        assert state.is_pro is True
        assert state.is_expiring_soon is True
        assert state.days_remaining_text == "2 days"
        assert state.expires_at_iso == (fixed_now + timedelta(days=2)).isoformat()
        assert state.is_blocked is False
        assert service.paywall_state == PaywallState.HIDDEN

    @pytest.mark.asyncio
    async def test_elapsed_end_date_without_entitlement_blocks(self, make_service, make_account, fixed_now):
        service = make_service()
        account = make_account(status="Active", subscription_end_date=fixed_now - timedelta(hours=1))

        state = await sign_in(service, account)

        assert state.is_pro is False
        assert state.is_loading is False
        assert state.is_blocked is True
        assert service.paywall_state == PaywallState.BLOCKING_SHOWN

    @pytest.mark.asyncio
    async def test_elapsed_end_date_with_entitlement(self, make_service, make_account, fake_provider, fixed_now):
        fake_provider.grant(ORG_A)
        service = make_service()
        account = make_account(status="Active", subscription_end_date=fixed_now - timedelta(hours=1))

        state = await sign_in(service, account)

        assert state.is_pro is True
        assert state.is_blocked is False

    @pytest.mark.asyncio
    async def test_trial_active(self, make_service, make_account, fixed_now):
        service = make_service()
        account = make_account(trial_end_date=fixed_now + timedelta(hours=5))

        state = await sign_in(service, account)

        assert state.is_trial_active is True
        assert state.is_pro is True
        assert state.days_remaining_text == "5h remaining"

    @pytest.mark.asyncio
    async def test_entitlement_only(self, make_service, make_account, fake_provider):
        fake_provider.grant(ORG_A)
        service = make_service()

        state = await sign_in(service, make_account(status=SubscriptionStatus.INACTIVE))

        assert state.is_pro is True
        assert fake_provider.log_in_calls == [ORG_A]
        assert fake_provider.configure_calls == ["appl_test_key"]

    @pytest.mark.asyncio
    async def test_end_date_elapsing_while_open(self, make_service, make_account, clock, fixed_now):
        service = make_service()
        await sign_in(service, make_account(status="Active", subscription_end_date=fixed_now + timedelta(hours=1)))
        assert service.is_pro is True

        clock.advance(hours=2)
        state = service.recompute()

        assert state.is_pro is False
        assert state.is_blocked is True
        assert service.paywall_state == PaywallState.BLOCKING_SHOWN


class TestPurchaseFromPaywall:
    """Purchase and restore driven from the blocking paywall."""

    @pytest.mark.asyncio
    async def test_purchase_hides_blocking_paywall(self, make_service, make_account, fake_provider):
        service = make_service()
        await sign_in(service, make_account())
        assert service.paywall_state == PaywallState.BLOCKING_SHOWN
        refreshes_before = fake_provider.customer_info_calls

        result = await service.purchase(ANNUAL)

        assert result.status == FlowStatus.SUCCESS
        assert service.paywall_state == PaywallState.HIDDEN
        assert service.is_pro is True
        assert service.is_blocked is False
        assert fake_provider.customer_info_calls == refreshes_before

    @pytest.mark.asyncio
    async def test_cancelled_purchase_changes_nothing(self, make_service, make_account, fake_provider):
        service = make_service()
        await sign_in(service, make_account())
        snapshot_before = service.snapshot
        fake_provider.cancel_next_purchase()

        result = await service.purchase(ANNUAL)

        assert result.status == FlowStatus.CANCELLED
        assert result.error is None
        assert service.snapshot is snapshot_before
        assert service.paywall_state == PaywallState.BLOCKING_SHOWN

    @pytest.mark.asyncio
    async def test_failed_purchase_keeps_blocking(self, make_service, make_account, fake_provider):
        service = make_service()
        await sign_in(service, make_account())
        fake_provider.purchase_error = RuntimeError("billing unavailable")

        result = await service.purchase(ANNUAL)

        assert result.status == FlowStatus.FAILED
        assert result.error is not None
        assert service.paywall_state == PaywallState.BLOCKING_SHOWN

    @pytest.mark.asyncio
    async def test_restore_holds_paywall_then_hides(self, make_service, make_account, fake_provider):
        service = make_service()
        await sign_in(service, make_account())
        fake_provider.restore_grants = True
        fake_provider.restore_gate = asyncio.Event()

        pending = asyncio.ensure_future(service.restore_purchases())
        await asyncio.sleep(0)

        assert service.is_loading is True
        assert service.is_blocked is False
        assert service.paywall_state == PaywallState.BLOCKING_SHOWN

        fake_provider.restore_gate.set()
        result = await pending

        assert result.status == FlowStatus.SUCCESS
        assert service.paywall_state == PaywallState.HIDDEN
        assert service.is_loading is False

    @pytest.mark.asyncio
    async def test_restore_nothing_keeps_blocking(self, make_service, make_account):
        service = make_service()
        await sign_in(service, make_account())

        result = await service.restore_purchases()

        assert result.status == FlowStatus.NOT_ENTITLED
        assert service.paywall_state == PaywallState.BLOCKING_SHOWN


class TestNeverBlockedWhileLoading:
    """The blocking paywall never appears while entitlement is uncertain."""

    @pytest.mark.asyncio
    async def test_entitled_sign_in_never_blocks(self, make_service, make_account, fake_provider):
        fake_provider.grant(ORG_A)
        fake_provider.customer_info_gate = asyncio.Event()
        service = make_service()
        states = []
        service.subscribe(states.append)
        transitions = []
        service.paywall.add_listener(lambda prev, new: transitions.append(new))

        await service.set_account(make_account())
        pending = asyncio.ensure_future(service.on_auth_changed(SESSION_A))
        await asyncio.sleep(0)

        assert service.is_loading is True
        assert service.is_blocked is False

        fake_provider.customer_info_gate.set()
        await pending

        assert service.is_pro is True
        assert PaywallState.BLOCKING_SHOWN not in transitions
        assert all(not (s.is_loading and s.is_blocked) for s in states)

    @pytest.mark.asyncio
    async def test_profile_loading_without_org_id(self, make_service, make_account, fake_provider):
        service = make_service()

        state = await service.on_auth_changed(AuthSession(token="session-token"))

        assert state.is_loading is True
        assert state.is_blocked is False
        assert service.binder.is_deferred is True
        assert fake_provider.log_in_calls == []
        assert fake_provider.customer_info_calls == 0

        await service.set_account(make_account())

        assert service.binder.is_deferred is False
        assert fake_provider.log_in_calls == [ORG_A]
        assert fake_provider.customer_info_calls >= 1
        assert service.fetcher.organization_id == ORG_A

    @pytest.mark.asyncio
    async def test_deferred_bind_completes_when_profile_loads(self, make_service, make_account, fake_provider):
        fake_provider.grant(ORG_A)
        service = make_service()
        states = []
        service.subscribe(states.append)

        await service.on_auth_changed(AuthSession(token="session-token"))
        state = await service.set_account(make_account())

        assert fake_provider.log_in_calls == [ORG_A]
        assert service.binder.is_deferred is False
        assert service.binder.bound_organization_id == ORG_A
        assert service.snapshot.has_active_entitlement is True
        assert state.is_pro is True
        assert state.is_blocked is False
        assert service.paywall_state == PaywallState.HIDDEN
        assert not any(s.is_blocked for s in states)

    @pytest.mark.asyncio
    async def test_deferred_bind_unentitled_blocks_after_refresh(self, make_service, make_account, fake_provider):
        service = make_service()

        await service.on_auth_changed(AuthSession(token="session-token"))
        state = await service.set_account(make_account(status="Inactive"))

        assert fake_provider.log_in_calls == [ORG_A]
        assert state.is_loading is False
        assert state.is_blocked is True
        assert service.paywall_state == PaywallState.BLOCKING_SHOWN

    @pytest.mark.asyncio
    async def test_account_update_does_not_rebind(self, make_service, make_account, fake_provider):
        fake_provider.grant(ORG_A)
        service = make_service()
        await sign_in(service, make_account())

        await service.set_account(make_account(status="Active"))

        assert fake_provider.log_in_calls == [ORG_A]
        assert service.is_pro is True

    @pytest.mark.asyncio
    async def test_signed_in_before_account_loaded(self, make_service, make_account):
        service = make_service()

        state = await service.on_auth_changed(SESSION_A)

        assert state.is_loading is True
        assert state.is_blocked is False

        state = await service.set_account(make_account())
        assert state.is_blocked is True

    @pytest.mark.asyncio
    async def test_org_switch_drops_previous_account(self, make_service, make_account, fixed_now):
        service = make_service()
        await sign_in(service, make_account(status="Active"))

        state = await service.on_auth_changed(AuthSession(token="session-token", organization_id=ORG_B))

        assert state.is_pro is False
        assert state.is_loading is True
        assert state.is_blocked is False

    @pytest.mark.asyncio
    async def test_configuration_never_completes(self, make_service, make_account, fake_provider, recording_sleep):
        fake_provider.configure_takes_effect = False
        fake_provider.grant(ORG_A)
        service = make_service()

        state = await sign_in(service, make_account(trial_end_date=None))

        # log_in is attempted regardless; the refresh then gives up polling.
        assert recording_sleep.calls == [0.5, 0.5]
        assert state.is_loading is False
        assert state.is_pro is False


class TestSignOut:
    """Sign-out and switch-account reset."""

    @pytest.mark.asyncio
    async def test_sign_out_resets_entitlement(self, make_service, make_account, fake_provider):
        fake_provider.grant(ORG_A)
        service = make_service()
        await sign_in(service, make_account())
        assert service.is_pro is True

        state = await service.on_auth_changed(AuthSession.signed_out())

        assert state.is_pro is False
        assert state.is_blocked is False
        assert service.snapshot.is_known is False
        assert fake_provider.log_out_calls == 1

    @pytest.mark.asyncio
    async def test_next_org_does_not_inherit_entitlement(self, make_service, make_account, fake_provider):
        fake_provider.grant(ORG_A)
        service = make_service()
        await sign_in(service, make_account())
        await service.on_auth_changed(AuthSession.signed_out())

        state = await sign_in(
            service,
            make_account(organization_id=ORG_B),
            AuthSession(token="other-token", organization_id=ORG_B),
        )

        assert state.is_pro is False
        assert state.is_blocked is True

    @pytest.mark.asyncio
    async def test_switch_account_from_blocking_paywall(self, make_service, make_account):
        sign_out_calls = []
        service = make_service(sign_out=lambda: sign_out_calls.append(True))
        await sign_in(service, make_account())
        assert service.paywall.can_switch_account is True

        state = await service.switch_account()

        assert sign_out_calls == [True]
        assert service.paywall_state == PaywallState.HIDDEN
        assert state.is_blocked is False


class TestPaywallActions:
    """Voluntary paywall and account management."""

    @pytest.mark.asyncio
    async def test_close_rejected_while_blocked(self, make_service, make_account):
        service = make_service()
        await sign_in(service, make_account())

        assert service.close_paywall() is False
        assert service.paywall_state == PaywallState.BLOCKING_SHOWN

    @pytest.mark.asyncio
    async def test_voluntary_open_and_close(self, make_service, make_account, fixed_now):
        service = make_service()
        await sign_in(service, make_account(trial_end_date=fixed_now + timedelta(days=5)))

        assert service.present_paywall() is True
        assert service.paywall_state == PaywallState.VOLUNTARY_SHOWN
        assert service.close_paywall() is True
        assert service.paywall_state == PaywallState.HIDDEN

    @pytest.mark.asyncio
    async def test_account_management_for_pro(self, make_service, make_account, fake_provider):
        fake_provider.grant(ORG_A)
        service = make_service()
        await sign_in(service, make_account())

        url = await service.present_account_management()

        assert url == fake_provider.management_url
        assert service.paywall_state == PaywallState.HIDDEN

    @pytest.mark.asyncio
    async def test_account_management_for_free_shows_paywall(self, make_service):
        service = make_service()

        url = await service.present_account_management()

        assert url is None
        assert service.paywall_state == PaywallState.VOLUNTARY_SHOWN

    @pytest.mark.asyncio
    async def test_account_management_failure(self, make_service, make_account, fake_provider):
        fake_provider.grant(ORG_A)
        service = make_service()
        await sign_in(service, make_account())
        fake_provider.customer_info_error = RuntimeError("offline")

        assert await service.present_account_management() is None

    @pytest.mark.asyncio
    async def test_paywall_viewed_events(self, make_service, make_account, audit_log):
        service = make_service()
        await sign_in(service, make_account())

        viewed = audit_log.recent_events(audit.PAYWALL_VIEWED)

        assert len(viewed) == 1
        assert viewed[0].organization_id == ORG_A
        assert viewed[0].properties == {"is_blocked": True}


class TestSubscribers:

    @pytest.mark.asyncio
    async def test_subscribe_and_unsubscribe(self, make_service, make_account, fake_provider):
        fake_provider.grant(ORG_A)
        service = make_service()
        states = []

        unsubscribe = service.subscribe(states.append)
        assert len(states) == 1

        await sign_in(service, make_account())
        assert states[-1].is_pro is True
        assert all(a != b for a, b in zip(states, states[1:]))

        unsubscribe()
        count = len(states)
        await service.on_auth_changed(AuthSession.signed_out())
        assert len(states) == count


class TestPlatforms:

    @pytest.mark.asyncio
    async def test_web_has_no_purchases(self, make_service, make_account, fake_provider):
        fake_provider.grant(ORG_A)
        service = make_service(platform=Platform.WEB)

        state = await sign_in(service, make_account())

        assert fake_provider.configure_calls == []
        assert fake_provider.log_in_calls == []
        assert service.snapshot.is_known is False
        assert state.is_pro is False
        assert state.is_blocked is True

    @pytest.mark.asyncio
    async def test_web_trial_still_grants_access(self, make_service, make_account, fixed_now):
        service = make_service(platform=Platform.WEB)

        state = await sign_in(service, make_account(trial_end_date=fixed_now + timedelta(days=3)))

        assert state.is_pro is True

    @pytest.mark.asyncio
    async def test_android_key_used(self, make_service, make_account, fake_provider):
        service = make_service(platform=Platform.ANDROID)

        await sign_in(service, make_account())

        assert fake_provider.configure_calls == ["goog_test_key"]
