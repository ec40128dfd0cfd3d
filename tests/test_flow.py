"""End-to-end tests for verify submissions."""

from __future__ import annotations

import asyncio

import pytest

from verifyflow.config import Settings
from verifyflow.dispatch import FlowDispatcher
from verifyflow.errors import ChallengeNotFound, InfrastructureFailure, InvalidInput
from verifyflow.flow import VerificationFlow
from verifyflow.models import Redirect, SubmissionStatus, VerificationType
from verifyflow.session import RequestContext
from verifyflow.store import MemoryChallengeStore
from verifyflow.verification import VerificationManager

from conftest import YieldingStore

ONBOARDING = VerificationType.ONBOARDING
EMAIL = "a@x.com"


def _params(code, type=ONBOARDING, target=EMAIL, **extra):
    return {"code": code, "type": str(type), "target": target, **extra}


async def test_idle_without_code(flow, store):
    result = await flow.handle({"type": "onboarding", "target": EMAIL}, RequestContext())

    assert result.status is SubmissionStatus.IDLE
    assert result.payload == {"type": "onboarding", "target": EMAIL}
    assert result.errors == {}
    assert sum(store.calls.values()) == 0


async def test_scenario_replay_rejected(flow, manager, store, clock):
    # period=300, window=0: t=0 issue, t=10 valid, t=20 replay rejected
    prepared = await manager.prepare_verification(ONBOARDING, EMAIL, period=300)
    context = RequestContext()

    clock.advance(10)
    result = await flow.handle(_params(prepared.otp), context)
    assert result.status is SubmissionStatus.COMPLETED
    assert result.result == Redirect(location="/onboarding")
    assert context.get("onboardingEmail") == EMAIL
    assert len(store) == 0

    clock.advance(10)
    replay = await flow.handle(_params(prepared.otp), RequestContext())
    assert replay.status is SubmissionStatus.REJECTED
    assert isinstance(replay.error, ChallengeNotFound)
    assert replay.errors == {"code": ["Invalid code"]}


async def test_scenario_supersession(flow, manager):
    first = await manager.prepare_verification(ONBOARDING, EMAIL, period=300)
    second = await manager.prepare_verification(ONBOARDING, EMAIL, period=300)

    if first.otp != second.otp:
        stale = await flow.handle(_params(first.otp), RequestContext())
        assert stale.status is SubmissionStatus.REJECTED

    fresh = await flow.handle(_params(second.otp), RequestContext())
    assert fresh.status is SubmissionStatus.COMPLETED


async def test_scenario_short_code_never_reaches_store(flow, manager, store):
    await manager.prepare_verification(ONBOARDING, EMAIL, period=300)
    store.calls.clear()

    result = await flow.handle(_params("1234"), RequestContext())

    assert result.status is SubmissionStatus.REJECTED
    assert isinstance(result.error, InvalidInput)
    assert "code" in result.errors
    assert sum(store.calls.values()) == 0


async def test_unknown_type_is_invalid_input(flow, store):
    result = await flow.handle(_params("123456", type="2fa"), RequestContext())

    assert result.status is SubmissionStatus.REJECTED
    assert isinstance(result.error, InvalidInput)
    assert "type" in result.errors
    assert sum(store.calls.values()) == 0


async def test_wrong_code_keeps_challenge_for_retry(flow, manager, store):
    prepared = await manager.prepare_verification(ONBOARDING, EMAIL, period=300)
    wrong = f"{(int(prepared.otp) + 1) % 1_000_000:06d}"

    rejected = await flow.handle(_params(wrong), RequestContext())
    assert rejected.status is SubmissionStatus.REJECTED
    assert store.calls["delete_by_key"] == 0
    assert len(store) == 1

    retry = await flow.handle(_params(prepared.otp), RequestContext())
    assert retry.status is SubmissionStatus.COMPLETED


async def test_expired_code_rejected(flow, manager, clock):
    prepared = await manager.prepare_verification(ONBOARDING, EMAIL, period=300)
    clock.advance(301)

    result = await flow.handle(_params(prepared.otp), RequestContext())
    assert result.status is SubmissionStatus.REJECTED
    assert isinstance(result.error, ChallengeNotFound)


async def test_redirect_to_passed_to_handler(manager):
    seen = {}

    def handler(verified, context):
        seen["redirect_to"] = verified.redirect_to
        return "ok"

    flow = VerificationFlow(manager, FlowDispatcher({t: handler for t in VerificationType}))
    prepared = await manager.prepare_verification(ONBOARDING, EMAIL, period=300)

    result = await flow.handle(_params(prepared.otp, redirectTo="/welcome"), RequestContext())
    assert result.status is SubmissionStatus.COMPLETED
    assert seen["redirect_to"] == "/welcome"


async def test_consumed_before_handler_runs(manager, store):
    observed = {}

    async def handler(verified, context):
        observed["remaining"] = len(store)
        raise RuntimeError("account creation failed")

    flow = VerificationFlow(manager, FlowDispatcher({t: handler for t in VerificationType}))
    prepared = await manager.prepare_verification(ONBOARDING, EMAIL, period=300)

    with pytest.raises(RuntimeError):
        await flow.handle(_params(prepared.otp), RequestContext())
    assert observed["remaining"] == 0

    # The failed handoff does not make the code usable again
    replay = await flow.handle(_params(prepared.otp), RequestContext())
    assert replay.status is SubmissionStatus.REJECTED


async def test_concurrent_submissions_only_one_completes(test_settings, clock):
    store = YieldingStore()
    manager = VerificationManager(store, config=test_settings, clock=clock)
    handled: list[str] = []

    def handler(verified, context):
        handled.append(verified.target)
        return "ok"

    flow = VerificationFlow(manager, FlowDispatcher({t: handler for t in VerificationType}))
    prepared = await manager.prepare_verification(ONBOARDING, EMAIL, period=300)

    results = await asyncio.gather(
        flow.handle(_params(prepared.otp), RequestContext()),
        flow.handle(_params(prepared.otp), RequestContext()),
    )

    statuses = sorted(r.status for r in results)
    assert statuses == [SubmissionStatus.COMPLETED, SubmissionStatus.REJECTED]
    assert handled == [EMAIL]
    # Both passed the check; the guarded delete picked the winner
    assert store.calls["find_live"] == 2
    assert store.calls["delete_by_key"] == 2


class DownStore(MemoryChallengeStore):
    async def find_live(self, type, target, now):
        raise InfrastructureFailure("Challenge store unavailable during find_live")


async def test_store_outage_propagates(test_settings, clock):
    manager = VerificationManager(DownStore(), config=test_settings, clock=clock)
    flow = VerificationFlow(manager, FlowDispatcher({t: (lambda v, c: None) for t in VerificationType}))

    with pytest.raises(InfrastructureFailure):
        await flow.handle(_params("123456"), RequestContext())


async def test_eight_digit_codes_complete(store, delivery, clock):
    config = Settings(_env_file=None, otp_digits=8, verify_base_url="https://app.example.com")
    manager = VerificationManager(store, delivery=delivery, config=config, clock=clock)
    flow = VerificationFlow(manager, FlowDispatcher({t: (lambda v, c: "ok") for t in VerificationType}))

    prepared = await manager.prepare_verification(ONBOARDING, EMAIL, period=300)
    assert len(prepared.otp) == 8

    short = await flow.handle(_params(prepared.otp[:6]), RequestContext())
    assert short.status is SubmissionStatus.REJECTED
    assert isinstance(short.error, InvalidInput)
    assert len(store) == 1

    result = await flow.handle(_params(prepared.otp), RequestContext())
    assert result.status is SubmissionStatus.COMPLETED
    assert len(store) == 0


class ReissuingStore(MemoryChallengeStore):
    """Issues a fresh challenge for the key right after the first lookup."""

    def __init__(self):
        super().__init__()
        self.reissue = None

    async def find_live(self, type, target, now):
        found = await super().find_live(type, target, now)
        if self.reissue is not None:
            reissue, self.reissue = self.reissue, None
            await reissue()
        return found


async def test_newer_challenge_survives_stale_submission(test_settings, clock):
    fresh = {}

    async def reissue():
        fresh["prepared"] = await manager.prepare_verification(ONBOARDING, EMAIL, period=300)

    store = ReissuingStore()
    manager = VerificationManager(store, config=test_settings, clock=clock)
    flow = VerificationFlow(manager, FlowDispatcher({t: (lambda v, c: "ok") for t in VerificationType}))

    stale = await manager.prepare_verification(ONBOARDING, EMAIL, period=300)
    store.reissue = reissue

    result = await flow.handle(_params(stale.otp), RequestContext())
    assert result.status is SubmissionStatus.REJECTED
    assert isinstance(result.error, ChallengeNotFound)

    # The challenge issued mid-submission is still there and still works
    assert len(store) == 1
    assert await manager.is_code_valid(fresh["prepared"].otp, ONBOARDING, EMAIL)
