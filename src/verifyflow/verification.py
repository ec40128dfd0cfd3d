"""Challenge lifecycle: issue, check, consume.

One live challenge exists per (type, target). Issuing a new one supersedes
the old one, a successful check is followed by consume (single use), and a
failed check leaves the challenge in place so the user can retry.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from uuid import UUID

import httpx

from verifyflow.auth import totp
from verifyflow.config import Settings, TypeConfig, load_type_configs, settings
from verifyflow.delivery import Delivery, LogDelivery
from verifyflow.errors import ChallengeNotFound, InvalidInput, VerificationError
from verifyflow.models import (
    CODE_PARAM,
    TARGET_PARAM,
    TYPE_PARAM,
    OtpMessage,
    PreparedVerification,
    VerificationChallenge,
    VerificationType,
)
from verifyflow.store import ChallengeStore

logger = logging.getLogger(__name__)


def utcnow() -> datetime:
    return datetime.now(UTC)


class VerificationManager:
    def __init__(
        self,
        store: ChallengeStore,
        *,
        delivery: Delivery | None = None,
        type_configs: dict[str, TypeConfig] | None = None,
        config: Settings | None = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.delivery = delivery or LogDelivery()
        self.settings = config or settings
        self.type_configs = type_configs if type_configs is not None else load_type_configs()
        self.clock = clock

        missing = [t.value for t in VerificationType if t.value not in self.type_configs]
        if missing:
            raise ValueError(f"Missing verification type config: {', '.join(missing)}")

    def type_config(self, type: VerificationType) -> TypeConfig:
        return self.type_configs[type.value]

    # --- URLs ---

    def redirect_url(self, type: VerificationType, target: str) -> str:
        """URL of the verify page for a (type, target), without the code."""
        url = httpx.URL(self.settings.verify_base_url).join(self.settings.verify_path)
        return str(url.copy_merge_params({TYPE_PARAM: type.value, TARGET_PARAM: target}))

    # --- Issue ---

    async def prepare_verification(
        self,
        type: VerificationType,
        target: str,
        period: int | None = None,
    ) -> PreparedVerification:
        """Create a fresh challenge for (type, target), superseding any existing one."""
        if period is None:
            period = self.type_config(type).period or self.settings.default_period
        if period <= 0:
            raise ValueError(f"Verification period must be positive, got {period}")

        now = self.clock()
        secret = totp.generate_secret()
        otp = totp.generate(secret, self.settings.otp_algorithm, period, now, self.settings.otp_digits)
        challenge = VerificationChallenge(
            type=type,
            target=target,
            secret=secret,
            algorithm=self.settings.otp_algorithm,
            digits=self.settings.otp_digits,
            period=period,
            created_at=now,
            expires_at=now + timedelta(seconds=period),
        )
        await self.store.replace(challenge)
        logger.info("Issued %s challenge %s for %s (period=%ds)", type, challenge.id, target, period)

        redirect_to = self.redirect_url(type, target)
        verify_url = str(httpx.URL(redirect_to).copy_merge_params({CODE_PARAM: otp}))
        return PreparedVerification(
            challenge_id=challenge.id,
            type=type,
            target=target,
            otp=otp,
            redirect_to=redirect_to,
            verify_url=verify_url,
            expires_at=challenge.expires_at,
        )

    async def issue_challenge(
        self,
        type: VerificationType,
        target: str,
        period: int | None = None,
    ) -> PreparedVerification:
        """Prepare a challenge and hand the code to the delivery collaborator."""
        prepared = await self.prepare_verification(type, target, period)
        await self.delivery.send(
            OtpMessage(type=type, target=target, otp=prepared.otp, verify_url=prepared.verify_url)
        )
        return prepared

    # --- Check ---

    def _well_formed(self, code: str) -> bool:
        return len(code) == self.settings.otp_digits and code.isascii() and code.isdigit()

    def _now(self, now: datetime | None) -> datetime:
        if now is None:
            return self.clock()
        # Naive datetimes are taken to be UTC
        if now.tzinfo is None:
            return now.replace(tzinfo=UTC)
        return now

    async def match_challenge(
        self,
        code: str,
        type: VerificationType,
        target: str,
        now: datetime | None = None,
    ) -> VerificationChallenge | VerificationError:
        """Return the live challenge the code belongs to, or the reason there is none.

        Malformed codes are rejected without touching the store.
        """
        if not self._well_formed(code):
            return InvalidInput(
                "Invalid code",
                fields={CODE_PARAM: [f"Code must be {self.settings.otp_digits} digits"]},
            )

        now = self._now(now)
        challenge = await self.store.find_live(type, target, now)
        if challenge is None:
            logger.info("No live %s challenge for %s", type, target)
            return ChallengeNotFound()

        ok = totp.verify(
            code,
            challenge.secret,
            challenge.algorithm,
            challenge.period,
            window=self.type_config(type).window,
            at_time=now,
            digits=challenge.digits,
        )
        if not ok:
            logger.info("Wrong code for %s challenge %s", type, challenge.id)
            return ChallengeNotFound()
        return challenge

    async def check_code(
        self,
        code: str,
        type: VerificationType,
        target: str,
        now: datetime | None = None,
    ) -> VerificationError | None:
        """Return None when the code is valid, otherwise the reason it is not."""
        matched = await self.match_challenge(code, type, target, now)
        return matched if isinstance(matched, VerificationError) else None

    async def is_code_valid(
        self,
        code: str,
        type: VerificationType,
        target: str,
        now: datetime | None = None,
    ) -> bool:
        return await self.check_code(code, type, target, now) is None

    # --- Consume ---

    async def consume_challenge(
        self,
        type: VerificationType,
        target: str,
        challenge_id: UUID | None = None,
    ) -> bool:
        """Delete the challenge for (type, target).

        Returns True only for the call that actually removed it, so a caller
        that gets False must not proceed to the follow-up action. With
        challenge_id, a challenge issued after the check is left in place.
        """
        deleted = await self.store.delete_by_key(type, target, challenge_id)
        if deleted:
            logger.info("Consumed %s challenge for %s", type, target)
        else:
            logger.info("%s challenge for %s already gone", type, target)
        return deleted

    async def reap_expired(self, now: datetime | None = None) -> int:
        """Remove challenges whose absolute expiry has passed."""
        count = await self.store.delete_expired(self._now(now))
        if count:
            logger.info("Reaped %d expired challenges", count)
        return count
