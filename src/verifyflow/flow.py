"""Verify page submission handling.

Per submission: no code -> idle; otherwise parse, check the code, consume the
challenge, then dispatch. Each step finishes before the next one starts, and
the challenge is gone before any follow-up handler runs, so a handler that
fails halfway cannot be replayed with the same code.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from datetime import datetime
from typing import Any

from pydantic import ValidationError

from verifyflow.dispatch import FlowDispatcher
from verifyflow.errors import ChallengeNotFound, InvalidInput, VerificationError
from verifyflow.models import (
    CODE_PARAM,
    SubmissionStatus,
    VerifiedSubmission,
    VerifyResult,
    VerifySubmission,
)
from verifyflow.session import RequestContext
from verifyflow.verification import VerificationManager

logger = logging.getLogger(__name__)


def _field_errors(exc: ValidationError) -> dict[str, list[str]]:
    fields: dict[str, list[str]] = {}
    for err in exc.errors():
        name = str(err["loc"][0]) if err["loc"] else "__all__"
        fields.setdefault(name, []).append(err["msg"])
    return fields


class VerificationFlow:
    def __init__(self, manager: VerificationManager, dispatcher: FlowDispatcher):
        self.manager = manager
        self.dispatcher = dispatcher

    async def handle(
        self,
        params: Mapping[str, Any],
        context: RequestContext,
        *,
        now: datetime | None = None,
    ) -> VerifyResult:
        """Process one submission of the verify form or link."""
        payload = dict(params)
        if CODE_PARAM not in payload:
            # Page opened without a prefilled code: show the empty form.
            return VerifyResult(status=SubmissionStatus.IDLE, payload=payload)

        try:
            submission = VerifySubmission.model_validate(
                payload, context={"digits": self.manager.settings.otp_digits}
            )
        except ValidationError as e:
            logger.info("Rejected malformed verify submission: %s", sorted(_field_errors(e)))
            return VerifyResult(
                status=SubmissionStatus.REJECTED,
                payload=payload,
                error=InvalidInput("Invalid submission", fields=_field_errors(e)),
            )

        matched = await self.manager.match_challenge(submission.code, submission.type, submission.target, now)
        if isinstance(matched, VerificationError):
            return VerifyResult(status=SubmissionStatus.REJECTED, payload=payload, error=matched)

        # Only the caller that deleted the checked challenge may continue. A
        # challenge issued since the check is not ours to delete.
        if not await self.manager.consume_challenge(submission.type, submission.target, matched.id):
            return VerifyResult(status=SubmissionStatus.REJECTED, payload=payload, error=ChallengeNotFound())

        verified = VerifiedSubmission(
            type=submission.type,
            target=submission.target,
            redirect_to=submission.redirect_to,
        )
        result = await self.dispatcher.dispatch(verified, context)
        logger.info("Completed %s verification for %s", verified.type, verified.target)
        return VerifyResult(status=SubmissionStatus.COMPLETED, payload=payload, result=result)
