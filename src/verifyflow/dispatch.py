"""Routing of verified submissions to their follow-up handler.

The table must cover every VerificationType exactly once. A table with a gap
is rejected when the dispatcher is built, so a new type without a handler
fails at startup instead of at the first verified submission.
"""

from __future__ import annotations

import inspect
import logging
from collections.abc import Callable, Mapping
from typing import Any

from verifyflow.errors import UnroutableType
from verifyflow.models import VerificationType, VerifiedSubmission
from verifyflow.session import RequestContext

logger = logging.getLogger(__name__)

Handler = Callable[[VerifiedSubmission, RequestContext], Any]


class FlowDispatcher:
    def __init__(self, handlers: Mapping[VerificationType | str, Handler]):
        known = {t.value for t in VerificationType}
        unknown = sorted(str(k) for k in handlers if str(k) not in known)
        if unknown:
            raise UnroutableType(f"Handlers registered for unknown verification types: {', '.join(unknown)}")

        table = {VerificationType(k): h for k, h in handlers.items()}
        missing = [t.value for t in VerificationType if t not in table]
        if missing:
            raise UnroutableType(f"No handler for verification types: {', '.join(missing)}")

        self._handlers: dict[VerificationType, Handler] = table

    def handler_for(self, type: VerificationType) -> Handler:
        try:
            return self._handlers[type]
        except KeyError:
            raise UnroutableType(f"No handler for verification type: {type}") from None

    async def dispatch(self, verified: VerifiedSubmission, context: RequestContext) -> Any:
        """Run the handler for a verified submission and return its result."""
        handler = self.handler_for(verified.type)
        logger.debug("Dispatching %s for %s to %s", verified.type, verified.target, handler)
        result = handler(verified, context)
        if inspect.isawaitable(result):
            result = await result
        return result
