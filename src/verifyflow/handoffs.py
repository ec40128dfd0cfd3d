"""Default follow-up handlers for the three verification types.

Each one stashes the verified target in the request context and redirects to
the page that finishes the flow (signup form, new password form, email swap).
Those pages own the business action; applications swap in their own handler
when the action should happen right here instead.
"""

from __future__ import annotations

from verifyflow.config import TypeConfig
from verifyflow.dispatch import FlowDispatcher, Handler
from verifyflow.models import Redirect, VerificationType, VerifiedSubmission
from verifyflow.session import RequestContext


def stash_and_redirect(session_key: str, location: str) -> Handler:
    def handle(verified: VerifiedSubmission, context: RequestContext) -> Redirect:
        context.set(session_key, verified.target)
        return Redirect(location=location)

    handle.__name__ = f"stash_{session_key}"
    return handle


def default_handlers(type_configs: dict[str, TypeConfig]) -> dict[VerificationType, Handler]:
    return {
        t: stash_and_redirect(type_configs[t.value].session_key, type_configs[t.value].redirect_to)
        for t in VerificationType
    }


def build_dispatcher(
    type_configs: dict[str, TypeConfig],
    overrides: dict[VerificationType, Handler] | None = None,
) -> FlowDispatcher:
    """Default handoffs for every type, with per-type overrides."""
    handlers = default_handlers(type_configs)
    handlers.update(overrides or {})
    return FlowDispatcher(handlers)
