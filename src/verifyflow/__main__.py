"""verifyflow CLI — operate the challenge store from a shell.

Usage:
    python -m verifyflow init-db                                   # Create the verifications table
    python -m verifyflow issue --type onboarding --target a@x.com  # Issue a challenge, print the link
    python -m verifyflow verify --type onboarding --target a@x.com --code 123456
    python -m verifyflow reap                                      # Delete expired challenges
    python -m verifyflow code --secret BASE32SECRET --period 600   # Current code for a secret
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys

from verifyflow import db
from verifyflow.auth import totp
from verifyflow.config import settings
from verifyflow.errors import InfrastructureFailure
from verifyflow.flow import VerificationFlow
from verifyflow.handoffs import build_dispatcher
from verifyflow.models import CODE_PARAM, TARGET_PARAM, TYPE_PARAM, VerificationType
from verifyflow.session import RequestContext
from verifyflow.store import PostgresChallengeStore
from verifyflow.verification import VerificationManager

logger = logging.getLogger("verifyflow")


async def cmd_init_db(args: argparse.Namespace) -> None:
    """Create the verifications table."""
    await PostgresChallengeStore().setup_schema()
    print("verifications table ready")


async def cmd_issue(args: argparse.Namespace) -> None:
    """Issue a challenge and print where it should be sent."""
    manager = VerificationManager(PostgresChallengeStore())
    prepared = await manager.issue_challenge(VerificationType(args.type), args.target, args.period)
    print(f"Challenge: {prepared.challenge_id}")
    print(f"Expires:   {prepared.expires_at:%Y-%m-%d %H:%M:%S %Z}")
    print(f"Verify:    {prepared.verify_url}")


async def cmd_verify(args: argparse.Namespace) -> None:
    """Submit a code as the verify page would."""
    manager = VerificationManager(PostgresChallengeStore())
    flow = VerificationFlow(manager, build_dispatcher(manager.type_configs))
    context = RequestContext()
    result = await flow.handle(
        {CODE_PARAM: args.code, TYPE_PARAM: args.type, TARGET_PARAM: args.target},
        context,
    )
    print(f"Status: {result.status}")
    if result.error is not None:
        print(f"Error:  {result.error.code} {result.errors}")
        sys.exit(1)
    print(f"Result: {result.result}")
    print(f"Context: {context.to_dict()}")


async def cmd_reap(args: argparse.Namespace) -> None:
    """Delete expired challenges."""
    manager = VerificationManager(PostgresChallengeStore())
    count = await manager.reap_expired()
    print(f"Reaped {count} expired challenges")


def cmd_code(args: argparse.Namespace) -> None:
    """Print the current code for a secret."""
    print(totp.generate(args.secret, args.algorithm, args.period, digits=settings.otp_digits))


async def _with_pool(handler, args: argparse.Namespace) -> None:
    await db.init_pool()
    try:
        await handler(args)
    finally:
        await db.close_pool()


def main() -> None:
    parser = argparse.ArgumentParser(
        prog="verifyflow",
        description="verifyflow — TOTP email verification challenges",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    sub = parser.add_subparsers(dest="command", help="Command to run")

    types = [t.value for t in VerificationType]

    # init-db
    sub.add_parser("init-db", help="Create the verifications table")

    # issue
    p_issue = sub.add_parser("issue", help="Issue a challenge")
    p_issue.add_argument("--type", choices=types, required=True)
    p_issue.add_argument("--target", required=True)
    p_issue.add_argument("--period", type=int, help="Code lifetime in seconds")

    # verify
    p_verify = sub.add_parser("verify", help="Submit a code")
    p_verify.add_argument("--type", choices=types, required=True)
    p_verify.add_argument("--target", required=True)
    p_verify.add_argument("--code", required=True)

    # reap
    sub.add_parser("reap", help="Delete expired challenges")

    # code
    p_code = sub.add_parser("code", help="Current code for a secret")
    p_code.add_argument("--secret", required=True)
    p_code.add_argument("--period", type=int, default=settings.default_period)
    p_code.add_argument("--algorithm", default=settings.otp_algorithm)

    args = parser.parse_args()

    if not args.command:
        parser.print_help()
        sys.exit(0)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
        datefmt="%H:%M:%S",
    )

    if args.command == "code":
        cmd_code(args)
        return

    dispatch = {
        "init-db": cmd_init_db,
        "issue": cmd_issue,
        "verify": cmd_verify,
        "reap": cmd_reap,
    }
    try:
        asyncio.run(_with_pool(dispatch[args.command], args))
    except InfrastructureFailure as e:
        logger.error("%s (retry later)", e)
        sys.exit(2)


if __name__ == "__main__":
    main()
