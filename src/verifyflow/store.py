"""Challenge persistence: the store protocol plus Postgres and in-memory backends.

Each store operation is atomic on its own. The manager composes them and
relies on the store for per-key atomicity:

- ``replace`` removes any prior challenge for the key and creates the new
  one in one step (last writer wins, never two live rows).
- ``delete_by_key`` reports whether this call removed the row, so only one
  of several concurrent consumers can proceed. Given a challenge id it only
  removes that challenge, leaving a newer one for the same key alone.
"""

from __future__ import annotations

import contextlib
import logging
from collections.abc import Iterator
from datetime import datetime
from typing import Any, Protocol
from uuid import UUID

import psycopg

from verifyflow import crypto, db
from verifyflow.errors import InfrastructureFailure
from verifyflow.models import VerificationChallenge, VerificationType

logger = logging.getLogger(__name__)

SCHEMA = """
CREATE TABLE IF NOT EXISTS verifications (
    id          UUID PRIMARY KEY,
    type        TEXT NOT NULL,
    target      TEXT NOT NULL,
    secret      TEXT NOT NULL,
    algorithm   TEXT NOT NULL,
    digits      INTEGER NOT NULL,
    period      INTEGER NOT NULL,
    created_at  TIMESTAMPTZ NOT NULL DEFAULT now(),
    expires_at  TIMESTAMPTZ,
    CONSTRAINT verifications_target_type_key UNIQUE (type, target)
);
CREATE INDEX IF NOT EXISTS verifications_expires_at_idx ON verifications (expires_at);
"""


class ChallengeStore(Protocol):
    async def find_live(
        self, type: VerificationType, target: str, now: datetime
    ) -> VerificationChallenge | None: ...

    async def create(self, challenge: VerificationChallenge) -> None: ...

    async def replace(self, challenge: VerificationChallenge) -> None: ...

    async def delete_by_key(
        self, type: VerificationType, target: str, challenge_id: UUID | None = None
    ) -> bool: ...

    async def delete_expired(self, now: datetime) -> int: ...


# ---------------------------------------------------------------------------
# Postgres
# ---------------------------------------------------------------------------


@contextlib.contextmanager
def _store_errors(operation: str) -> Iterator[None]:
    try:
        yield
    except psycopg.Error as e:
        logger.error("Challenge store %s failed: %s", operation, e)
        raise InfrastructureFailure(f"Challenge store unavailable during {operation}") from e


def _associated_data(type: VerificationType | str, target: str) -> bytes:
    # Binds an encrypted secret to its row key so it cannot be moved to another key.
    return f"{type}:{target}".encode()


class PostgresChallengeStore:
    """Challenge store backed by the ``verifications`` table.

    Secrets are encrypted with the master key before they are written.
    """

    async def setup_schema(self) -> None:
        with _store_errors("setup_schema"):
            await db.execute(SCHEMA)
        logger.info("verifications schema ready")

    async def find_live(
        self, type: VerificationType, target: str, now: datetime
    ) -> VerificationChallenge | None:
        with _store_errors("find_live"):
            row = await db.execute_one(
                """SELECT id, type, target, secret, algorithm, digits, period,
                          created_at, expires_at
                   FROM verifications
                   WHERE type = %s AND target = %s
                     AND (expires_at IS NULL OR expires_at > %s)""",
                (type.value, target, now),
            )
        if row is None:
            return None
        return self._from_row(row)

    async def create(self, challenge: VerificationChallenge) -> None:
        with _store_errors("create"):
            await db.execute(
                """INSERT INTO verifications
                   (id, type, target, secret, algorithm, digits, period, created_at, expires_at)
                   VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)""",
                self._to_params(challenge),
            )

    async def replace(self, challenge: VerificationChallenge) -> None:
        # The unique (type, target) constraint serialises concurrent issuers:
        # the second INSERT waits on the first and then overwrites it.
        with _store_errors("replace"):
            async with db.get_conn() as conn:
                async with conn.transaction():
                    async with conn.cursor() as cur:
                        await cur.execute(
                            "DELETE FROM verifications WHERE type = %s AND target = %s",
                            (challenge.type.value, challenge.target),
                        )
                        await cur.execute(
                            """INSERT INTO verifications
                               (id, type, target, secret, algorithm, digits, period,
                                created_at, expires_at)
                               VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
                               ON CONFLICT (type, target) DO UPDATE SET
                                   id = EXCLUDED.id,
                                   secret = EXCLUDED.secret,
                                   algorithm = EXCLUDED.algorithm,
                                   digits = EXCLUDED.digits,
                                   period = EXCLUDED.period,
                                   created_at = EXCLUDED.created_at,
                                   expires_at = EXCLUDED.expires_at""",
                            self._to_params(challenge),
                        )

    async def delete_by_key(
        self, type: VerificationType, target: str, challenge_id: UUID | None = None
    ) -> bool:
        with _store_errors("delete_by_key"):
            if challenge_id is None:
                rows = await db.execute(
                    "DELETE FROM verifications WHERE type = %s AND target = %s RETURNING id",
                    (type.value, target),
                )
            else:
                rows = await db.execute(
                    """DELETE FROM verifications
                       WHERE type = %s AND target = %s AND id = %s
                       RETURNING id""",
                    (type.value, target, str(challenge_id)),
                )
        return bool(rows)

    async def delete_expired(self, now: datetime) -> int:
        with _store_errors("delete_expired"):
            rows = await db.execute(
                "DELETE FROM verifications WHERE expires_at IS NOT NULL AND expires_at <= %s RETURNING id",
                (now,),
            )
        return len(rows)

    @staticmethod
    def _to_params(challenge: VerificationChallenge) -> tuple[Any, ...]:
        return (
            str(challenge.id),
            challenge.type.value,
            challenge.target,
            crypto.encrypt(challenge.secret, _associated_data(challenge.type, challenge.target)),
            challenge.algorithm,
            challenge.digits,
            challenge.period,
            challenge.created_at,
            challenge.expires_at,
        )

    @staticmethod
    def _from_row(row: dict[str, Any]) -> VerificationChallenge:
        secret = crypto.decrypt(row["secret"], _associated_data(row["type"], row["target"]))
        return VerificationChallenge(**{**row, "secret": secret})


# ---------------------------------------------------------------------------
# In-memory (tests, local development)
# ---------------------------------------------------------------------------


class MemoryChallengeStore:
    """Dict-backed store for a single process.

    No method awaits between reading and writing the dict, so each operation
    is atomic with respect to other coroutines on the same event loop.
    """

    def __init__(self) -> None:
        self._rows: dict[tuple[VerificationType, str], VerificationChallenge] = {}

    def __len__(self) -> int:
        return len(self._rows)

    async def find_live(
        self, type: VerificationType, target: str, now: datetime
    ) -> VerificationChallenge | None:
        challenge = self._rows.get((type, target))
        if challenge is None or not challenge.is_live(now):
            return None
        return challenge

    async def create(self, challenge: VerificationChallenge) -> None:
        key = (challenge.type, challenge.target)
        if key in self._rows:
            raise ValueError(f"Challenge already exists for {challenge.type}/{challenge.target}")
        self._rows[key] = challenge

    async def replace(self, challenge: VerificationChallenge) -> None:
        self._rows[(challenge.type, challenge.target)] = challenge

    async def delete_by_key(
        self, type: VerificationType, target: str, challenge_id: UUID | None = None
    ) -> bool:
        key = (type, target)
        current = self._rows.get(key)
        if current is None or (challenge_id is not None and current.id != challenge_id):
            return False
        del self._rows[key]
        return True

    async def delete_expired(self, now: datetime) -> int:
        expired = [key for key, ch in self._rows.items() if not ch.is_live(now)]
        for key in expired:
            del self._rows[key]
        return len(expired)
