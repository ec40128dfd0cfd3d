"""TOTP (Time-based One-Time Password) primitive.

Uses pyotp for secrets and HOTP derivation. Time steps are computed here so
generation and verification share one definition of "current step" and so
verification can check every step in the window without short-circuiting.
"""

from __future__ import annotations

import hashlib
import math
import time
from collections.abc import Callable
from datetime import datetime

import pyotp
from pyotp.utils import strings_equal

DEFAULT_DIGITS = 6

ALGORITHMS: dict[str, Callable] = {
    "SHA1": hashlib.sha1,
    "SHA256": hashlib.sha256,
    "SHA512": hashlib.sha512,
}


def generate_secret() -> str:
    """Generate a new TOTP secret (base32-encoded, 32 chars)."""
    return pyotp.random_base32()


def _digest(algorithm: str) -> Callable:
    try:
        return ALGORITHMS[algorithm.upper().replace("-", "")]
    except KeyError:
        raise ValueError(f"Unsupported TOTP algorithm: {algorithm}") from None


def _timestamp(at_time: datetime | float | None) -> float:
    if at_time is None:
        return time.time()
    if isinstance(at_time, datetime):
        return at_time.timestamp()
    return float(at_time)


def _counter(at_time: datetime | float | None, period: int) -> int:
    if period <= 0:
        raise ValueError(f"TOTP period must be positive, got {period}")
    return math.floor(_timestamp(at_time) / period)


def _totp(secret: str, algorithm: str, period: int, digits: int) -> pyotp.TOTP:
    return pyotp.TOTP(secret, digits=digits, digest=_digest(algorithm), interval=period)


def generate(
    secret: str,
    algorithm: str,
    period: int,
    at_time: datetime | float | None = None,
    digits: int = DEFAULT_DIGITS,
) -> str:
    """Derive the code for the time step containing at_time."""
    counter = _counter(at_time, period)
    return _totp(secret, algorithm, period, digits).generate_otp(counter)


def verify(
    code: str,
    secret: str,
    algorithm: str,
    period: int,
    window: int = 0,
    at_time: datetime | float | None = None,
    digits: int = DEFAULT_DIGITS,
) -> bool:
    """Check a submitted code against the current step +/- window steps.

    Every step in the window is compared in constant time, and a code of the
    wrong length is compared against a same-length filler so the running time
    does not depend on the submitted value.
    """
    if window < 0:
        raise ValueError(f"TOTP window must be >= 0, got {window}")
    counter = _counter(at_time, period)
    otp = _totp(secret, algorithm, period, digits)

    length_ok = len(code) == digits
    candidate = code if length_ok else "x" * digits

    matched = False
    for offset in range(-window, window + 1):
        step = counter + offset
        # Steps before the epoch cannot match but are still compared.
        expected = otp.generate_otp(max(step, 0))
        matched |= strings_equal(expected, candidate) and step >= 0
    return matched and length_ok


def get_provisioning_uri(
    secret: str,
    username: str,
    issuer: str = "verifyflow",
    algorithm: str = "SHA256",
    period: int = 30,
    digits: int = DEFAULT_DIGITS,
) -> str:
    """Get the otpauth:// URI for QR code enrollment."""
    return _totp(secret, algorithm, period, digits).provisioning_uri(name=username, issuer_name=issuer)
