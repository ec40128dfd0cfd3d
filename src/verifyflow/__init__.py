"""verifyflow — TOTP email verification for onboarding, password reset and email change."""

__version__ = "0.1.0"
