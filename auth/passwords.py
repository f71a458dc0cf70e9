"""
auth/passwords.py -- Password hashing, verification, and strength policy.

Security design decisions:
  Hashing: bcrypt directly (no passlib wrapper). bcrypt is the right choice
       for low-entropy secrets because its cost factor makes brute-force
       expensive. gensalt() draws a fresh random salt on every call, so the
       same password never hashes to the same string twice.

  Verification: bcrypt.checkpw() only. Never compare hashes byte-by-byte in
       Python -- checkpw re-derives the hash with the stored salt and compares
       in constant time relative to the input.

  72-byte limit: bcrypt only consumes the first 72 bytes of input, and
       bcrypt 5.x raises instead of truncating. Both hash() and verify()
       truncate the UTF-8 encoding to 72 bytes so they always agree.

  Timing equalization [C1]: verify_dummy() runs a full checkpw against a hash
       computed once at construction. The gateway calls it when an email is
       unknown so that path costs the same as a wrong password.

  Strength policy: every rule is evaluated and every violation is returned,
       so a client can show the whole list at once.

Layer rule: no imports from api/, ws/, or core/.
"""

from __future__ import annotations

import logging
import re

import bcrypt

from auth.errors import InternalFailure
from auth.models import StrengthReport

logger = logging.getLogger("chatauth.auth.passwords")

_BCRYPT_MAX_BYTES = 72

MIN_LENGTH = 8
MAX_LENGTH = 128

_LOWER = re.compile(r"[a-z]")
_UPPER = re.compile(r"[A-Z]")
_DIGIT = re.compile(r"[0-9]")  # ASCII digits only
_SYMBOL = re.compile(r"[!@#$%^&*()_+\-=\[\]{};':\"\\|,.<>/?]")
_REPEATED = re.compile(r"(.)\1{2,}")
# Numeric runs need four ascending digits: "Pass123!"-style suffixes are
# allowed, "1234" is not.
_WEAK_PATTERNS = re.compile(r"0123|1234|2345|3456|4567|5678|6789|abc|qwe|password|admin", re.IGNORECASE)


def _encode(password: str) -> bytes:
    return password.encode("utf-8")[:_BCRYPT_MAX_BYTES]


def validate_strength(password: str) -> StrengthReport:
    """Check password against every policy rule and report all violations."""
    violations: list[str] = []

    if len(password) < MIN_LENGTH:
        violations.append(f"Password must be at least {MIN_LENGTH} characters long")
    if len(password) > MAX_LENGTH:
        violations.append(f"Password must not exceed {MAX_LENGTH} characters")
    if not _LOWER.search(password):
        violations.append("Password must contain at least one lowercase letter")
    if not _UPPER.search(password):
        violations.append("Password must contain at least one uppercase letter")
    if not _DIGIT.search(password):
        violations.append("Password must contain at least one number")
    if not _SYMBOL.search(password):
        violations.append("Password must contain at least one special character")
    if _REPEATED.search(password):
        violations.append("Password must not contain repeated characters")
    if _WEAK_PATTERNS.search(password):
        violations.append("Password must not contain common patterns")

    return StrengthReport(valid=not violations, violations=violations)


class CredentialVerifier:
    """bcrypt hashing with a configurable work factor.

    Usage:
        verifier = CredentialVerifier(rounds=settings.bcrypt_rounds)
        digest = verifier.hash("StrongPass123!")
        verifier.verify("StrongPass123!", digest)   # True
    """

    def __init__(self, rounds: int = 12) -> None:
        self.rounds = rounds
        # Computed once so the first unknown-email login is not measurably
        # slower than later ones.
        self._dummy_hash = self.hash("chatauth_timing_dummy")

    def hash(self, password: str) -> str:
        """Return a salted bcrypt hash of password."""
        try:
            return bcrypt.hashpw(_encode(password), bcrypt.gensalt(rounds=self.rounds)).decode("utf-8")
        except ValueError as exc:
            logger.error("bcrypt hashing failed: %s", type(exc).__name__)
            raise InternalFailure() from exc

    def verify(self, password: str, password_hash: str) -> bool:
        """Return True if password matches password_hash.

        A stored hash bcrypt cannot parse is a data/primitive failure, not a
        wrong password, and raises InternalFailure.
        """
        try:
            return bcrypt.checkpw(_encode(password), password_hash.encode("utf-8"))
        except ValueError as exc:
            logger.error("bcrypt verification failed: stored hash is unreadable")
            raise InternalFailure() from exc

    def verify_dummy(self, password: str) -> None:
        """Spend one bcrypt verification without a real account [C1]."""
        bcrypt.checkpw(_encode(password), self._dummy_hash.encode("utf-8"))

    def validate_strength(self, password: str) -> StrengthReport:
        return validate_strength(password)
