"""
core/secret_generator.py -- Temporary secrets for newly provisioned accounts.

The alphabet is restricted to ASCII letters and digits: every identity
provider backend accepts it, and it survives copy/paste from the admin UI.

Composition: `length` random characters, then a fixed-shape suffix of one
uppercase letter, one lowercase letter and one digit. The suffix guarantees
the composition policy without rejection sampling, so output length is
always length + 3.
"""

from __future__ import annotations

import random
import secrets
import string

ALPHABET = string.ascii_letters + string.digits
MIN_LENGTH = 8


class SecretGenerator:
    """Produce candidate plaintext secrets.

    Pass a seeded random.Random as rng for deterministic output (tests);
    the default is secrets.SystemRandom.
    """

    def __init__(self, length: int = MIN_LENGTH, rng: random.Random | None = None) -> None:
        if length < MIN_LENGTH:
            raise ValueError(f"secret length must be at least {MIN_LENGTH}, got {length}")
        self.length = length
        self._rng = rng or secrets.SystemRandom()

    def generate(self) -> str:
        body = "".join(self._rng.choice(ALPHABET) for _ in range(self.length))
        suffix = (
            self._rng.choice(string.ascii_uppercase)
            + self._rng.choice(string.ascii_lowercase)
            + self._rng.choice(string.digits)
        )
        return body + suffix


def satisfies_policy(secret: str, length: int = MIN_LENGTH) -> bool:
    """Return True if secret meets the composition policy for the given base length."""
    return (
        len(secret) >= length + 3
        and all(ch in ALPHABET for ch in secret)
        and any(ch.isupper() for ch in secret)
        and any(ch.islower() for ch in secret)
        and any(ch.isdigit() for ch in secret)
    )
