"""Unit tests for core/secret_generator.py.

Covers:
- Output length is base length + 3 and uses only the restricted alphabet
- Composition policy holds for every draw (upper, lower, digit)
- Seeded rng gives reproducible output
- Lengths below the minimum are rejected
"""

import random

import pytest

from core.secret_generator import ALPHABET, MIN_LENGTH, SecretGenerator, satisfies_policy


class TestSecretGenerator:
    def test_default_length(self) -> None:
        secret = SecretGenerator().generate()
        assert len(secret) == MIN_LENGTH + 3

    def test_custom_length(self) -> None:
        secret = SecretGenerator(length=20).generate()
        assert len(secret) == 23

    def test_alphabet_only(self) -> None:
        gen = SecretGenerator(rng=random.Random(7))
        for _ in range(200):
            assert all(ch in ALPHABET for ch in gen.generate())

    def test_every_draw_satisfies_policy(self) -> None:
        """The fixed suffix guarantees composition even for unlucky bodies."""
        gen = SecretGenerator(rng=random.Random(42))
        for _ in range(500):
            secret = gen.generate()
            assert satisfies_policy(secret), f"{secret!r} fails the composition policy"

    def test_seeded_rng_is_reproducible(self) -> None:
        a = SecretGenerator(rng=random.Random(1)).generate()
        b = SecretGenerator(rng=random.Random(1)).generate()
        assert a == b

    def test_default_rng_varies(self) -> None:
        gen = SecretGenerator()
        assert len({gen.generate() for _ in range(20)}) > 1

    def test_short_length_rejected(self) -> None:
        with pytest.raises(ValueError):
            SecretGenerator(length=MIN_LENGTH - 1)


class TestSatisfiesPolicy:
    @pytest.mark.parametrize(
        "secret",
        [
            "abcdefghijk1",  # no upper
            "ABCDEFGHIJK1",  # no lower
            "abcdefghijkL",  # no digit
            "aB1",  # too short
            "abcdefgh-Bc1",  # outside alphabet
        ],
    )
    def test_rejects(self, secret: str) -> None:
        assert not satisfies_policy(secret)

    def test_accepts(self) -> None:
        assert satisfies_policy("abcdefghXy7")
