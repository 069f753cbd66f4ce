"""Numeric one-time code generation for login challenges."""

import math
import secrets
from enum import Enum

FIXED_CODE_SEED = "1234567890"


class CodeStrategy(str, Enum):
    """
    How login codes are produced.

    RANDOM is the only strategy allowed in production. FIXED makes codes
    predictable ("123456...") for CI and automated browser tests.
    """

    RANDOM = "random"
    FIXED = "fixed"


def generate_random_code(digits: int) -> str:
    """Uniform random code with exactly `digits` digits (no leading zero)."""
    if digits < 1:
        raise ValueError("Digits must be >= 1.")

    low = 10 ** (digits - 1)
    high = 10**digits - 1
    return str(low + secrets.randbelow(high - low + 1))


def generate_fixed_code(digits: int) -> str:
    """The seed sequence repeated and truncated to `digits`."""
    if digits < 1:
        raise ValueError("Digits must be >= 1.")

    repeat = math.ceil(digits / len(FIXED_CODE_SEED))
    return (FIXED_CODE_SEED * repeat)[:digits]


_GENERATORS = {
    CodeStrategy.RANDOM: generate_random_code,
    CodeStrategy.FIXED: generate_fixed_code,
}


def generate_code(strategy: CodeStrategy, digits: int) -> str:
    """Generate a code using the configured strategy.

    Raises:
        ValueError: If digits < 1.
    """
    return _GENERATORS[strategy](digits)
