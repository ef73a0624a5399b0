"""Access code generation and hashing."""

import asyncio
import re
import secrets

import bcrypt

DEFAULT_CODE_LENGTH = 6
DEFAULT_HASH_ROUNDS = 10


def generate_access_code(length: int = DEFAULT_CODE_LENGTH) -> str:
    """Generate a random numeric access code of a fixed length.

    Uses the `secrets` module so codes are not predictable. The first
    digit is never zero, since some keypads drop leading zeros.
    """
    if length < 4:
        raise ValueError("Access codes must be at least 4 digits")
    first = secrets.choice("123456789")
    rest = "".join(secrets.choice("0123456789") for _ in range(length - 1))
    return first + rest


def is_valid_code_format(code: str, length: int = DEFAULT_CODE_LENGTH) -> bool:
    """Check that a code is exactly `length` digits."""
    if not code or not isinstance(code, str):
        return False
    return re.fullmatch(rf"\d{{{length}}}", code) is not None


def hash_code(code: str, rounds: int = DEFAULT_HASH_ROUNDS) -> str:
    """Hash an access code with a per-call random salt (bcrypt).

    Hashing the same code twice gives different strings; both verify.
    """
    if not code or not code.isdigit():
        raise ValueError("Access code must be a non-empty string of digits")
    return bcrypt.hashpw(code.encode(), bcrypt.gensalt(rounds=rounds)).decode()


def verify_code(code: str, code_hash: str) -> bool:
    """Check a plaintext code against a stored hash."""
    if not code or not code_hash:
        return False
    try:
        return bcrypt.checkpw(code.encode(), code_hash.encode())
    except ValueError:
        # Malformed hash
        return False


async def hash_code_async(code: str, rounds: int = DEFAULT_HASH_ROUNDS) -> str:
    """Hash off the event loop; bcrypt is deliberately slow."""
    return await asyncio.to_thread(hash_code, code, rounds)
