"""Hashing and encryption primitives for login codes and bearer tokens."""

import base64
import hashlib
import hmac

import bcrypt
from cryptography.fernet import Fernet, InvalidToken


def hash_code(code: str, rounds: int = 12) -> str:
    """Salted bcrypt hash of a login code."""
    if not code:
        raise ValueError("Code must be a non-empty string")

    salt = bcrypt.gensalt(rounds=rounds)
    return bcrypt.hashpw(code.encode("utf-8"), salt).decode("utf-8")


def check_code(code: str, code_hash: str) -> bool:
    """Constant-time comparison of a presented code with a stored hash."""
    if not code or not code_hash:
        return False
    try:
        return bcrypt.checkpw(code.encode("utf-8"), code_hash.encode("utf-8"))
    except ValueError:
        # Malformed stored hash
        return False


class TokenHasher:
    """
    Keyed HMAC-SHA256 of raw bearer tokens.

    Lookups compare hashes only; the raw token is never stored or logged.
    """

    def __init__(self, app_key: str):
        if not app_key:
            raise ValueError("app_key is required")
        self._key = app_key.encode("utf-8")

    def hash(self, raw_token: str) -> str:
        return hmac.new(self._key, raw_token.encode("utf-8"), hashlib.sha256).hexdigest()


class CodeCipher:
    """
    Fernet encryption for login codes travelling through the job queue.

    Queue payloads show up in Valkey, worker logs and retry records; the code
    is a live credential until it expires.
    """

    def __init__(self, app_key: str):
        if not app_key:
            raise ValueError("app_key is required")
        derived = hashlib.sha256(f"login-code:{app_key}".encode("utf-8")).digest()
        self._fernet = Fernet(base64.urlsafe_b64encode(derived))

    def encrypt(self, code: str) -> str:
        return self._fernet.encrypt(code.encode("utf-8")).decode("ascii")

    def decrypt(self, token: str) -> str:
        """
        Raises:
            ValueError: If the payload was tampered with or used another key.
        """
        try:
            return self._fernet.decrypt(token.encode("ascii")).decode("utf-8")
        except InvalidToken as e:
            raise ValueError("Encrypted code could not be decrypted") from e
