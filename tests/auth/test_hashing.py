"""Tests for auth/hashing.py - code hashes, token HMACs, queue encryption."""

import hashlib
import hmac

import pytest

from auth.hashing import CodeCipher, TokenHasher, check_code, hash_code


class TestCodeHashing:

    def test_hash_is_not_plaintext(self):
        code_hash = hash_code("123456", rounds=4)
        assert "123456" not in code_hash
        assert code_hash.startswith("$2")

    def test_hash_is_salted(self):
        """Same code hashes differently each time."""
        assert hash_code("123456", rounds=4) != hash_code("123456", rounds=4)

    def test_check_matches(self):
        code_hash = hash_code("654321", rounds=4)
        assert check_code("654321", code_hash) is True

    def test_check_rejects_wrong_code(self):
        code_hash = hash_code("654321", rounds=4)
        assert check_code("654320", code_hash) is False

    def test_check_rejects_empty_inputs(self):
        code_hash = hash_code("111111", rounds=4)
        assert check_code("", code_hash) is False
        assert check_code("111111", "") is False

    def test_check_tolerates_malformed_hash(self):
        """A corrupt stored hash fails closed instead of raising."""
        assert check_code("111111", "not-a-bcrypt-hash") is False

    def test_empty_code_cannot_be_hashed(self):
        with pytest.raises(ValueError):
            hash_code("", rounds=4)


class TestTokenHasher:

    def test_hmac_sha256_hex(self):
        """Hash is HMAC-SHA256 keyed with the application key."""
        expected = hmac.new(b"app-key", b"raw-token", hashlib.sha256).hexdigest()
        assert TokenHasher("app-key").hash("raw-token") == expected

    def test_deterministic(self):
        hasher = TokenHasher("app-key")
        assert hasher.hash("abc") == hasher.hash("abc")

    def test_key_matters(self):
        assert TokenHasher("key-a").hash("abc") != TokenHasher("key-b").hash("abc")

    def test_requires_key(self):
        with pytest.raises(ValueError, match="app_key"):
            TokenHasher("")


class TestCodeCipher:

    def test_round_trip(self):
        cipher = CodeCipher("app-key")
        assert cipher.decrypt(cipher.encrypt("123456")) == "123456"

    def test_ciphertext_hides_code(self):
        assert "123456" not in CodeCipher("app-key").encrypt("123456")

    def test_other_key_cannot_decrypt(self):
        token = CodeCipher("key-a").encrypt("123456")
        with pytest.raises(ValueError, match="could not be decrypted"):
            CodeCipher("key-b").decrypt(token)

    def test_requires_key(self):
        with pytest.raises(ValueError):
            CodeCipher("")
