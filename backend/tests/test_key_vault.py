"""
Market Intel - API Key Vault Tests
"""
import pytest
import sys
import os

from cryptography.fernet import Fernet

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from key_vault import (  # noqa: E402
    KeyVaultError,
    decrypt_key,
    encrypt_key,
    mask_key,
    reset_vault,
)

pytestmark = pytest.mark.timeout(10)


class TestMasking:

    def test_long_key_shows_edges(self):
        assert mask_key("sk-abcdefghijklmnop") == "sk-a...mnop"

    @pytest.mark.parametrize("key", ["", "short", "12345678"])
    def test_short_keys_fully_hidden(self, key):
        assert mask_key(key) == "***"


class TestEncryption:

    def test_round_trip_with_derived_key(self):
        token = encrypt_key("sk-live-secret")
        assert "sk-live-secret" not in token
        assert decrypt_key(token) == "sk-live-secret"

    def test_configured_key_is_used(self, monkeypatch):
        key = Fernet.generate_key()
        monkeypatch.setenv("API_KEY_ENCRYPTION_KEY", key.decode())
        reset_vault()
        token = encrypt_key("sk-live-secret")
        assert Fernet(key).decrypt(token.encode()) == b"sk-live-secret"

    def test_foreign_ciphertext_raises(self, monkeypatch):
        token = encrypt_key("sk-live-secret")
        monkeypatch.setenv("API_KEY_ENCRYPTION_KEY", Fernet.generate_key().decode())
        reset_vault()
        with pytest.raises(KeyVaultError):
            decrypt_key(token)

    def test_missing_secrets_raise(self, monkeypatch):
        monkeypatch.delenv("API_KEY_ENCRYPTION_KEY", raising=False)
        monkeypatch.delenv("SECRET_KEY", raising=False)
        reset_vault()
        with pytest.raises(KeyVaultError):
            encrypt_key("sk-live-secret")
