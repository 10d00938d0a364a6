"""
Unit tests for API key encryption and secret loading.
"""
import pytest

from copytrader.domain.models import User, UserRole
from copytrader.exceptions import StartupError
from copytrader.utils.secret_manager import (
    CredentialCipher,
    CredentialStore,
    get_secret_with_retry,
    is_valid_hex_key,
)

KEY = "0123456789abcdef" * 4
OTHER_KEY = "fedcba9876543210" * 4


def _make_user(**overrides) -> User:
    fields = dict(id=1, email="u@example.com", name="User", role=UserRole.FOLLOWER)
    fields.update(overrides)
    return User(**fields)


def test_encrypt_decrypt():
    cipher = CredentialCipher(KEY)
    token = cipher.encrypt("my-api-key")
    assert token != "my-api-key"
    assert cipher.decrypt(token) == "my-api-key"


def test_nonce_makes_ciphertexts_differ():
    cipher = CredentialCipher(KEY)
    assert cipher.encrypt("same") != cipher.encrypt("same")


def test_wrong_key_fails_without_auth_wording():
    token = CredentialCipher(KEY).encrypt("secret")
    with pytest.raises(ValueError) as exc_info:
        CredentialCipher(OTHER_KEY).decrypt(token)
    assert "auth" not in str(exc_info.value).lower()


def test_malformed_payload():
    with pytest.raises(ValueError):
        CredentialCipher(KEY).decrypt("not base64 !!")


@pytest.mark.parametrize("key", ["", "abc", "zz" * 32, KEY + "00"])
def test_invalid_keys_rejected(key):
    assert not is_valid_hex_key(key)
    with pytest.raises(StartupError):
        CredentialCipher(key)


def test_store_resolves_credentials():
    cipher = CredentialCipher(KEY)
    user = _make_user(api_key_encrypted=cipher.encrypt("k"), api_secret_encrypted=cipher.encrypt("s"))
    creds = CredentialStore(cipher).for_user(user)
    assert creds.api_key == "k"
    assert creds.api_secret == "s"
    assert "api_secret" not in repr(creds)


def test_store_returns_none_without_keys():
    cipher = CredentialCipher(KEY)
    assert CredentialStore(cipher).for_user(_make_user(api_key_encrypted=cipher.encrypt("k"))) is None


def test_store_from_env(monkeypatch):
    monkeypatch.setenv("ENCRYPTION_KEY", KEY)
    store = CredentialStore.from_env()
    token = CredentialCipher(KEY).encrypt("x")
    assert store.cipher.decrypt(token) == "x"


def test_missing_secret_raises_after_retries(monkeypatch):
    monkeypatch.delenv("SOME_MISSING_SECRET", raising=False)
    waits = []
    with pytest.raises(StartupError):
        get_secret_with_retry("SOME_MISSING_SECRET", max_retries=3, sleep=waits.append)
    assert waits == [1.0, 1.5]


def test_secret_failing_validation(monkeypatch):
    monkeypatch.setenv("DATABASE_URL", "mysql://nope")
    with pytest.raises(StartupError):
        get_secret_with_retry("DATABASE_URL", validator=lambda v: v.startswith("postgresql"))
