"""
Tests del cifrado de credenciales (AES-256-GCM).
ENCRYPTION_KEY de prueba definida en conftest.py.
"""

import pytest

from core.security import MissingCredentialsError, decrypt_credentials, decrypt_secret, encrypt_secret


def test_round_trip():
    token = encrypt_secret("my-api-secret")
    assert token != "my-api-secret"
    assert decrypt_secret(token) == "my-api-secret"


def test_nonce_makes_ciphertexts_differ():
    assert encrypt_secret("same") != encrypt_secret("same")


def test_tampered_ciphertext_is_rejected():
    token = encrypt_secret("value")
    tampered = token[:-4] + ("AAAA" if not token.endswith("AAAA") else "BBBB")
    with pytest.raises(ValueError):
        decrypt_secret(tampered)


def test_short_or_garbage_input_is_rejected():
    with pytest.raises(ValueError):
        decrypt_secret("c2hvcnQ=")
    with pytest.raises(ValueError):
        decrypt_secret("not base64 at all!!")


def test_decrypt_credentials_returns_plain_pair():
    key, secret = decrypt_credentials(encrypt_secret("k"), encrypt_secret("s"))
    assert (key, secret) == ("k", "s")


@pytest.mark.parametrize(("api_key", "api_secret"), [(None, "x"), ("x", None), ("", "")])
def test_missing_credentials(api_key, api_secret):
    with pytest.raises(MissingCredentialsError):
        decrypt_credentials(api_key, api_secret)


def test_undecryptable_credentials_are_missing():
    with pytest.raises(MissingCredentialsError):
        decrypt_credentials(encrypt_secret("k"), "c2hvcnQ=")
