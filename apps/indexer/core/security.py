"""
Cifrado en reposo de las credenciales de exchanges (AES-256-GCM).

NUNCA loguear ni exponer: ENCRYPTION_KEY, api_key_encrypted,
api_secret_encrypted, ni sus valores descifrados.
"""

import base64
import binascii
import os

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from core.config import settings

_NONCE_BYTES = 12  # 96 bits, estándar GCM
_TAG_BYTES = 16


class MissingCredentialsError(Exception):
    """La conexión de exchange no tiene API Keys utilizables."""


def _get_aes_key() -> bytes:
    """Decodifica ENCRYPTION_KEY (base64url → 32 bytes). Falla si la longitud es incorrecta."""
    key = base64.urlsafe_b64decode(settings.ENCRYPTION_KEY)
    if len(key) != 32:
        raise ValueError(f"ENCRYPTION_KEY debe ser 32 bytes, tiene {len(key)}")
    return key


def encrypt_secret(plaintext: str) -> str:
    """
    Cifra un string con AES-256-GCM.
    Formato: base64url(nonce[12] || ciphertext+tag)
    """
    nonce = os.urandom(_NONCE_BYTES)
    ciphertext_with_tag = AESGCM(_get_aes_key()).encrypt(nonce, plaintext.encode("utf-8"), None)
    return base64.urlsafe_b64encode(nonce + ciphertext_with_tag).decode("utf-8")


def decrypt_secret(encrypted: str) -> str:
    """
    Descifra un valor cifrado con encrypt_secret.
    Lanza ValueError si la clave es incorrecta o el dato está corrupto.
    """
    try:
        raw = base64.urlsafe_b64decode(encrypted)
    except (binascii.Error, ValueError) as exc:
        raise ValueError("Formato de cifrado inválido") from exc

    if len(raw) < _NONCE_BYTES + _TAG_BYTES:
        raise ValueError("Dato cifrado demasiado corto")

    nonce, ciphertext_with_tag = raw[:_NONCE_BYTES], raw[_NONCE_BYTES:]
    try:
        return AESGCM(_get_aes_key()).decrypt(nonce, ciphertext_with_tag, None).decode("utf-8")
    except InvalidTag as exc:
        raise ValueError("Descifrado fallido: clave incorrecta o dato corrupto") from exc


def decrypt_credentials(api_key_encrypted: str | None, api_secret_encrypted: str | None) -> tuple[str, str]:
    """
    Devuelve (api_key, api_secret) en claro para construir el cliente del exchange.
    Lanza MissingCredentialsError si falta alguna o no se puede descifrar.
    """
    if not api_key_encrypted or not api_secret_encrypted:
        raise MissingCredentialsError("La conexión no tiene API Key/Secret configurados")
    try:
        return decrypt_secret(api_key_encrypted), decrypt_secret(api_secret_encrypted)
    except ValueError as exc:
        raise MissingCredentialsError(str(exc)) from exc
