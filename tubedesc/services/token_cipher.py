from __future__ import annotations

from cryptography.fernet import Fernet, InvalidToken


class TokenCipherError(Exception):
    pass


class TokenCipher:
    """Symmetric encryption for OAuth tokens stored in the channels table."""

    def __init__(self, key: str | bytes) -> None:
        raw_key = key.encode("utf-8") if isinstance(key, str) else key
        try:
            self._fernet = Fernet(raw_key)
        except ValueError as exc:
            raise TokenCipherError("encryption key must be a urlsafe base64 32-byte Fernet key") from exc

    def encrypt(self, plaintext: str) -> str:
        return self._fernet.encrypt(plaintext.encode("utf-8")).decode("ascii")

    def decrypt(self, ciphertext: str) -> str:
        try:
            return self._fernet.decrypt(ciphertext.encode("ascii")).decode("utf-8")
        except (InvalidToken, UnicodeError) as exc:
            raise TokenCipherError("stored token could not be decrypted") from exc

    @staticmethod
    def generate_key() -> str:
        return Fernet.generate_key().decode("ascii")
