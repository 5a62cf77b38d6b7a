"""Symmetric encryption for credentials at rest."""

from __future__ import annotations

from typing import Protocol, runtime_checkable

from cryptography.fernet import Fernet, InvalidToken
from loguru import logger

from agenthost.core.exceptions import CredentialError


@runtime_checkable
class CredentialCipher(Protocol):
    def encrypt(self, plaintext: str) -> str: ...
    def decrypt(self, token: str) -> str: ...


class FernetCipher:
    """Fernet (AES-128-CBC + HMAC) cipher keyed from configuration.

    ``decrypt(encrypt(x)) == x`` for every string ``x``. Tokens produced under a
    different key fail with CredentialError instead of returning garbage.
    """

    __slots__ = ("_fernet",)

    def __init__(self, key: str | bytes) -> None:
        try:
            self._fernet = Fernet(key)
        except (ValueError, TypeError) as e:
            raise CredentialError(f"Invalid encryption key: {e}") from e

    @classmethod
    def generate(cls) -> FernetCipher:
        logger.bind(component="crypto").warning(
            "No encryption key configured, using an ephemeral key. "
            "Stored credentials will not survive a restart."
        )
        return cls(Fernet.generate_key())

    @classmethod
    def from_key(cls, key: str | None) -> FernetCipher:
        return cls(key) if key else cls.generate()

    def encrypt(self, plaintext: str) -> str:
        return self._fernet.encrypt(plaintext.encode("utf-8")).decode("ascii")

    def decrypt(self, token: str) -> str:
        try:
            return self._fernet.decrypt(token.encode("ascii")).decode("utf-8")
        except (InvalidToken, UnicodeEncodeError) as e:
            raise CredentialError("Stored credential cannot be decrypted") from e
