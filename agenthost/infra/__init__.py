"""Internal machinery: HTTP, retry, polling, encryption."""

from .crypto import CredentialCipher, FernetCipher
from .http import ApiClient, HttpError
from .retry import (
    RetryPolicy,
    any_of,
    exponential,
    fixed,
    linear,
    on_exception,
    on_exception_message,
    on_status_code,
    retry,
)
from .wait import NotReadyError, poll_until

__all__ = [
    "ApiClient",
    "CredentialCipher",
    "FernetCipher",
    "HttpError",
    "NotReadyError",
    "RetryPolicy",
    "any_of",
    "exponential",
    "fixed",
    "linear",
    "on_exception",
    "on_exception_message",
    "on_status_code",
    "poll_until",
    "retry",
]
