"""
Shared provider contract: data model, error taxonomy and HTTP plumbing.
"""

from .qes_provider import (
    RemoteSignProvider, RemoteSignCredentials, RemoteSignSession, CertificateInfo,
    SessionStatus, SignDocumentRequest, SignDocumentResponse, BatchSignResult,
    SignatureFormat, HashAlgorithm, ErrorKind, RemoteSignError, AuthenticationError,
    SessionError, SigningError, CertificateError, ProviderLookupError, make_error,
    session_status, utcnow,
)
from .http import ProviderHttpClient, ClientCredentialsToken

__all__ = [
    "RemoteSignProvider",
    "RemoteSignCredentials",
    "RemoteSignSession",
    "CertificateInfo",
    "SessionStatus",
    "SignDocumentRequest",
    "SignDocumentResponse",
    "BatchSignResult",
    "SignatureFormat",
    "HashAlgorithm",
    "ErrorKind",
    "RemoteSignError",
    "AuthenticationError",
    "SessionError",
    "SigningError",
    "CertificateError",
    "ProviderLookupError",
    "make_error",
    "session_status",
    "utcnow",
    "ProviderHttpClient",
    "ClientCredentialsToken",
]
