"""
Base Remote Signing Provider Interface

This module defines the shared data model, the canonical error taxonomy and
the abstract interface that every remote QES provider adapter must implement,
so that the registry and the session manager can treat all providers alike.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field, fields
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, List, Mapping, Optional

import httpx


logger = logging.getLogger(__name__)


ProgressCallback = Callable[[int, int, Optional[str]], None]


def utcnow() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


class SignatureFormat(str, Enum):
    """Supported signature container formats"""
    CADES = "CAdES"
    PADES = "PAdES"
    XADES = "XAdES"


class HashAlgorithm(str, Enum):
    """Supported digest algorithms for hash signing"""
    SHA256 = "SHA-256"
    SHA384 = "SHA-384"
    SHA512 = "SHA-512"


HASH_ALGORITHM_OIDS = {
    HashAlgorithm.SHA256: "2.16.840.1.101.3.4.2.1",
    HashAlgorithm.SHA384: "2.16.840.1.101.3.4.2.2",
    HashAlgorithm.SHA512: "2.16.840.1.101.3.4.2.3",
}


class ErrorKind(str, Enum):
    """Canonical error kinds every adapter maps its native errors into"""
    AUTH_FAILED = "AUTH_FAILED"
    INVALID_OTP = "INVALID_OTP"
    INVALID_PIN = "INVALID_PIN"
    CREDENTIAL_LOCKED = "CREDENTIAL_LOCKED"
    PROVIDER_NOT_FOUND = "PROVIDER_NOT_FOUND"
    PROVIDER_NOT_CONFIGURED = "PROVIDER_NOT_CONFIGURED"
    NO_DEFAULT_PROVIDER = "NO_DEFAULT_PROVIDER"
    SESSION_NOT_FOUND = "SESSION_NOT_FOUND"
    SESSION_EXPIRED = "SESSION_EXPIRED"
    INVALID_SESSION = "INVALID_SESSION"
    REFRESH_NOT_SUPPORTED = "REFRESH_NOT_SUPPORTED"
    REFRESH_REQUIRES_OTP = "REFRESH_REQUIRES_OTP"
    NO_SIGNATURES_LEFT = "NO_SIGNATURES_LEFT"
    CERTIFICATE_INFO_ERROR = "CERTIFICATE_INFO_ERROR"
    RATE_LIMITED = "RATE_LIMITED"
    SERVER_ERROR = "SERVER_ERROR"
    NETWORK_ERROR = "NETWORK_ERROR"
    PROVIDER_ERROR = "PROVIDER_ERROR"

    @property
    def retryable(self) -> bool:
        return self in _RETRYABLE_KINDS

    @property
    def invalidates_session(self) -> bool:
        return self in SESSION_INVALIDATING_KINDS


_RETRYABLE_KINDS = frozenset({
    ErrorKind.RATE_LIMITED,
    ErrorKind.SERVER_ERROR,
    ErrorKind.NETWORK_ERROR,
    ErrorKind.CERTIFICATE_INFO_ERROR,
})

SESSION_INVALIDATING_KINDS = frozenset({
    ErrorKind.SESSION_EXPIRED,
    ErrorKind.INVALID_SESSION,
})


class RemoteSignError(Exception):
    """Base exception for remote signing errors"""

    def __init__(self, message: str, kind: ErrorKind = ErrorKind.PROVIDER_ERROR,
                 provider_id: str = "UNKNOWN", retryable: Optional[bool] = None,
                 details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.kind = ErrorKind(kind)
        self.provider_id = provider_id
        self.retryable = self.kind.retryable if retryable is None else retryable
        self.details = details or {}

    @property
    def error_code(self) -> str:
        return self.kind.value

    @property
    def invalidates_session(self) -> bool:
        return self.kind.invalidates_session

    def __repr__(self) -> str:
        return (f"{type(self).__name__}(kind={self.kind.value}, "
                f"provider={self.provider_id}, message={self.message!r})")


class AuthenticationError(RemoteSignError):
    """Authentication-related errors"""
    pass


class SessionError(RemoteSignError):
    """Session lookup, expiry and refresh errors"""
    pass


class SigningError(RemoteSignError):
    """Signing-related errors"""
    pass


class CertificateError(RemoteSignError):
    """Certificate-related errors"""
    pass


class ProviderLookupError(RemoteSignError):
    """Registry lookup errors"""
    pass


_ERROR_CLASSES = {
    ErrorKind.AUTH_FAILED: AuthenticationError,
    ErrorKind.INVALID_OTP: AuthenticationError,
    ErrorKind.INVALID_PIN: AuthenticationError,
    ErrorKind.CREDENTIAL_LOCKED: AuthenticationError,
    ErrorKind.PROVIDER_NOT_FOUND: ProviderLookupError,
    ErrorKind.PROVIDER_NOT_CONFIGURED: ProviderLookupError,
    ErrorKind.NO_DEFAULT_PROVIDER: ProviderLookupError,
    ErrorKind.SESSION_NOT_FOUND: SessionError,
    ErrorKind.SESSION_EXPIRED: SessionError,
    ErrorKind.INVALID_SESSION: SessionError,
    ErrorKind.REFRESH_NOT_SUPPORTED: SessionError,
    ErrorKind.REFRESH_REQUIRES_OTP: SessionError,
    ErrorKind.NO_SIGNATURES_LEFT: SigningError,
    ErrorKind.CERTIFICATE_INFO_ERROR: CertificateError,
}


def make_error(kind: ErrorKind, message: str, provider_id: str = "UNKNOWN",
               retryable: Optional[bool] = None,
               details: Optional[Dict[str, Any]] = None) -> RemoteSignError:
    """Build the exception subclass matching a canonical error kind."""
    error_class = _ERROR_CLASSES.get(ErrorKind(kind), RemoteSignError)
    return error_class(message, kind=kind, provider_id=provider_id,
                       retryable=retryable, details=details)


@dataclass
class RemoteSignCredentials:
    """Credentials for one authentication; never persisted"""
    username: str
    pin: str
    otp: Optional[str] = None
    password: Optional[str] = None
    domain: Optional[str] = None

    def __repr__(self) -> str:
        return (f"RemoteSignCredentials(username={self.username!r}, "
                f"pin='***', otp={'***' if self.otp else None})")


@dataclass
class CertificateInfo:
    """Summary of the signing certificate"""
    common_name: str
    serial_number: str
    issuer: str
    valid_from: Optional[datetime] = None
    valid_to: Optional[datetime] = None
    fiscal_code: Optional[str] = None


@dataclass
class RemoteSignSession:
    """Result of a successful authentication with a provider"""
    session_id: str
    provider_id: str
    user_id: str
    expires_at: datetime
    certificate: Optional[CertificateInfo] = None
    remaining_signatures: Optional[int] = None
    access_token: Optional[str] = field(default=None, repr=False)
    refresh_token: Optional[str] = field(default=None, repr=False)
    metadata: Dict[str, Any] = field(default_factory=dict, repr=False)

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return (now or utcnow()) >= self.expires_at

    def remaining_seconds(self, now: Optional[datetime] = None) -> float:
        return (self.expires_at - (now or utcnow())).total_seconds()

    @property
    def signed_by(self) -> Optional[str]:
        return self.certificate.common_name if self.certificate else None


@dataclass
class SessionStatus:
    """Read-only view of a session's state"""
    active: bool
    expires_at: Optional[datetime] = None
    remaining_minutes: Optional[int] = None
    signed_by: Optional[str] = None
    remaining_signatures: Optional[int] = None


@dataclass
class SignDocumentRequest:
    """One document (hash or full payload) to sign"""
    signature_format: SignatureFormat = SignatureFormat.PADES
    document_hash: Optional[str] = None
    document_payload: Optional[str] = None
    document_name: Optional[str] = None
    hash_algorithm: HashAlgorithm = HashAlgorithm.SHA256
    document_id: Optional[str] = None
    document_description: Optional[str] = None


@dataclass
class SignDocumentResponse:
    """Result of signing one document"""
    signature: str
    signed_by: str
    signature_timestamp: str
    tsa_timestamp: Optional[str] = None
    document_id: Optional[str] = None


@dataclass
class BatchSignResult:
    """Outcome of one batch member"""
    document_id: str
    success: bool
    response: Optional[SignDocumentResponse] = None
    error: Optional[str] = None
    error_kind: Optional[ErrorKind] = None


def session_status(session: Optional[RemoteSignSession],
                   now: Optional[datetime] = None) -> SessionStatus:
    """Compute the status view of a session."""
    if session is None:
        return SessionStatus(active=False)

    remaining = session.remaining_seconds(now)
    return SessionStatus(
        active=remaining > 0,
        expires_at=session.expires_at,
        remaining_minutes=max(0, int(remaining // 60)),
        signed_by=session.signed_by,
        remaining_signatures=session.remaining_signatures,
    )


def parse_timestamp(value: Any) -> Optional[datetime]:
    """
    Parse a provider timestamp into an aware UTC datetime.

    Accepts ISO 8601 strings and ASN.1 GeneralizedTime strings
    (YYYYMMDDHHMMSSZ). Unparseable values yield None.
    """
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str) and value:
        text = value.strip()
        try:
            if len(text) == 15 and text.endswith("Z") and text[:14].isdigit():
                parsed = datetime.strptime(text, "%Y%m%d%H%M%SZ")
            else:
                parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
        except ValueError:
            return None
    else:
        return None

    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def parse_seconds(value: Any, default: Optional[int] = None) -> Optional[int]:
    """
    Parse a provider duration in seconds.

    Missing values yield ``default``.

    Raises:
        ValueError: The value is not an integer number of seconds
    """
    if value is None or value == "":
        return default
    try:
        return int(value)
    except (TypeError, ValueError) as e:
        raise ValueError(f"Invalid duration in seconds: {value!r}") from e


def config_from_section(config_class, section: Mapping[str, Any]):
    """
    Build a provider config dataclass from a configuration section.

    Unknown keys are ignored and None values fall back to the field defaults.
    """
    known = {f.name for f in fields(config_class)}
    values = {key: value for key, value in section.items()
              if key in known and value is not None}
    return config_class(**values)


def extract_common_name(distinguished_name: str) -> str:
    """Return the CN of a distinguished name, or the whole DN without one."""
    for part in distinguished_name.split(","):
        key, _, value = part.strip().partition("=")
        if key.strip().upper() == "CN" and value:
            return value.strip()
    return distinguished_name


class RemoteSignProvider(ABC):
    """
    Abstract base class for all remote signing providers.

    Each adapter implements one provider's wire protocol behind this
    interface. Adapters never let transport exceptions escape: every public
    method maps native failures to a RemoteSignError.
    """

    provider_id: str = "UNKNOWN"
    provider_name: str = "Unknown provider"
    supports_batch_signing: bool = True
    supports_extended_session: bool = True
    default_session_minutes: int = 45

    def __init__(self, config: Any, transport: Optional[httpx.AsyncBaseTransport] = None):
        """
        Initialize the provider.

        Args:
            config: Provider-specific configuration object
            transport: Optional httpx transport, used to stub the remote API
        """
        self.config = config
        self.transport = transport

    # -- authentication and session handling --------------------------------

    @abstractmethod
    async def authenticate(self, credentials: RemoteSignCredentials,
                           session_duration_minutes: Optional[int] = None) -> RemoteSignSession:
        """
        Authenticate the user and open a signing session.

        Args:
            credentials: Username, PIN and OTP
            session_duration_minutes: Requested session length

        Returns:
            The new session

        Raises:
            RemoteSignError: If authentication fails
        """

    @abstractmethod
    async def validate_session(self, session: RemoteSignSession) -> bool:
        """
        Check whether a session is still usable.

        Returns False when the session is locally expired or the provider
        rejects it. Network failures raise a NETWORK_ERROR instead of
        returning False.
        """

    @abstractmethod
    async def refresh_session(self, session: RemoteSignSession) -> RemoteSignSession:
        """
        Extend a session's validity.

        Raises:
            RemoteSignError: REFRESH_NOT_SUPPORTED or REFRESH_REQUIRES_OTP when
                the provider cannot extend the session without a new login
        """

    @abstractmethod
    async def close_session(self, session: RemoteSignSession) -> None:
        """Revoke a session on the provider side. Never raises."""

    def get_session_status(self, session: RemoteSignSession) -> SessionStatus:
        return session_status(session)

    # -- signing -------------------------------------------------------------

    @abstractmethod
    async def sign_document(self, session: RemoteSignSession,
                            request: SignDocumentRequest) -> SignDocumentResponse:
        """
        Sign a single document.

        Raises:
            RemoteSignError: If signing fails
        """

    async def sign_multiple_documents(self, session: RemoteSignSession,
                                      requests: List[SignDocumentRequest],
                                      on_progress: Optional[ProgressCallback] = None
                                      ) -> List[BatchSignResult]:
        """
        Sign documents one after the other.

        The progress callback is invoked before each item and once more after
        the last one. Errors are recorded per item and signing continues,
        except for session-invalidating errors which stop the batch: the
        failing item is recorded and the remaining requests are not attempted.

        Args:
            session: Active session
            requests: Documents to sign, in order
            on_progress: Optional callback (completed, total, current)

        Returns:
            One result per attempted request, in input order
        """
        total = len(requests)
        results: List[BatchSignResult] = []
        logger.info("[%s] Batch signing %d documents", self.provider_id, total)

        for index, request in enumerate(requests):
            document_id = request.document_id or f"doc_{index}"
            self._notify_progress(on_progress, index, total,
                                  request.document_description or request.document_id)

            try:
                response = await self.sign_document(session, request)
                results.append(BatchSignResult(document_id=document_id, success=True,
                                               response=response))
            except RemoteSignError as e:
                logger.error("[%s] Signing %s failed: %s", self.provider_id, document_id, e)
                results.append(BatchSignResult(document_id=document_id, success=False,
                                               error=e.message, error_kind=e.kind))
                if e.invalidates_session:
                    logger.warning("[%s] Session no longer valid, aborting batch at item %d/%d",
                                   self.provider_id, index + 1, total)
                    break

        self._notify_progress(on_progress, total, total, None)

        succeeded = sum(1 for result in results if result.success)
        logger.info("[%s] Batch signing done: %d/%d succeeded", self.provider_id, succeeded, total)
        return results

    def _notify_progress(self, on_progress: Optional[ProgressCallback],
                         completed: int, total: int, current: Optional[str]) -> None:
        if on_progress is None:
            return
        try:
            on_progress(completed, total, current)
        except Exception:
            logger.exception("[%s] Progress callback failed", self.provider_id)

    def _seconds(self, value: Any, default: Optional[int] = None) -> Optional[int]:
        try:
            return parse_seconds(value, default)
        except ValueError as e:
            raise self.error(ErrorKind.PROVIDER_ERROR, f"Malformed provider response: {e}") from e

    def _consume_signature(self, session: RemoteSignSession) -> None:
        if session.remaining_signatures is not None:
            session.remaining_signatures = max(0, session.remaining_signatures - 1)

    # -- certificate ---------------------------------------------------------

    @abstractmethod
    async def get_certificate_info(self, session: RemoteSignSession) -> CertificateInfo:
        """Return the cached certificate summary, fetching it when missing."""

    # -- utilities -----------------------------------------------------------

    @abstractmethod
    def is_configured(self) -> bool:
        """Structural configuration check, no network access."""

    @abstractmethod
    async def test_connection(self) -> bool:
        """Cheap connectivity check; all errors become False."""

    def error(self, kind: ErrorKind, message: str, retryable: Optional[bool] = None,
              details: Optional[Dict[str, Any]] = None) -> RemoteSignError:
        return make_error(kind, message, provider_id=self.provider_id,
                          retryable=retryable, details=details)

    def __repr__(self) -> str:
        return f"<{type(self).__name__} id={self.provider_id}>"
