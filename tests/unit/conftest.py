"""
Shared fixtures for the remote signing unit tests
"""

from dataclasses import replace
from datetime import timedelta
from typing import Dict, Optional

import pytest

from remote_sign.adapters.base.qes_provider import (
    CertificateInfo, ErrorKind, RemoteSignCredentials, RemoteSignProvider, RemoteSignSession,
    SignDocumentRequest, SignDocumentResponse, utcnow,
)
from remote_sign.core.registry import ProviderRegistry
from remote_sign.core.session_manager import SessionManager


class FakeClock:
    """Manually advanced clock"""

    def __init__(self, start=None):
        self.now = start or utcnow()

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


class MockRemoteSignProvider(RemoteSignProvider):
    """Scriptable provider for registry, manager and API tests"""

    provider_id = "MOCK"
    provider_name = "Mock Provider"

    def __init__(self, provider_id: str = "MOCK", quota: Optional[int] = None,
                 expires_in: int = 3600, supports_refresh: bool = False):
        super().__init__(config={})
        self.provider_id = provider_id
        self.quota = quota
        self.expires_in = expires_in
        self.supports_refresh = supports_refresh
        self.configured = True
        self.connection_ok = True
        self.validate_result = True
        self.fail_on: Dict[str, ErrorKind] = {}
        self.authentications = 0
        self.signed = []
        self.closed = []

    async def authenticate(self, credentials: RemoteSignCredentials,
                           session_duration_minutes=None) -> RemoteSignSession:
        if credentials.otp == "000000":
            raise self.error(ErrorKind.INVALID_OTP, "OTP rejected")
        self.authentications += 1
        return RemoteSignSession(
            session_id=f"{self.provider_id.lower()}-{credentials.username}-{self.authentications}",
            provider_id=self.provider_id,
            user_id=credentials.username,
            expires_at=utcnow() + timedelta(seconds=self.expires_in),
            certificate=CertificateInfo(common_name="Mario Rossi", serial_number="42",
                                        issuer="CN=Mock CA"),
            remaining_signatures=self.quota,
        )

    async def validate_session(self, session):
        if isinstance(self.validate_result, Exception):
            raise self.validate_result
        return self.validate_result

    async def refresh_session(self, session):
        if not self.supports_refresh:
            raise self.error(ErrorKind.REFRESH_NOT_SUPPORTED, "Refresh not supported")
        return replace(session, expires_at=session.expires_at + timedelta(hours=1))

    async def close_session(self, session):
        self.closed.append(session.session_id)

    async def sign_document(self, session, request: SignDocumentRequest) -> SignDocumentResponse:
        kind = self.fail_on.get(request.document_id)
        if kind is not None:
            raise self.error(kind, f"Signing {request.document_id} failed")
        self.signed.append(request.document_id)
        self._consume_signature(session)
        return SignDocumentResponse(signature="c2lnbmVk", signed_by=session.signed_by,
                                    signature_timestamp=utcnow().isoformat(),
                                    document_id=request.document_id)

    async def get_certificate_info(self, session):
        return session.certificate

    def is_configured(self):
        return self.configured

    async def test_connection(self):
        if isinstance(self.connection_ok, Exception):
            raise self.connection_ok
        return self.connection_ok


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def mock_provider():
    return MockRemoteSignProvider(quota=10)


@pytest.fixture
def registry(mock_provider):
    registry = ProviderRegistry(default_provider="MOCK")
    registry.register(mock_provider)
    return registry


@pytest.fixture
def manager(registry, clock):
    return SessionManager(registry, clock=clock)


@pytest.fixture
def credentials():
    return RemoteSignCredentials(username="RHI001", pin="1234", otp="999999")
