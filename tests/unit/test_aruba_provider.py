"""
Unit tests for the Aruba remote signing provider
"""

import base64
import json
from datetime import datetime, timedelta, timezone

import httpx
import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.x509.oid import NameOID

from remote_sign.adapters.aruba import ArubaConfig, ArubaRemoteSignProvider
from remote_sign.adapters.base.qes_provider import (
    AuthenticationError, ErrorKind, RemoteSignCredentials, RemoteSignError, RemoteSignSession,
    SignDocumentRequest, utcnow,
)


CERT_FIELDS = {
    "subjectDN": "CN=Mario Rossi,SERIALNUMBER=TINIT-RSSMRA80A01H501U,C=IT",
    "issuerDN": "CN=ArubaPEC EU Qualified Certificates CA G1,O=ArubaPEC S.p.A.,C=IT",
    "serialNumber": "5A1F",
    "validFrom": "20240101000000Z",
    "validTo": "20270101000000Z",
}


class ArubaServer:
    """In-memory CSC endpoint"""

    def __init__(self):
        self.requests = []
        self.cert = {"certificates": [], **CERT_FIELDS}
        self.sign_response = httpx.Response(200, json={"signatures": ["c2lnbmF0dXJl"]})
        self.authorize_response = httpx.Response(
            200, json={"SAD": "sad-token", "expiresIn": 2700, "numSignatures": 1000})

    def __call__(self, request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content) if request.content else None
        self.requests.append((request.url.path, body, request.headers.get("Authorization")))
        path = request.url.path
        if path == "/csc/v1/credentials/authorize":
            return self.authorize_response
        if path == "/csc/v1/credentials/info":
            return httpx.Response(200, json={"cert": self.cert})
        if path == "/csc/v1/signatures/signHash":
            return self.sign_response
        if path == "/csc/v1/credentials/revoke":
            return httpx.Response(204)
        if path == "/csc/v1/info":
            return httpx.Response(200, json={"name": "ARSS"})
        return httpx.Response(404)


@pytest.fixture
def server():
    return ArubaServer()


@pytest.fixture
def provider(server):
    config = ArubaConfig(base_url="https://arss.test", api_key="key-1")
    return ArubaRemoteSignProvider(config, transport=httpx.MockTransport(server))


@pytest.fixture
def credentials():
    return RemoteSignCredentials(username="RHI001", pin="1234", otp="999999")


def _session(**overrides):
    values = dict(session_id="sad-token", provider_id="ARUBA", user_id="RHI001",
                  expires_at=utcnow() + timedelta(minutes=45), access_token="sad-token",
                  remaining_signatures=1000)
    values.update(overrides)
    return RemoteSignSession(**values)


def _der_certificate() -> str:
    key = ec.generate_private_key(ec.SECP256R1())
    subject = x509.Name([
        x509.NameAttribute(NameOID.COMMON_NAME, "Mario Rossi"),
        x509.NameAttribute(NameOID.SERIAL_NUMBER, "TINIT-RSSMRA80A01H501U"),
    ])
    issuer = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, "Test Qualified CA")])
    certificate = (
        x509.CertificateBuilder()
        .subject_name(subject)
        .issuer_name(issuer)
        .public_key(key.public_key())
        .serial_number(0x5A1F)
        .not_valid_before(datetime(2024, 1, 1, tzinfo=timezone.utc))
        .not_valid_after(datetime(2027, 1, 1, tzinfo=timezone.utc))
        .sign(key, hashes.SHA256())
    )
    return base64.b64encode(certificate.public_bytes(serialization.Encoding.DER)).decode()


@pytest.mark.asyncio
async def test_authenticate_opens_extended_session(provider, server, credentials):
    """Test successful authorization"""
    session = await provider.authenticate(credentials, 45)

    assert session.session_id == "sad-token"
    assert session.access_token == "sad-token"
    assert session.remaining_signatures == 1000
    assert session.signed_by == "Mario Rossi"
    assert session.certificate.valid_to == datetime(2027, 1, 1, tzinfo=timezone.utc)
    assert 2690 < session.remaining_seconds() <= 2700

    path, body, _ = server.requests[0]
    assert path == "/csc/v1/credentials/authorize"
    assert body["credentialID"] == "RHI001"
    assert body["PIN"] == "1234"
    assert body["OTP"] == "999999"
    assert body["numSignatures"] == 1000


@pytest.mark.asyncio
async def test_authenticate_sends_api_key(credentials):
    seen = []

    def handler(request):
        seen.append(request.headers.get("X-API-Key"))
        return ArubaServer()(request)

    provider = ArubaRemoteSignProvider(ArubaConfig(base_url="https://arss.test", api_key="key-1"),
                                       transport=httpx.MockTransport(handler))
    await provider.authenticate(credentials)

    assert seen and all(value == "key-1" for value in seen)


@pytest.mark.asyncio
@pytest.mark.parametrize("code, kind", [
    ("invalid_otp", ErrorKind.INVALID_OTP),
    ("invalid_pin", ErrorKind.INVALID_PIN),
    ("credential_locked", ErrorKind.CREDENTIAL_LOCKED),
])
async def test_authenticate_error_codes(provider, server, credentials, code, kind):
    server.authorize_response = httpx.Response(400, json={"error": code,
                                                          "error_description": "rejected"})

    with pytest.raises(AuthenticationError) as excinfo:
        await provider.authenticate(credentials)

    assert excinfo.value.kind == kind
    assert excinfo.value.provider_id == "ARUBA"


@pytest.mark.asyncio
async def test_authenticate_survives_certificate_failure(credentials):
    def handler(request):
        if request.url.path == "/csc/v1/credentials/info":
            return httpx.Response(500)
        return ArubaServer()(request)

    provider = ArubaRemoteSignProvider(ArubaConfig(base_url="https://arss.test"),
                                       transport=httpx.MockTransport(handler))
    session = await provider.authenticate(credentials)

    assert session.certificate is None
    assert session.session_id == "sad-token"


@pytest.mark.asyncio
async def test_sign_document_decrements_quota(provider, server):
    session = _session()
    request = SignDocumentRequest(document_hash="aGFzaA==", document_id="report-1")

    response = await provider.sign_document(session, request)

    assert response.signature == "c2lnbmF0dXJl"
    assert response.document_id == "report-1"
    assert session.remaining_signatures == 999

    _, body, _ = server.requests[-1]
    assert body["hash"] == ["aGFzaA=="]
    assert body["hashAlgo"] == "2.16.840.1.101.3.4.2.1"
    assert body["SAD"] == "sad-token"


@pytest.mark.asyncio
async def test_sign_document_without_quota_is_rejected_locally(provider, server):
    with pytest.raises(RemoteSignError) as excinfo:
        await provider.sign_document(_session(remaining_signatures=0),
                                     SignDocumentRequest(document_hash="aGFzaA=="))

    assert excinfo.value.kind == ErrorKind.NO_SIGNATURES_LEFT
    assert server.requests == []


@pytest.mark.asyncio
async def test_sign_document_invalid_sad(provider, server):
    server.sign_response = httpx.Response(400, json={"error": "invalid_sad"})

    with pytest.raises(RemoteSignError) as excinfo:
        await provider.sign_document(_session(), SignDocumentRequest(document_hash="aGFzaA=="))

    assert excinfo.value.kind == ErrorKind.INVALID_SESSION
    assert excinfo.value.invalidates_session


@pytest.mark.asyncio
async def test_sign_document_empty_signatures(provider, server):
    server.sign_response = httpx.Response(200, json={"signatures": []})

    with pytest.raises(RemoteSignError) as excinfo:
        await provider.sign_document(_session(), SignDocumentRequest(document_hash="aGFzaA=="))

    assert excinfo.value.kind == ErrorKind.PROVIDER_ERROR


@pytest.mark.asyncio
async def test_refresh_not_supported(provider):
    with pytest.raises(RemoteSignError) as excinfo:
        await provider.refresh_session(_session())

    assert excinfo.value.kind == ErrorKind.REFRESH_NOT_SUPPORTED


@pytest.mark.asyncio
async def test_validate_session(provider):
    assert await provider.validate_session(_session()) is True
    assert await provider.validate_session(_session(expires_at=utcnow() - timedelta(seconds=1))) is False


@pytest.mark.asyncio
async def test_validate_session_rejected():
    provider = ArubaRemoteSignProvider(
        ArubaConfig(base_url="https://arss.test"),
        transport=httpx.MockTransport(lambda r: httpx.Response(401)))

    assert await provider.validate_session(_session()) is False


@pytest.mark.asyncio
async def test_close_session_never_raises():
    def handler(request):
        raise httpx.ConnectError("down", request=request)

    provider = ArubaRemoteSignProvider(ArubaConfig(base_url="https://arss.test"),
                                       transport=httpx.MockTransport(handler))

    await provider.close_session(_session())


@pytest.mark.asyncio
async def test_certificate_from_der(provider, server):
    server.cert = {"certificates": [_der_certificate()]}

    info = await provider.get_certificate_info(_session())

    assert info.common_name == "Mario Rossi"
    assert info.fiscal_code == "TINIT-RSSMRA80A01H501U"
    assert info.serial_number == "5A1F"
    assert info.valid_from == datetime(2024, 1, 1, tzinfo=timezone.utc)


@pytest.mark.asyncio
async def test_certificate_missing(provider, server):
    server.cert = {}

    with pytest.raises(RemoteSignError) as excinfo:
        await provider.get_certificate_info(_session())

    assert excinfo.value.kind == ErrorKind.CERTIFICATE_INFO_ERROR


@pytest.mark.asyncio
async def test_connection_check(provider):
    assert await provider.test_connection() is True

    broken = ArubaRemoteSignProvider(ArubaConfig(base_url="https://arss.test"),
                                     transport=httpx.MockTransport(lambda r: httpx.Response(503)))
    assert await broken.test_connection() is False


def test_is_configured():
    assert ArubaRemoteSignProvider(ArubaConfig(base_url="https://arss.test")).is_configured()
    assert not ArubaRemoteSignProvider(ArubaConfig()).is_configured()


@pytest.mark.asyncio
async def test_authenticate_rejects_malformed_expiry(provider, server, credentials):
    server.authorize_response = httpx.Response(200, json={"SAD": "sad-token", "expiresIn": "45m"})

    with pytest.raises(RemoteSignError) as excinfo:
        await provider.authenticate(credentials)

    assert excinfo.value.kind == ErrorKind.PROVIDER_ERROR
