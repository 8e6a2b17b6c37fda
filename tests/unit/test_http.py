"""
Unit tests for the shared provider HTTP plumbing
"""

import ssl
from datetime import datetime, timezone

import httpx
import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.hazmat.primitives.serialization import pkcs12
from cryptography.x509.oid import NameOID

from remote_sign.adapters.base.http import (
    ClientCredentialsToken, ProviderHttpClient, client_tls_context, error_fields, map_http_error,
)
from remote_sign.adapters.base.qes_provider import ErrorKind, RemoteSignError


def _response(status, **kwargs):
    return httpx.Response(status, request=httpx.Request("POST", "https://provider.test/x"), **kwargs)


def test_error_fields_reads_oauth_and_envelope_shapes():
    assert error_fields(_response(400, json={"error": "invalid_grant",
                                             "error_description": "Bad credentials"})) \
        == ("invalid_grant", "Bad credentials")
    assert error_fields(_response(400, json={"esito": "KO", "codiceErrore": "1001",
                                             "descrizioneErrore": "Dispositivo non esistente"})) \
        == ("1001", "Dispositivo non esistente")
    assert error_fields(_response(502, text="Bad Gateway")) == (None, "Bad Gateway")


@pytest.mark.parametrize("status, kind", [
    (401, ErrorKind.AUTH_FAILED),
    (403, ErrorKind.AUTH_FAILED),
    (429, ErrorKind.RATE_LIMITED),
    (500, ErrorKind.SERVER_ERROR),
    (503, ErrorKind.SERVER_ERROR),
    (400, ErrorKind.PROVIDER_ERROR),
])
def test_status_mapping(status, kind):
    error = map_http_error("ARUBA", _response(status, json={}))

    assert error.kind == kind
    assert error.details["status_code"] == status


def test_provider_code_overrides_status():
    error = map_http_error("ARUBA", _response(400, json={"error": "invalid_otp"}),
                           {"invalid_otp": ErrorKind.INVALID_OTP})

    assert error.kind == ErrorKind.INVALID_OTP
    assert error.details["provider_code"] == "invalid_otp"


def test_unknown_code_keeps_raw_message():
    error = map_http_error("INFOCERT", _response(400, json={"error": "weird",
                                                            "error_description": "Something odd"}))

    assert error.kind == ErrorKind.PROVIDER_ERROR
    assert error.message == "Something odd"


def test_unauthorized_kind_override():
    error = map_http_error("INFOCERT", _response(401), unauthorized_kind=ErrorKind.INVALID_SESSION)

    assert error.kind == ErrorKind.INVALID_SESSION


@pytest.mark.asyncio
async def test_transport_errors_become_network_errors():
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    client = ProviderHttpClient("NAMIRIAL", "https://namirial.test",
                                transport=httpx.MockTransport(handler))

    with pytest.raises(RemoteSignError) as excinfo:
        await client.request("GET", "/api/v1/health")

    assert excinfo.value.kind == ErrorKind.NETWORK_ERROR
    assert excinfo.value.retryable is True


@pytest.mark.asyncio
async def test_timeouts_become_network_errors():
    def handler(request):
        raise httpx.ReadTimeout("slow", request=request)

    client = ProviderHttpClient("ARUBA", "https://arss.test", transport=httpx.MockTransport(handler))

    with pytest.raises(RemoteSignError) as excinfo:
        await client.request_json("POST", "/csc/v1/signatures/signHash", json={})

    assert excinfo.value.kind == ErrorKind.NETWORK_ERROR


@pytest.mark.asyncio
async def test_request_sends_bearer_and_joins_paths():
    seen = {}

    def handler(request):
        seen["url"] = str(request.url)
        seen["auth"] = request.headers.get("Authorization")
        return httpx.Response(200, json={"ok": True})

    client = ProviderHttpClient("ARUBA", "https://arss.test/", transport=httpx.MockTransport(handler))
    data = await client.request_json("GET", "/csc/v1/info", bearer="sad-token")

    assert data == {"ok": True}
    assert seen == {"url": "https://arss.test/csc/v1/info", "auth": "Bearer sad-token"}


@pytest.mark.asyncio
async def test_request_json_rejects_non_objects():
    client = ProviderHttpClient("ARUBA", "https://arss.test",
                                transport=httpx.MockTransport(lambda r: httpx.Response(200, json=[1])))

    with pytest.raises(RemoteSignError) as excinfo:
        await client.request_json("GET", "/csc/v1/info")

    assert excinfo.value.kind == ErrorKind.PROVIDER_ERROR


@pytest.mark.asyncio
async def test_client_credentials_token_is_cached():
    calls = []

    def handler(request):
        calls.append(request.url.path)
        return httpx.Response(200, json={"access_token": "gw-token", "expires_in": 3600})

    http = ProviderHttpClient("LAZIOCREA", "https://gw.test", transport=httpx.MockTransport(handler))
    token = ClientCredentialsToken(http, "https://idp.test/oauth2/token", "client", "secret")

    assert await token.get() == "gw-token"
    assert await token.get() == "gw-token"
    assert calls == ["/oauth2/token"]

    token.invalidate()
    await token.get()
    assert len(calls) == 2


@pytest.mark.asyncio
async def test_client_credentials_token_renewed_inside_margin():
    calls = []

    def handler(request):
        calls.append(1)
        return httpx.Response(200, json={"access_token": f"t{len(calls)}", "expires_in": 30})

    http = ProviderHttpClient("OPENAPI", "https://esig.test", transport=httpx.MockTransport(handler))
    token = ClientCredentialsToken(http, "https://idp.test/token", "client", "secret",
                                   margin_seconds=60)

    assert await token.get() == "t1"
    assert await token.get() == "t2"


@pytest.mark.asyncio
async def test_client_credentials_rejected_client():
    http = ProviderHttpClient(
        "LAZIOCREA", "https://gw.test",
        transport=httpx.MockTransport(lambda r: httpx.Response(401, json={"error": "invalid_client"})))
    token = ClientCredentialsToken(http, "https://idp.test/token", "client", "wrong")

    with pytest.raises(RemoteSignError) as excinfo:
        await token.get()

    assert excinfo.value.kind == ErrorKind.AUTH_FAILED


@pytest.mark.asyncio
async def test_client_credentials_invalid_expiry():
    http = ProviderHttpClient(
        "OPENAPI", "https://esig.test",
        transport=httpx.MockTransport(lambda r: httpx.Response(
            200, json={"access_token": "t", "expires_in": "soon"})))
    token = ClientCredentialsToken(http, "https://idp.test/token", "client", "secret")

    with pytest.raises(RemoteSignError) as excinfo:
        await token.get()

    assert excinfo.value.kind == ErrorKind.PROVIDER_ERROR
    assert not token.cached


def write_client_certificate(path, password=None):
    """Write a self-signed client certificate, as PKCS#12 or PEM by extension"""
    key = ec.generate_private_key(ec.SECP256R1())
    name = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, "broker-client")])
    certificate = (
        x509.CertificateBuilder()
        .subject_name(name)
        .issuer_name(name)
        .public_key(key.public_key())
        .serial_number(0x2A)
        .not_valid_before(datetime(2024, 1, 1, tzinfo=timezone.utc))
        .not_valid_after(datetime(2030, 1, 1, tzinfo=timezone.utc))
        .sign(key, hashes.SHA256())
    )
    if path.suffix in (".p12", ".pfx"):
        encryption = (serialization.BestAvailableEncryption(password.encode()) if password
                      else serialization.NoEncryption())
        path.write_bytes(pkcs12.serialize_key_and_certificates(
            b"broker-client", key, certificate, None, encryption))
    else:
        path.write_bytes(
            certificate.public_bytes(serialization.Encoding.PEM)
            + key.private_bytes(serialization.Encoding.PEM, serialization.PrivateFormat.PKCS8,
                                serialization.NoEncryption()))
    return path


def test_client_tls_context_from_pkcs12(tmp_path):
    path = write_client_certificate(tmp_path / "client.p12", "secret")

    context = client_tls_context("NAMIRIAL", str(path), "secret")

    assert isinstance(context, ssl.SSLContext)
    assert context.verify_mode == ssl.CERT_REQUIRED


def test_client_tls_context_from_pem(tmp_path):
    path = write_client_certificate(tmp_path / "client.pem")

    assert isinstance(client_tls_context("NAMIRIAL", str(path)), ssl.SSLContext)


@pytest.mark.parametrize("name, password", [
    ("missing.p12", "secret"),
    ("client.p12", "wrong"),
])
def test_client_tls_context_failures(tmp_path, name, password):
    write_client_certificate(tmp_path / "client.p12", "secret")

    with pytest.raises(RemoteSignError) as excinfo:
        client_tls_context("NAMIRIAL", str(tmp_path / name), password)

    assert excinfo.value.kind == ErrorKind.PROVIDER_NOT_CONFIGURED
    assert excinfo.value.retryable is False


def test_client_options():
    transport = httpx.MockTransport(lambda r: httpx.Response(200))

    assert ProviderHttpClient("X", "https://x.test", transport=transport).client_options() == {
        "transport": transport}
    assert ProviderHttpClient("X", "https://x.test", proxy="http://proxy:3128",
                              trust_env=False).client_options() == {
        "verify": True, "proxy": "http://proxy:3128", "trust_env": False}
