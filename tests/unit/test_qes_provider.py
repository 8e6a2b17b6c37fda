"""
Unit tests for the remote signing provider base interface
"""

from datetime import datetime, timedelta, timezone

import pytest

from remote_sign.adapters.aruba.models import ArubaConfig
from remote_sign.adapters.base.qes_provider import (
    AuthenticationError, BatchSignResult, CertificateError, ErrorKind, ProviderLookupError,
    RemoteSignError, RemoteSignSession, SessionError, SignatureFormat, SignDocumentRequest,
    SigningError, config_from_section, extract_common_name, make_error, parse_seconds,
    parse_timestamp, session_status, utcnow,
)

from .conftest import MockRemoteSignProvider


def _session(**overrides):
    values = dict(session_id="s-1", provider_id="MOCK", user_id="RHI001",
                  expires_at=utcnow() + timedelta(minutes=45))
    values.update(overrides)
    return RemoteSignSession(**values)


def test_retryable_kinds():
    """Test default retryability of error kinds"""
    assert ErrorKind.RATE_LIMITED.retryable
    assert ErrorKind.SERVER_ERROR.retryable
    assert ErrorKind.NETWORK_ERROR.retryable
    assert ErrorKind.CERTIFICATE_INFO_ERROR.retryable
    assert not ErrorKind.AUTH_FAILED.retryable
    assert not ErrorKind.SESSION_EXPIRED.retryable


def test_session_invalidating_kinds():
    assert ErrorKind.SESSION_EXPIRED.invalidates_session
    assert ErrorKind.INVALID_SESSION.invalidates_session
    assert not ErrorKind.NO_SIGNATURES_LEFT.invalidates_session
    assert not ErrorKind.NETWORK_ERROR.invalidates_session


@pytest.mark.parametrize("kind, error_class", [
    (ErrorKind.INVALID_OTP, AuthenticationError),
    (ErrorKind.SESSION_EXPIRED, SessionError),
    (ErrorKind.REFRESH_REQUIRES_OTP, SessionError),
    (ErrorKind.NO_SIGNATURES_LEFT, SigningError),
    (ErrorKind.CERTIFICATE_INFO_ERROR, CertificateError),
    (ErrorKind.PROVIDER_NOT_FOUND, ProviderLookupError),
    (ErrorKind.SERVER_ERROR, RemoteSignError),
])
def test_make_error_picks_subclass(kind, error_class):
    error = make_error(kind, "boom", "ARUBA")

    assert type(error) is error_class
    assert error.kind == kind
    assert error.error_code == kind.value
    assert error.provider_id == "ARUBA"
    assert str(error) == "boom"


def test_retryable_override():
    error = make_error(ErrorKind.SERVER_ERROR, "maintenance", retryable=False,
                       details={"status_code": 503})

    assert error.retryable is False
    assert error.details == {"status_code": 503}


def test_session_status_counts_whole_minutes():
    now = utcnow()
    session = _session(expires_at=now + timedelta(minutes=10, seconds=59), remaining_signatures=7)

    status = session_status(session, now)

    assert status.active is True
    assert status.remaining_minutes == 10
    assert status.remaining_signatures == 7


def test_session_status_expired_and_missing():
    now = utcnow()
    expired = session_status(_session(expires_at=now - timedelta(seconds=1)), now)

    assert expired.active is False
    assert expired.remaining_minutes == 0
    assert session_status(None).active is False


def test_parse_timestamp_formats():
    assert parse_timestamp("20240101120000Z") == datetime(2024, 1, 1, 12, tzinfo=timezone.utc)
    assert parse_timestamp("2024-01-01T12:00:00Z") == datetime(2024, 1, 1, 12, tzinfo=timezone.utc)
    assert parse_timestamp("2024-01-01T13:00:00+01:00") == datetime(2024, 1, 1, 12, tzinfo=timezone.utc)
    assert parse_timestamp("yesterday") is None
    assert parse_timestamp(None) is None


def test_extract_common_name():
    assert extract_common_name("CN=Mario Rossi, O=Aruba PEC S.p.A., C=IT") == "Mario Rossi"
    assert extract_common_name("O=No Name") == "O=No Name"


def test_config_from_section_ignores_unknown_and_none():
    config = config_from_section(ArubaConfig, {"base_url": "https://arss.test", "api_key": None,
                                               "enabled": True, "max_signatures": 50})

    assert config.base_url == "https://arss.test"
    assert config.api_key is None
    assert config.max_signatures == 50


def test_credentials_repr_hides_secrets(credentials):
    text = repr(credentials)

    assert "1234" not in text
    assert "999999" not in text
    assert "RHI001" in text


@pytest.mark.asyncio
async def test_batch_reports_progress_and_default_ids():
    """Test batch progress callbacks and generated document ids"""
    provider = MockRemoteSignProvider()
    calls = []
    requests = [SignDocumentRequest(document_hash="aGFzaA==", document_description="first"),
                SignDocumentRequest(document_hash="aGFzaA==", document_id="report-2")]

    results = await provider.sign_multiple_documents(
        _session(), requests, lambda done, total, current: calls.append((done, total, current)))

    assert [result.document_id for result in results] == ["doc_0", "report-2"]
    assert all(result.success for result in results)
    assert calls == [(0, 2, "first"), (1, 2, "report-2"), (2, 2, None)]


@pytest.mark.asyncio
async def test_batch_continues_after_item_error():
    provider = MockRemoteSignProvider()
    provider.fail_on = {"b": ErrorKind.SERVER_ERROR}
    requests = [SignDocumentRequest(document_id=doc_id, document_hash="aGFzaA==")
                for doc_id in ("a", "b", "c")]

    results = await provider.sign_multiple_documents(_session(), requests)

    assert [result.success for result in results] == [True, False, True]
    assert results[1] == BatchSignResult(document_id="b", success=False,
                                         error="Signing b failed",
                                         error_kind=ErrorKind.SERVER_ERROR)


@pytest.mark.asyncio
async def test_batch_stops_on_session_invalidating_error():
    """Test that the failing item is recorded and later items are not attempted"""
    provider = MockRemoteSignProvider()
    provider.fail_on = {"b": ErrorKind.SESSION_EXPIRED}
    calls = []
    requests = [SignDocumentRequest(document_id=doc_id, document_hash="aGFzaA==")
                for doc_id in ("a", "b", "c")]

    results = await provider.sign_multiple_documents(
        _session(), requests, lambda done, total, current: calls.append(done))

    assert len(results) == 2
    assert results[1].error_kind == ErrorKind.SESSION_EXPIRED
    assert provider.signed == ["a"]
    assert calls == [0, 1, 3]


@pytest.mark.asyncio
async def test_progress_callback_errors_do_not_abort_batch():
    provider = MockRemoteSignProvider()

    def broken(done, total, current):
        raise RuntimeError("ui gone")

    results = await provider.sign_multiple_documents(
        _session(), [SignDocumentRequest(document_id="a", document_hash="aGFzaA==")], broken)

    assert results[0].success


@pytest.mark.asyncio
async def test_signing_consumes_known_quota():
    provider = MockRemoteSignProvider()
    session = _session(remaining_signatures=1)

    await provider.sign_document(session, SignDocumentRequest(document_id="a"))
    await provider.sign_document(session, SignDocumentRequest(document_id="b"))

    assert session.remaining_signatures == 0


def test_signature_formats():
    """Test signature format enum values"""
    assert SignatureFormat.CADES.value == "CAdES"
    assert SignatureFormat.PADES.value == "PAdES"
    assert SignatureFormat.XADES.value == "XAdES"


def test_parse_seconds():
    assert parse_seconds(180) == 180
    assert parse_seconds("180") == 180
    assert parse_seconds(0, 60) == 0
    assert parse_seconds(None, 60) == 60
    assert parse_seconds("") is None

    with pytest.raises(ValueError):
        parse_seconds("soon")
    with pytest.raises(ValueError):
        parse_seconds({"seconds": 180})
