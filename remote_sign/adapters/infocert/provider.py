"""
InfoCert GoSign Remote Signing Provider Implementation

InfoCert issues OAuth2 tokens through the password grant: the user's PIN
is the password and the OTP travels as an extra form field. The access token
is the session; the refresh token renews it without a new OTP.
"""

import logging
from dataclasses import replace
from datetime import timedelta
from typing import Optional

from ..base.http import ProviderHttpClient
from ..base.qes_provider import (
    RemoteSignProvider, RemoteSignCredentials, RemoteSignSession, CertificateInfo,
    SignDocumentRequest, SignDocumentResponse, ErrorKind, RemoteSignError,
    extract_common_name, parse_timestamp, utcnow,
)
from .models import InfoCertConfig, InfoCertTokenResponse


logger = logging.getLogger(__name__)


FORM_HEADERS = {"Content-Type": "application/x-www-form-urlencoded"}

AUTH_ERROR_CODES = {
    "invalid_grant": ErrorKind.AUTH_FAILED,
    "invalid_client": ErrorKind.AUTH_FAILED,
    "unauthorized_client": ErrorKind.AUTH_FAILED,
    "invalid_otp": ErrorKind.INVALID_OTP,
    "invalid_pin": ErrorKind.INVALID_PIN,
    "account_locked": ErrorKind.CREDENTIAL_LOCKED,
}

SIGN_ERROR_CODES = {
    "token_expired": ErrorKind.SESSION_EXPIRED,
    "invalid_token": ErrorKind.INVALID_SESSION,
}


class InfoCertRemoteSignProvider(RemoteSignProvider):
    """
    InfoCert GoSign remote signing.

    Supports OAuth2 password-grant authentication with OTP and refresh-token
    renewal of the signing session.
    """

    provider_id = "INFOCERT"
    provider_name = "InfoCert GoSign"
    supports_batch_signing = True
    supports_extended_session = True

    def __init__(self, config: InfoCertConfig, transport=None):
        super().__init__(config, transport)
        self.http = ProviderHttpClient(self.provider_id, config.base_url, config.timeout,
                                       headers={"Accept": "application/json"},
                                       transport=transport,
                                       unauthorized_kind=ErrorKind.INVALID_SESSION)

    async def _token_request(self, form: dict) -> InfoCertTokenResponse:
        data = await self.http.request_json("POST", "/oauth/token", data=form,
                                            headers=FORM_HEADERS,
                                            error_codes=AUTH_ERROR_CODES,
                                            unauthorized_kind=ErrorKind.AUTH_FAILED)
        try:
            token = InfoCertTokenResponse.from_json(data)
        except ValueError as e:
            raise self.error(ErrorKind.PROVIDER_ERROR, f"Malformed token response: {e}") from e
        if not token.access_token:
            raise self.error(ErrorKind.AUTH_FAILED, "Token endpoint did not return an access token")
        return token

    # -- authentication -------------------------------------------------------

    async def authenticate(self, credentials: RemoteSignCredentials,
                           session_duration_minutes: Optional[int] = None) -> RemoteSignSession:
        logger.info("[InfoCert] Authenticating user %s", credentials.username)

        token = await self._token_request({
            "grant_type": "password",
            "client_id": self.config.client_id or "",
            "client_secret": self.config.client_secret or "",
            "username": credentials.username,
            "password": credentials.pin,
            "otp": credentials.otp or "",
            "scope": self.config.scope,
        })
        expires_in = token.expires_in or (session_duration_minutes or self.default_session_minutes) * 60

        certificate = None
        try:
            certificate = await self._fetch_certificate_info(token.access_token)
        except RemoteSignError as e:
            logger.warning("[InfoCert] Unable to fetch certificate info: %s", e)

        logger.info("[InfoCert] Session created, expires in %ss", expires_in)

        return RemoteSignSession(
            session_id=token.access_token,
            provider_id=self.provider_id,
            user_id=credentials.username,
            expires_at=utcnow() + timedelta(seconds=expires_in),
            certificate=certificate,
            access_token=token.access_token,
            refresh_token=token.refresh_token,
        )

    async def validate_session(self, session: RemoteSignSession) -> bool:
        if session.is_expired():
            return False

        try:
            await self.http.request("GET", "/api/v1/user/info", bearer=session.access_token)
        except RemoteSignError as e:
            if e.kind in (ErrorKind.INVALID_SESSION, ErrorKind.SESSION_EXPIRED):
                return False
            raise
        return True

    async def refresh_session(self, session: RemoteSignSession) -> RemoteSignSession:
        if not session.refresh_token:
            raise self.error(ErrorKind.REFRESH_NOT_SUPPORTED,
                             "No refresh token available for this session")

        logger.info("[InfoCert] Refreshing session for %s", session.user_id)
        token = await self._token_request({
            "grant_type": "refresh_token",
            "client_id": self.config.client_id or "",
            "client_secret": self.config.client_secret or "",
            "refresh_token": session.refresh_token,
        })

        return replace(
            session,
            session_id=token.access_token,
            expires_at=utcnow() + timedelta(seconds=token.expires_in or self.default_session_minutes * 60),
            access_token=token.access_token,
            refresh_token=token.refresh_token or session.refresh_token,
            metadata=dict(session.metadata),
        )

    async def close_session(self, session: RemoteSignSession) -> None:
        logger.info("[InfoCert] Closing session for %s", session.user_id)
        try:
            await self.http.request("POST", "/oauth/revoke", data={
                "token": session.access_token or "",
                "token_type_hint": "access_token",
                "client_id": self.config.client_id or "",
                "client_secret": self.config.client_secret or "",
            }, headers=FORM_HEADERS)
        except RemoteSignError as e:
            logger.warning("[InfoCert] Token revoke failed (ignored): %s", e)

    # -- signing ----------------------------------------------------------------

    async def sign_document(self, session: RemoteSignSession,
                            request: SignDocumentRequest) -> SignDocumentResponse:
        logger.info("[InfoCert] Signing document %s", request.document_id or "unknown")

        if not request.document_hash:
            raise self.error(ErrorKind.PROVIDER_ERROR,
                             "InfoCert signs document hashes only; document_hash is required")

        data = await self.http.request_json("POST", "/api/v1/signature/signHash", json={
            "hash": request.document_hash,
            "hashAlgorithm": request.hash_algorithm.value,
            "signatureFormat": request.signature_format.value,
        }, bearer=session.access_token, error_codes=SIGN_ERROR_CODES)

        signed_data = data.get("signedData")
        if not signed_data:
            raise self.error(ErrorKind.PROVIDER_ERROR, "No signature returned by the server")

        self._consume_signature(session)

        return SignDocumentResponse(
            signature=signed_data,
            signed_by=session.signed_by or self.provider_name,
            signature_timestamp=data.get("signingTime") or utcnow().isoformat(),
            document_id=request.document_id,
        )

    # -- certificate --------------------------------------------------------------

    async def get_certificate_info(self, session: RemoteSignSession) -> CertificateInfo:
        if session.certificate:
            return session.certificate
        session.certificate = await self._fetch_certificate_info(session.access_token or "")
        return session.certificate

    async def _fetch_certificate_info(self, access_token: str) -> CertificateInfo:
        try:
            data = await self.http.request_json("GET", "/api/v1/certificate/info",
                                                bearer=access_token)
        except RemoteSignError as e:
            logger.error("[InfoCert] Certificate info lookup failed: %s", e)
            raise self.error(ErrorKind.CERTIFICATE_INFO_ERROR,
                             "Unable to retrieve certificate information") from e

        cert = data.get("certificate") or {}
        if not cert.get("subjectDN"):
            raise self.error(ErrorKind.CERTIFICATE_INFO_ERROR, "No certificate found")

        return CertificateInfo(
            common_name=extract_common_name(cert["subjectDN"]),
            serial_number=str(cert.get("serialNumber", "")),
            issuer=cert.get("issuerDN", ""),
            valid_from=parse_timestamp(cert.get("notBefore")),
            valid_to=parse_timestamp(cert.get("notAfter")),
        )

    # -- utilities ------------------------------------------------------------------

    def is_configured(self) -> bool:
        return bool(self.config.base_url and self.config.client_id and self.config.client_secret)

    async def test_connection(self) -> bool:
        try:
            await self.http.request("GET", "/health", timeout=5)
            return True
        except Exception:
            return False
