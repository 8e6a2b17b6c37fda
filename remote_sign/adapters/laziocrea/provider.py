"""
LAZIOcrea FirmaWeb Remote Signing Provider Implementation

FirmaWeb is a REST gateway in front of Namirial SWS. The gateway itself is
protected by an OAuth2 client-credentials token; signing sessions last three
minutes and cannot be renewed without a new OTP.

Credential mapping:
- username: Namirial device code (RHI...)
- pin: certificate PIN, sent as password
- domain: OTP device id, sent as dispositivo
- otp: six digit OTP code
"""

import logging
from datetime import timedelta
from typing import Any, Dict, Optional

from ..base.http import ClientCredentialsToken, ProviderHttpClient
from ..base.qes_provider import (
    RemoteSignProvider, RemoteSignCredentials, RemoteSignSession, CertificateInfo,
    SignDocumentRequest, SignDocumentResponse, ErrorKind, RemoteSignError,
    parse_timestamp, utcnow,
)
from .models import LAZIOcreaConfig, LAZIOcreaEnvelope


logger = logging.getLogger(__name__)


DEFAULT_SESSION_SECONDS = 180

ERROR_CODES = {
    "1001": ErrorKind.AUTH_FAILED,
    "INVALID_CREDENTIALS": ErrorKind.AUTH_FAILED,
    "DEVICE_NOT_FOUND": ErrorKind.AUTH_FAILED,
    "INVALID_OTP": ErrorKind.INVALID_OTP,
    "INVALID_PIN": ErrorKind.INVALID_PIN,
    "DEVICE_LOCKED": ErrorKind.CREDENTIAL_LOCKED,
    "SESSION_EXPIRED": ErrorKind.SESSION_EXPIRED,
    "INVALID_SESSION": ErrorKind.INVALID_SESSION,
}


class LAZIOcreaRemoteSignProvider(RemoteSignProvider):
    """LAZIOcrea FirmaWeb remote signing (REST + OAuth2)."""

    provider_id = "LAZIOCREA"
    provider_name = "LAZIOcrea FirmaWeb"
    supports_batch_signing = True
    supports_extended_session = False
    default_session_minutes = 3

    def __init__(self, config: LAZIOcreaConfig, transport=None):
        super().__init__(config, transport)
        self.base_url = config.resolved_base_url
        self.http = ProviderHttpClient(self.provider_id, self.base_url, config.timeout,
                                       headers={"Accept": "application/json"},
                                       transport=transport)
        self.token = ClientCredentialsToken(self.http, config.oauth_url,
                                            config.client_id or "", config.client_secret or "",
                                            scope=config.scope)
        logger.info("[LAZIOcrea] Base URL: %s", self.base_url)

    async def _api(self, method: str, path: str, **kwargs) -> Any:
        """Call the gateway and unwrap the response envelope."""
        access_token = await self.token.get()
        body = await self.http.request_json(method, path, bearer=access_token,
                                            error_codes=ERROR_CODES, **kwargs)
        envelope = LAZIOcreaEnvelope.from_json(body)
        if not envelope.ok:
            code = str(envelope.codice_errore or "")
            kind = ERROR_CODES.get(code) or ERROR_CODES.get(code.upper(), ErrorKind.PROVIDER_ERROR)
            raise self.error(kind, envelope.descrizione_errore or code or "LAZIOcrea API error",
                             details={"provider_code": code})
        return envelope.data

    # -- authentication -------------------------------------------------------

    async def authenticate(self, credentials: RemoteSignCredentials,
                           session_duration_minutes: Optional[int] = None) -> RemoteSignSession:
        logger.info("[LAZIOcrea] Authenticating user %s (otp: %s)",
                    credentials.username, bool(credentials.otp))

        data = await self._api("POST", "/session", json={
            "username": credentials.username,
            "password": credentials.pin,
            "dispositivo": credentials.domain,
            "otp": credentials.otp,
        })
        session_id = data.get("sessionId") if isinstance(data, dict) else None
        if not session_id:
            raise self.error(ErrorKind.AUTH_FAILED, "LAZIOcrea did not return a session id")

        expires_in = self._seconds(data.get("expiresIn")) or DEFAULT_SESSION_SECONDS

        try:
            certificate = await self._fetch_certificate_info(session_id)
        except RemoteSignError as e:
            logger.warning("[LAZIOcrea] Unable to fetch certificate info: %s", e)
            certificate = CertificateInfo(common_name=credentials.username, serial_number="N/A",
                                          issuer="Namirial S.p.A. (via LAZIOcrea)")

        logger.info("[LAZIOcrea] Session %s... created, expires in %ss", session_id[:8], expires_in)

        return RemoteSignSession(
            session_id=session_id,
            provider_id=self.provider_id,
            user_id=credentials.username,
            expires_at=utcnow() + timedelta(seconds=expires_in),
            certificate=certificate,
            access_token=session_id,
            metadata={"credentials": {"username": credentials.username,
                                      "pin": credentials.pin}},
        )

    async def validate_session(self, session: RemoteSignSession) -> bool:
        # FirmaWeb has no session lookup endpoint
        return not session.is_expired()

    async def refresh_session(self, session: RemoteSignSession) -> RemoteSignSession:
        raise self.error(ErrorKind.REFRESH_REQUIRES_OTP,
                         "LAZIOcrea sessions cannot be renewed; a new OTP is required")

    async def close_session(self, session: RemoteSignSession) -> None:
        logger.info("[LAZIOcrea] Closing session %s...", session.session_id[:8])
        try:
            await self._api("DELETE", "/session/close", params={"sessionId": session.session_id})
        except RemoteSignError as e:
            logger.warning("[LAZIOcrea] Session close failed (ignored): %s", e)

    async def request_otp(self, username: str, device: str) -> None:
        """Ask the gateway to send an OTP by SMS to the user's device."""
        logger.info("[LAZIOcrea] Requesting OTP for %s", username)
        await self._api("POST", "/otp", json={"username": username, "dispositivo": device})

    # -- signing ----------------------------------------------------------------

    async def sign_document(self, session: RemoteSignSession,
                            request: SignDocumentRequest) -> SignDocumentResponse:
        logger.info("[LAZIOcrea] Signing document %s", request.document_id or "unknown")

        if session.is_expired():
            raise self.error(ErrorKind.SESSION_EXPIRED, "Session expired, a new OTP is required")

        payload: Dict[str, Any] = {"sessionId": session.session_id}
        if request.document_payload:
            payload["document"] = request.document_payload
        elif request.document_hash:
            payload["hash"] = request.document_hash
            payload["hashAlgorithm"] = request.hash_algorithm.value
        else:
            raise self.error(ErrorKind.PROVIDER_ERROR, "A document payload or hash is required")

        data = await self._api("POST", f"/sign/{request.signature_format.value.lower()}",
                               json=payload)
        signed = data.get("signedDocument") if isinstance(data, dict) else None
        if not signed:
            raise self.error(ErrorKind.PROVIDER_ERROR, "No signed document returned by the server")

        self._consume_signature(session)

        return SignDocumentResponse(
            signature=signed,
            signed_by=session.signed_by or session.user_id,
            signature_timestamp=data.get("signatureTimestamp") or utcnow().isoformat(),
            document_id=request.document_id,
        )

    # -- certificate --------------------------------------------------------------

    async def get_certificate_info(self, session: RemoteSignSession) -> CertificateInfo:
        if session.certificate:
            return session.certificate
        session.certificate = await self._fetch_certificate_info(session.session_id)
        return session.certificate

    async def _fetch_certificate_info(self, session_id: str) -> CertificateInfo:
        try:
            data = await self._api("GET", "/certificate", params={"sessionId": session_id})
        except RemoteSignError as e:
            raise self.error(ErrorKind.CERTIFICATE_INFO_ERROR,
                             "Unable to retrieve certificate information") from e

        if not isinstance(data, dict) or not data.get("cn"):
            raise self.error(ErrorKind.CERTIFICATE_INFO_ERROR, "Certificate data not received")

        return CertificateInfo(
            common_name=data["cn"],
            serial_number=str(data.get("serialNumber", "")),
            issuer=data.get("issuer", ""),
            valid_from=parse_timestamp(data.get("validFrom")),
            valid_to=parse_timestamp(data.get("validTo")),
            fiscal_code=data.get("fiscalCode"),
        )

    # -- utilities ------------------------------------------------------------------

    def is_configured(self) -> bool:
        return bool(self.base_url and self.config.client_id and self.config.client_secret)

    async def test_connection(self) -> bool:
        try:
            await self.token.get()
            return True
        except Exception:
            return False
