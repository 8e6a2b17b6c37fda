"""
Namirial Remote Signing Provider Implementation

Namirial opens a short-lived signing session (three minutes unless the server
says otherwise) identified by an opaque session id. The session can be
extended through a dedicated endpoint while it is still alive.

The SaaS service may require a client certificate (mutual TLS). An
on-premise installation can be used instead and selected at runtime.
"""

import logging
from dataclasses import replace
from datetime import timedelta
from typing import Optional

from ..base.http import ProviderHttpClient, client_tls_context
from ..base.qes_provider import (
    RemoteSignProvider, RemoteSignCredentials, RemoteSignSession, CertificateInfo,
    SignDocumentRequest, SignDocumentResponse, ErrorKind, RemoteSignError,
    extract_common_name, parse_timestamp, utcnow,
)
from .models import NamirialConfig, NamirialEndpointInfo, NamirialLoginResponse


logger = logging.getLogger(__name__)


DEFAULT_SESSION_SECONDS = 180

ERROR_CODES = {
    "invalid_credentials": ErrorKind.AUTH_FAILED,
    "invalid_otp": ErrorKind.INVALID_OTP,
    "invalid_pin": ErrorKind.INVALID_PIN,
    "device_not_found": ErrorKind.AUTH_FAILED,
    "device_locked": ErrorKind.CREDENTIAL_LOCKED,
    "session_expired": ErrorKind.SESSION_EXPIRED,
    "invalid_session": ErrorKind.INVALID_SESSION,
    "otp_required": ErrorKind.REFRESH_REQUIRES_OTP,
}


class NamirialRemoteSignProvider(RemoteSignProvider):
    """
    Namirial remote signing.

    A login without OTP opens an automatic-signing session, available to
    certificates enabled for unattended signing.
    """

    provider_id = "NAMIRIAL"
    provider_name = "Namirial Firma Remota"
    supports_batch_signing = True
    supports_extended_session = True
    default_session_minutes = 3

    def __init__(self, config: NamirialConfig, transport=None):
        super().__init__(config, transport)
        headers = {"Accept": "application/json"}
        if config.api_key:
            headers["X-API-Key"] = config.api_key
        self.on_premise = bool(config.use_on_premise and config.on_premise_base_url)
        self._tls_context = None
        self.http = ProviderHttpClient(
            self.provider_id,
            config.on_premise_base_url if self.on_premise else config.base_url,
            config.timeout,
            headers=headers,
            transport=transport,
            verify=self._verify(self.on_premise),
            proxy=None if config.no_proxy else config.proxy_url,
            trust_env=not config.no_proxy,
        )
        logger.info("[Namirial] Using %s endpoint %s",
                    "on-premise" if self.on_premise else "SaaS", self.http.base_url or "(none)")

    def _verify(self, on_premise: bool):
        # Mutual TLS applies to the SaaS endpoint only
        if on_premise or not self.config.client_cert_path:
            return True
        if self._tls_context is None:
            self._tls_context = client_tls_context(self.provider_id, self.config.client_cert_path,
                                                   self.config.client_cert_password)
        return self._tls_context

    # -- endpoint selection -----------------------------------------------------

    def switch_endpoint(self, use_on_premise: bool) -> bool:
        """
        Switch between the SaaS and the on-premise endpoint.

        Returns False, keeping the current endpoint, when the target URL is
        not configured. Open sessions belong to the previous endpoint and
        should be closed first.

        Raises:
            RemoteSignError: The SaaS client certificate cannot be loaded
        """
        target = self.config.on_premise_base_url if use_on_premise else self.config.base_url
        if not target:
            logger.warning("[Namirial] No %s endpoint configured",
                           "on-premise" if use_on_premise else "SaaS")
            return False

        verify = self._verify(use_on_premise)
        self.on_premise = use_on_premise
        self.http.base_url = target.rstrip("/")
        self.http.verify = verify
        logger.info("[Namirial] Switched to %s endpoint %s",
                    "on-premise" if use_on_premise else "SaaS", self.http.base_url)
        return True

    def endpoint_info(self) -> NamirialEndpointInfo:
        return NamirialEndpointInfo(
            on_premise=self.on_premise,
            base_url=self.http.base_url,
            has_saas=bool(self.config.base_url),
            has_on_premise=bool(self.config.on_premise_base_url),
        )

    # -- authentication -------------------------------------------------------

    async def authenticate(self, credentials: RemoteSignCredentials,
                           session_duration_minutes: Optional[int] = None) -> RemoteSignSession:
        logger.info("[Namirial] Authenticating user %s", credentials.username)

        automatic = not credentials.otp
        payload = {
            "username": credentials.username,
            "password": credentials.password or credentials.pin,
        }
        if credentials.otp:
            payload["otp"] = credentials.otp
        device = credentials.domain or self.config.device
        if device:
            payload["device"] = device

        data = await self.http.request_json("POST", "/api/v1/session/login", json=payload,
                                            error_codes=ERROR_CODES)
        try:
            login = NamirialLoginResponse.from_json(data)
        except ValueError as e:
            raise self.error(ErrorKind.PROVIDER_ERROR, f"Malformed login response: {e}") from e
        if not login.session_id:
            raise self.error(ErrorKind.AUTH_FAILED, "Provider did not return a session id")

        expires_in = login.expires_in or DEFAULT_SESSION_SECONDS

        try:
            certificate = await self._fetch_certificate_info(login.session_id)
        except RemoteSignError as e:
            logger.warning("[Namirial] Unable to fetch certificate info: %s", e)
            certificate = self._fallback_certificate(credentials.username)

        logger.info("[Namirial] Session %s... created (%s), expires in %ss",
                    login.session_id[:8], "automatic" if automatic else "otp", expires_in)

        return RemoteSignSession(
            session_id=login.session_id,
            provider_id=self.provider_id,
            user_id=credentials.username,
            expires_at=utcnow() + timedelta(seconds=expires_in),
            certificate=certificate,
            access_token=login.session_id,
            metadata={"automatic": automatic},
        )

    async def validate_session(self, session: RemoteSignSession) -> bool:
        if session.is_expired():
            return False

        try:
            data = await self.http.request_json("GET", f"/api/v1/session/{session.session_id}",
                                                error_codes=ERROR_CODES)
        except RemoteSignError as e:
            if e.details.get("status_code") == 404 or e.invalidates_session \
                    or e.kind == ErrorKind.AUTH_FAILED:
                return False
            raise

        return (self._seconds(data.get("remainingTime")) or 0) > 0

    async def refresh_session(self, session: RemoteSignSession) -> RemoteSignSession:
        if session.is_expired():
            raise self.error(ErrorKind.SESSION_EXPIRED,
                             "Session already expired; authenticate again with a new OTP")

        logger.info("[Namirial] Extending session %s...", session.session_id[:8])
        data = await self.http.request_json("POST", f"/api/v1/session/{session.session_id}/extend",
                                            error_codes=ERROR_CODES)
        expires_in = self._seconds(data.get("expiresIn")) or DEFAULT_SESSION_SECONDS

        return replace(session, expires_at=utcnow() + timedelta(seconds=expires_in),
                       metadata=dict(session.metadata))

    async def close_session(self, session: RemoteSignSession) -> None:
        logger.info("[Namirial] Closing session %s...", session.session_id[:8])
        try:
            await self.http.request("DELETE", f"/api/v1/session/{session.session_id}")
        except RemoteSignError as e:
            logger.warning("[Namirial] Session close failed (ignored): %s", e)

    # -- signing ----------------------------------------------------------------

    async def sign_document(self, session: RemoteSignSession,
                            request: SignDocumentRequest) -> SignDocumentResponse:
        logger.info("[Namirial] Signing document %s", request.document_id or "unknown")

        if session.is_expired():
            raise self.error(ErrorKind.SESSION_EXPIRED, "Session expired, a new OTP is required")

        payload = {"sessionId": session.session_id}
        if request.document_payload:
            payload["document"] = request.document_payload
            if request.document_name:
                payload["documentName"] = request.document_name
        elif request.document_hash:
            payload["hash"] = request.document_hash
            payload["hashAlgorithm"] = request.hash_algorithm.value
        else:
            raise self.error(ErrorKind.PROVIDER_ERROR, "A document payload or hash is required")

        endpoint = f"/api/v1/sign/{request.signature_format.value.lower()}"
        data = await self.http.request_json("POST", endpoint, json=payload,
                                            error_codes=ERROR_CODES)

        signed = data.get("signedDocument")
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
            data = await self.http.request_json("GET", "/api/v1/certificate",
                                                params={"sessionId": session_id})
        except RemoteSignError as e:
            raise self.error(ErrorKind.CERTIFICATE_INFO_ERROR,
                             "Unable to retrieve certificate information") from e

        subject = data.get("subjectDN") or data.get("cn")
        if not subject:
            raise self.error(ErrorKind.CERTIFICATE_INFO_ERROR, "No certificate found")

        return CertificateInfo(
            common_name=extract_common_name(subject),
            serial_number=str(data.get("serialNumber", "")),
            issuer=data.get("issuerDN") or data.get("issuer", ""),
            valid_from=parse_timestamp(data.get("notBefore") or data.get("validFrom")),
            valid_to=parse_timestamp(data.get("notAfter") or data.get("validTo")),
            fiscal_code=data.get("fiscalCode"),
        )

    @staticmethod
    def _fallback_certificate(username: str) -> CertificateInfo:
        return CertificateInfo(common_name=username, serial_number="N/A",
                               issuer="Namirial S.p.A.")

    # -- utilities ------------------------------------------------------------------

    def is_configured(self) -> bool:
        return bool(self.http.base_url)

    async def test_connection(self) -> bool:
        try:
            await self.http.request("GET", "/api/v1/health", timeout=5)
            return True
        except Exception:
            return False
