"""
Aruba Remote Signing Provider Implementation

Implements the remote signing interface against Aruba ARSS through the
Cloud Signature Consortium (CSC) API: credentials/authorize issues a
Signature Activation Data token (SAD) valid for a number of signatures,
signatures/signHash consumes it and credentials/revoke discards it.
"""

import base64
import binascii
import logging
from datetime import timedelta
from typing import Any, Dict, Optional

from cryptography import x509
from cryptography.x509.oid import NameOID

from ..base.http import ProviderHttpClient
from ..base.qes_provider import (
    RemoteSignProvider, RemoteSignCredentials, RemoteSignSession, CertificateInfo,
    SignDocumentRequest, SignDocumentResponse, ErrorKind, RemoteSignError,
    HASH_ALGORITHM_OIDS, HashAlgorithm, extract_common_name, parse_timestamp, utcnow,
)
from .models import ArubaConfig, ArubaAuthResponse


logger = logging.getLogger(__name__)


AUTH_ERROR_CODES = {
    "invalid_otp": ErrorKind.INVALID_OTP,
    "invalid_pin": ErrorKind.INVALID_PIN,
    "credential_locked": ErrorKind.CREDENTIAL_LOCKED,
    "invalid_request": ErrorKind.AUTH_FAILED,
}

SIGN_ERROR_CODES = {
    "invalid_sad": ErrorKind.INVALID_SESSION,
    "expired_sad": ErrorKind.SESSION_EXPIRED,
    "no_signatures_left": ErrorKind.NO_SIGNATURES_LEFT,
}


class ArubaRemoteSignProvider(RemoteSignProvider):
    """
    Aruba ARSS remote signing over the CSC API.

    One OTP authorizes up to ``max_signatures`` signatures; the SAD cannot be
    renewed, so refreshing always requires a new authentication.
    """

    provider_id = "ARUBA"
    provider_name = "Aruba Firma Remota"
    supports_batch_signing = True
    supports_extended_session = True

    def __init__(self, config: ArubaConfig, transport=None):
        super().__init__(config, transport)
        headers = {"Content-Type": "application/json"}
        if config.api_key:
            headers["X-API-Key"] = config.api_key
        self.http = ProviderHttpClient(self.provider_id, config.base_url, config.timeout,
                                       headers=headers, transport=transport)

    # -- authentication -------------------------------------------------------

    async def authenticate(self, credentials: RemoteSignCredentials,
                           session_duration_minutes: Optional[int] = None) -> RemoteSignSession:
        logger.info("[Aruba] Authenticating user %s", credentials.username)

        payload = {
            "credentialID": credentials.username,
            "PIN": credentials.pin,
            "OTP": credentials.otp,
            "numSignatures": self.config.max_signatures,
            "description": self.config.description,
        }
        data = await self.http.request_json("POST", "/csc/v1/credentials/authorize",
                                            json=payload, error_codes=AUTH_ERROR_CODES)
        try:
            auth = ArubaAuthResponse.from_json(data)
        except ValueError as e:
            raise self.error(ErrorKind.PROVIDER_ERROR, f"Malformed authorization response: {e}") from e
        if not auth.sad:
            raise self.error(ErrorKind.AUTH_FAILED, "Provider did not return a SAD token")

        expires_in = auth.expires_in or (session_duration_minutes or self.default_session_minutes) * 60

        certificate = None
        try:
            certificate = await self._fetch_certificate_info(credentials.username, auth.sad)
        except RemoteSignError as e:
            logger.warning("[Aruba] Unable to fetch certificate info: %s", e)

        session = RemoteSignSession(
            session_id=auth.sad,
            provider_id=self.provider_id,
            user_id=credentials.username,
            expires_at=utcnow() + timedelta(seconds=expires_in),
            certificate=certificate,
            remaining_signatures=auth.num_signatures,
            access_token=auth.sad,
        )

        logger.info("[Aruba] Session created, expires in %ss, signatures available: %s",
                    expires_in, auth.num_signatures)
        return session

    async def validate_session(self, session: RemoteSignSession) -> bool:
        if session.is_expired():
            return False

        try:
            await self.http.request("POST", "/csc/v1/credentials/info",
                                    json={"credentialID": session.user_id},
                                    bearer=session.access_token)
        except RemoteSignError as e:
            if e.kind in (ErrorKind.AUTH_FAILED, ErrorKind.INVALID_SESSION):
                return False
            raise
        return True

    async def refresh_session(self, session: RemoteSignSession) -> RemoteSignSession:
        raise self.error(
            ErrorKind.REFRESH_NOT_SUPPORTED,
            "Aruba does not support renewing the SAD; authenticate again with a new OTP",
        )

    async def close_session(self, session: RemoteSignSession) -> None:
        logger.info("[Aruba] Closing session %s...", session.session_id[:8])
        try:
            await self.http.request("POST", "/csc/v1/credentials/revoke", json={
                "credentialID": session.user_id,
                "SAD": session.session_id,
            })
        except RemoteSignError as e:
            # The SAD expires on its own
            logger.warning("[Aruba] Session revoke failed (ignored): %s", e)

    # -- signing ----------------------------------------------------------------

    async def sign_document(self, session: RemoteSignSession,
                            request: SignDocumentRequest) -> SignDocumentResponse:
        logger.info("[Aruba] Signing document %s", request.document_id or "unknown")

        if session.remaining_signatures is not None and session.remaining_signatures <= 0:
            raise self.error(ErrorKind.NO_SIGNATURES_LEFT,
                             "No signatures left in this session")
        if not request.document_hash:
            raise self.error(ErrorKind.PROVIDER_ERROR,
                             "Aruba signs document hashes only; document_hash is required")

        data = await self.http.request_json("POST", "/csc/v1/signatures/signHash", json={
            "credentialID": session.user_id,
            "SAD": session.session_id,
            "hash": [request.document_hash],
            "hashAlgo": HASH_ALGORITHM_OIDS[HashAlgorithm(request.hash_algorithm)],
            "signAlgo": self.config.sign_algorithm_oid,
        }, error_codes=SIGN_ERROR_CODES)

        signatures = data.get("signatures") or []
        if not signatures:
            raise self.error(ErrorKind.PROVIDER_ERROR, "No signature returned by the server")

        self._consume_signature(session)

        return SignDocumentResponse(
            signature=signatures[0],
            signed_by=session.signed_by or self.provider_name,
            signature_timestamp=utcnow().isoformat(),
            document_id=request.document_id,
        )

    # -- certificate --------------------------------------------------------------

    async def get_certificate_info(self, session: RemoteSignSession) -> CertificateInfo:
        if session.certificate:
            return session.certificate
        session.certificate = await self._fetch_certificate_info(session.user_id, session.session_id)
        return session.certificate

    async def _fetch_certificate_info(self, credential_id: str,
                                      sad: Optional[str] = None) -> CertificateInfo:
        try:
            data = await self.http.request_json("POST", "/csc/v1/credentials/info", json={
                "credentialID": credential_id,
                "certificates": "chain",
                "certInfo": True,
            }, bearer=sad)
            return self._parse_certificate_info(data.get("cert") or {})
        except RemoteSignError as e:
            logger.error("[Aruba] Certificate info lookup failed: %s", e)
            raise self.error(ErrorKind.CERTIFICATE_INFO_ERROR,
                             "Unable to retrieve certificate information") from e

    def _parse_certificate_info(self, cert: Dict[str, Any]) -> CertificateInfo:
        certificates = cert.get("certificates") or []
        first = certificates[0] if certificates else None

        if isinstance(first, str):
            return self._certificate_from_der(first)

        fields = first if isinstance(first, dict) else cert
        subject_dn = fields.get("subjectDN")
        if not subject_dn:
            raise self.error(ErrorKind.CERTIFICATE_INFO_ERROR, "No certificate found")

        return CertificateInfo(
            common_name=extract_common_name(subject_dn),
            serial_number=str(fields.get("serialNumber", "")),
            issuer=fields.get("issuerDN", ""),
            valid_from=parse_timestamp(fields.get("validFrom")),
            valid_to=parse_timestamp(fields.get("validTo")),
        )

    def _certificate_from_der(self, encoded: str) -> CertificateInfo:
        try:
            certificate = x509.load_der_x509_certificate(base64.b64decode(encoded))
        except (ValueError, binascii.Error) as e:
            raise self.error(ErrorKind.CERTIFICATE_INFO_ERROR,
                             f"Malformed certificate returned by provider: {e}") from e

        names = certificate.subject.get_attributes_for_oid(NameOID.COMMON_NAME)
        serial_attributes = certificate.subject.get_attributes_for_oid(NameOID.SERIAL_NUMBER)
        fiscal_code = serial_attributes[0].value if serial_attributes else None

        return CertificateInfo(
            common_name=names[0].value if names else certificate.subject.rfc4514_string(),
            serial_number=format(certificate.serial_number, "X"),
            issuer=certificate.issuer.rfc4514_string(),
            valid_from=certificate.not_valid_before_utc,
            valid_to=certificate.not_valid_after_utc,
            fiscal_code=fiscal_code,
        )

    # -- utilities ------------------------------------------------------------------

    def is_configured(self) -> bool:
        return bool(self.config.base_url)

    async def test_connection(self) -> bool:
        try:
            await self.http.request("GET", "/csc/v1/info", timeout=5)
            return True
        except Exception:
            return False
