"""
OpenAPI.com eSignature Remote Signing Provider Implementation

OpenAPI.com has no login step for the certificate holder: the certificate
credentials travel with every signature request. Authentication therefore
only checks that an API bearer can be obtained and opens a local session
that remembers the certificate credentials until it expires.

API bearer sources, in order of precedence:
1. a token generated from the console
2. an API key used directly as bearer
3. OAuth2 client credentials
"""

import logging
import uuid
from datetime import timedelta
from typing import Any, Dict, Optional

from ..base.http import ClientCredentialsToken, ProviderHttpClient
from ..base.qes_provider import (
    RemoteSignProvider, RemoteSignCredentials, RemoteSignSession, CertificateInfo,
    SignDocumentRequest, SignDocumentResponse, ErrorKind, utcnow,
)
from .models import AuthMethod, CertificateType, OpenApiConfig, OpenApiSignResponse


logger = logging.getLogger(__name__)


ISSUER = "OpenAPI.com / Namirial"


class OpenApiRemoteSignProvider(RemoteSignProvider):
    """OpenAPI.com eSignature (EU-QES / EU-SES) with a locally held session."""

    provider_id = "OPENAPI"
    provider_name = "OpenAPI.com"
    supports_batch_signing = True
    supports_extended_session = True

    def __init__(self, config: OpenApiConfig, transport=None):
        super().__init__(config, transport)
        self.http = ProviderHttpClient(self.provider_id, config.base_url, config.timeout,
                                       headers={"Content-Type": "application/json"},
                                       transport=transport)
        self.oauth_token = ClientCredentialsToken(self.http, config.oauth_url,
                                                  config.client_id or "",
                                                  config.client_secret or "",
                                                  scope=config.scope)
        logger.info("[OpenAPI] Auth method: %s", config.auth_method.value)

    async def _bearer(self) -> str:
        method = self.config.auth_method
        if method == AuthMethod.TOKEN:
            return self.config.token
        if method == AuthMethod.API_KEY:
            return self.config.api_key
        if method == AuthMethod.OAUTH2:
            return await self.oauth_token.get()
        raise self.error(ErrorKind.PROVIDER_NOT_CONFIGURED,
                         "No authentication method configured for OpenAPI")

    # -- authentication -------------------------------------------------------

    async def authenticate(self, credentials: RemoteSignCredentials,
                           session_duration_minutes: Optional[int] = None) -> RemoteSignSession:
        logger.info("[OpenAPI] Authenticating user %s", credentials.username)

        await self._bearer()

        duration = session_duration_minutes or self.default_session_minutes
        session_id = f"openapi_{uuid.uuid4().hex}"

        logger.info("[OpenAPI] Local session %s... created, duration %s min",
                    session_id[:16], duration)

        return RemoteSignSession(
            session_id=session_id,
            provider_id=self.provider_id,
            user_id=credentials.username,
            expires_at=utcnow() + timedelta(minutes=duration),
            certificate=CertificateInfo(common_name=credentials.username,
                                        serial_number="N/A", issuer=ISSUER),
            metadata={
                "certificate_username": credentials.username,
                "certificate_password": credentials.password or credentials.pin,
                "certificate_otp": credentials.otp,
                "auth_method": self.config.auth_method.value,
            },
        )

    async def validate_session(self, session: RemoteSignSession) -> bool:
        if session.is_expired():
            return False
        return bool(session.metadata.get("certificate_username")
                    and session.metadata.get("certificate_password"))

    async def refresh_session(self, session: RemoteSignSession) -> RemoteSignSession:
        raise self.error(ErrorKind.REFRESH_REQUIRES_OTP,
                         "OpenAPI requires a new OTP to renew the session")

    async def close_session(self, session: RemoteSignSession) -> None:
        # Nothing to revoke remotely
        logger.info("[OpenAPI] Closing local session %s...", session.session_id[:16])

    # -- signing ----------------------------------------------------------------

    async def sign_document(self, session: RemoteSignSession,
                            request: SignDocumentRequest) -> SignDocumentResponse:
        logger.info("[OpenAPI] Signing document %s", request.document_id or "unknown")

        if session.is_expired():
            raise self.error(ErrorKind.SESSION_EXPIRED, "Session expired, a new OTP is required")

        bearer = await self._bearer()
        certificate_type = self.config.certificate_type
        name = request.document_name or (f"document_{request.document_id}.pdf"
                                         if request.document_id else "document.pdf")

        if request.document_hash:
            document: Dict[str, Any] = {"name": name, "hash": request.document_hash,
                                        "hashAlgorithm": "SHA256"}
        elif request.document_payload:
            document = {"name": name, "payload": request.document_payload,
                        "mimeType": "application/pdf"}
        else:
            raise self.error(ErrorKind.PROVIDER_ERROR, "A document payload or hash is required")

        body: Dict[str, Any] = {
            "title": f"Signature {request.document_id or name}",
            "description": request.document_description or request.document_name or name,
            "certificateUsername": session.metadata.get("certificate_username"),
            "certificatePassword": session.metadata.get("certificate_password"),
            "signatureType": request.signature_format.value.lower(),
            "inputDocuments": [document],
            "options": {"asyncDocumentsValidation": False, "level": "B",
                        "hashAlgorithm": "SHA256"},
        }
        otp = session.metadata.get("certificate_otp")
        if certificate_type == CertificateType.QES_OTP and otp:
            body["certificateOtp"] = otp

        data = await self.http.request_json("POST", f"/{certificate_type.value}",
                                            json=body, bearer=bearer)
        result = OpenApiSignResponse.from_json(data)
        if result.failed:
            raise self.error(ErrorKind.PROVIDER_ERROR, result.message or "Signature request failed",
                             details={"request_id": result.id, "state": result.state})
        if not result.signed_payload:
            raise self.error(ErrorKind.PROVIDER_ERROR, "No signed document returned by the server",
                             details={"request_id": result.id, "state": result.state})

        logger.info("[OpenAPI] Signature request %s completed, state %s", result.id, result.state)
        self._consume_signature(session)

        return SignDocumentResponse(
            signature=result.signed_payload,
            signed_by=session.user_id,
            signature_timestamp=utcnow().isoformat(),
            document_id=request.document_id,
        )

    # -- certificate --------------------------------------------------------------

    async def get_certificate_info(self, session: RemoteSignSession) -> CertificateInfo:
        return session.certificate or CertificateInfo(common_name=session.user_id,
                                                      serial_number="N/A", issuer=ISSUER)

    # -- utilities ------------------------------------------------------------------

    def is_configured(self) -> bool:
        return bool(self.config.base_url and self.config.auth_method != AuthMethod.NONE)

    async def test_connection(self) -> bool:
        try:
            await self._bearer()
            return True
        except Exception:
            return False
