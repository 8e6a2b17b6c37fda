"""
Remote Signing API Endpoints

FastAPI endpoints for provider discovery, session handling and bulk signing
through the remote signing session manager.
"""

import json
import logging
from datetime import datetime
from typing import Any, AsyncIterator, Dict, List, Optional

from fastapi import APIRouter, Depends, Request
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, Field

from ..adapters.base.qes_provider import (
    ErrorKind, HashAlgorithm, RemoteSignCredentials, RemoteSignError,
    SignatureFormat, SignDocumentRequest, make_error,
)
from ..adapters.namirial import NamirialRemoteSignProvider
from ..core.context import RemoteSignContext
from ..core.session_manager import ActiveSession

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1/remote-sign", tags=["remote-sign"])


def get_context(request: Request) -> RemoteSignContext:
    return request.app.state.remote_sign


# Pydantic models for API
class ProviderInfoResponse(BaseModel):
    """Registered provider"""
    id: str
    name: str
    enabled: bool
    configured: bool
    supports_extended_session: bool
    supports_batch_signing: bool


class AuthenticateRequest(BaseModel):
    """Open a signing session."""
    provider_id: str = Field(..., description="Provider id, e.g. ARUBA")
    username: str = Field(..., description="Signing account or device code")
    pin: str = Field(..., description="Certificate PIN")
    otp: Optional[str] = Field(None, description="One-time password")
    password: Optional[str] = Field(None, description="Separate certificate password, when required")
    domain: Optional[str] = Field(None, description="OTP device qualifier")
    session_minutes: Optional[int] = Field(None, ge=1, description="Requested session length")
    is_automatic: bool = Field(False, description="Automatic signing, no OTP")


class AuthenticateResponse(BaseModel):
    success: bool
    session_id: Optional[str] = None
    expires_at: Optional[datetime] = None
    signed_by: Optional[str] = None
    error: Optional[str] = None
    error_code: Optional[str] = None
    retryable: Optional[bool] = None


class SessionStatusResponse(BaseModel):
    active: bool
    expires_at: Optional[datetime] = None
    remaining_minutes: Optional[int] = None
    signed_by: Optional[str] = None
    remaining_signatures: Optional[int] = None


class CloseSessionResponse(BaseModel):
    success: bool
    closed: int = 0


class RefreshSessionResponse(BaseModel):
    success: bool
    expires_at: Optional[datetime] = None
    error: Optional[str] = None
    error_code: Optional[str] = None


class NamirialEndpointRequest(BaseModel):
    use_on_premise: bool = Field(..., description="True for the on-premise installation, False for SaaS")


class NamirialEndpointResponse(BaseModel):
    """Namirial endpoint in use"""
    success: bool
    on_premise: Optional[bool] = None
    base_url: Optional[str] = None
    has_saas: Optional[bool] = None
    has_on_premise: Optional[bool] = None
    closed_sessions: int = 0
    error: Optional[str] = None
    error_code: Optional[str] = None


class BulkSignDocument(BaseModel):
    """One document of a bulk signing request"""
    document_id: Optional[str] = None
    document_hash: Optional[str] = Field(None, description="Base64 digest to sign")
    document_payload: Optional[str] = Field(None, description="Base64 document to sign")
    document_name: Optional[str] = None
    description: Optional[str] = None
    signature_format: SignatureFormat = SignatureFormat.PADES
    hash_algorithm: HashAlgorithm = HashAlgorithm.SHA256

    def to_request(self) -> SignDocumentRequest:
        return SignDocumentRequest(
            signature_format=self.signature_format,
            document_hash=self.document_hash,
            document_payload=self.document_payload,
            document_name=self.document_name,
            hash_algorithm=self.hash_algorithm,
            document_id=self.document_id,
            document_description=self.description,
        )


class BulkSignRequest(BaseModel):
    documents: List[BulkSignDocument] = Field(..., min_length=1)
    user_id: Optional[str] = Field(None, description="Session owner; any session of the provider if omitted")


def _error_fields(error: RemoteSignError) -> Dict[str, Any]:
    return {"error": error.message, "error_code": error.error_code, "retryable": error.retryable}


async def _find_session(context: RemoteSignContext, provider_id: str,
                        user_id: Optional[str]) -> Optional[ActiveSession]:
    if user_id:
        return await context.manager.get_session(provider_id, user_id)
    return context.manager.find_provider_session(provider_id)


@router.get("/providers", response_model=List[ProviderInfoResponse])
async def list_providers(context: RemoteSignContext = Depends(get_context)):
    """List the providers that are enabled and configured."""
    return [ProviderInfoResponse(**vars(info)) for info in context.registry.list_enabled()]


@router.get("/providers/connections", response_model=Dict[str, bool])
async def test_connections(context: RemoteSignContext = Depends(get_context)):
    """Check connectivity of every registered provider."""
    return await context.registry.test_all_connections()


def _namirial(context: RemoteSignContext) -> NamirialRemoteSignProvider:
    provider = context.registry.get("NAMIRIAL")
    if not isinstance(provider, NamirialRemoteSignProvider):
        raise make_error(ErrorKind.PROVIDER_NOT_FOUND, "Namirial provider not available", "NAMIRIAL")
    return provider


def _endpoint_response(provider: NamirialRemoteSignProvider, closed: int = 0) -> NamirialEndpointResponse:
    return NamirialEndpointResponse(success=True, closed_sessions=closed,
                                    **vars(provider.endpoint_info()))


@router.get("/providers/namirial/endpoint", response_model=NamirialEndpointResponse)
async def get_namirial_endpoint(context: RemoteSignContext = Depends(get_context)):
    """Namirial endpoint in use: SaaS or on-premise."""
    try:
        return _endpoint_response(_namirial(context))
    except RemoteSignError as e:
        return NamirialEndpointResponse(success=False, error=e.message, error_code=e.error_code)


@router.post("/providers/namirial/endpoint", response_model=NamirialEndpointResponse)
async def switch_namirial_endpoint(request: NamirialEndpointRequest,
                                   context: RemoteSignContext = Depends(get_context)):
    """
    Switch Namirial between its SaaS and on-premise endpoints.

    Open Namirial sessions belong to the previous endpoint and are closed
    before switching.
    """
    target = "on-premise" if request.use_on_premise else "SaaS"
    try:
        provider = _namirial(context)
        info = provider.endpoint_info()
        if not (info.has_on_premise if request.use_on_premise else info.has_saas):
            return NamirialEndpointResponse(success=False,
                                            error=f"No {target} endpoint configured",
                                            error_code=ErrorKind.PROVIDER_NOT_CONFIGURED.value)

        closed = await context.manager.close_provider_sessions(provider.provider_id)
        if not provider.switch_endpoint(request.use_on_premise):
            return NamirialEndpointResponse(success=False, closed_sessions=closed,
                                            error=f"No {target} endpoint configured",
                                            error_code=ErrorKind.PROVIDER_NOT_CONFIGURED.value)
    except RemoteSignError as e:
        logger.error("Switching Namirial to %s failed: %s", target, e)
        return NamirialEndpointResponse(success=False, error=e.message, error_code=e.error_code)

    logger.info("Namirial switched to %s, %d sessions closed", target, closed)
    return _endpoint_response(provider, closed)


@router.post("/authenticate", response_model=AuthenticateResponse)
async def authenticate(request: AuthenticateRequest,
                       context: RemoteSignContext = Depends(get_context)):
    """Authenticate with a provider and open a signing session."""
    logger.info("Authentication request for provider %s (automatic: %s)",
                request.provider_id, request.is_automatic)

    credentials = RemoteSignCredentials(
        username=request.username,
        pin=request.pin,
        otp=None if request.is_automatic else request.otp,
        password=request.password,
        domain=request.domain,
    )
    try:
        active = await context.manager.create_session(request.provider_id, credentials,
                                                      request.session_minutes)
    except RemoteSignError as e:
        logger.error("Authentication with %s failed: %s", request.provider_id, e)
        return AuthenticateResponse(success=False, **_error_fields(e))

    return AuthenticateResponse(
        success=True,
        session_id=active.session_id,
        expires_at=active.expires_at,
        signed_by=active.signed_by or request.username,
    )


@router.get("/sessions/{provider_id}", response_model=SessionStatusResponse)
async def get_session_status(provider_id: str, user_id: Optional[str] = None,
                             context: RemoteSignContext = Depends(get_context)):
    """Status of the provider's session."""
    active = await _find_session(context, provider_id, user_id)
    if active is None:
        return SessionStatusResponse(active=False)

    status = context.manager.get_session_status(active.provider_id, active.user_id)
    return SessionStatusResponse(**vars(status))


@router.delete("/sessions/{provider_id}", response_model=CloseSessionResponse)
async def close_sessions(provider_id: str, context: RemoteSignContext = Depends(get_context)):
    """Close every session held for the provider."""
    closed = await context.manager.close_provider_sessions(provider_id)
    return CloseSessionResponse(success=True, closed=closed)


@router.post("/sessions/{provider_id}/refresh", response_model=RefreshSessionResponse)
async def refresh_session(provider_id: str, user_id: Optional[str] = None,
                          context: RemoteSignContext = Depends(get_context)):
    """Extend the provider's session when the provider allows it."""
    active = await _find_session(context, provider_id, user_id)
    if active is None:
        return RefreshSessionResponse(success=False, error="No active session",
                                      error_code=ErrorKind.SESSION_NOT_FOUND.value)

    try:
        refreshed = await context.manager.refresh_session_or_raise(active.session_key)
    except RemoteSignError as e:
        logger.warning("Refresh of %s failed: %s", active.session_key, e)
        return RefreshSessionResponse(success=False, error=e.message, error_code=e.error_code)

    return RefreshSessionResponse(success=True, expires_at=refreshed.expires_at)


def _ndjson(event: str, **data) -> str:
    return json.dumps({"event": event, **data}, default=str) + "\n"


async def _bulk_sign_events(context: RemoteSignContext, active: ActiveSession,
                            documents: List[BulkSignDocument]) -> AsyncIterator[str]:
    total = len(documents)
    completed = failed = 0

    for index, document in enumerate(documents):
        document_id = document.document_id or f"doc_{index}"
        yield _ndjson("progress", completed=completed, failed=failed, total=total,
                      current_item=document.description or document_id)

        try:
            response = await context.manager.sign_document(active.session_key, document.to_request())
        except RemoteSignError as e:
            failed += 1
            yield _ndjson("document_completed", document_id=document_id, success=False,
                          error=e.message, error_code=e.error_code)
            if e.invalidates_session or e.kind == ErrorKind.SESSION_NOT_FOUND:
                logger.warning("Session lost during bulk signing, stopping at %s", document_id)
                break
            continue

        completed += 1
        yield _ndjson("document_completed", document_id=document_id, success=True,
                      signature=response.signature, signed_by=response.signed_by,
                      signature_timestamp=response.signature_timestamp)

    logger.info("Bulk signing done: %d succeeded, %d failed", completed, failed)
    yield _ndjson("completed", total=total, successful=completed, failed=failed)


@router.post("/sessions/{provider_id}/bulk-sign")
async def bulk_sign(provider_id: str, request: BulkSignRequest,
                    context: RemoteSignContext = Depends(get_context)):
    """
    Sign documents one after the other with the provider's session.

    The response is a newline-delimited JSON stream of progress,
    document_completed and completed events.
    """
    active = await _find_session(context, provider_id, request.user_id)
    if active is None:
        logger.error("Bulk signing requested without an active %s session", provider_id)
        body = _ndjson("error", error="No active session, authenticate again",
                       error_code=ErrorKind.SESSION_NOT_FOUND.value)
        return StreamingResponse(iter([body]), media_type="application/x-ndjson")

    logger.info("Bulk signing %d documents with %s", len(request.documents), active.session_key)
    return StreamingResponse(_bulk_sign_events(context, active, request.documents),
                             media_type="application/x-ndjson")
