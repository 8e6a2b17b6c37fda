"""
HTTP plumbing shared by the provider adapters.

Wraps httpx so that every adapter talks to its backend the same way and gets
transport failures and HTTP error statuses back as canonical RemoteSignError
instances.
"""

import logging
import os
import ssl
import tempfile
from datetime import datetime, timedelta
from typing import Any, Dict, Mapping, Optional, Tuple, Union

import httpx
from cryptography.hazmat.primitives.serialization import (
    Encoding, NoEncryption, PrivateFormat, pkcs12,
)

from .qes_provider import ErrorKind, RemoteSignError, make_error, parse_seconds, utcnow


logger = logging.getLogger(__name__)


ErrorCodeTable = Mapping[str, ErrorKind]

OAUTH_ERROR_CODES = {
    "invalid_client": ErrorKind.AUTH_FAILED,
    "unauthorized_client": ErrorKind.AUTH_FAILED,
    "invalid_scope": ErrorKind.AUTH_FAILED,
}


def error_fields(response: httpx.Response) -> Tuple[Optional[str], Optional[str]]:
    """
    Extract the provider error code and description from a response body.

    Returns:
        (code, description); either may be None
    """
    try:
        data = response.json()
    except ValueError:
        text = response.text.strip()
        return None, text or None

    if not isinstance(data, dict):
        return None, None

    code = data.get("error") or data.get("codiceErrore") or data.get("code")
    description = (data.get("error_description") or data.get("descrizioneErrore")
                   or data.get("message") or data.get("detail"))
    if isinstance(code, dict):
        description = description or code.get("message")
        code = code.get("code")
    return (str(code) if code is not None else None,
            str(description) if description is not None else None)


def map_http_error(provider_id: str, response: httpx.Response,
                   error_codes: Optional[ErrorCodeTable] = None,
                   unauthorized_kind: ErrorKind = ErrorKind.AUTH_FAILED) -> RemoteSignError:
    """
    Map an HTTP error response to a canonical error.

    Provider-specific error codes found in the body take precedence over the
    status-based mapping.
    """
    status = response.status_code
    code, description = error_fields(response)
    details: Dict[str, Any] = {"status_code": status, "provider_code": code}

    if code and error_codes:
        kind = error_codes.get(code) or error_codes.get(code.lower())
        if kind is not None:
            return make_error(kind, description or code, provider_id, details=details)

    if status in (401, 403):
        return make_error(unauthorized_kind, description or "Authentication rejected by provider",
                          provider_id, details=details)
    if status == 429:
        return make_error(ErrorKind.RATE_LIMITED, "Too many requests, retry shortly",
                          provider_id, details=details)
    if status >= 500:
        return make_error(ErrorKind.SERVER_ERROR, description or f"Provider server error ({status})",
                          provider_id, details=details)

    return make_error(ErrorKind.PROVIDER_ERROR, description or code or f"HTTP {status}",
                      provider_id, details=details)


def map_transport_error(provider_id: str, error: httpx.HTTPError) -> RemoteSignError:
    """Map an httpx transport failure to NETWORK_ERROR."""
    if isinstance(error, httpx.TimeoutException):
        message = "Timed out waiting for the provider"
    else:
        message = f"Network error contacting the provider: {error}"
    return make_error(ErrorKind.NETWORK_ERROR, message, provider_id)


def client_tls_context(provider_id: str, cert_path: str,
                       password: Optional[str] = None) -> ssl.SSLContext:
    """
    Build a TLS context presenting a client certificate.

    PKCS#12 bundles (.p12, .pfx) are converted to PEM; other files are read
    as PEM certificate chains with their private key.

    Raises:
        RemoteSignError: PROVIDER_NOT_CONFIGURED when the file is missing or
            cannot be decrypted
    """
    context = ssl.create_default_context()
    try:
        if cert_path.lower().endswith((".p12", ".pfx")):
            with open(cert_path, "rb") as f:
                key, certificate, chain = pkcs12.load_key_and_certificates(
                    f.read(), password.encode() if password else None)
            if key is None or certificate is None:
                raise ValueError("bundle holds no private key and certificate")

            pem = b"".join(cert.public_bytes(Encoding.PEM)
                           for cert in [certificate, *(chain or [])])
            pem += key.private_bytes(Encoding.PEM, PrivateFormat.PKCS8, NoEncryption())

            fd, pem_path = tempfile.mkstemp(suffix=".pem")
            try:
                with os.fdopen(fd, "wb") as f:
                    f.write(pem)
                context.load_cert_chain(pem_path)
            finally:
                os.unlink(pem_path)
        else:
            context.load_cert_chain(cert_path, password=password)
    except (OSError, ValueError) as e:
        logger.error("[%s] Unable to load client certificate %s: %s", provider_id, cert_path, e)
        raise make_error(ErrorKind.PROVIDER_NOT_CONFIGURED,
                         f"Client certificate {cert_path} could not be loaded",
                         provider_id) from e

    logger.info("[%s] Client certificate loaded from %s", provider_id, cert_path)
    return context


class ProviderHttpClient:
    """
    Small httpx wrapper bound to one provider.

    A fresh AsyncClient is opened per call, bounded by the configured timeout.
    ``verify``, ``proxy`` and ``trust_env`` are handed to httpx unless a
    transport is injected, in which case the transport owns the connection.
    """

    def __init__(self, provider_id: str, base_url: str, timeout: float = 30.0,
                 headers: Optional[Dict[str, str]] = None,
                 transport: Optional[httpx.AsyncBaseTransport] = None,
                 unauthorized_kind: ErrorKind = ErrorKind.AUTH_FAILED,
                 verify: Union[bool, ssl.SSLContext] = True,
                 proxy: Optional[str] = None,
                 trust_env: bool = True):
        self.provider_id = provider_id
        self.base_url = base_url.rstrip("/") if base_url else ""
        self.timeout = timeout
        self.headers = dict(headers or {})
        self.transport = transport
        self.unauthorized_kind = unauthorized_kind
        self.verify = verify
        self.proxy = proxy
        self.trust_env = trust_env

    def client_options(self) -> Dict[str, Any]:
        if self.transport is not None:
            return {"transport": self.transport}
        return {"verify": self.verify, "proxy": self.proxy, "trust_env": self.trust_env}

    def url(self, path: str) -> str:
        if path.startswith("http://") or path.startswith("https://"):
            return path
        return f"{self.base_url}/{path.lstrip('/')}"

    async def request(self, method: str, path: str,
                      error_codes: Optional[ErrorCodeTable] = None,
                      timeout: Optional[float] = None,
                      bearer: Optional[str] = None,
                      unauthorized_kind: Optional[ErrorKind] = None,
                      **kwargs) -> httpx.Response:
        """
        Perform a request and return the successful response.

        Args:
            method: HTTP method
            path: Path relative to the base URL, or an absolute URL
            error_codes: Provider error code -> canonical kind overrides
            timeout: Per-call timeout override in seconds
            bearer: Optional bearer token for the Authorization header
            unauthorized_kind: Kind used for bare 401/403 answers on this call

        Raises:
            RemoteSignError: On transport failure or non-2xx status
        """
        headers = dict(self.headers)
        headers.update(kwargs.pop("headers", None) or {})
        if bearer:
            headers["Authorization"] = f"Bearer {bearer}"

        url = self.url(path)
        logger.debug("[%s] %s %s", self.provider_id, method.upper(), url)

        try:
            async with httpx.AsyncClient(timeout=timeout or self.timeout,
                                         **self.client_options()) as client:
                response = await client.request(method, url, headers=headers, **kwargs)
        except httpx.HTTPError as e:
            logger.error("[%s] Request error on %s %s: %s", self.provider_id,
                         method.upper(), url, e)
            raise map_transport_error(self.provider_id, e) from e

        if response.is_error:
            logger.error("[%s] Response error: %s %s -> %d", self.provider_id,
                         method.upper(), url, response.status_code)
            raise map_http_error(self.provider_id, response, error_codes,
                                 unauthorized_kind=unauthorized_kind or self.unauthorized_kind)

        return response

    async def request_json(self, method: str, path: str, **kwargs) -> Dict[str, Any]:
        """Perform a request and decode its JSON object body."""
        response = await self.request(method, path, **kwargs)
        if not response.content:
            return {}
        try:
            data = response.json()
        except ValueError as e:
            raise make_error(ErrorKind.PROVIDER_ERROR, "Provider returned a non-JSON response",
                             self.provider_id) from e
        if not isinstance(data, dict):
            raise make_error(ErrorKind.PROVIDER_ERROR, "Unexpected response shape from provider",
                             self.provider_id)
        return data


class ClientCredentialsToken:
    """
    OAuth2 client-credentials access token, cached until shortly before expiry.

    Args:
        http: Client of the owning provider, used for error mapping
        token_url: Absolute URL of the token endpoint
        client_id: OAuth2 client id
        client_secret: OAuth2 client secret
        scope: Requested scope
        margin_seconds: Renew the token this long before it expires
    """

    def __init__(self, http: ProviderHttpClient, token_url: str, client_id: str,
                 client_secret: str, scope: Optional[str] = None, margin_seconds: int = 60):
        self.http = http
        self.token_url = token_url
        self.client_id = client_id
        self.client_secret = client_secret
        self.scope = scope
        self.margin_seconds = margin_seconds
        self._access_token: Optional[str] = None
        self._expires_at: Optional[datetime] = None

    @property
    def cached(self) -> bool:
        return bool(self._access_token and self._expires_at and utcnow() < self._expires_at)

    def invalidate(self) -> None:
        self._access_token = None
        self._expires_at = None

    async def get(self) -> str:
        """Return a valid access token, requesting a new one when needed."""
        if self.cached:
            return self._access_token

        logger.info("[%s] Requesting OAuth2 access token", self.http.provider_id)
        form = {
            "grant_type": "client_credentials",
            "client_id": self.client_id,
            "client_secret": self.client_secret,
        }
        if self.scope:
            form["scope"] = self.scope

        data = await self.http.request_json(
            "POST", self.token_url, data=form,
            headers={"Content-Type": "application/x-www-form-urlencoded"},
            error_codes=OAUTH_ERROR_CODES, unauthorized_kind=ErrorKind.AUTH_FAILED,
        )
        access_token = data.get("access_token")
        if not access_token:
            raise make_error(ErrorKind.AUTH_FAILED, "Token endpoint did not return an access token",
                             self.http.provider_id)

        try:
            expires_in = parse_seconds(data.get("expires_in")) or 3600
        except ValueError as e:
            raise make_error(ErrorKind.PROVIDER_ERROR, "Token endpoint returned an invalid expiry",
                             self.http.provider_id) from e
        self._access_token = access_token
        self._expires_at = utcnow() + timedelta(seconds=max(0, expires_in - self.margin_seconds))
        logger.info("[%s] OAuth2 token obtained, expires in %ss", self.http.provider_id, expires_in)
        return access_token
