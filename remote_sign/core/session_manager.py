"""
Remote signing session manager

Owns every open signing session, keyed by provider and user, and mediates
all signing through them. A single asyncio lock serializes changes to the
session map, so the periodic sweep never removes a session while a signature
on it is in flight.
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from ..adapters.base.qes_provider import (
    BatchSignResult, CertificateInfo, ErrorKind, ProgressCallback, RemoteSignCredentials,
    RemoteSignError, RemoteSignProvider, RemoteSignSession, SessionStatus,
    SignDocumentRequest, SignDocumentResponse, make_error, session_status, utcnow,
)
from .registry import ProviderRegistry

logger = logging.getLogger(__name__)


class SessionEvent(str, Enum):
    CREATED = "created"
    REFRESHED = "refreshed"
    EXPIRED = "expired"
    CLOSED = "closed"
    SIGNATURE_COMPLETED = "signature_completed"


SessionListener = Callable[[SessionEvent, str, Optional[Dict[str, Any]]], None]


def session_key(provider_id: str, user_id: str) -> str:
    return f"{provider_id.upper()}_{user_id}"


@dataclass
class ActiveSession:
    """A provider session held by the manager"""
    session: RemoteSignSession
    provider: RemoteSignProvider
    session_key: str
    created_at: datetime
    last_activity: datetime
    signatures_count: int = 0

    @property
    def session_id(self) -> str:
        return self.session.session_id

    @property
    def provider_id(self) -> str:
        return self.session.provider_id

    @property
    def user_id(self) -> str:
        return self.session.user_id

    @property
    def expires_at(self) -> datetime:
        return self.session.expires_at

    @property
    def certificate(self) -> Optional[CertificateInfo]:
        return self.session.certificate

    @property
    def remaining_signatures(self) -> Optional[int]:
        return self.session.remaining_signatures

    @property
    def signed_by(self) -> Optional[str]:
        return self.session.signed_by

    def is_expired(self, now: datetime) -> bool:
        return self.session.is_expired(now)


class SessionManager:
    """
    Lifecycle manager for remote signing sessions.

    At most one session exists per provider and user: opening a new one
    closes the previous one first.

    Args:
        registry: Provider registry used to resolve adapters
        clock: Returns the current aware UTC time
        cleanup_interval_seconds: Period of the background expiry sweep
    """

    def __init__(self, registry: ProviderRegistry,
                 clock: Callable[[], datetime] = utcnow,
                 cleanup_interval_seconds: float = 60):
        self.registry = registry
        self.clock = clock
        self.cleanup_interval_seconds = cleanup_interval_seconds
        self._sessions: Dict[str, ActiveSession] = {}
        self._listeners: List[SessionListener] = []
        self._lock = asyncio.Lock()
        self._cleanup_task: Optional[asyncio.Task] = None

    # -- creation and lookup --------------------------------------------------

    async def create_session(self, provider_id: str, credentials: RemoteSignCredentials,
                             duration_minutes: Optional[int] = None) -> ActiveSession:
        """
        Authenticate with a provider and store the resulting session.

        The session expires after ``duration_minutes`` (the registry's session
        timeout by default), or earlier when the provider says so.

        Raises:
            RemoteSignError: Lookup or authentication failures, unchanged
        """
        provider = self.registry.get(provider_id)
        duration = duration_minutes or self.registry.session_timeout_minutes

        async with self._lock:
            existing_key = session_key(provider.provider_id, credentials.username)
            if existing_key in self._sessions:
                logger.info("[SessionManager] Closing existing session %s", existing_key)
                await self._close_locked(existing_key)

            session = await provider.authenticate(credentials, duration)

            now = self.clock()
            session.expires_at = min(now + timedelta(minutes=duration), session.expires_at)

            key = session_key(provider.provider_id, session.user_id)
            active = ActiveSession(session=session, provider=provider, session_key=key,
                                   created_at=now, last_activity=now)
            self._sessions[key] = active

            logger.info("[SessionManager] Session %s created, expires %s",
                        key, session.expires_at.isoformat())
            self._emit(SessionEvent.CREATED, key, {"provider_id": provider.provider_id,
                                                   "user_id": session.user_id})
            return active

    async def get_session(self, provider_id: str, user_id: str) -> Optional[ActiveSession]:
        """
        Return the live session of a user, or None.

        Expired sessions are dropped. Sessions the provider rejects are
        closed. When the provider cannot be reached the session is kept.
        """
        key = session_key(provider_id, user_id)
        async with self._lock:
            active = self._sessions.get(key)
            if active is None:
                return None

            if active.is_expired(self.clock()):
                self._drop(key, SessionEvent.EXPIRED)
                return None

            try:
                valid = await active.provider.validate_session(active.session)
            except Exception as e:
                logger.warning("[SessionManager] Could not validate session %s, keeping it: %s",
                               key, e)
                valid = True

            if not valid:
                logger.info("[SessionManager] Session %s rejected by provider", key)
                await self._close_locked(key)
                return None

            active.last_activity = self.clock()
            return active

    def get_session_by_key(self, key: str) -> Optional[ActiveSession]:
        """Unexpired session stored under ``key``, without asking the provider."""
        active = self._sessions.get(key)
        if active is None or active.is_expired(self.clock()):
            return None
        return active

    def find_provider_session(self, provider_id: str) -> Optional[ActiveSession]:
        """First unexpired session held for a provider, whatever the user."""
        now = self.clock()
        for active in self._sessions.values():
            if active.provider_id.upper() == provider_id.upper() and not active.is_expired(now):
                return active
        return None

    def has_active_session(self, provider_id: str) -> bool:
        return self.find_provider_session(provider_id) is not None

    def get_active_sessions(self) -> List[ActiveSession]:
        now = self.clock()
        return [active for active in self._sessions.values() if not active.is_expired(now)]

    def get_session_status(self, provider_id: str, user_id: str) -> SessionStatus:
        active = self._sessions.get(session_key(provider_id, user_id))
        return session_status(active.session if active else None, self.clock())

    def stats(self) -> Dict[str, Any]:
        active_sessions = self.get_active_sessions()
        by_provider: Dict[str, int] = {}
        for active in active_sessions:
            by_provider[active.provider_id] = by_provider.get(active.provider_id, 0) + 1
        return {
            "active_sessions": len(active_sessions),
            "total_signatures": sum(active.signatures_count for active in active_sessions),
            "sessions_by_provider": by_provider,
        }

    # -- refresh -----------------------------------------------------------------

    async def refresh_session(self, key: str) -> Optional[ActiveSession]:
        """
        Extend a session through its provider.

        Returns None, leaving the stored session untouched, when the session
        is unknown or the provider refuses.
        """
        try:
            return await self.refresh_session_or_raise(key)
        except RemoteSignError as e:
            logger.warning("[SessionManager] Refresh of %s failed: %s", key, e)
            return None

    async def refresh_session_or_raise(self, key: str) -> ActiveSession:
        async with self._lock:
            active = self._sessions.get(key)
            if active is None:
                raise make_error(ErrorKind.SESSION_NOT_FOUND, f"Session {key} not found")

            refreshed = await active.provider.refresh_session(active.session)
            active.session = refreshed
            active.last_activity = self.clock()

            logger.info("[SessionManager] Session %s refreshed, expires %s",
                        key, refreshed.expires_at.isoformat())
            self._emit(SessionEvent.REFRESHED, key, {"expires_at": refreshed.expires_at.isoformat()})
            return active

    # -- signing -------------------------------------------------------------------

    async def _live_session(self, key: str) -> ActiveSession:
        active = self._sessions.get(key)
        if active is None:
            raise make_error(ErrorKind.SESSION_NOT_FOUND, f"Session {key} not found")
        if active.is_expired(self.clock()):
            await self._close_locked(key)
            raise make_error(ErrorKind.SESSION_EXPIRED, "Session expired, authenticate again",
                             active.provider_id)
        return active

    async def sign_document(self, key: str, request: SignDocumentRequest) -> SignDocumentResponse:
        """
        Sign one document with a stored session.

        Raises:
            SessionError: SESSION_NOT_FOUND or SESSION_EXPIRED
            RemoteSignError: Adapter failures, unchanged. Session-invalidating
                failures also drop the session.
        """
        async with self._lock:
            active = await self._live_session(key)
            before = active.remaining_signatures

            try:
                response = await active.provider.sign_document(active.session, request)
            except RemoteSignError as e:
                if e.invalidates_session:
                    logger.warning("[SessionManager] Session %s invalidated by provider: %s", key, e)
                    self._drop(key, SessionEvent.EXPIRED, {"reason": e.kind.value})
                raise

            self._record_signatures(active, before, 1)
            self._emit(SessionEvent.SIGNATURE_COMPLETED, key, {
                "document_id": request.document_id,
                "signatures_count": active.signatures_count,
            })
            return response

    async def sign_multiple_documents(self, key: str, requests: List[SignDocumentRequest],
                                      on_progress: Optional[ProgressCallback] = None
                                      ) -> List[BatchSignResult]:
        """
        Sign a batch of documents with a stored session.

        Only successful items count against the session. When the batch stops
        on a session-invalidating error the session is dropped.
        """
        async with self._lock:
            active = await self._live_session(key)
            before = active.remaining_signatures

            results = await active.provider.sign_multiple_documents(active.session, requests,
                                                                    on_progress)
            succeeded = sum(1 for result in results if result.success)
            self._record_signatures(active, before, succeeded)

            if succeeded:
                self._emit(SessionEvent.SIGNATURE_COMPLETED, key, {
                    "documents": succeeded,
                    "signatures_count": active.signatures_count,
                })

            aborted = next((result for result in results
                            if result.error_kind is not None and result.error_kind.invalidates_session),
                           None)
            if aborted is not None:
                logger.warning("[SessionManager] Batch on %s aborted at %s, dropping session",
                               key, aborted.document_id)
                self._drop(key, SessionEvent.EXPIRED, {"reason": aborted.error_kind.value})

            return results

    def _record_signatures(self, active: ActiveSession, before: Optional[int], count: int) -> None:
        active.signatures_count += count
        active.last_activity = self.clock()
        if before is not None:
            active.session.remaining_signatures = max(0, before - count)

    # -- closing -------------------------------------------------------------------

    async def close_session(self, key: str) -> None:
        """Close a session; unknown keys are ignored."""
        async with self._lock:
            await self._close_locked(key)

    async def close_provider_sessions(self, provider_id: str) -> int:
        async with self._lock:
            keys = [key for key, active in self._sessions.items()
                    if active.provider_id.upper() == provider_id.upper()]
            for key in keys:
                await self._close_locked(key)
            return len(keys)

    async def close_all_sessions(self) -> int:
        async with self._lock:
            keys = list(self._sessions)
            for key in keys:
                await self._close_locked(key)
            if keys:
                logger.info("[SessionManager] Closed %d sessions", len(keys))
            return len(keys)

    async def _close_locked(self, key: str) -> None:
        active = self._sessions.pop(key, None)
        if active is None:
            return
        try:
            await active.provider.close_session(active.session)
        except Exception as e:
            logger.warning("[SessionManager] Error closing session %s (ignored): %s", key, e)
        logger.info("[SessionManager] Session %s closed", key)
        self._emit(SessionEvent.CLOSED, key, None)

    def _drop(self, key: str, event: SessionEvent, data: Optional[Dict[str, Any]] = None) -> None:
        if self._sessions.pop(key, None) is not None:
            logger.info("[SessionManager] Session %s removed (%s)", key, event.value)
            self._emit(event, key, data)

    # -- expiry sweep ----------------------------------------------------------------

    async def sweep_expired(self) -> List[str]:
        """Drop every locally expired session without contacting providers."""
        async with self._lock:
            now = self.clock()
            expired = [key for key, active in self._sessions.items() if active.is_expired(now)]
            for key in expired:
                self._drop(key, SessionEvent.EXPIRED)
            return expired

    async def _cleanup_loop(self) -> None:
        while True:
            await asyncio.sleep(self.cleanup_interval_seconds)
            try:
                removed = await self.sweep_expired()
                if removed:
                    logger.info("[SessionManager] Expired sessions removed: %s", ", ".join(removed))
            except Exception:
                logger.exception("[SessionManager] Session sweep failed")

    def start(self) -> None:
        """Start the periodic expiry sweep on the running event loop."""
        if self._cleanup_task is None or self._cleanup_task.done():
            self._cleanup_task = asyncio.create_task(self._cleanup_loop())

    async def stop(self) -> None:
        task, self._cleanup_task = self._cleanup_task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def shutdown(self) -> None:
        await self.stop()
        await self.close_all_sessions()
        self._listeners.clear()

    # -- events ------------------------------------------------------------------------

    def add_listener(self, listener: SessionListener) -> None:
        if listener not in self._listeners:
            self._listeners.append(listener)

    def remove_listener(self, listener: SessionListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def _emit(self, event: SessionEvent, key: str, data: Optional[Dict[str, Any]]) -> None:
        for listener in list(self._listeners):
            try:
                listener(event, key, data)
            except Exception:
                logger.exception("[SessionManager] Session listener failed on %s", event.value)
