"""Reconciliation of local sessions with the remote store."""

import asyncio
import os
import time
from dataclasses import dataclass
from typing import Callable, Optional, Union
import httpx
import structlog

from ..errors import SyncError
from ..state.models import Session
from ..state.session_store import SessionStore


logger = structlog.get_logger()

TokenProvider = Callable[[], Optional[str]]


def env_token_provider() -> Optional[str]:
    return os.getenv("AURA_API_TOKEN")


def surrogate_id(session_id: str) -> str:
    """A locally synthesized stand-in for a remote id."""
    return f"local_{int(time.time() * 1000)}_{session_id}"


@dataclass
class SyncResult:
    remote_id: str
    surrogate: bool
    error: Optional[str] = None


class SyncAgent:
    """
    Pushes sessions to the remote store, idempotent by client session id.

    ``sync()`` never raises: when the server is unreachable or rejects the
    session, the session is marked synced with a surrogate id and the real
    push is retried after its next change.
    """

    def __init__(
        self,
        store: SessionStore,
        api_url: str = "http://localhost:3005",
        token_provider: Optional[TokenProvider] = None,
        probe_timeout: float = 3.0,
        request_timeout: float = 10.0,
        health_path: str = "/api/health",
        sync_path: str = "/api/sessions/sync",
        enabled: bool = True,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.store = store
        self.api_url = api_url.rstrip("/")
        self.token_provider = token_provider or env_token_provider
        self.probe_timeout = probe_timeout
        self.request_timeout = request_timeout
        self.health_path = health_path
        self.sync_path = sync_path
        self.enabled = enabled
        self._client = client
        self._owns_client = client is None

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.request_timeout)
        return self._client

    async def aclose(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    async def probe(self) -> bool:
        """Whether the remote store answers its health check within the probe timeout."""
        url = f"{self.api_url}{self.health_path}"
        try:
            response = await asyncio.wait_for(self.client.get(url), timeout=self.probe_timeout)
        except asyncio.TimeoutError:
            logger.warning("Remote store health check timed out", url=url, timeout=self.probe_timeout)
            return False
        except httpx.HTTPError as e:
            logger.warning("Remote store is not reachable", url=url, error=str(e) or type(e).__name__)
            return False
        return response.is_success

    async def push(self, session: Session) -> str:
        """POST the session and return the remote id. Raises ``SyncError``."""
        token = self.token_provider()
        if not token:
            raise SyncError("No API token available")

        url = f"{self.api_url}{self.sync_path}"
        try:
            response = await self.client.post(
                url,
                json={"sessionData": session.to_sync_payload()},
                headers={"Authorization": f"Bearer {token}"},
                timeout=self.request_timeout,
            )
        except httpx.HTTPError as e:
            raise SyncError(f"Transport error: {e}") from e

        if not response.is_success:
            raise SyncError(f"Session sync failed ({response.status_code}): {response.text[:200]}",
                            status_code=response.status_code)

        try:
            body = response.json()
        except ValueError as e:
            raise SyncError("Response is not JSON", status_code=response.status_code) from e
        if not isinstance(body, dict):
            raise SyncError(f"Response is not an object: {type(body).__name__}",
                            status_code=response.status_code)
        remote_id = body.get("sessionId")
        if not remote_id:
            raise SyncError("Response carries no sessionId", status_code=response.status_code)
        return str(remote_id)

    async def sync(self, session: Union[Session, str]) -> Optional[SyncResult]:
        """Sync the stored state of a session. Returns ``None`` for an unknown id."""
        session_id = session if isinstance(session, str) else session.id
        snapshot = self.store.get(session_id)
        if snapshot is None:
            logger.error("Cannot sync unknown session", session_id=session_id)
            return None

        error = None
        remote_id = None
        if self.enabled and await self.probe():
            try:
                remote_id = await self.push(snapshot)
            except SyncError as e:
                error = str(e)
                logger.warning("Session sync rejected", session_id=session_id,
                               status_code=e.status_code, error=error)
        else:
            error = "remote store unreachable"

        if remote_id is not None:
            result = SyncResult(remote_id=remote_id, surrogate=False)
            logger.info("Session synced", session_id=session_id, remote_id=remote_id)
        else:
            result = SyncResult(remote_id=surrogate_id(session_id), surrogate=True, error=error)
            logger.info("Using local surrogate id", session_id=session_id, remote_id=result.remote_id)

        try:
            self.store.mark_synced(session_id, result.remote_id, surrogate=result.surrogate, sent=snapshot)
        except (KeyError, OSError) as e:
            logger.error("Failed to record sync result", session_id=session_id, error=str(e))
        return result
