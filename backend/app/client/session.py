"""Async session orchestrator for dashboard clients.

Drives the login/refresh/logout protocol against the auth API and keeps a
``SessionState`` that moves from ``loading`` to ``authenticated`` or
``unauthenticated``. Tokens never leave the httpx cookie jar.
"""

from __future__ import annotations

import asyncio
import dataclasses
import logging
import time
from typing import Any, Callable, List, Optional

import httpx

from backend.app import config
from backend.app.auth.schemas import IdentityPublic, SessionResponse
from backend.app.client.state import MemorySessionStateStore, SessionState, SessionStateStore, SessionStatus

logger = logging.getLogger("client.session")

LOGIN_PATH = "/auth/login"
REFRESH_PATH = "/auth/refresh"
LOGOUT_PATH = "/auth/logout"
ME_PATH = "/auth/me"

SessionListener = Callable[[SessionState], None]


class SessionError(Exception):
    """Base error raised by the session orchestrator."""


class LoginRejectedError(SessionError):
    """The server refused the credentials; ``detail`` is its message verbatim."""

    def __init__(self, detail: str, status_code: int, retry_after: Optional[int] = None) -> None:
        super().__init__(detail)
        self.detail = detail
        self.status_code = status_code
        self.retry_after = retry_after


class SessionExpiredError(SessionError):
    """The session could not be renewed after an unauthorized response."""


def build_client(base_url: str, **kwargs: Any) -> httpx.AsyncClient:
    kwargs.setdefault("timeout", httpx.Timeout(config.SESSION_REQUEST_TIMEOUT_SECONDS))
    return httpx.AsyncClient(base_url=base_url, **kwargs)


def _response_detail(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text or response.reason_phrase
    if isinstance(body, dict) and isinstance(body.get("detail"), str):
        return body["detail"]
    return response.reason_phrase


def _retry_after(response: httpx.Response) -> Optional[int]:
    value = response.headers.get("retry-after")
    if value is None:
        return None
    try:
        return int(value)
    except ValueError:
        return None


def _session_user(response: httpx.Response) -> IdentityPublic:
    return SessionResponse.model_validate(response.json()).user


class SessionOrchestrator:
    def __init__(
        self,
        client: httpx.AsyncClient,
        state_store: Optional[SessionStateStore] = None,
        refresh_interval_seconds: Optional[float] = None,
        idle_timeout_seconds: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._client = client
        self._store = state_store or MemorySessionStateStore()
        self._refresh_interval = (
            config.SESSION_REFRESH_INTERVAL_SECONDS if refresh_interval_seconds is None else refresh_interval_seconds
        )
        self._idle_timeout = idle_timeout_seconds
        self._clock = clock
        self._last_activity = clock()

        # A persisted snapshot is shown while loading but is re-validated by initialize().
        self._state = self._store.load() or SessionState()
        self._listeners: List[SessionListener] = []
        self._refresh_task: Optional[asyncio.Task] = None
        self._refresh_loop_task: Optional[asyncio.Task] = None
        self._idle_task: Optional[asyncio.Task] = None
        self._closed = False
        # Bumped by logout so results of requests started earlier are dropped.
        self._generation = 0

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def status(self) -> SessionStatus:
        return self._state.status

    @property
    def user(self) -> Optional[IdentityPublic]:
        return self._state.user

    @property
    def is_authenticated(self) -> bool:
        return self._state.is_authenticated

    @property
    def is_loading(self) -> bool:
        return self._state.is_loading

    def subscribe(self, listener: SessionListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def touch(self) -> None:
        self._last_activity = self._clock()

    async def initialize(self) -> SessionState:
        generation = self._generation
        user: Optional[IdentityPublic] = None
        try:
            user = await self._fetch_identity()
            if user is None and await self.refresh():
                user = await self._fetch_identity()
        finally:
            if generation != self._generation:
                logger.info("Logged out during initialization; keeping the session closed")
            elif user is not None:
                self._set_authenticated(user)
            else:
                self._set_unauthenticated()
        return self._state

    async def login(self, username: str, password: str) -> IdentityPublic:
        generation = self._generation
        try:
            response = await self._client.post(LOGIN_PATH, json={"username": username, "password": password})
        except httpx.HTTPError:
            self._set_unauthenticated()
            raise

        if response.status_code != 200:
            self._set_unauthenticated()
            raise LoginRejectedError(_response_detail(response), response.status_code, _retry_after(response))

        user = _session_user(response)
        if generation != self._generation:
            self._discard_stale_cookies()
            raise SessionError("Logged out before the login completed")
        self.touch()
        self._set_authenticated(user)
        logger.info("Logged in as %s", user.username)
        return user

    async def logout(self) -> None:
        self._generation += 1
        pending, self._refresh_task = self._refresh_task, None
        self._cancel(pending)
        self._set_unauthenticated()
        try:
            await self._client.post(LOGOUT_PATH)
        except httpx.HTTPError as exc:
            # The server never saw the request, so drop the cookies locally.
            self._client.cookies.clear()
            logger.warning("Logout notification failed: %s", exc)

    async def refresh(self) -> bool:
        """Renew the session, sharing one in-flight refresh between concurrent callers."""

        if self._closed:
            return False
        if self._refresh_task is None:
            task = asyncio.get_running_loop().create_task(self._perform_refresh())
            task.add_done_callback(self._refresh_finished)
            self._refresh_task = task
        task = self._refresh_task
        try:
            return await asyncio.shield(task)
        except asyncio.CancelledError:
            # A logout cancelled the shared refresh; only our own cancellation propagates.
            if not task.cancelled():
                raise
            return False

    async def request(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        self.touch()
        response = await self._client.request(method, url, **kwargs)
        if response.status_code != 401:
            return response

        if not await self.refresh():
            raise SessionExpiredError("Session expired")

        response = await self._client.request(method, url, **kwargs)
        if response.status_code == 401:
            self._set_unauthenticated()
            raise SessionExpiredError("Session expired")
        return response

    async def aclose(self) -> None:
        self._closed = True
        for task in (self._refresh_loop_task, self._idle_task, self._refresh_task):
            self._cancel(task)
        self._refresh_loop_task = None
        self._idle_task = None
        self._listeners.clear()

    async def __aenter__(self) -> "SessionOrchestrator":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    async def _fetch_identity(self) -> Optional[IdentityPublic]:
        try:
            response = await self._client.get(ME_PATH)
            if response.status_code != 200:
                return None
            return _session_user(response)
        except (httpx.HTTPError, ValueError) as exc:
            logger.debug("Identity fetch failed: %s", exc)
            return None

    async def _perform_refresh(self) -> bool:
        generation = self._generation
        try:
            response = await self._client.post(REFRESH_PATH)
            user = _session_user(response) if response.status_code == 200 else None
        except (httpx.HTTPError, ValueError) as exc:
            logger.warning("Session refresh failed: %s", exc)
            user = None

        if generation != self._generation:
            logger.info("Discarding refresh that finished after logout")
            self._discard_stale_cookies()
            return False

        if user is None:
            self._set_unauthenticated()
            return False
        self._set_authenticated(user)
        return True

    def _refresh_finished(self, task: asyncio.Task) -> None:
        if self._refresh_task is task:
            self._refresh_task = None
        if not task.cancelled() and task.exception() is not None:
            logger.error("Session refresh crashed", exc_info=task.exception())

    async def _refresh_periodically(self) -> None:
        while self._state.is_authenticated:
            await asyncio.sleep(self._refresh_interval)
            if not self._state.is_authenticated:
                return
            if not await self.refresh():
                logger.info("Periodic refresh failed; session ended")
                return

    async def _watch_idle(self) -> None:
        assert self._idle_timeout is not None
        while self._state.is_authenticated:
            remaining = self._idle_timeout - (self._clock() - self._last_activity)
            if remaining <= 0:
                logger.info("Session idle for more than %s seconds; logging out", self._idle_timeout)
                await self.logout()
                return
            await asyncio.sleep(remaining)

    def _discard_stale_cookies(self) -> None:
        if not self._state.is_authenticated:
            self._client.cookies.clear()

    def _set_authenticated(self, user: IdentityPublic) -> None:
        self._transition(user=user, is_authenticated=True, is_loading=False)

    def _set_unauthenticated(self) -> None:
        self._transition(user=None, is_authenticated=False, is_loading=False)

    def _transition(self, **changes: Any) -> None:
        if self._closed:
            return
        self._state = dataclasses.replace(self._state, **changes)
        if self._state.is_authenticated:
            self._store.save(self._state)
        else:
            self._store.clear()
        self._sync_background_tasks()
        for listener in list(self._listeners):
            try:
                listener(self._state)
            except Exception:
                logger.exception("Session listener failed")

    def _sync_background_tasks(self) -> None:
        if self._state.is_authenticated:
            loop = asyncio.get_running_loop()
            if self._refresh_interval > 0 and (self._refresh_loop_task is None or self._refresh_loop_task.done()):
                self._refresh_loop_task = loop.create_task(self._refresh_periodically())
            if self._idle_timeout and (self._idle_task is None or self._idle_task.done()):
                self._idle_task = loop.create_task(self._watch_idle())
            return

        self._cancel(self._refresh_loop_task)
        self._cancel(self._idle_task)
        self._refresh_loop_task = None
        self._idle_task = None

    @staticmethod
    def _cancel(task: Optional[asyncio.Task]) -> None:
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()
