"""
Control-channel protocol of the station telemetry server.

Before a station pushes telemetry it needs a strict, ordered handshake over
the WebSocket. Every request is a JSON object ``{"id", "method", "params"}``
terminated by a newline; the response carries the same ``id``.

    ===  ==============================  ===================================
    #    method                          accepted response
    ===  ==============================  ===================================
    1    comet.restoreSession / signIn   ``result.USID`` (the session token)
    2    comet.subscribeNotification     ``result is True``
    3    ScriptEngine.setUpdateRate      ``result is True``
    4    ScriptEngine.loadScriptInfo,    id match (content ignored unless
         loadDashboards, loadScriptInfo  it carries an error)
    5    ScriptEngine.loadScene          id match
    6    ScriptEngine.registerActiveObjects  ``result is True``
    ===  ==============================  ===================================

Steps 2, 3, and 6 carry the session token as their first parameter, so no
step is sent before the previous response has been observed. Any timeout,
error payload, or unexpected response aborts the handshake with a
``ProtocolError``.

After step 6 the channel is in notification mode: messages with
``notification.provider == "ScriptEngine"`` carry object values under
``notification.value.sync``. Everything else is ignored.

CHANGELOG:
- 2026-10-18: Support sign-in login alongside session restore
- 2026-10-18: Initial creation (STORY-006)

TODO:
- None
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from monitor.src.errors import ProtocolError

if TYPE_CHECKING:
    from monitor.src.models import StationIdentity
    from monitor.src.transport import MessageChannel

logger = logging.getLogger(__name__)

NOTIFICATION_PROVIDER = "ScriptEngine"
"""Provider name of telemetry notifications."""

OBJECT_LIST_SENTINEL = -1
"""Terminates the object id list of ``registerActiveObjects``."""

_LOGIN_CONTEXT: dict[str, str] = {"$class": "com.wcs.comet.shared.CoreGTLoginContext"}
_SESSION_TIMEOUTS: tuple[int, int] = (30, 30)
_SUBSCRIBER: dict[str, str] = {"displayName": "Admin"}


def _client_info(user_name: str) -> dict[str, Any]:
    """Client descriptor the server expects inside the login request."""
    return {
        "$className": "com.wcs.comet.shared.ClientInfo",
        "userLevel": -1,
        "ConnectionTimeStamp": 0,
        "DataTimeout": 0,
        "IpAddress": None,
        "Protocol": None,
        "ProtocolVersion": 0,
        "SID": -1,
        "USID": None,
        "UserAgent": "Python Comet Client",
        "UserAgentVersion": 2,
        "UserLevel": -1,
        "UserName": user_name,
        "Admin": False,
        "Guest": False,
        "Logged": False,
    }


# ---------------------------------------------------------------------------
# Response predicates
# ---------------------------------------------------------------------------


def _has_session_token(msg: dict[str, Any]) -> bool:
    result = msg.get("result")
    return isinstance(result, dict) and isinstance(result.get("USID"), str) and bool(result["USID"])


def _is_true(msg: dict[str, Any]) -> bool:
    return msg.get("result") is True


def _id_match(msg: dict[str, Any]) -> bool:
    return True


# ---------------------------------------------------------------------------
# Handshake steps
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class HandshakeStep:
    """One request of the handshake and the predicate its response must meet.

    Attributes:
        name: Short step name used in logs and errors.
        method: RPC method name.
        params: Request parameters, without the session token.
        accept: Predicate over the decoded response with the matching id.
        with_token: Prepend the session token to ``params``.
    """

    name: str
    method: str
    params: list[Any] = field(default_factory=list)
    accept: Callable[[dict[str, Any]], bool] = _id_match
    with_token: bool = False


class SessionProtocol:
    """Builds, sends, and checks the handshake for one station.

    Args:
        identity: The station (credentials and scene are taken from it).
        update_rate_ms: Notification cadence requested in step 3.
        client_name: User name reported in the login client descriptor.
    """

    def __init__(
        self,
        identity: StationIdentity,
        *,
        update_rate_ms: int = 3000,
        client_name: str = "PowerMonitor",
    ) -> None:
        self._identity = identity
        self._update_rate_ms = update_rate_ms
        self._client_name = client_name

    # -- Encoding -------------------------------------------------------------

    def _login_step(self) -> HandshakeStep:
        identity = self._identity
        if identity.username:
            params: list[Any] = [
                _LOGIN_CONTEXT,
                identity.username,
                identity.password,
                _client_info(self._client_name),
                *_SESSION_TIMEOUTS,
            ]
            method = "comet.signIn"
        else:
            params = [
                _LOGIN_CONTEXT,
                identity.session_uuid,
                _client_info(self._client_name),
                *_SESSION_TIMEOUTS,
            ]
            method = "comet.restoreSession"
        return HandshakeStep("authenticate", method, params, accept=_has_session_token)

    def build_steps(self, object_ids: Sequence[int]) -> list[HandshakeStep]:
        """Return the ordered handshake for registering *object_ids*."""
        steps = [
            self._login_step(),
            HandshakeStep(
                "subscribe",
                "comet.subscribeNotification",
                [NOTIFICATION_PROVIDER, _SUBSCRIBER],
                accept=_is_true,
                with_token=True,
            ),
            HandshakeStep(
                "set_update_rate",
                "ScriptEngine.setUpdateRate",
                [self._update_rate_ms],
                accept=_is_true,
                with_token=True,
            ),
            HandshakeStep("load_script_info", "ScriptEngine.loadScriptInfo"),
            HandshakeStep("load_dashboards", "ScriptEngine.loadDashboards"),
            HandshakeStep("reload_script_info", "ScriptEngine.loadScriptInfo"),
        ]
        if self._identity.scene:
            steps.append(HandshakeStep("load_scene", "ScriptEngine.loadScene", [self._identity.scene]))
        steps.append(
            HandshakeStep(
                "register_objects",
                "ScriptEngine.registerActiveObjects",
                [[*(int(i) for i in object_ids), OBJECT_LIST_SENTINEL]],
                accept=_is_true,
                with_token=True,
            )
        )
        return steps

    @staticmethod
    def encode(request_id: int, step: HandshakeStep, token: str | None) -> str:
        """Serialize a step as a newline-terminated JSON request."""
        params = [token, *step.params] if step.with_token else list(step.params)
        return json.dumps({"id": request_id, "method": step.method, "params": params}) + "\n"

    # -- Handshake --------------------------------------------------------------

    async def handshake(
        self,
        channel: MessageChannel,
        object_ids: Sequence[int],
        *,
        step_timeout: float = 5.0,
    ) -> str:
        """Run the full handshake on *channel*.

        Args:
            channel: Freshly opened control channel.
            object_ids: Raw object ids to register for notifications.
            step_timeout: Bounded wait for each step's response.

        Returns:
            The session token.

        Raises:
            ProtocolError: A step timed out or got a bad response.
            TransportError: The channel failed underneath.
        """
        token: str | None = None
        name = self._identity.name
        for request_id, step in enumerate(self.build_steps(object_ids)):
            if step.with_token and token is None:
                raise ProtocolError(
                    f"{step.name} requires a session token",
                    step=step.name,
                    request_id=request_id,
                )
            logger.debug("[%s] Sending %s (id %d)", name, step.method, request_id)
            await channel.send(self.encode(request_id, step, token))
            response = await self._await_response(channel, step, request_id, step_timeout)
            if step.name == "authenticate":
                token = response["result"]["USID"]
                logger.info("[%s] Session token received: %s...", name, token[:10])
            else:
                logger.debug("[%s] %s accepted", name, step.name)

        if token is None:
            raise ProtocolError("Handshake finished without a session token", step="authenticate")
        return token

    async def _await_response(
        self,
        channel: MessageChannel,
        step: HandshakeStep,
        request_id: int,
        timeout: float,
    ) -> dict[str, Any]:
        """Wait for the response to *request_id*, ignoring unrelated traffic."""
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while True:
            remaining = deadline - loop.time()
            if remaining <= 0:
                raise ProtocolError(
                    f"{step.name}: no response within {timeout:g}s",
                    step=step.name,
                    request_id=request_id,
                )
            try:
                raw = await asyncio.wait_for(channel.recv(), timeout=remaining)
            except TimeoutError:
                raise ProtocolError(
                    f"{step.name}: no response within {timeout:g}s",
                    step=step.name,
                    request_id=request_id,
                ) from None

            msg = self.decode(raw)
            if msg is None or msg.get("id") != request_id or isinstance(msg.get("id"), bool):
                continue
            if msg.get("error"):
                raise ProtocolError(
                    f"{step.name} rejected: {msg['error']}",
                    step=step.name,
                    request_id=request_id,
                )
            if not step.accept(msg):
                raise ProtocolError(
                    f"{step.name}: unexpected response {msg.get('result')!r}",
                    step=step.name,
                    request_id=request_id,
                )
            return msg

    # -- Decoding ---------------------------------------------------------------

    @staticmethod
    def decode(raw: str | bytes) -> dict[str, Any] | None:
        """Parse an inbound message; non-JSON or non-object input gives ``None``."""
        try:
            msg = json.loads(raw)
        except (json.JSONDecodeError, TypeError, UnicodeDecodeError):
            return None
        return msg if isinstance(msg, dict) else None

    @staticmethod
    def extract_sync(msg: dict[str, Any] | None) -> dict[str, Any] | None:
        """Return the object values of a telemetry notification, else ``None``."""
        if not msg:
            return None
        notification = msg.get("notification")
        if not isinstance(notification, dict):
            return None
        if notification.get("provider") != NOTIFICATION_PROVIDER:
            return None
        value = notification.get("value")
        if not isinstance(value, dict):
            return None
        sync = value.get("sync")
        if isinstance(sync, dict) and sync:
            return sync
        return None
