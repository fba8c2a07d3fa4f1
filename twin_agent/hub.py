"""Device-twin link to the remote hub over MQTT.

Topic layout follows the device-twin MQTT conventions:

- telemetry: ``devices/{id}/messages/events/{property-bag}``
- twin requests: ``$iothub/twin/GET/?$rid=..`` and
  ``$iothub/twin/PATCH/properties/reported/?$rid=..``, answered on
  ``$iothub/twin/res/{status}/?$rid=..``
- desired changes: ``$iothub/twin/PATCH/properties/desired/?$version=..``
- direct methods: ``$iothub/methods/POST/{name}/?$rid=..``, answered on
  ``$iothub/methods/res/{status}/?$rid=..``
"""

from __future__ import annotations

import asyncio
import contextlib
import itertools
import json
import logging
import random
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Set, Tuple
from urllib.parse import parse_qs, urlencode

from .adapters import MQTTClient, MQTTConnectionError, MQTTSettings
from .auth import ConnectionString, generate_sas_token
from .config import HubConfig, ResilienceConfig
from .core import (
    CommandCallback,
    CommandInvocation,
    CommandResponse,
    DesiredStateCallback,
    StateDocument,
    TelemetryEvent,
)

LOGGER = logging.getLogger(__name__)

TWIN_RESPONSE_PREFIX = "$iothub/twin/res/"
DESIRED_PATCH_PREFIX = "$iothub/twin/PATCH/properties/desired/"
METHOD_REQUEST_PREFIX = "$iothub/methods/POST/"

TWIN_RESPONSE_FILTER = TWIN_RESPONSE_PREFIX + "#"
DESIRED_PATCH_FILTER = DESIRED_PATCH_PREFIX + "#"
METHOD_REQUEST_FILTER = METHOD_REQUEST_PREFIX + "#"

ConnectionListener = Callable[[bool, Optional[str]], Awaitable[None] | None]


class LinkError(RuntimeError):
    """Base class for failures talking to the hub."""


class LinkConnectionError(LinkError):
    """Raised when the broker connection cannot be established."""


class PublishError(LinkError):
    """Raised when a telemetry event could not be handed to the broker."""


class ReportStateError(LinkError):
    """Raised when a reported-state patch is rejected or times out."""


class StateFetchError(LinkError):
    """Raised when the twin document cannot be retrieved."""


def _split_topic(topic: str, prefix: str) -> Tuple[str, Dict[str, str]]:
    remainder = topic[len(prefix):]
    head, _, query = remainder.partition("/")
    params = {
        key: values[0]
        for key, values in parse_qs(query.lstrip("?"), keep_blank_values=True).items()
        if values
    }
    return head, params


class IotHubLink:
    """RemoteLink implementation on top of :class:`MQTTClient`.

    Desired-state changes and method invocations are each run as their own
    task so a slow handler never holds up message delivery or telemetry.
    """

    def __init__(
        self,
        credentials: ConnectionString,
        config: Optional[HubConfig] = None,
        *,
        resilience: Optional[ResilienceConfig] = None,
        mqtt_client: Optional[MQTTClient] = None,
    ) -> None:
        self.credentials = credentials
        self.config = config or HubConfig()
        self.resilience = resilience or ResilienceConfig()

        self._mqtt = mqtt_client or MQTTClient(
            MQTTSettings(
                host=credentials.host_name,
                port=self.config.broker_port,
                username=(
                    f"{credentials.host_name}/{credentials.device_id}"
                    f"/?api-version={self.config.api_version}"
                ),
                keepalive=self.config.keepalive_seconds,
            ),
            client_id=credentials.device_id,
        )
        self._mqtt.set_message_handler(self._handle_message)
        self._mqtt.register_disconnect_handler(self._on_disconnect)

        self._desired_callbacks: List[DesiredStateCallback] = []
        self._command_handlers: Dict[str, CommandCallback] = {}
        self._connection_listeners: List[ConnectionListener] = []
        self._pending: Dict[str, asyncio.Future[Tuple[int, bytes]]] = {}
        self._tasks: Set[asyncio.Task[Any]] = set()
        self._request_ids = itertools.count(1)
        self._connected = False
        self._closing = False
        self._reconnect_task: Optional[asyncio.Task[None]] = None

    @property
    def device_id(self) -> str:
        return self.credentials.device_id

    @property
    def connected(self) -> bool:
        return self._connected

    def add_connection_listener(self, listener: ConnectionListener) -> None:
        self._connection_listeners.append(listener)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    async def connect(self) -> None:
        self._closing = False
        self._refresh_password()
        try:
            await self._mqtt.connect(timeout=self.resilience.connect_timeout_seconds)
        except MQTTConnectionError as exc:
            raise LinkConnectionError(str(exc)) from exc

        try:
            self._subscribe_topics()
        except MQTTConnectionError as exc:
            await self._mqtt.disconnect()
            raise LinkConnectionError(str(exc)) from exc

        self._connected = True
        LOGGER.info("Connected to hub %s as %s", self.credentials.host_name, self.device_id)
        await self._notify_connection(True, None)

    async def close(self) -> None:
        """Disconnect and fail any outstanding twin requests."""
        self._closing = True

        reconnect_task = self._reconnect_task
        if reconnect_task is not None:
            reconnect_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await reconnect_task
            self._reconnect_task = None

        for rid, future in list(self._pending.items()):
            if not future.done():
                future.set_exception(LinkError("link closed"))
            self._pending.pop(rid, None)

        await self._mqtt.disconnect()
        self._connected = False
        LOGGER.info("Hub link closed")

    async def drain(self, timeout: float) -> None:
        """Wait up to ``timeout`` seconds for in-flight handler tasks."""
        tasks = [task for task in self._tasks if not task.done()]
        if not tasks:
            return
        LOGGER.info("Waiting for %d in-flight handler(s) to finish", len(tasks))
        _, pending = await asyncio.wait(tasks, timeout=timeout)
        for task in pending:
            LOGGER.warning("Cancelling handler still running at shutdown: %s", task.get_name())
            task.cancel()

    # ------------------------------------------------------------------
    # RemoteLink
    # ------------------------------------------------------------------
    async def publish(self, event: TelemetryEvent) -> None:
        topic = f"devices/{self.device_id}/messages/events/"
        if event.properties:
            topic += urlencode(event.properties)
        try:
            self._mqtt.publish(topic, event.body, qos=1)
        except MQTTConnectionError as exc:
            raise PublishError(str(exc)) from exc

    def subscribe(self, callback: DesiredStateCallback) -> None:
        first = not self._desired_callbacks
        self._desired_callbacks.append(callback)
        if first and self._connected:
            try:
                self._mqtt.subscribe(DESIRED_PATCH_FILTER)
            except MQTTConnectionError as exc:
                raise LinkError(str(exc)) from exc

    def register_command_handler(self, name: str, handler: CommandCallback) -> None:
        first = not self._command_handlers
        self._command_handlers[name] = handler
        if first and self._connected:
            try:
                self._mqtt.subscribe(METHOD_REQUEST_FILTER)
            except MQTTConnectionError as exc:
                raise LinkError(str(exc)) from exc

    async def report_state(self, patch: Mapping[str, Any]) -> None:
        body = json.dumps(dict(patch), default=str).encode("utf-8")
        await self._request(
            "$iothub/twin/PATCH/properties/reported/?$rid={rid}",
            body,
            ReportStateError,
        )

    async def fetch_state(self) -> StateDocument:
        body = await self._request("$iothub/twin/GET/?$rid={rid}", b"", StateFetchError)
        try:
            document = json.loads(body.decode("utf-8")) if body else {}
        except (UnicodeDecodeError, json.JSONDecodeError) as exc:
            raise StateFetchError(f"Malformed twin document: {exc}") from exc
        if not isinstance(document, dict):
            raise StateFetchError("Twin document is not a JSON object")
        return StateDocument.from_twin(document)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------
    def _refresh_password(self) -> None:
        settings = getattr(self._mqtt, "settings", None)
        if settings is None:
            return
        settings.password = generate_sas_token(
            self.credentials.resource_uri,
            self.credentials.shared_access_key,
            ttl_seconds=self.config.sas_ttl_seconds,
        )

    def _subscribe_topics(self) -> None:
        self._mqtt.subscribe(TWIN_RESPONSE_FILTER)
        if self._desired_callbacks:
            self._mqtt.subscribe(DESIRED_PATCH_FILTER)
        if self._command_handlers:
            self._mqtt.subscribe(METHOD_REQUEST_FILTER)

    async def _request(
        self, topic_template: str, body: bytes, error_cls: type[LinkError]
    ) -> bytes:
        rid = str(next(self._request_ids))
        future: asyncio.Future[Tuple[int, bytes]] = (
            asyncio.get_running_loop().create_future()
        )
        self._pending[rid] = future
        try:
            try:
                self._mqtt.publish(topic_template.format(rid=rid), body, qos=0)
            except MQTTConnectionError as exc:
                raise error_cls(str(exc)) from exc

            try:
                status, payload = await asyncio.wait_for(
                    future, timeout=self.config.request_timeout_seconds
                )
            except asyncio.TimeoutError as exc:
                raise error_cls(
                    f"No response from hub within {self.config.request_timeout_seconds}s"
                ) from exc
            except LinkError as exc:
                raise error_cls(str(exc)) from exc
        finally:
            self._pending.pop(rid, None)

        if not 200 <= status < 300:
            raise error_cls(f"Hub responded with status {status}")
        return payload

    def _handle_message(self, topic: str, payload: bytes) -> None:
        if topic.startswith(TWIN_RESPONSE_PREFIX):
            self._resolve_response(topic, payload)
        elif topic.startswith(DESIRED_PATCH_PREFIX):
            self._dispatch_desired(payload)
        elif topic.startswith(METHOD_REQUEST_PREFIX):
            name, params = _split_topic(topic, METHOD_REQUEST_PREFIX)
            rid = params.get("$rid")
            if rid is None:
                LOGGER.warning("Ignoring method request without request id: %s", topic)
                return
            invocation = CommandInvocation(name=name, payload=payload)
            self._spawn(self._invoke_method(invocation, rid), f"method-{name}-{rid}")
        else:
            LOGGER.debug("Ignoring message on unexpected topic %s", topic)

    def _resolve_response(self, topic: str, payload: bytes) -> None:
        status_text, params = _split_topic(topic, TWIN_RESPONSE_PREFIX)
        rid = params.get("$rid")
        future = self._pending.get(rid) if rid is not None else None
        if future is None or future.done():
            LOGGER.debug("Dropping twin response for unknown request %s", rid)
            return
        try:
            status = int(status_text)
        except ValueError:
            status = 0
        future.set_result((status, payload))

    def _dispatch_desired(self, payload: bytes) -> None:
        try:
            change = json.loads(payload.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError):
            LOGGER.warning("Ignoring malformed desired-state patch")
            return
        if not isinstance(change, dict):
            LOGGER.warning("Ignoring desired-state patch that is not an object")
            return
        for callback in list(self._desired_callbacks):
            self._spawn(callback(change), "desired-state-change")

    async def _invoke_method(self, invocation: CommandInvocation, rid: str) -> None:
        handler = self._command_handlers.get(invocation.name)
        if handler is None:
            LOGGER.warning("No handler registered for method %s", invocation.name)
            response = CommandResponse(
                payload=json.dumps({"message": "method not implemented"}).encode("utf-8"),
                status_code=501,
            )
        else:
            response = await handler(invocation)

        topic = f"$iothub/methods/res/{response.status_code}/?$rid={rid}"
        try:
            self._mqtt.publish(topic, response.payload, qos=0)
        except MQTTConnectionError as exc:
            LOGGER.error("Failed to send response for method %s: %s", invocation.name, exc)

    def _spawn(self, coro: Awaitable[Any], name: str) -> None:
        task = asyncio.ensure_future(coro)
        task.set_name(name)
        self._tasks.add(task)
        task.add_done_callback(self._task_done)

    def _task_done(self, task: asyncio.Task[Any]) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            LOGGER.error(
                "Handler task %s failed", task.get_name(), exc_info=exc
            )

    def _on_disconnect(self, rc: int) -> None:
        if self._closing:
            return
        self._connected = False
        LOGGER.warning("Hub connection lost (rc=%s); scheduling reconnect", rc)
        self._spawn(self._notify_connection(False, f"disconnected (rc={rc})"), "link-lost")
        if self._reconnect_task is None or self._reconnect_task.done():
            self._reconnect_task = asyncio.ensure_future(self._reconnect_with_backoff())

    async def _reconnect_with_backoff(self) -> None:
        delay = max(0.1, self.resilience.reconnect_initial_seconds)
        max_delay = max(delay, self.resilience.reconnect_max_seconds)
        jitter_ratio = max(0.0, min(1.0, self.resilience.reconnect_jitter_ratio))
        attempt = 0

        await self._mqtt.disconnect()

        while not self._closing:
            attempt += 1
            try:
                await self.connect()
                LOGGER.info("Reconnected to hub after %d attempt(s)", attempt)
                return
            except LinkConnectionError as exc:
                sleep_for = delay
                if jitter_ratio > 0.0:
                    jitter = delay * jitter_ratio
                    sleep_for = random.uniform(max(0.1, delay - jitter), delay + jitter)
                LOGGER.warning(
                    "Reconnect attempt %d failed: %s, retrying in %.1fs",
                    attempt,
                    exc,
                    sleep_for,
                )
                await asyncio.sleep(sleep_for)
                delay = min(delay * 2, max_delay)

    async def _notify_connection(self, connected: bool, detail: Optional[str]) -> None:
        for listener in list(self._connection_listeners):
            try:
                result = listener(connected, detail)
                if asyncio.iscoroutine(result):
                    await result
            except Exception:
                LOGGER.exception("Connection listener raised an exception")
