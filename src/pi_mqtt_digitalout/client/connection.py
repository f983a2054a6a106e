"""
MQTT v5 Client Connection and RPC Request/Response Management.

This module provides:
- `ServiceEndpoint`, the address of a remote service (identity, host, port).
- `Communicator`, a wrapper around `aiomqtt` for talking to the board's
  broker, implementing the MQTT v5 Request/Response (RPC) pattern with
  correlation IDs and a private response topic per request.
- The blocking adapter: the communicator owns an asyncio event loop running
  on a daemon thread, so callers get plain synchronous calls.
- Typed proxies (`DigitalOutControllerProxy`) returned by `checked_cast`.

No retries or reconnects happen here. Every failure is raised as a
`TransportError` (or one of its subclasses) to the caller.
"""
import asyncio
import concurrent.futures
import logging
import threading
import uuid
from dataclasses import dataclass
from typing import Any, Optional, Type

from aiomqtt import Client as MQTTClient, MqttError, ProtocolVersion

from pi_mqtt_digitalout.errors import ObjectNotExistError, RemoteInvocationError, TransportError
from pi_mqtt_digitalout.models import (
    DEFAULT_SERVICE_PREFIX,
    DIGITAL_OUT_TYPE_ID,
    DigitalOutCommand,
    ErrorKind,
    MQTTMessage,
    RPCCommandPayload,
    RPCResponsePayload,
    request_topic,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ServiceEndpoint:
    """Where a remote service lives: its identity on a board's broker."""
    identity: str
    host: str
    port: int

    def __str__(self) -> str:
        return f"'{self.identity}':mqtt -h {self.host} -p {self.port}"


class ServiceProxy:
    """
    Handle to a remote object. Each method call is one blocking round trip
    through the owning `Communicator`. A proxy only works until that
    communicator is destroyed.
    """
    type_id: Optional[str] = None

    def __init__(self, communicator: "Communicator", endpoint: ServiceEndpoint):
        self._communicator = communicator
        self._endpoint = endpoint
        self._generation = communicator.generation

    @property
    def endpoint(self) -> ServiceEndpoint:
        return self._endpoint

    def is_a(self, type_id: str) -> bool:
        return self._invoke("is_a", type_id) is True

    def _invoke(self, method: str, *args, **kwargs) -> Any:
        if self._communicator.generation != self._generation:
            raise TransportError(f"Communicator for {self._endpoint} was destroyed.")
        return self._communicator.invoke(self._endpoint, method, *args, **kwargs)


class DigitalOutControllerProxy(ServiceProxy):
    type_id = DIGITAL_OUT_TYPE_ID

    def execute(self, command: DigitalOutCommand) -> None:
        """Applies `command` on the board in a single request."""
        self._invoke("execute", **command.to_kwargs())


class Communicator:
    config: dict
    timeout: float
    service_prefix: str
    client_id_prefix: str
    username: Optional[str]
    password: Optional[str]

    _loop: Optional[asyncio.AbstractEventLoop]
    _loop_thread: Optional[threading.Thread]
    generation: int # bumped by destroy(), proxies from older generations refuse calls

    """
    Resolves service endpoints into proxies and carries their requests.
    """
    def __init__(self, config: Optional[dict] = None):
        self.config = config or {}
        mqtt_conf = self.config.get('mqtt', {})
        self.timeout = float(mqtt_conf.get('timeout', 5.0))
        self.username = mqtt_conf.get('username', None)
        self.password = mqtt_conf.get('password', None)
        self.client_id_prefix = mqtt_conf.get('client_id_prefix', 'pi-digitalout-client')
        self.service_prefix = self.config.get('service_prefix', DEFAULT_SERVICE_PREFIX)

        self._loop = None
        self._loop_thread = None
        self._loop_lock = threading.Lock()
        self.generation = 0

    # --- Resolution ---

    def string_to_proxy(self, identity: str, host: str, port: int) -> ServiceEndpoint:
        """Builds the endpoint of `identity` on the broker at host:port. No I/O."""
        return ServiceEndpoint(identity=identity, host=host, port=int(port))

    def checked_cast(self, endpoint: ServiceEndpoint, proxy_class: Type[ServiceProxy]) -> Optional[ServiceProxy]:
        """
        Asks the remote object whether it implements `proxy_class.type_id`.

        Returns a typed proxy on success and None if the object exists but has
        another type. Raises ObjectNotExistError if nothing answers to the
        identity, TransportError for any other failure.
        """
        proxy = proxy_class(self, endpoint)
        if proxy.is_a(proxy_class.type_id):
            logger.debug(f"Resolved {endpoint} as {proxy_class.type_id}")
            return proxy
        logger.debug(f"{endpoint} is not a {proxy_class.type_id}")
        return None

    def ping(self, host: str, port: int) -> None:
        """Checks that a broker accepts connections at host:port."""
        self._run(self._guard(self._probe(host, int(port)), f"{host}:{port}"))

    # --- Invocation ---

    def invoke(self, endpoint: ServiceEndpoint, method: str, *args, **kwargs) -> Any:
        """
        Calls `method` on the remote object and blocks until the response
        arrives or the transport fails.
        """
        request = RPCCommandPayload(device=endpoint.identity, method=method, args=list(args), kwargs=kwargs)
        logger.debug(f"Invoking {method} on {endpoint} with args={args} kwargs={kwargs}")
        response: RPCResponsePayload = self._run(self._guard(self._round_trip(endpoint, request), str(endpoint)))

        if response.ok:
            return response.result
        if response.error_kind == ErrorKind.OBJECT_NOT_EXIST:
            raise ObjectNotExistError(response.error or f"No object {endpoint.identity!r} on {endpoint.host}")
        raise RemoteInvocationError(f"{endpoint} failed to run '{method}': {response.error} ({response.error_kind})")

    def destroy(self):
        """
        Stops the background event loop, failing any call still in flight
        with TransportError. Proxies handed out before this point stop
        working; a later resolution starts a fresh loop.
        """
        with self._loop_lock:
            self.generation += 1
            if self._loop is None:
                return
            asyncio.run_coroutine_threadsafe(self._cancel_pending(), self._loop).result()
            self._loop.call_soon_threadsafe(self._loop.stop)
            self._loop_thread.join()
            self._loop.close()
            self._loop = None
            self._loop_thread = None
            logger.debug("Communicator event loop stopped.")

    # --- Blocking adapter ---

    def _ensure_loop(self) -> asyncio.AbstractEventLoop:
        with self._loop_lock:
            if self._loop is None:
                self._loop = asyncio.new_event_loop()
                self._loop_thread = threading.Thread(target=self._loop.run_forever, name="CommunicatorLoop", daemon=True)
                self._loop_thread.start()
                logger.debug("Communicator event loop started.")
            return self._loop

    def _run(self, coro):
        """Runs `coro` on the communicator loop and waits for its result."""
        future = asyncio.run_coroutine_threadsafe(coro, self._ensure_loop())
        try:
            return future.result()
        except concurrent.futures.CancelledError as e:
            raise TransportError("Communicator was destroyed while the call was in flight.") from e

    async def _cancel_pending(self):
        tasks = [t for t in asyncio.all_tasks() if t is not asyncio.current_task()]
        if tasks:
            logger.debug(f"Cancelling {len(tasks)} call(s) still in flight.")
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

    async def _guard(self, coro, target: str):
        """Bounds `coro` by the configured timeout and converts transport failures."""
        try:
            return await asyncio.wait_for(coro, timeout=self.timeout)
        except asyncio.TimeoutError as e:
            raise TransportError(f"No answer from {target} within {self.timeout}s") from e
        except MqttError as e:
            raise TransportError(f"MQTT error talking to {target}: {e}") from e
        except OSError as e:
            raise TransportError(f"Network error talking to {target}: {e}") from e

    # --- MQTT ---

    def _client(self, host: str, port: int, suffix: str) -> MQTTClient:
        return MQTTClient(host,
                          port,
                          protocol=ProtocolVersion.V5,
                          identifier=f"{self.client_id_prefix}-{suffix}",
                          username=self.username,
                          password=self.password)

    async def _probe(self, host: str, port: int):
        async with self._client(host, port, uuid.uuid4().hex[:8]):
            logger.debug(f"Broker at {host}:{port} is reachable")

    async def _round_trip(self, endpoint: ServiceEndpoint, request: RPCCommandPayload) -> RPCResponsePayload:
        correlation_id = uuid.uuid4().hex
        response_topic = f"{self.service_prefix}/replies/{self.client_id_prefix}-{correlation_id}"
        message = MQTTMessage(topic=request_topic(self.service_prefix, endpoint.identity),
                              message=request,
                              qos=1,
                              response_topic=response_topic,
                              correlation_data=correlation_id.encode('utf-8'))

        async with self._client(endpoint.host, endpoint.port, correlation_id[:8]) as client:
            # Subscribe before publishing, otherwise a fast reply can be lost
            await client.subscribe(response_topic, qos=1)
            await client.publish(**message.to_aiomqtt_args())

            async for reply in client.messages:
                if not reply.topic.matches(response_topic):
                    continue
                correlation = getattr(reply.properties, 'CorrelationData', None)
                if correlation is not None and correlation != message.correlation_data:
                    logger.debug(f"Ignoring reply with foreign correlation data {correlation!r}")
                    continue
                try:
                    return RPCResponsePayload.from_bytes(reply.payload)
                except (ValueError, TypeError) as e:
                    raise TransportError(f"Malformed response from {endpoint}: {e}") from e

        raise TransportError(f"Connection to {endpoint} closed before a response arrived")
