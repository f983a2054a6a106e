"""
MQTT Connection Management for the Gatekeeper.

This module is responsible for:
- Connecting to the board's MQTT broker with `aiomqtt` (MQTT v5).
- Announcing the board status (retained, with an `offline` Last Will).
- Subscribing to the RPC request topics and handing each request to the `RPCHandler`.
- Publishing responses through a single outbound queue.
"""
import asyncio
import logging
from typing import Optional
from pi_mqtt_digitalout.models import MQTTMessage, SystemStatus, SystemStatusPayload
from pi_mqtt_digitalout.server.rpc_handler import RPCHandler
from aiomqtt import Client as MQTTClient, MqttError, ProtocolVersion, Will

logger = logging.getLogger(__name__)

class MQTTManager:
    outbound_queue: asyncio.Queue
    rpc_handler: RPCHandler
    config: dict
    host: str
    port: int
    _main_task: Optional[asyncio.Task]
    _request_tasks: set
    username: Optional[str]
    password: Optional[str]
    client_id: str
    status_topic: str

    """
    Manages the lifecycle of the gatekeeper's MQTT connection.
    """
    def __init__(self, outbound_queue: asyncio.Queue, rpc_handler: RPCHandler, config: dict):
        self.outbound_queue = outbound_queue
        self.rpc_handler = rpc_handler

        # Configuration extraction with defaults
        self.config = config
        mqtt_conf = self.config.get('mqtt', {})
        self.host = mqtt_conf.get('host', 'localhost')
        self.port = int(mqtt_conf.get('port', 1883)) # Must be int

        # Identity & Auth
        self.client_id = mqtt_conf.get('client_id', 'pi-gatekeeper')
        self.username = mqtt_conf.get('username', None)
        self.password = mqtt_conf.get('password', None)
        self.status_topic = self.config.get('status_topic', 'pi/status')  # Last Will status

        # Internal state
        self._main_task = None
        self._request_tasks = set()

    async def start(self):
        """
        Launches the main MQTT loop in the background.
        """
        logger.info(f"Starting MQTT Manager, connecting to {self.host}:{self.port}...")
        self._main_task = asyncio.create_task(self._main_loop())

    async def stop(self):
        """
        Cancels the main loop, which closes the connection.
        """
        if self._main_task:
            logger.info("Stopping MQTT Manager...")
            self._main_task.cancel()
            try:
                await self._main_task
            except asyncio.CancelledError:
                logger.info("MQTT Manager stopped gracefully.")
            except Exception as e:
                logger.error(f"Error during MQTT stop: {e}")

    async def _main_loop(self):
        """
        The persistent connection loop. Reconnects after 5s whenever the
        connection drops.
        """
        # If we crash, the broker sets pi/status = "offline" (retained)
        last_will = Will(
            topic=self.status_topic,
            payload=SystemStatusPayload(status=SystemStatus.OFFLINE).to_bytes(),
            qos=1,
            retain=True
        )

        while True:
            try:
                # The connection is ONLY valid inside this block
                async with MQTTClient(  self.host,
                                        self.port,
                                        protocol=ProtocolVersion.V5,
                                        identifier=self.client_id,
                                        username=self.username,
                                        password=self.password,
                                        will=last_will) as client:
                    await client.subscribe(self.rpc_handler.subscription_topic, qos=1)
                    await client.publish(self.status_topic, payload=SystemStatusPayload(status=SystemStatus.ONLINE).to_bytes(), qos=1, retain=True)
                    logger.info(f"Connected to broker as {self.client_id}! Status: online, serving '{self.rpc_handler.subscription_topic}'")

                    await self._serve_connection(client)

            except asyncio.CancelledError:
                raise # Let the stop() method handle this
            except MqttError as e:
                logger.error(f"MQTT Connection lost: {e}. Retrying in 5s...")
                await asyncio.sleep(5)

    async def _serve_connection(self, client: MQTTClient):
        """Runs the listener and the publisher until either of them stops."""
        tasks = {
            asyncio.create_task(self._listener_loop(client), name="rpc-listener"),
            asyncio.create_task(self._publisher_loop(client), name="rpc-publisher"),
        }
        try:
            done, _ = await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
            for task in done:
                task.result() # re-raise the failure that ended the connection
        finally:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)

    async def _listener_loop(self, client: MQTTClient):
        async for message in client.messages:
            self.handle_message(message.topic.value, message.payload, message.properties)

    def handle_message(self, topic: str, payload: bytes, properties) -> Optional[asyncio.Task]:
        """
        Starts serving one request in the background. Requests without a
        response topic cannot be answered and are dropped.
        """
        response_topic = getattr(properties, 'ResponseTopic', None)
        if not response_topic:
            logger.warning(f"Dropping request on '{topic}' without a response topic")
            return None
        correlation_data = getattr(properties, 'CorrelationData', None)

        task = asyncio.create_task(self._serve_request(topic, payload, response_topic, correlation_data))
        self._request_tasks.add(task)
        task.add_done_callback(self._request_tasks.discard)
        return task

    async def _serve_request(self, topic: str, payload: bytes, response_topic: str, correlation_data: Optional[bytes]):
        response = await self.rpc_handler.handle_request(topic, payload)
        self.publish(self.rpc_handler.build_reply(response, response_topic, correlation_data))

    async def _publisher_loop(self, client: MQTTClient):
        """The background worker that pushes responses and status updates out."""
        while True:
            message: MQTTMessage = await self.outbound_queue.get()
            try:
                await client.publish(**message.to_aiomqtt_args())
                logger.debug(f"Published to topic '{message.topic}': {message.message.to_json()}")
            finally:
                self.outbound_queue.task_done()

    def publish(self, message: MQTTMessage):
        """
        Queues `message` for the publisher loop. Must be called from the event loop thread.
        """
        logger.debug(f"Request to publish: {message}")
        self.outbound_queue.put_nowait(message)

    def publish_status(self, status: SystemStatus):
        self.publish(MQTTMessage(topic=self.status_topic,
                                 message=SystemStatusPayload(status=status),
                                 qos=1,
                                 retain=True))
