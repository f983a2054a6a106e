"""
MQTT v5 RPC Request Handler.

This module is responsible for:
- Mapping request topics (`{service_prefix}/{identity}/rpc`) to servants.
- Parsing RPC payloads and dispatching the requested operation.
- Handing hardware work to the `HardwareManager`'s command queue.
- Turning every outcome, including failures, into an `RPCResponsePayload`
  that the `MQTTManager` publishes back to the requesting client.
"""
import asyncio
import logging
from typing import Optional

from pi_mqtt_digitalout.errors import InvalidArgumentError
from pi_mqtt_digitalout.models import (
    DEFAULT_SERVICE_PREFIX,
    DIGITAL_OUT_IDENTITY,
    DIGITAL_OUT_TYPE_ID,
    DigitalOutCommand,
    ErrorKind,
    MQTTMessage,
    RPCCommandPayload,
    RPCResponsePayload,
    request_topic,
)
from pi_mqtt_digitalout.server.hardware import HardwareManager

logger = logging.getLogger(__name__)


class DigitalOutService:
    """Servant behind the DigitalOutController identity."""
    type_id = DIGITAL_OUT_TYPE_ID
    operations = frozenset({"is_a", "execute"})

    def __init__(self, hardware_manager: HardwareManager):
        self.hardware_manager = hardware_manager

    async def is_a(self, type_id: str) -> bool:
        return type_id == self.type_id

    async def execute(self, mask: list, values: list) -> None:
        command = DigitalOutCommand.from_sequences(mask, values)
        await asyncio.wrap_future(self.hardware_manager.submit(command))


class RPCHandler:
    """
    Dispatches incoming MQTT v5 RPC requests to the registered servants.
    """
    def __init__(self, services: dict, service_prefix: str = DEFAULT_SERVICE_PREFIX):
        self.services = services
        self.service_prefix = service_prefix

    @classmethod
    def for_hardware(cls, hardware_manager: HardwareManager, service_prefix: str = DEFAULT_SERVICE_PREFIX) -> "RPCHandler":
        return cls({DIGITAL_OUT_IDENTITY: DigitalOutService(hardware_manager)}, service_prefix)

    @property
    def subscription_topic(self) -> str:
        """Wildcard covering the request topic of every identity, known or not."""
        return request_topic(self.service_prefix, "+")

    def identity_from_topic(self, topic: str) -> Optional[str]:
        prefix = self.service_prefix + "/"
        if not topic.startswith(prefix) or not topic.endswith("/rpc"):
            return None
        identity = topic[len(prefix):-len("/rpc")]
        return identity or None

    async def handle_request(self, topic: str, payload: bytes) -> RPCResponsePayload:
        """
        Runs one request to completion. Never raises, failures become error responses.
        """
        identity = self.identity_from_topic(topic)
        servant = self.services.get(identity)
        if servant is None:
            logger.warning(f"Request for unknown object '{identity}' on topic '{topic}'")
            return RPCResponsePayload.failure(ErrorKind.OBJECT_NOT_EXIST, f"No object '{identity}' on this board")

        try:
            request = RPCCommandPayload.from_bytes(payload)
        except (ValueError, TypeError) as e:
            logger.error(f"Malformed request on '{topic}': {e}")
            return RPCResponsePayload.failure(ErrorKind.BAD_REQUEST, f"Malformed request: {e}")

        if request.method not in servant.operations:
            return RPCResponsePayload.failure(ErrorKind.OPERATION_NOT_EXIST,
                                              f"'{identity}' has no operation '{request.method}'")

        operation = getattr(servant, request.method)
        try:
            logger.debug(f"Dispatching {identity}.{request.method} args={request.args} kwargs={request.kwargs}")
            result = await operation(*request.args, **request.kwargs)
        except (InvalidArgumentError, TypeError) as e:
            logger.error(f"Rejected {identity}.{request.method}: {e}")
            return RPCResponsePayload.failure(ErrorKind.BAD_REQUEST, str(e))
        except Exception as e:
            logger.error(f"Error executing {identity}.{request.method}: {e}")
            return RPCResponsePayload.failure(ErrorKind.EXECUTION_FAILED, str(e))

        return RPCResponsePayload.success(result)

    def build_reply(self, response: RPCResponsePayload, response_topic: str,
                    correlation_data: Optional[bytes]) -> MQTTMessage:
        """Wraps `response` for the requester, echoing its correlation data."""
        return MQTTMessage(topic=response_topic,
                           message=response,
                           qos=1,
                           correlation_data=correlation_data)
