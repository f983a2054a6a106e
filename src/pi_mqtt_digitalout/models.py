"""
Data Models for Internal Communication and MQTT Payloads.

Defines a hierarchy of models to ensure consistency between the
client stubs, the RPC handler and the hardware layer.
"""
from dataclasses import dataclass, field, asdict
import json
from typing import Any, Dict, List, Optional, Sequence, Tuple
import time

from enum import Enum

from paho.mqtt.packettypes import PacketTypes
from paho.mqtt.properties import Properties

from pi_mqtt_digitalout.errors import InvalidArgumentError

# The board exposes exactly four digital outputs, numbered 0..3
NUM_OUTPUTS = 4

DIGITAL_OUT_IDENTITY = "DigitalOutController"
DIGITAL_OUT_TYPE_ID = "::pi::DigitalOutController"

DEFAULT_PORT = 1883
DEFAULT_SERVICE_PREFIX = "pi/services"


def request_topic(service_prefix: str, identity: str) -> str:
    """Topic a service with the given identity listens on for RPC requests."""
    return f"{service_prefix}/{identity}/rpc"


class SystemStatus(str, Enum):
    ONLINE = "online"
    OFFLINE = "offline"
    SHUTTING_DOWN = "shutting_down"


class ErrorKind(str, Enum):
    OBJECT_NOT_EXIST = "object_not_exist"
    OPERATION_NOT_EXIST = "operation_not_exist"
    BAD_REQUEST = "bad_request"
    EXECUTION_FAILED = "execution_failed"

# --- Base Classes (The "Blueprints") ---

@dataclass(frozen=True, kw_only=True)
class BasePayload:
    """Base class for all JSON payloads sent over MQTT."""
    timestamp: float = field(default_factory=time.time)

    def to_json(self) -> str:
        """Converts the object to a JSON string."""
        return json.dumps(asdict(self))

    def to_bytes(self) -> bytes:
        """Converts the object to UTF-8 encoded bytes for MQTT."""
        return self.to_json().encode('utf-8')

    @classmethod
    def from_bytes(cls, payload: bytes):
        """
        Builds the payload from raw MQTT bytes.
        Raises ValueError (or TypeError for unexpected keys) on malformed input.
        """
        data = json.loads(payload.decode('utf-8'))
        if not isinstance(data, dict):
            raise ValueError(f"Expected a JSON object, got {type(data).__name__}")
        return cls(**data)

# --- The "Letters" (Content Variants) ---

@dataclass(frozen=True, kw_only=True)
class SystemStatusPayload(BasePayload):
    """Payload representing the board's availability."""
    status: SystemStatus = field(default=SystemStatus.ONLINE)

@dataclass(frozen=True, kw_only=True)
class RPCCommandPayload(BasePayload):
    """Payload representing a command request from a client."""
    device: str
    method: str
    args: List[Any] = field(default_factory=list)
    kwargs: Dict[str, Any] = field(default_factory=dict)

@dataclass(frozen=True, kw_only=True)
class RPCResponsePayload(BasePayload):
    """Payload answering an RPCCommandPayload."""
    ok: bool
    result: Any = None
    error: Optional[str] = None
    error_kind: Optional[ErrorKind] = None

    @classmethod
    def success(cls, result: Any = None) -> "RPCResponsePayload":
        return cls(ok=True, result=result)

    @classmethod
    def failure(cls, kind: ErrorKind, error: str) -> "RPCResponsePayload":
        return cls(ok=False, error=error, error_kind=kind)

# --- Commands ---

@dataclass(frozen=True)
class DigitalOutCommand:
    """
    One atomic update of the board's digital outputs.

    `mask[i]` selects whether output i is touched at all, `values[i]`
    is the state it is set to. Unmasked values are ignored.
    """
    mask: Tuple[bool, bool, bool, bool]
    values: Tuple[bool, bool, bool, bool]

    @classmethod
    def from_sequences(cls, mask: Sequence[bool], values: Sequence[bool]) -> "DigitalOutCommand":
        try:
            lengths = (len(mask), len(values))
        except TypeError as e:
            raise InvalidArgumentError("Outputs' mask and states must both be sequences.") from e
        if lengths != (NUM_OUTPUTS, NUM_OUTPUTS):
            raise InvalidArgumentError(
                f"Incorrect length of outputs' mask or states array, expected {NUM_OUTPUTS} "
                f"(got {lengths[0]} and {lengths[1]})."
            )
        mask, values = tuple(mask), tuple(values)
        for name, entries in (("mask", mask), ("states", values)):
            if not all(isinstance(entry, bool) for entry in entries):
                raise InvalidArgumentError(f"Outputs' {name} must only hold bools (got {list(entries)!r}).")
        return cls(mask=mask, values=values)

    def to_kwargs(self) -> Dict[str, List[bool]]:
        """Keyword arguments of the remote `execute` operation."""
        return {"mask": list(self.mask), "values": list(self.values)}

# --- The "Envelope" (The MQTT Context) ---

@dataclass(frozen=True)
class MQTTMessage:
    """
    Represents a full MQTT message (Envelope + Letter).

    The parameter names match aiomqtt's `Client.publish`, so the result of
    `to_aiomqtt_args` can be passed straight through.
    """
    topic: str
    message: BasePayload
    qos: int = 0
    retain: bool = False

    # MQTT v5 Properties
    response_topic: Optional[str] = None
    correlation_data: Optional[bytes] = None

    def to_aiomqtt_args(self) -> Dict[str, Any]:
        """Returns dict suitable for client.publish(**args)"""
        args = {
            "topic": self.topic,
            "payload": self.message.to_bytes(), # aiomqtt uses 'payload', not 'message'
            "qos": self.qos,
            "retain": self.retain,
        }
        if self.response_topic or self.correlation_data:
            properties = Properties(PacketTypes.PUBLISH)
            if self.response_topic:
                properties.ResponseTopic = self.response_topic
            if self.correlation_data:
                properties.CorrelationData = self.correlation_data
            args["properties"] = properties
        return args
