"""
Board Session.

`BoardSession` is the connection context shared by all device services of
one board: it knows the board's host address and port and owns the
`Communicator` that carries requests to it.
"""
import logging
from typing import Optional

from pi_mqtt_digitalout.client.connection import Communicator
from pi_mqtt_digitalout.client.devices import DigitalOut
from pi_mqtt_digitalout.config_loader import load_config
from pi_mqtt_digitalout.errors import ConnectFailedError, TransportError
from pi_mqtt_digitalout.models import DEFAULT_PORT

logger = logging.getLogger(__name__)


class BoardSession:
    config: dict
    port: int
    communicator: Communicator
    host_address: Optional[str] # None until connect() succeeds

    def __init__(self, config: Optional[dict] = None, communicator: Optional[Communicator] = None):
        self.config = config or {}
        mqtt_conf = self.config.get('mqtt', {})
        self.port = int(mqtt_conf.get('port', DEFAULT_PORT))
        self.communicator = communicator or Communicator(self.config)
        self.host_address = None

    @classmethod
    def from_config_file(cls, config_path: str = "config.yaml") -> "BoardSession":
        return cls(config=load_config(config_path))

    @property
    def is_connected(self) -> bool:
        return self.host_address is not None

    def connect(self, host_address: str):
        """
        Connects to the board at `host_address`, dropping any previous connection.
        Raises ConnectFailedError if the board's broker cannot be reached.
        """
        self.disconnect()
        try:
            self.communicator.ping(host_address, self.port)
        except TransportError as e:
            raise ConnectFailedError(f"Failed connecting to board at {host_address}:{self.port}.") from e
        self.host_address = host_address
        logger.info(f"Connected to board at {host_address}:{self.port}")

    def disconnect(self):
        """Drops the connection. Services obtained from this session stop working."""
        if self.host_address is None:
            return
        logger.info(f"Disconnecting from board at {self.host_address}")
        self.host_address = None
        self.communicator.destroy()

    def get_digital_out_service(self) -> DigitalOut:
        return DigitalOut(self)

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.disconnect()
