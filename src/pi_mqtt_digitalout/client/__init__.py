"""
Client-side components for remote Python applications.
This package provides a `gpiozero`-like stub that translates
object-oriented calls into MQTT v5 RPC requests to the Pi Gatekeeper.
"""
from pi_mqtt_digitalout.client.connection import Communicator, DigitalOutControllerProxy, ServiceEndpoint
from pi_mqtt_digitalout.client.devices import DigitalOut
from pi_mqtt_digitalout.client.session import BoardSession
