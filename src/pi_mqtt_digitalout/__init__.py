"""
pi_mqtt_digitalout

This package controls the four digital outputs of a Raspberry Pi board
over MQTT v5 request/response: a synchronous client (`client`) and the
board-side gatekeeper that drives the outputs with `gpiozero` (`server`).
"""
__version__ = "0.1.0"
