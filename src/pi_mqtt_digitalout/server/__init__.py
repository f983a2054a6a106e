"""
Board-side gatekeeper.
Serves the DigitalOutController identity over MQTT v5 RPC and
drives the four outputs through `gpiozero`.
"""
