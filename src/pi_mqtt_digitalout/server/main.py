"""
Main entry point for the Raspberry Pi MQTT Digital Out Gatekeeper.

This module is responsible for:
- Parsing configuration (from a YAML file).
- Initializing the HardwareManager and its four outputs.
- Wiring the RPCHandler and the MQTTManager together.
- Managing the overall application lifecycle (start, stop).
"""

import argparse
import asyncio
import logging
import signal

from pathlib import Path
from typing import Dict, Any

from pi_mqtt_digitalout.config_loader import load_config
from pi_mqtt_digitalout.models import DEFAULT_SERVICE_PREFIX, SystemStatus
from pi_mqtt_digitalout.server.hardware import HardwareManager
from pi_mqtt_digitalout.server.mqtt import MQTTManager
from pi_mqtt_digitalout.server.rpc_handler import RPCHandler

DEFAULT_CONFIG_PATH = Path(__file__).parent / "config.yaml"

def setup_logging():
    """
    Configures the global logging settings for the entire application.
    This should be called as early as possible during startup.
    """
    logging.basicConfig(
        level=logging.INFO,
        format='%(asctime)s [%(levelname)-8s] %(name)s.%(funcName)s: %(message)s'
    )

logger = logging.getLogger(__name__)

async def shutdown(signal_name: str, mqtt_manager: MQTTManager, hardware_manager: HardwareManager):
    """Graceful shutdown handler."""
    logger.info(f"Received exit signal {signal_name}...")

    # The Last Will is not delivered on a clean disconnect, so announce 'offline' ourselves
    mqtt_manager.publish_status(SystemStatus.OFFLINE)
    logger.info(f"Publishing offline status to {mqtt_manager.status_topic} before stopping services...")

    await asyncio.sleep(0.1) # Give it a moment to publish before we tear down the connection

    # Stop MQTT Manager (Async)
    await mqtt_manager.stop()

    # Stop Hardware Manager (Sync), then release the pins
    hardware_manager.stop_worker_thread()
    hardware_manager.close_gpio_devices()

    # Cancel all remaining tasks (in-flight requests and the runner itself, which ends asyncio.run)
    tasks = [t for t in asyncio.all_tasks() if t is not asyncio.current_task()]
    for task in tasks:
        task.cancel()

    # Await cancellation to finish safely
    await asyncio.gather(*tasks, return_exceptions=True)
    logger.info("Gatekeeper stopped.")

async def main_application_runner(config_path: str | Path = DEFAULT_CONFIG_PATH):
    logger.info("Starting Gatekeeper...")

    config: Dict[str, Any] = load_config(config_path)

    loop = asyncio.get_running_loop()

    hardware_manager = HardwareManager(config=config)
    hardware_manager.initialize_gpio_devices()
    hardware_manager.start_worker_thread()

    rpc_handler = RPCHandler.for_hardware(hardware_manager, config.get('service_prefix', DEFAULT_SERVICE_PREFIX))
    mqtt_manager = MQTTManager(outbound_queue=asyncio.Queue(), rpc_handler=rpc_handler, config=config)
    await mqtt_manager.start() # Starts the MQTT loop in the background

    # Setup Signal Handlers for OS interrupts
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(
            sig,
            lambda s=sig: asyncio.create_task(shutdown(s.name, mqtt_manager, hardware_manager))
        )

    logger.info("Gatekeeper is fully operational. Press Ctrl+C to exit.")

    try:
        await asyncio.Future()
    except asyncio.CancelledError:
        pass

def run():
    """Console script entry point."""
    parser = argparse.ArgumentParser(description="Serve the board's digital outputs over MQTT v5 RPC.")
    parser.add_argument("-c", "--config", default=str(DEFAULT_CONFIG_PATH), help="Path to the YAML config file")
    args = parser.parse_args()

    setup_logging()
    try:
        asyncio.run(main_application_runner(args.config))
    except KeyboardInterrupt:
        # Handled by the signal handler, but good to catch here just in case.
        pass

if __name__ == "__main__":
    run()
