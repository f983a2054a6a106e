"""
Hardware Management and the Async/Sync Bridge.

This module contains the `HardwareManager` class, which is the core
of the board-side concurrency model. It is responsible for:
- Initializing and holding the four `gpiozero` digital output devices.
- Managing the Command Queue (network -> hardware) for sequential execution.
- Running the single, dedicated worker thread for synchronous hardware operations.
- Handing each caller a `concurrent.futures.Future` that completes once its
  command has been applied, so the asyncio side can await it.
"""
import concurrent.futures
import logging as log
import queue
import threading
from dataclasses import dataclass, field

# On a Pi this uses the default pin factory. Tests install gpiozero's MockFactory.
from gpiozero import DigitalOutputDevice
from pi_mqtt_digitalout.models import NUM_OUTPUTS, DigitalOutCommand

DEFAULT_OUTPUT_PINS = [17, 18, 27, 22]

logger = log.getLogger(__name__)


@dataclass
class QueuedCommand:
    command: DigitalOutCommand
    future: concurrent.futures.Future = field(default_factory=concurrent.futures.Future)


class HardwareManager:
    config: dict
    outputs: list[DigitalOutputDevice] # output i drives channel i

    # To make sure hardware is accessed sequentially and safely, we use a standard `queue.Queue` for commands.
    # This allows the worker thread to block on `get()` while the asyncio side can continue to enqueue commands without blocking.
    inbound_command_queue: queue.Queue

    _worker_thread: threading.Thread | None
    _worker_running: threading.Event

    """
    Manages the gpiozero outputs and the bridge between asyncio and synchronous hardware operations.
    """
    def __init__(self, config: dict):
        self.config = config
        self.outputs = []
        self.inbound_command_queue = queue.Queue()
        self._worker_thread = None
        self._worker_running = threading.Event()

    def initialize_gpio_devices(self):
        """
        Creates one gpiozero output per configured pin, all switched off.
        Exactly four pins are required.
        """
        pins = self.config.get("outputs", DEFAULT_OUTPUT_PINS)
        if len(pins) != NUM_OUTPUTS:
            raise ValueError(f"Expected {NUM_OUTPUTS} output pins, got {len(pins)}: {pins}")

        for channel, pin in enumerate(pins):
            try:
                self.outputs.append(DigitalOutputDevice(pin, initial_value=False))
                logger.info(f"Initialized output {channel} on Pin {pin}")
            except Exception as e:
                logger.error(f"Failed to initialize output {channel} on Pin {pin}: {e}")
                self.close_gpio_devices()
                raise

    def close_gpio_devices(self):
        for device in self.outputs:
            device.close()
        self.outputs = []

    def output_states(self) -> list[bool]:
        return [bool(device.value) for device in self.outputs]

    def start_worker_thread(self):
        """
        Starts the dedicated synchronous worker thread if it's not already running.
        """
        if self._worker_thread is None or not self._worker_thread.is_alive():
            self._worker_running.set() # Allow the worker loop to run
            self._worker_thread = threading.Thread(target=self._worker_loop, name="HardwareWorker", daemon=True)
            self._worker_thread.start()
            logger.info("Hardware worker thread started.")
        else:
            logger.warning("Attempted to start worker thread, but it's already running.")

    def stop_worker_thread(self):
        """
        Signals the worker thread to stop, waits for it to finish and fails
        any command still waiting in the queue.
        """
        if self._worker_thread and self._worker_thread.is_alive():
            self._worker_running.clear() # Signal the worker loop to stop
            self.inbound_command_queue.put(None) # Sentinel value to unblock the worker if it's waiting
            self._worker_thread.join()
            logger.info("Hardware worker thread stopped.")
        else:
            logger.warning("Attempted to stop worker thread, but it was not running.")

        while True:
            try:
                pending = self.inbound_command_queue.get_nowait()
            except queue.Empty:
                break
            if pending is not None and pending.future.set_running_or_notify_cancel():
                pending.future.set_exception(RuntimeError("Hardware worker stopped before executing the command."))
            self.inbound_command_queue.task_done()

    def submit(self, command: DigitalOutCommand) -> concurrent.futures.Future:
        """
        Queues `command` for the worker thread. The returned future resolves to
        the output states after the command, or carries the execution error.
        """
        if not self._worker_running.is_set():
            raise RuntimeError("Hardware worker thread is not running.")
        queued = QueuedCommand(command=command)
        self.inbound_command_queue.put(queued)
        return queued.future

    def _worker_loop(self):
        """
        The main loop for the synchronous hardware worker thread.
        It continuously pulls commands from the command queue and executes them.
        """
        logger.info("Hardware worker loop has started.")

        while self._worker_running.is_set():
            try:
                # timeout so is_set() can be checked regularly for shutdown
                queued = self.inbound_command_queue.get(timeout=0.1)
            except queue.Empty:
                continue

            if queued is None: # Sentinel value for shutdown
                logger.info("Worker loop received shutdown signal. Unblocking...")
                self.inbound_command_queue.task_done()
                break

            if not queued.future.set_running_or_notify_cancel():
                logger.info("Skipping command cancelled by its requester.")
                self.inbound_command_queue.task_done()
                continue

            try:
                states = self._execute_command(queued.command)
            except Exception as e:
                logger.error(f"Error executing command: {e}")
                queued.future.set_exception(e)
            else:
                queued.future.set_result(states)

            # We got a command, so we MUST mark it done regardless of the outcome
            self.inbound_command_queue.task_done()

        logger.info("Hardware worker loop has stopped.")

    def _execute_command(self, command: DigitalOutCommand) -> list[bool]:
        """
        Applies one mask command. Runs on the worker thread only, so no other
        command can interleave with it.
        """
        if len(self.outputs) != NUM_OUTPUTS:
            raise RuntimeError("Outputs are not initialized.")

        logger.debug(f"Applying mask={command.mask} values={command.values}")
        for channel, (apply, value) in enumerate(zip(command.mask, command.values)):
            if apply:
                self.outputs[channel].value = value
        states = self.output_states()
        logger.debug(f"Output states are now {states}")
        return states
