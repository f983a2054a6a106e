"""
Remote Device Stubs.

`DigitalOut` gives synchronous, `gpiozero`-flavoured access to the board's
four digital outputs. Every call is validated locally and then translated
into one `execute` request on the board's DigitalOutController service.
"""
import logging
from typing import Optional, Sequence, Union

from pi_mqtt_digitalout.client.connection import DigitalOutControllerProxy
from pi_mqtt_digitalout.errors import (
    ConnectFailedError,
    ConnectionLostError,
    InvalidArgumentError,
    NotConnectedError,
    ObjectNotExistError,
    ServiceUnavailableError,
    TransportError,
)
from pi_mqtt_digitalout.models import DIGITAL_OUT_IDENTITY, NUM_OUTPUTS, DigitalOutCommand

logger = logging.getLogger(__name__)


class DigitalOut:
    """
    Provides access to the board's digital outputs.

    Sample usage::

        with BoardSession() as session:
            session.connect("10.0.0.5")
            outputs = session.get_digital_out_service()
            # disable all outputs
            outputs.set_outputs(False)
            # enable output 0
            outputs.set_output(0, True)
            # enable outputs 2 and 3, leave 0 and 1 untouched
            outputs.set_outputs([False, False, True, True], [False, False, True, True])

    The instance keeps no output state; the board is the only source of truth.
    Calls are not synchronized, share one instance between threads only
    behind an external lock.
    """
    _controller: Optional[DigitalOutControllerProxy]

    def __init__(self, session):
        """
        Resolves the DigitalOutController service of the board `session` is connected to.

        Raises:
            NotConnectedError: the session is not connected to a board.
            ServiceUnavailableError: the board does not offer the service.
            ConnectFailedError: the service could not be reached.
        """
        self._controller = None

        host_address = session.host_address
        if host_address is None:
            raise NotConnectedError("Board session is not connected to a board.")

        communicator = session.communicator
        endpoint = communicator.string_to_proxy(DIGITAL_OUT_IDENTITY, host_address, session.port)
        try:
            controller = communicator.checked_cast(endpoint, DigitalOutControllerProxy)
        except ObjectNotExistError as e:
            # the object does not exist on the host
            raise ServiceUnavailableError("Failed accessing the requested service.") from e
        except TransportError as e:
            raise ConnectFailedError("Failed connecting to the requested service.") from e

        if controller is None:
            raise ServiceUnavailableError("Failed accessing the requested service.")

        self._controller = controller
        logger.debug(f"Digital out service ready at {endpoint}")

    def set_output(self, channel: int, state: bool):
        """
        Sets the state of a single output, leaving the other three untouched.

        Raises InvalidArgumentError unless `channel` is in [0, 3] and `state`
        is a bool.
        """
        if isinstance(channel, bool) or not isinstance(channel, int) or not 0 <= channel < NUM_OUTPUTS:
            raise InvalidArgumentError(f"Invalid output {channel!r} is specified, expected 0..{NUM_OUTPUTS - 1}.")
        if not isinstance(state, bool):
            raise InvalidArgumentError(f"Output state must be a bool (got {state!r}).")

        mask = [False] * NUM_OUTPUTS
        values = [False] * NUM_OUTPUTS
        mask[channel] = True
        values[channel] = state

        self.set_outputs(mask, values)

    def set_outputs(self, state_or_mask: Union[bool, Sequence[bool]], values: Optional[Sequence[bool]] = None):
        """
        Sets several outputs in one atomic command.

        ``set_outputs(state)`` drives all four outputs to `state`.
        ``set_outputs(mask, values)`` sets output i to ``values[i]`` wherever
        ``mask[i]`` is true and leaves the rest unchanged. Both sequences
        must hold exactly four entries.

        Raises:
            InvalidArgumentError: bad state, mask or values.
            NotConnectedError: no resolved service.
            ConnectionLostError: the command could not be delivered; which
                outputs changed, if any, is unknown.
        """
        if values is None:
            if not isinstance(state_or_mask, bool):
                raise InvalidArgumentError("A uniform state must be a bool; pass both mask and values for a masked update.")
            mask = [True] * NUM_OUTPUTS
            values = [state_or_mask] * NUM_OUTPUTS
        else:
            mask = state_or_mask

        command = DigitalOutCommand.from_sequences(mask, values)

        if self._controller is None:
            raise NotConnectedError("Digital out service is not connected.")

        logger.debug(f"Executing digital out command mask={command.mask} values={command.values}")
        try:
            self._controller.execute(command)
        except TransportError as e:
            raise ConnectionLostError("Connection to the board is lost.") from e
