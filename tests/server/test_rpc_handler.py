import concurrent.futures
import json

import pytest
from unittest.mock import MagicMock

from pi_mqtt_digitalout.models import DigitalOutCommand, ErrorKind, RPCCommandPayload, RPCResponsePayload
from pi_mqtt_digitalout.server.hardware import HardwareManager
from pi_mqtt_digitalout.server.rpc_handler import DigitalOutService, RPCHandler

"""
Tests for the RPC handler: topic mapping, request parsing, dispatch to the
DigitalOutController servant and the error responses sent back.
"""

TOPIC = "pi/services/DigitalOutController/rpc"


def done_future(result=None, exception=None) -> concurrent.futures.Future:
    future = concurrent.futures.Future()
    if exception is not None:
        future.set_exception(exception)
    else:
        future.set_result(result)
    return future


@pytest.fixture
def mock_hardware_manager(mocker):
    """HardwareManager whose submit() completes immediately."""
    manager = mocker.MagicMock(spec=HardwareManager)
    manager.submit.return_value = done_future([True, True, True, True])
    return manager


@pytest.fixture
def handler(mock_hardware_manager):
    return RPCHandler.for_hardware(mock_hardware_manager)


def request(method, *args, **kwargs) -> bytes:
    return RPCCommandPayload(device="DigitalOutController", method=method, args=list(args), kwargs=kwargs).to_bytes()


def test_subscription_covers_every_identity(handler):
    assert handler.subscription_topic == "pi/services/+/rpc"


@pytest.mark.parametrize("topic,identity", [
    (TOPIC, "DigitalOutController"),
    ("pi/services/Motor/rpc", "Motor"),
    ("pi/services//rpc", None),
    ("pi/status", None),
    ("other/DigitalOutController/rpc", None),
])
def test_identity_from_topic(handler, topic, identity):
    assert handler.identity_from_topic(topic) == identity


@pytest.mark.asyncio
async def test_is_a_answers_for_own_type(handler):
    yes = await handler.handle_request(TOPIC, request("is_a", "::pi::DigitalOutController"))
    no = await handler.handle_request(TOPIC, request("is_a", "::pi::Motor"))

    assert yes.ok and yes.result is True
    assert no.ok and no.result is False


@pytest.mark.asyncio
async def test_execute_submits_command_to_hardware(handler, mock_hardware_manager):
    response = await handler.handle_request(
        TOPIC, request("execute", mask=[False, False, True, False], values=[False, False, True, False])
    )

    assert response.ok
    assert response.result is None
    mock_hardware_manager.submit.assert_called_once_with(
        DigitalOutCommand(mask=(False, False, True, False), values=(False, False, True, False))
    )


@pytest.mark.asyncio
async def test_unknown_identity_is_object_not_exist(handler):
    response = await handler.handle_request("pi/services/Motor/rpc", request("is_a", "::pi::Motor"))

    assert not response.ok
    assert response.error_kind == ErrorKind.OBJECT_NOT_EXIST


@pytest.mark.asyncio
async def test_unknown_operation(handler):
    response = await handler.handle_request(TOPIC, request("read_outputs"))

    assert response.error_kind == ErrorKind.OPERATION_NOT_EXIST


@pytest.mark.asyncio
@pytest.mark.parametrize("payload", [b"not json", b"[1, 2]", json.dumps({"device": "x"}).encode()])
async def test_malformed_request_is_bad_request(handler, payload):
    response = await handler.handle_request(TOPIC, payload)

    assert response.error_kind == ErrorKind.BAD_REQUEST


@pytest.mark.asyncio
async def test_wrongly_sized_mask_is_bad_request(handler, mock_hardware_manager):
    response = await handler.handle_request(TOPIC, request("execute", mask=[True], values=[True]))

    assert response.error_kind == ErrorKind.BAD_REQUEST
    mock_hardware_manager.submit.assert_not_called()


@pytest.mark.asyncio
async def test_non_bool_entries_are_bad_request(handler, mock_hardware_manager):
    response = await handler.handle_request(TOPIC, request("execute", mask=[1, 1, 1, 1], values=["on", 0, None, True]))

    assert response.error_kind == ErrorKind.BAD_REQUEST
    mock_hardware_manager.submit.assert_not_called()


@pytest.mark.asyncio
async def test_missing_arguments_is_bad_request(handler):
    response = await handler.handle_request(TOPIC, request("execute", mask=[True] * 4))

    assert response.error_kind == ErrorKind.BAD_REQUEST


@pytest.mark.asyncio
async def test_hardware_failure_is_execution_failed(handler, mock_hardware_manager):
    mock_hardware_manager.submit.return_value = done_future(exception=OSError("pin fault"))

    response = await handler.handle_request(TOPIC, request("execute", mask=[True] * 4, values=[True] * 4))

    assert response.error_kind == ErrorKind.EXECUTION_FAILED
    assert "pin fault" in response.error


def test_build_reply_echoes_correlation_data(handler):
    response = RPCResponsePayload.success()

    reply = handler.build_reply(response, "pi/services/replies/abc", b"abc")

    assert reply.topic == "pi/services/replies/abc"
    assert reply.message is response
    assert reply.correlation_data == b"abc"
    assert reply.to_aiomqtt_args()["properties"].CorrelationData == b"abc"


@pytest.mark.asyncio
async def test_service_waits_for_hardware_worker():
    manager = HardwareManager(config={})
    manager.initialize_gpio_devices()
    manager.start_worker_thread()
    try:
        await DigitalOutService(manager).execute([True, False, True, False], [True, True, True, True])
        assert manager.output_states() == [True, False, True, False]
    finally:
        manager.stop_worker_thread()
        manager.close_gpio_devices()
