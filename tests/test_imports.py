"""
Verify package structure and module imports.
Ensures that the core application modules can be imported without syntax errors,
confirming correct package setup and path configuration.
"""

def test_server_imports():
    """Assert that the server modules can be imported without syntax errors."""
    try:
        import pi_mqtt_digitalout.server.main
        import pi_mqtt_digitalout.server.mqtt
        import pi_mqtt_digitalout.server.hardware
        import pi_mqtt_digitalout.server.rpc_handler
        success = True
    except ImportError as e:
        success = False
        print(f"Server Import Failed: {e}")

    assert success is True


def test_client_imports():
    """Assert that the client modules can be imported without syntax errors."""
    try:
        import pi_mqtt_digitalout.client.connection
        import pi_mqtt_digitalout.client.devices
        import pi_mqtt_digitalout.client.session
        success = True
    except ImportError as e:
        success = False
        print(f"Client Import Failed: {e}")

    assert success is True


def test_client_package_exports():
    from pi_mqtt_digitalout.client import BoardSession, DigitalOut, Communicator

    assert BoardSession.__module__ == "pi_mqtt_digitalout.client.session"
    assert DigitalOut.__module__ == "pi_mqtt_digitalout.client.devices"
    assert Communicator.__module__ == "pi_mqtt_digitalout.client.connection"
