import json

import pytest
import serial

import config
from connection_manager import ConnectionManager, connect_with_retry, encode_colors, frame_usb
from errors import ConnectionFailed, ProtocolMismatch


class FakeSerial:
    """Serial port double that replies from a canned list of lines."""

    def __init__(self, replies=(), fail_writes=False):
        self.replies = list(replies)
        self.written = []
        self.fail_writes = fail_writes
        self.closed = False

    def __call__(self, port, baud, **kwargs):
        self.port = port
        self.baud = baud
        return self

    def reset_input_buffer(self):
        pass

    def write(self, data):
        if self.fail_writes:
            raise serial.SerialException("device reports readiness to read but returned no data")
        self.written.append(data)

    def readline(self):
        return self.replies.pop(0).encode() + b"\n" if self.replies else b""

    def close(self):
        self.closed = True


def info(led_count=6, protocol=config.PROTOCOL_VERSION):
    return json.dumps({"type": "info", "ledCount": led_count, "protocol": protocol})


def usb_manager(port):
    manager = ConnectionManager(serial_factory=port)
    manager.connect_usb("/dev/ttyUSB0", reset_delay=0)
    return manager


class TestFraming:

    def test_encode_colors_is_flat_rgb(self):
        assert encode_colors([(1, 2, 3), (4, 5, 6)]) == bytes([1, 2, 3, 4, 5, 6])

    def test_usb_frame_has_magic_and_xor_checksum(self):
        frame = frame_usb(bytes([0x10, 0x01, 0xFF]))
        assert frame[:2] == bytes([config.MAGIC_BYTE_1, config.MAGIC_BYTE_2])
        assert frame[2:5] == bytes([0x10, 0x01, 0xFF])
        assert frame[-1] == 0x10 ^ 0x01 ^ 0xFF

    def test_empty_payload_checksum_is_zero(self):
        assert frame_usb(b"") == bytes([0xAD, 0xDA, 0])


class TestUsbHandshake:

    def test_reads_led_count(self):
        port = FakeSerial([info(60)])
        manager = usb_manager(port)
        assert manager.connected
        assert manager.led_count == 60
        assert json.loads(port.written[0]) == {"cmd": "info"}

    def test_ready_without_led_count_is_rejected(self):
        port = FakeSerial(['{"type":"ready"}'])
        with pytest.raises(ProtocolMismatch, match="ledCount"):
            usb_manager(port)

    def test_retries_silent_device(self):
        port = FakeSerial(["", info(8)])
        manager = usb_manager(port)
        assert manager.led_count == 8
        assert len(port.written) == 2

    def test_garbage_reply_is_protocol_mismatch(self):
        port = FakeSerial(["ets Jun  8 2016 00:22:57"] * 3)
        with pytest.raises(ProtocolMismatch, match="unexpected reply"):
            usb_manager(port)
        assert port.closed

    def test_newer_protocol_is_rejected(self):
        with pytest.raises(ProtocolMismatch, match="protocol"):
            usb_manager(FakeSerial([info(protocol=config.PROTOCOL_VERSION + 1)]))

    def test_led_count_override_without_info(self):
        manager = ConnectionManager(serial_factory=FakeSerial())
        manager.connect_usb("/dev/ttyUSB0", led_count=30, reset_delay=0)
        assert manager.led_count == 30

    def test_led_count_override_wins(self):
        manager = ConnectionManager(serial_factory=FakeSerial([info(60)]))
        manager.connect_usb("/dev/ttyUSB0", led_count=30, reset_delay=0)
        assert manager.led_count == 30

    def test_open_failure_is_connection_failed(self):
        def factory(*args, **kwargs):
            raise serial.SerialException("could not open port /dev/ttyUSB0")

        with pytest.raises(ConnectionFailed, match="cannot open"):
            ConnectionManager(serial_factory=factory).connect_usb("/dev/ttyUSB0", reset_delay=0)


class TestSending:

    def test_send_colors_writes_framed_payload(self):
        port = FakeSerial([info(2)])
        manager = usb_manager(port)
        manager.send_colors([(255, 0, 0), (0, 0, 255)])
        assert port.written[-1] == frame_usb(bytes([255, 0, 0, 0, 0, 255]))

    def test_wrong_length_is_rejected(self):
        manager = usb_manager(FakeSerial([info(3)]))
        with pytest.raises(ValueError):
            manager.send_colors([(0, 0, 0)])

    def test_transport_error_is_connection_failed(self):
        port = FakeSerial([info(1)])
        manager = usb_manager(port)
        port.fail_writes = True
        with pytest.raises(ConnectionFailed):
            manager.send_colors([(1, 2, 3)])

    def test_commands_are_newline_json(self):
        port = FakeSerial([info(1)])
        manager = usb_manager(port)
        manager.clear()
        manager.set_brightness(300)
        assert port.written[-2] == b'{"cmd": "clear"}\n'
        assert json.loads(port.written[-1]) == {"cmd": "brightness", "value": 255}

    def test_send_after_disconnect(self):
        manager = usb_manager(FakeSerial([info(1)]))
        disconnected = []
        manager.on_disconnected = lambda: disconnected.append(True)
        manager.disconnect()
        manager.disconnect()
        assert disconnected == [True]
        with pytest.raises(ConnectionFailed, match="not connected"):
            manager.send_colors([(0, 0, 0)])


class TestWebSocketMessages:

    def test_info_message_sets_led_count(self):
        manager = ConnectionManager()
        manager._ws_on_message(None, info(45))
        assert manager.led_count == 45
        assert manager._info_received.is_set()

    def test_plain_text_before_info_is_flagged(self):
        manager = ConnectionManager()
        manager._ws_on_message(None, "HTTP/1.1 404 Not Found")
        with pytest.raises(ProtocolMismatch, match="unexpected message"):
            manager._finish_handshake(None, [])

    def test_binary_messages_ignored(self):
        manager = ConnectionManager()
        manager._ws_on_message(None, b"\x00\x01")
        assert manager.led_count is None


class FakeManager:
    def __init__(self, outcomes):
        self.outcomes = outcomes

    def __call__(self):
        self.calls = getattr(self, "calls", 0) + 1
        manager = self

        class _Attempt:
            led_count = 6

            def connect(self, settings, led_count=None):
                outcome = manager.outcomes.pop(0)
                if outcome is not None:
                    raise outcome

        return _Attempt()


class TestConnectWithRetry:

    def test_succeeds_after_transient_failures(self):
        factory = FakeManager([ConnectionFailed("refused"), ConnectionFailed("refused"), None])
        sleeps = []
        conn = connect_with_retry(config.DeviceSettings(), attempts=3, delay=0.5,
                                  manager_factory=factory, sleep=sleeps.append)
        assert conn.led_count == 6
        assert sleeps == [0.5, 0.5]

    def test_gives_up_after_attempts(self):
        factory = FakeManager([ConnectionFailed("refused")] * 2)
        with pytest.raises(ConnectionFailed, match="after 2 attempts"):
            connect_with_retry(config.DeviceSettings(), attempts=2, manager_factory=factory,
                               sleep=lambda s: None)

    def test_protocol_mismatch_is_not_retried(self):
        factory = FakeManager([ProtocolMismatch("protocol 2"), None])
        with pytest.raises(ProtocolMismatch):
            connect_with_retry(config.DeviceSettings(), attempts=3, manager_factory=factory,
                               sleep=lambda s: None)
        assert factory.calls == 1

    def test_auto_port_without_ports(self, monkeypatch):
        monkeypatch.setattr("connection_manager.list_ports", lambda: [])
        with pytest.raises(ConnectionFailed, match="no serial ports"):
            ConnectionManager().connect(config.DeviceSettings(port="auto"))


class TestReconnect:

    def test_write_error_marks_link_down_and_reconnect_restores_it(self):
        port = FakeSerial([info(4), info(4)])
        manager = ConnectionManager(serial_factory=port, reset_delay=0)
        manager.connect(config.DeviceSettings(port="/dev/ttyUSB0"))

        port.fail_writes = True
        with pytest.raises(ConnectionFailed):
            manager.send_colors([(1, 2, 3)] * 4)
        assert not manager.connected

        port.fail_writes = False
        manager.reconnect()
        assert manager.connected
        assert manager.led_count == 4
        manager.send_colors([(1, 2, 3)] * 4)
        assert port.written[-1] == frame_usb(bytes([1, 2, 3] * 4))

    def test_led_count_change_is_protocol_mismatch(self):
        port = FakeSerial([info(4), info(8)])
        manager = ConnectionManager(serial_factory=port, reset_delay=0)
        manager.connect(config.DeviceSettings(port="/dev/ttyUSB0"))
        with pytest.raises(ProtocolMismatch, match="8 LEDs, expected 4"):
            manager.reconnect()
        assert manager.led_count == 4
        assert not manager.connected

    def test_device_still_gone(self):
        opens = []

        def factory(port, baud, **kwargs):
            if opens:
                raise serial.SerialException(f"could not open port {port}")
            opens.append(port)
            return FakeSerial([info(4)])

        manager = ConnectionManager(serial_factory=factory, reset_delay=0)
        manager.connect(config.DeviceSettings(port="/dev/ttyUSB0"))
        with pytest.raises(ConnectionFailed, match="cannot open"):
            manager.reconnect()
        assert manager.led_count == 4

    def test_reconnect_needs_a_previous_connect(self):
        with pytest.raises(ConnectionFailed):
            ConnectionManager().reconnect()
