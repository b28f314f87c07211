import json
import logging
import threading
import time
from contextlib import suppress

import serial
import serial.tools.list_ports
import websocket

import config
from errors import ConnectionFailed, ProtocolMismatch

logger = logging.getLogger(__name__)


def encode_colors(colors) -> bytes:
    """Flatten RGB tuples into the r,g,b,r,g,b... payload."""
    payload = bytearray()
    for r, g, b in colors:
        payload.extend((r, g, b))
    return bytes(payload)


def frame_usb(payload: bytes) -> bytes:
    """Wrap a color payload in the serial framing: magic, data, XOR checksum."""
    checksum = 0
    for b in payload:
        checksum ^= b
    return bytes([config.MAGIC_BYTE_1, config.MAGIC_BYTE_2]) + payload + bytes([checksum])


def list_ports():
    """Device names of the serial ports present on this machine."""
    return [port.device for port in serial.tools.list_ports.comports()]


class ConnectionManager:
    """Manages the connection to the ESP32 via USB or WebSocket.

    Owns the transport for the whole session. ``send_colors`` is the only
    call made per frame; everything else happens at start-up or shutdown.
    """

    def __init__(self, serial_factory=serial.Serial, ws_factory=websocket.WebSocketApp,
                 reset_delay=2.0):
        self.mode = None  # 'usb', 'websocket'
        self.connected = False

        self.serial_port = None
        self.ws = None
        self.ws_thread = None

        self._serial_factory = serial_factory
        self._ws_factory = ws_factory
        self.reset_delay = reset_delay
        self._opened = threading.Event()
        self._info_received = threading.Event()
        self._protocol_error = None

        self.on_disconnected = None

        # Remembered so a dropped link can be re-established
        self.settings = None
        self._led_count_override = None

        # Device info received from ESP32
        self.led_count = None
        self.protocol = None

    # ===== Connecting =====

    def connect(self, settings, led_count=None):
        """Connect using a ``config.DeviceSettings``."""
        self.settings = settings
        self._led_count_override = led_count
        if settings.transport == "usb":
            port = settings.port
            if port == "auto":
                ports = list_ports()
                if not ports:
                    raise ConnectionFailed("[USB] no serial ports found")
                port = ports[0]
                logger.info("[USB] Auto-selected port %s (of %d)", port, len(ports))
            self.connect_usb(port, settings.baud, led_count=led_count)
        else:
            self.connect_websocket(settings.host, settings.ws_port, led_count=led_count)

    def connect_usb(self, port: str, baud: int = config.DEFAULT_BAUD_RATE,
                    led_count=None, reset_delay=None, info_attempts=3):
        """Connect via USB Serial and ask the firmware for its LED count."""
        try:
            self.serial_port = self._serial_factory(port, baud, timeout=1, write_timeout=1)
            time.sleep(self.reset_delay if reset_delay is None else reset_delay)  # Wait for Arduino reset
            self.serial_port.reset_input_buffer()
        except (serial.SerialException, OSError) as e:
            self.serial_port = None
            raise ConnectionFailed(f"[USB] cannot open {port}: {e}") from e

        self.mode = "usb"
        self.connected = True

        garbage = []
        try:
            for attempt in range(info_attempts):
                logger.info("[USB] Requesting device info (attempt %d/%d)...", attempt + 1, info_attempts)
                self.serial_port.write((json.dumps({"cmd": "info"}) + "\n").encode())
                response = self.serial_port.readline().decode(errors="replace").strip()
                if not response:
                    continue
                logger.debug("[USB] Response: %s", response)
                if response.startswith("{") and self._handle_message(response):
                    break
                garbage.append(response)
        except (serial.SerialException, OSError) as e:
            self.disconnect()
            raise ConnectionFailed(f"[USB] lost {port} during handshake: {e}") from e

        self._finish_handshake(led_count, garbage)
        logger.info("[USB] Connected to %s! LED count: %d", port, self.led_count)

    def connect_websocket(self, ip: str, port: int = config.DEFAULT_WEBSOCKET_PORT,
                          led_count=None, timeout=5.0):
        """Connect via WebSocket; the firmware announces itself on open."""
        ws_url = f"ws://{ip}:{port}"
        self._opened.clear()
        self._info_received.clear()

        self.ws = self._ws_factory(
            ws_url,
            on_message=self._ws_on_message,
            on_error=self._ws_on_error,
            on_close=self._ws_on_close,
            on_open=self._ws_on_open,
        )

        # Run WebSocket in background thread with keep-alive pings
        self.ws_thread = threading.Thread(
            target=lambda: self.ws.run_forever(ping_interval=5, ping_timeout=3),
            name="ws-transport",
            daemon=True,
        )
        self.ws_thread.start()

        if not self._opened.wait(timeout):
            self.disconnect()
            raise ConnectionFailed(f"[WS] connection to {ws_url} timed out")

        if not self._info_received.wait(timeout) and led_count is None:
            self.disconnect()
            raise ProtocolMismatch(f"[WS] {ws_url} opened but never sent device info")

        self._finish_handshake(led_count, [])
        logger.info("[WS] Connected to %s! LED count: %d", ws_url, self.led_count)

    def _finish_handshake(self, led_count, garbage):
        if self._protocol_error:
            error, self._protocol_error = self._protocol_error, None
            self.disconnect()
            raise ProtocolMismatch(error)

        if led_count is not None:
            if self.led_count is not None and self.led_count != led_count:
                logger.warning("LED count manually set to %d (device reports %d)", led_count, self.led_count)
            self.led_count = led_count
        elif self.led_count is None:
            self.disconnect()
            if garbage:
                raise ProtocolMismatch(f"unexpected reply to info request: {garbage[0]!r}")
            raise ProtocolMismatch("device did not report its LED count")

    def disconnect(self):
        """Disconnect from current connection."""
        was_connected = self.connected
        self.connected = False

        if self.mode == "usb" and self.serial_port:
            with suppress(serial.SerialException, OSError):
                self.serial_port.close()
            self.serial_port = None

        elif self.ws:
            with suppress(websocket.WebSocketException, OSError):
                self.ws.close()
            self.ws = None

        self.mode = None

        if was_connected and self.on_disconnected:
            self.on_disconnected()

    def reconnect(self):
        """Re-open the link with the settings of the last ``connect``.

        Raises:
            ConnectionFailed: device still gone
            ProtocolMismatch: device came back with a different LED count
        """
        if self.settings is None:
            raise ConnectionFailed("reconnect before any connect")

        previous = self.led_count
        self.disconnect()
        self.led_count = None
        self.protocol = None

        try:
            self.connect(self.settings, led_count=self._led_count_override)
        except (ConnectionFailed, ProtocolMismatch):
            self.led_count = previous
            raise
        if previous is not None and self.led_count != previous:
            count, self.led_count = self.led_count, previous
            self.disconnect()
            raise ProtocolMismatch(f"device came back with {count} LEDs, expected {previous}")

    # ===== Sending =====

    def send_command(self, cmd: dict):
        """Send JSON command to device."""
        if not self.connected:
            raise ConnectionFailed("not connected")

        data = json.dumps(cmd)
        try:
            if self.mode == "usb":
                self.serial_port.write((data + "\n").encode())
            else:
                self.ws.send(data)
        except (serial.SerialException, websocket.WebSocketException, OSError) as e:
            raise ConnectionFailed(f"send command {cmd.get('cmd')!r} failed: {e}") from e

    def send_colors(self, colors):
        """Send one RGB tuple per LED. Length must match the device LED count."""
        if not self.connected:
            raise ConnectionFailed("not connected")
        if len(colors) != self.led_count:
            raise ValueError(f"device has {self.led_count} LEDs, got {len(colors)} colors")

        payload = encode_colors(colors)
        try:
            if self.mode == "websocket":
                # WebSocket uses raw binary (has its own integrity check)
                self.ws.send(payload, opcode=websocket.ABNF.OPCODE_BINARY)
            else:
                self.serial_port.write(frame_usb(payload))
        except (serial.SerialException, websocket.WebSocketException, OSError) as e:
            # An unplugged port or dropped socket stays dead until reconnect()
            self.disconnect()
            raise ConnectionFailed(f"send colors failed: {e}") from e

    def clear(self):
        self.send_command({"cmd": "clear"})

    def set_brightness(self, value: int):
        self.send_command({"cmd": "brightness", "value": max(0, min(255, int(value)))})

    # ===== WebSocket callbacks =====

    def _ws_on_open(self, ws):
        self.mode = "websocket"
        self.connected = True
        logger.info("[WS] Connection opened, waiting for device info...")
        self._opened.set()

    def _ws_on_message(self, ws, message):
        if isinstance(message, bytes):
            return
        if not self._info_received.is_set() and not message.lstrip().startswith("{"):
            self._protocol_error = self._protocol_error or f"[WS] unexpected message: {message[:80]!r}"
        self._handle_message(message)

    def _ws_on_error(self, ws, error):
        logger.error("[WS] Connection error: %s", error)

    def _ws_on_close(self, ws, close_status_code, close_msg):
        logger.info("[WS] Connection closed (%s %s)", close_status_code, close_msg or "")
        was_connected = self.connected
        self.connected = False
        if was_connected and self.on_disconnected:
            self.on_disconnected()

    def _handle_message(self, message) -> bool:
        """Parse a JSON message from the firmware. True if it was device info."""
        try:
            data = json.loads(message)
        except json.JSONDecodeError:
            return False
        if not isinstance(data, dict):
            return False

        msg_type = data.get("type", "")
        if msg_type not in ("info", "ready"):
            logger.debug("Device message: %s", data)
            return False

        protocol = data.get("protocol", config.PROTOCOL_VERSION)
        if not isinstance(protocol, int) or protocol > config.PROTOCOL_VERSION:
            self._protocol_error = (
                f"device speaks protocol {protocol!r}, this client supports up to {config.PROTOCOL_VERSION}"
            )
            self._info_received.set()
            return True

        led_count = data.get("ledCount")
        if isinstance(led_count, bool) or not isinstance(led_count, int) or led_count < 1:
            self._protocol_error = f"device reported invalid ledCount {led_count!r}"
            self._info_received.set()
            return True

        self.protocol = protocol
        self.led_count = led_count
        logger.info("Device info received: %d LEDs", self.led_count)
        self._info_received.set()
        return True


def connect_with_retry(settings, attempts=3, delay=1.0, led_count=None,
                       manager_factory=ConnectionManager, sleep=time.sleep):
    """Connect, retrying transport failures up to ``attempts`` times.

    ProtocolMismatch is raised immediately; retrying won't change what the
    device speaks.
    """
    last_error = None
    for attempt in range(1, attempts + 1):
        manager = manager_factory()
        try:
            manager.connect(settings, led_count=led_count)
            return manager
        except ConnectionFailed as e:
            last_error = e
            logger.warning("Connection attempt %d/%d failed: %s", attempt, attempts, e)
            if attempt < attempts:
                sleep(delay)
    raise ConnectionFailed(f"device unreachable after {attempts} attempts: {last_error}")
