"""
Headless ESP32 ambilight simulator.

Speaks the firmware's WebSocket protocol so the sync loop can run without
hardware: announces its LED count on connect, accepts binary RGB frames
and JSON commands, and logs what it receives.

    python simulator.py --leds 60 --port 8181

then point the config at ``{"device": {"transport": "websocket",
"host": "127.0.0.1", "ws_port": 8181}}``.
"""

import argparse
import asyncio
import json
import logging

import websockets

import config
from logging_setup import setup_logging

logger = logging.getLogger(__name__)


def decode_frame(message: bytes, num_leds: int):
    """RGB tuples from a binary frame; None if the frame is too short."""
    if len(message) < num_leds * 3:
        return None
    return [
        (message[i * 3], message[i * 3 + 1], message[i * 3 + 2])
        for i in range(num_leds)
    ]


class LEDSimulator:
    """State of the simulated strip."""

    def __init__(self, num_leds=config.DEFAULT_LED_COUNT):
        self.num_leds = num_leds
        self.led_colors = [(0, 0, 0)] * num_leds
        self.brightness = 255
        self.frame_count = 0
        self.short_frames = 0

    def info(self) -> str:
        return json.dumps({
            "type": "info",
            "ledCount": self.num_leds,
            "protocol": config.PROTOCOL_VERSION,
        })

    def handle_binary(self, message: bytes):
        colors = decode_frame(message, self.num_leds)
        if colors is None:
            self.short_frames += 1
            logger.warning("Short frame: %d bytes for %d LEDs", len(message), self.num_leds)
            return
        self.led_colors = colors
        self.frame_count += 1

        if self.frame_count % config.LOG_EVERY_N_FRAMES == 0:
            sample = [f"LED{i}:({c[0]},{c[1]},{c[2]})" for i, c in enumerate(colors[:5])]
            logger.info("[Simulator Frame %d] Received: %s...", self.frame_count, ", ".join(sample))

    def handle_text(self, message: str):
        """Apply a JSON command. Returns the reply to send, if any."""
        try:
            data = json.loads(message)
        except json.JSONDecodeError:
            logger.warning("Invalid JSON: %s", message)
            return None
        if not isinstance(data, dict):
            logger.warning("Ignoring non-command message: %s", message)
            return None

        cmd = data.get("cmd", "")
        if cmd == "info":
            return self.info()
        if cmd == "clear":
            self.led_colors = [(0, 0, 0)] * self.num_leds
            logger.info("LEDs cleared")
        elif cmd == "brightness":
            self.brightness = data.get("value", 255)
            logger.info("Brightness set to %s", self.brightness)
        else:
            logger.info("Ignoring command %r", cmd)
            return None
        return json.dumps({"type": "ack", "cmd": cmd})


async def handle_client(websocket, simulator):
    logger.info("Client connected: %s", websocket.remote_address)
    await websocket.send(simulator.info())

    try:
        async for message in websocket:
            if isinstance(message, str):
                reply = simulator.handle_text(message)
                if reply:
                    await websocket.send(reply)
            else:
                simulator.handle_binary(message)
    except websockets.ConnectionClosed:
        pass
    finally:
        logger.info("Client disconnected after %d frames", simulator.frame_count)


async def start_server(simulator, host, port):
    logger.info("Simulating %d LEDs on ws://%s:%d", simulator.num_leds, host, port)
    async with websockets.serve(lambda ws: handle_client(ws, simulator), host, port):
        await asyncio.Future()  # Run forever


def main(argv=None):
    parser = argparse.ArgumentParser(description="Headless ESP32 ambilight simulator")
    parser.add_argument("--leds", type=int, default=config.DEFAULT_LED_COUNT)
    parser.add_argument("--host", default="127.0.0.1")
    parser.add_argument("--port", type=int, default=config.DEFAULT_WEBSOCKET_PORT)
    args = parser.parse_args(argv)

    setup_logging()
    try:
        asyncio.run(start_server(LEDSimulator(args.leds), args.host, args.port))
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    main()
