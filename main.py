import argparse
import logging
import signal
import sys

import config
from connection_manager import connect_with_retry, list_ports
from device_updater import DeviceUpdater
from errors import ConfigInvalid, ConnectionFailed, ProtocolMismatch, SyncAborted
from logging_setup import setup_logging, shutdown_logging
from network_scanner import find_devices
from screen_sampler import ScreenSampler, monitor_region
from sync_loop import SyncLoop

logger = logging.getLogger("ambilight")

EXIT_OK = 0
EXIT_CONFIG = 2
EXIT_DEVICE = 3
EXIT_ABORTED = 4


def build_sampler(cfg):
    region = cfg.capture_region
    if region is None and cfg.monitor is not None:
        region = monitor_region(cfg.monitor)
    return ScreenSampler(cfg.segment_count, region=region, sample_step=cfg.sample_step)


def cmd_run(args) -> int:
    try:
        cfg = config.load_config(args.config)
        sampler = build_sampler(cfg)
    except ConfigInvalid as e:
        logger.error("Invalid configuration: %s", e)
        return EXIT_CONFIG

    try:
        conn = connect_with_retry(
            cfg.device,
            attempts=cfg.connect_attempts,
            delay=cfg.connect_retry_delay,
            led_count=cfg.led_count,
        )
    except ProtocolMismatch as e:
        logger.error("Device protocol mismatch: %s", e)
        return EXIT_DEVICE
    except ConnectionFailed as e:
        logger.error("%s", e)
        return EXIT_DEVICE

    updater = DeviceUpdater(
        conn,
        timeout=cfg.device_timeout,
        min_interval=cfg.min_update_interval,
        keepalive_interval=cfg.keepalive_interval,
        reconnect_interval=cfg.reconnect_interval,
    )
    loop = SyncLoop(cfg, sampler, updater, conn.led_count)

    def _on_disconnected():
        # close() releases the device on the way out; that is not a loss
        if not loop.stopping:
            logger.warning("Device connection lost")

    conn.on_disconnected = _on_disconnected

    def _on_signal(signum, frame):
        logger.info("Received signal %d, stopping...", signum)
        loop.stop()

    previous = {sig: signal.signal(sig, _on_signal) for sig in (signal.SIGINT, signal.SIGTERM)}
    try:
        loop.run()
    except SyncAborted as e:
        logger.error("Sync aborted: %s", e)
        return EXIT_ABORTED
    except ProtocolMismatch as e:
        logger.error("Device protocol mismatch: %s", e)
        return EXIT_DEVICE
    finally:
        for sig, handler in previous.items():
            signal.signal(sig, handler)
    return EXIT_OK


def cmd_devices(args) -> int:
    ports = list_ports()
    print(f"Serial ports ({len(ports)}):")
    for port in ports:
        print(f"  - {port}")

    if args.scan_network:
        print("Scanning local network for ambilight controllers...")
        devices = find_devices(timeout=args.timeout)
        print(f"Found {len(devices)} device(s):")
        for d in devices:
            leds = d["led_count"] if d["led_count"] is not None else "?"
            print(f"  - {d['ip']}:{d['ws_port']} ({leds} LEDs, uptime: {d['uptime']}s)")
    return EXIT_OK


def build_parser():
    parser = argparse.ArgumentParser(
        prog="ambilight-sync",
        description="Drive an ESP32 LED strip from the colors on screen.",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging.")
    parser.add_argument("--log-file", help="Also write the log to this file.")
    sub = parser.add_subparsers(dest="command", required=True)

    run = sub.add_parser("run", help="Start syncing until interrupted.")
    run.add_argument("--config", default=config.CONFIG_FILE, help="JSON configuration file.")
    run.set_defaults(func=cmd_run)

    devices = sub.add_parser("devices", help="List serial ports and network controllers.")
    devices.add_argument("--scan-network", action="store_true", help="Also scan the local network.")
    devices.add_argument("--timeout", type=float, default=30.0, help="Network scan time limit.")
    devices.set_defaults(func=cmd_devices)
    return parser


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)
    setup_logging(logging.DEBUG if args.verbose else logging.INFO, args.log_file)
    try:
        return args.func(args)
    finally:
        shutdown_logging()


if __name__ == "__main__":
    sys.exit(main())
