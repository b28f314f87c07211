# ============================================================================
# NETWORK SCANNER - Discover ambilight controllers on the local network
# ============================================================================

import concurrent.futures
import json
import logging
import socket
import threading
import urllib.error
import urllib.request
from typing import Callable, Dict, List, Optional

import config

logger = logging.getLogger(__name__)

SCAN_TIMEOUT = 0.5  # seconds per IP
SCAN_PARALLEL_WORKERS = 50
HTTP_PORT = 80

# Destinations used only to learn which local address routes to them
ROUTE_PROBES = [
    ("8.8.8.8", 80),
    ("192.168.1.1", 80),
    ("192.168.0.1", 80),
    ("192.168.137.1", 80),  # Windows Mobile Hotspot
    ("10.0.0.1", 80),
]


class NetworkScanner:
    """Scans local /24 networks for controllers exposing ``/api/status``."""

    def __init__(self, timeout: float = SCAN_TIMEOUT, workers: int = SCAN_PARALLEL_WORKERS):
        self.timeout = timeout
        self.workers = workers
        self.scanning = False
        self.devices_found: List[Dict] = []
        self._stop_event = threading.Event()

    def get_all_local_ips(self) -> List[str]:
        """IPv4 addresses of every interface, including hotspot networks."""
        local_ips = set()

        try:
            hostname = socket.gethostname()
            for info in socket.getaddrinfo(hostname, None, socket.AF_INET):
                ip = info[4][0]
                if not ip.startswith("127."):
                    local_ips.add(ip)
        except OSError as e:
            logger.debug("Hostname lookup failed: %s", e)

        # A UDP connect sends nothing but picks the outgoing interface
        for dest in ROUTE_PROBES:
            try:
                with socket.socket(socket.AF_INET, socket.SOCK_DGRAM) as s:
                    s.settimeout(0.1)
                    s.connect(dest)
                    ip = s.getsockname()[0]
                if not ip.startswith("127."):
                    local_ips.add(ip)
            except OSError:
                continue

        return sorted(local_ips)

    def get_ip_range(self) -> List[str]:
        """Every host address of each local /24, excluding our own."""
        all_local_ips = self.get_all_local_ips()
        ips = set()

        for local_ip in all_local_ips:
            parts = local_ip.split(".")
            if len(parts) != 4:
                continue

            base = f"{parts[0]}.{parts[1]}.{parts[2]}"
            # Skip .0 (network) and .255 (broadcast)
            for i in range(1, 255):
                ip = f"{base}.{i}"
                if ip not in all_local_ips:
                    ips.add(ip)

        return sorted(ips)

    def check_port_open(self, ip: str, port: int) -> bool:
        try:
            with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
                sock.settimeout(self.timeout)
                return sock.connect_ex((ip, port)) == 0
        except OSError:
            return False

    def validate_device(self, ip: str) -> Optional[Dict]:
        """Device info dict if ``ip`` answers like an ambilight controller."""
        url = f"http://{ip}:{HTTP_PORT}/api/status"
        req = urllib.request.Request(url, headers={"User-Agent": "ambilight-sync"})
        try:
            with urllib.request.urlopen(req, timeout=self.timeout) as response:
                data = json.loads(response.read().decode())
        except (urllib.error.URLError, OSError, ValueError):
            return None

        if not isinstance(data, dict) or not ("ledsActive" in data or "wsClients" in data):
            return None
        return {
            "ip": ip,
            "ws_port": config.DEFAULT_WEBSOCKET_PORT,
            "led_count": data.get("ledCount"),
            "leds_active": data.get("ledsActive", False),
            "last_source": data.get("lastSource", ""),
            "ws_clients": data.get("wsClients", 0),
            "uptime": data.get("uptime", 0),
        }

    def scan_ip(self, ip: str) -> Optional[Dict]:
        if self._stop_event.is_set():
            return None

        if self.check_port_open(ip, config.DEFAULT_WEBSOCKET_PORT) or self.check_port_open(ip, HTTP_PORT):
            return self.validate_device(ip)
        return None

    def scan_network(
        self,
        on_progress: Optional[Callable[[int, int], None]] = None,
        on_complete: Optional[Callable[[List[Dict]], None]] = None,
        on_device_found: Optional[Callable[[Dict], None]] = None,
    ) -> threading.Thread:
        """Scan in a background thread, reporting through the callbacks.

        Args:
            on_progress: Callback(current, total) for progress updates
            on_complete: Callback(devices) when scan finishes
            on_device_found: Callback(device) when a device is found
        """
        self.scanning = True
        self.devices_found = []
        self._stop_event.clear()

        def _scan_thread():
            ips = self.get_ip_range()
            total = len(ips)
            scanned = 0
            logger.info("Scanning %d addresses for ambilight controllers", total)

            with concurrent.futures.ThreadPoolExecutor(max_workers=self.workers) as executor:
                future_to_ip = {executor.submit(self.scan_ip, ip): ip for ip in ips}

                for future in concurrent.futures.as_completed(future_to_ip):
                    if self._stop_event.is_set():
                        break

                    scanned += 1
                    if on_progress:
                        on_progress(scanned, total)

                    device = future.result()
                    if device:
                        logger.info("Found device at %s", device["ip"])
                        self.devices_found.append(device)
                        if on_device_found:
                            on_device_found(device)

            self.scanning = False
            if on_complete:
                on_complete(self.devices_found)

        thread = threading.Thread(target=_scan_thread, name="network-scan", daemon=True)
        thread.start()
        return thread

    def stop_scan(self):
        self._stop_event.set()
        self.scanning = False


def find_devices(timeout: float = 30.0, scanner: Optional[NetworkScanner] = None) -> List[Dict]:
    """Blocking scan; returns whatever was found within ``timeout`` seconds."""
    scanner = scanner or NetworkScanner()
    result = []
    done_event = threading.Event()

    def on_complete(devices):
        nonlocal result
        result = devices
        done_event.set()

    scanner.scan_network(on_complete=on_complete)
    if not done_event.wait(timeout=timeout):
        scanner.stop_scan()
        return list(scanner.devices_found)

    return result
