"""
Utility functions for clocks, IDs and LAN address discovery
"""
import random
import socket
import string
import time
from typing import Dict, List


def now_ms() -> int:
    """Wall-clock time in integer milliseconds"""
    return int(time.time() * 1000)


def monotonic_ms() -> float:
    """Monotonic time in milliseconds, for tap intervals"""
    return time.monotonic() * 1000.0


def generate_channel_id(length: int = 9) -> str:
    """Generate a random subscriber channel ID (used in logs)"""
    alphabet = string.ascii_lowercase + string.digits
    return "guest_" + "".join(random.choice(alphabet) for _ in range(length))


def get_local_ip() -> str:
    """Get local WiFi IP address"""
    try:
        s = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
        s.connect(("8.8.8.8", 80))
        ip = s.getsockname()[0]
        s.close()
        return ip
    except Exception:
        return "localhost"


def get_local_ips() -> List[Dict[str, str]]:
    """
    LAN addresses guests can use to reach this server.

    Returns a list of {"interface", "address"} entries; empty when the
    machine has no routable IPv4 address.
    """
    results = []
    seen = set()

    try:
        for info in socket.getaddrinfo(socket.gethostname(), None, socket.AF_INET):
            address = info[4][0]
            if address.startswith("127.") or address in seen:
                continue
            seen.add(address)
            results.append({"interface": socket.gethostname(), "address": address})
    except OSError:
        pass

    default_ip = get_local_ip()
    if default_ip != "localhost" and not default_ip.startswith("127.") and default_ip not in seen:
        results.insert(0, {"interface": "default", "address": default_ip})

    return results
