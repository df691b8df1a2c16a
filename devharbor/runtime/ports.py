"""
Host port availability checks

A desired host port that is already bound is replaced by the next free one.
"""

import logging
import socket
from typing import Dict, Iterable, List

from devharbor.core.models import PortMapping

logger = logging.getLogger(__name__)


def is_port_available(port: int, host: str = "0.0.0.0") -> bool:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        try:
            sock.bind((host, port))
        except OSError:
            return False
    return True


def find_next_available_port(start_port: int, max_attempts: int = 100) -> int:
    if start_port < 1 or start_port > 65535:
        raise ValueError(f"Invalid start port: {start_port}. Must be between 1 and 65535.")

    port = start_port
    for _ in range(max_attempts):
        if port > 65535:
            raise ValueError(
                f"Exceeded valid port range while searching for a free port from {start_port}"
            )
        if is_port_available(port):
            return port
        port += 1

    raise ValueError(
        f"Could not find an available port after {max_attempts} attempts starting from {start_port}"
    )


def available_ports(desired: Iterable[int]) -> Dict[int, int]:
    """Map each desired port to itself or to the next free port"""
    assigned: Dict[int, int] = {}
    taken = set()
    for port in desired:
        if port in assigned:
            continue
        if port not in taken and is_port_available(port):
            assigned[port] = port
        else:
            start = port + 1 if port < 65535 else 1
            candidate = find_next_available_port(start)
            while candidate in taken:
                candidate = find_next_available_port(candidate + 1)
            assigned[port] = candidate
            logger.info(f"Port {port} is not available. Using {candidate} instead.")
        taken.add(assigned[port])
    return assigned


def resolve_port_mappings(ports: List[PortMapping]) -> List[PortMapping]:
    mapping = available_ports(p.host for p in ports)
    return [p.model_copy(update={"host": mapping[p.host]}) for p in ports]
