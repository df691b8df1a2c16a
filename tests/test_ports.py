"""
Tests for host port selection
"""

import socket

import pytest

from devharbor.core.models import PortMapping
from devharbor.runtime import ports


def test_bound_port_is_unavailable():
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind(("127.0.0.1", 0))
        sock.listen(1)
        port = sock.getsockname()[1]
        assert ports.is_port_available(port, host="127.0.0.1") is False


def test_find_next_available_port(monkeypatch):
    busy = {8080, 8081}
    monkeypatch.setattr(ports, "is_port_available", lambda port, host="0.0.0.0": port not in busy)

    assert ports.find_next_available_port(8080) == 8082
    assert ports.find_next_available_port(9000) == 9000


def test_find_next_available_port_limits(monkeypatch):
    monkeypatch.setattr(ports, "is_port_available", lambda port, host="0.0.0.0": False)

    with pytest.raises(ValueError):
        ports.find_next_available_port(8080, max_attempts=5)
    with pytest.raises(ValueError):
        ports.find_next_available_port(65535)
    with pytest.raises(ValueError):
        ports.find_next_available_port(0)


def test_available_ports_avoids_collisions(monkeypatch):
    busy = {80}
    monkeypatch.setattr(ports, "is_port_available", lambda port, host="0.0.0.0": port not in busy)

    assert ports.available_ports([80, 81, 443]) == {80: 81, 81: 82, 443: 443}


def test_resolve_port_mappings(monkeypatch):
    monkeypatch.setattr(ports, "is_port_available", lambda port, host="0.0.0.0": port != 6379)

    resolved = ports.resolve_port_mappings(
        [PortMapping(host=6379, container=6379), PortMapping(host=8025, container=8025, protocol="udp")]
    )

    assert resolved == [
        PortMapping(host=6380, container=6379),
        PortMapping(host=8025, container=8025, protocol="udp"),
    ]
