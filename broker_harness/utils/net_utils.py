"""
Socket helpers for readiness polling and port allocation
"""
import socket
import logging

logger = logging.getLogger(__name__)


def is_port_open(host: str, port: int, timeout: float = 1.0) -> bool:
    """True if something accepts TCP connections on host:port"""
    try:
        with socket.create_connection((host, port), timeout=timeout):
            return True
    except OSError:
        return False


def is_port_bound(host: str, port: int) -> bool:
    """True if host:port can't be bound because another socket holds it"""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        try:
            sock.bind((host, port))
        except OSError:
            return True
    return False

