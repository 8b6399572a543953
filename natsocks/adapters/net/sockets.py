"""
Socket-level probes — listening ports, TCP reachability, SOCKS5 handshake.

Read-only. Nothing here relays traffic; the handshake stops after method
negotiation (and the username/password sub-negotiation when credentials
are given), it never issues a CONNECT.
"""

from __future__ import annotations

import logging
import socket
from pathlib import Path

logger = logging.getLogger(__name__)

_PROC_TCP_TABLES = (Path("/proc/net/tcp"), Path("/proc/net/tcp6"))
_TCP_LISTEN = "0A"

SOCKS_VERSION = 0x05
METHOD_NO_AUTH = 0x00
METHOD_USERPASS = 0x02
USERPASS_VERSION = 0x01
MAX_AUTH_FIELD = 255


def parse_proc_net_tcp(content: str) -> set[int]:
    """Extract LISTEN ports from a /proc/net/tcp{,6} table."""
    ports: set[int] = set()
    for line in content.splitlines()[1:]:
        fields = line.split()
        if len(fields) < 4 or fields[3] != _TCP_LISTEN:
            continue
        _, _, port_hex = fields[1].rpartition(":")
        try:
            ports.add(int(port_hex, 16))
        except ValueError:
            continue
    return ports


def listening_tcp_ports(tables: tuple[Path, ...] = _PROC_TCP_TABLES) -> set[int]:
    """TCP ports in LISTEN state across both families."""
    ports: set[int] = set()
    for table in tables:
        try:
            ports |= parse_proc_net_tcp(table.read_text())
        except OSError:
            continue
    return ports


def tcp_connect(host: str, port: int, family: int, timeout: float) -> bool:
    """Open (and close) a TCP connection restricted to ``family``."""
    try:
        infos = socket.getaddrinfo(host, port, family, socket.SOCK_STREAM)
    except (socket.gaierror, OSError) as e:
        logger.debug("Resolve %s (family=%s) failed: %s", host, family, e)
        return False

    for fam, socktype, proto, _, addr in infos:
        try:
            with socket.socket(fam, socktype, proto) as s:
                s.settimeout(timeout)
                s.connect(addr)
                return True
        except OSError as e:
            logger.debug("Connect %s failed: %s", addr, e)
    return False


def _recv_exact(sock: socket.socket, n: int) -> bytes:
    buf = b""
    while len(buf) < n:
        chunk = sock.recv(n - len(buf))
        if not chunk:
            break
        buf += chunk
    return buf


def socks5_handshake(
    host: str,
    port: int,
    *,
    username: str | None = None,
    password: str | None = None,
    timeout: float = 2.0,
) -> bool:
    """Negotiate a SOCKS5 method (and authenticate, if credentials given).

    Returns True when the server accepts the offered method and, for
    username/password, reports status 0x00.
    """
    user = (username or "").encode()
    pw = (password or "").encode()
    if len(user) > MAX_AUTH_FIELD or len(pw) > MAX_AUTH_FIELD:
        logger.warning("SOCKS5 credentials exceed %d bytes; handshake not attempted", MAX_AUTH_FIELD)
        return False

    method = METHOD_USERPASS if username else METHOD_NO_AUTH
    try:
        with socket.create_connection((host, port), timeout=timeout) as s:
            s.settimeout(timeout)
            s.sendall(bytes([SOCKS_VERSION, 1, method]))
            reply = _recv_exact(s, 2)
            if reply != bytes([SOCKS_VERSION, method]):
                logger.debug("SOCKS5 greeting rejected: %r", reply)
                return False
            if method == METHOD_NO_AUTH:
                return True
            s.sendall(
                bytes([USERPASS_VERSION, len(user)]) + user + bytes([len(pw)]) + pw
            )
            status = _recv_exact(s, 2)
            return len(status) == 2 and status[1] == 0x00
    except OSError as e:
        logger.debug("SOCKS5 handshake with %s:%d failed: %s", host, port, e)
        return False
