"""ICMP echo check over a raw socket.

Raw ICMP sockets need CAP_NET_RAW (the daemonset adds NET_ADMIN when ping
is enabled). The capability is verified once when the probe is built, so
a missing capability fails the agent at startup instead of producing a
failure observation on every tick.
"""

from __future__ import annotations

import itertools
import os
import socket
import struct
import time
from collections.abc import Sequence

from nwpd.errors import ConfigurationError, ProbeError
from nwpd.jobs.config import PingCheck
from nwpd.models import Endpoint, Observation
from nwpd.probes.base import Probe, elapsed_since

ICMP_ECHO_REPLY = 0
ICMP_DEST_UNREACHABLE = 3
ICMP_ECHO_REQUEST = 8

_PAYLOAD = b"network-problem-detector"
_sequence = itertools.count(1)


def check_raw_socket_capability() -> None:
    """Raise ConfigurationError unless raw ICMP sockets can be opened."""
    try:
        sock = socket.socket(socket.AF_INET, socket.SOCK_RAW, socket.IPPROTO_ICMP)
    except PermissionError as e:
        raise ConfigurationError(
            "ping jobs need the NET_RAW capability to open raw ICMP sockets"
        ) from e
    except OSError as e:
        raise ConfigurationError(f"raw ICMP sockets unavailable: {e}") from e
    sock.close()


def checksum(data: bytes) -> int:
    """RFC 1071 internet checksum."""
    if len(data) % 2:
        data += b"\x00"
    total = sum(struct.unpack(f"!{len(data) // 2}H", data))
    total = (total >> 16) + (total & 0xFFFF)
    total += total >> 16
    return ~total & 0xFFFF


def echo_request(ident: int, seq: int, payload: bytes = _PAYLOAD) -> bytes:
    header = struct.pack("!BBHHH", ICMP_ECHO_REQUEST, 0, 0, ident, seq)
    csum = checksum(header + payload)
    return struct.pack("!BBHHH", ICMP_ECHO_REQUEST, 0, csum, ident, seq) + payload


def parse_reply(packet: bytes, ident: int, seq: int) -> int | None:
    """Classify a raw IPv4 packet against our request.

    Returns ICMP_ECHO_REPLY or ICMP_DEST_UNREACHABLE when the packet
    answers (ident, seq), otherwise None.
    """
    if len(packet) < 20:
        return None
    ihl = (packet[0] & 0x0F) * 4
    icmp = packet[ihl:ihl + 8]
    if len(icmp) < 8:
        return None
    icmp_type, _code, _csum, rid, rseq = struct.unpack("!BBHHH", icmp)
    if icmp_type == ICMP_ECHO_REPLY:
        return ICMP_ECHO_REPLY if (rid, rseq) == (ident, seq) else None
    if icmp_type == ICMP_DEST_UNREACHABLE:
        # The error carries the original IP header + first 8 bytes of our request
        inner = packet[ihl + 8:]
        if len(inner) < 20:
            return None
        inner_ihl = (inner[0] & 0x0F) * 4
        orig = inner[inner_ihl:inner_ihl + 8]
        if len(orig) == 8:
            _t, _c, _s, oid, oseq = struct.unpack("!BBHHH", orig)
            if (oid, oseq) == (ident, seq):
                return ICMP_DEST_UNREACHABLE
    return None


def ping(endpoint: Endpoint, timeout_s: float) -> float:
    """Send one echo request and wait for the reply. Returns the RTT in seconds."""
    ident = os.getpid() & 0xFFFF
    seq = next(_sequence) & 0xFFFF
    with socket.socket(socket.AF_INET, socket.SOCK_RAW, socket.IPPROTO_ICMP) as sock:
        t0 = time.perf_counter()
        try:
            sock.sendto(echo_request(ident, seq), (endpoint.ip, 0))
        except socket.gaierror as e:
            raise ProbeError("dns failure", str(e)) from e
        except OSError as e:
            raise ProbeError("network unreachable", str(e)) from e

        deadline = t0 + timeout_s
        while True:
            remaining = deadline - time.perf_counter()
            if remaining <= 0:
                raise ProbeError("timeout", f"no echo reply within {timeout_s:.2f}s", timed_out=True)
            sock.settimeout(remaining)
            try:
                packet, addr = sock.recvfrom(1024)
            except TimeoutError:
                continue
            kind = parse_reply(packet, ident, seq)
            if kind == ICMP_ECHO_REPLY and addr[0] == endpoint.ip:
                return elapsed_since(t0)
            if kind == ICMP_DEST_UNREACHABLE:
                raise ProbeError("host unreachable", f"reported by {addr[0]}")


class PingProbe(Probe):
    """ICMP ping to explicit hosts or to every known node."""

    def destinations(self) -> list[Endpoint]:
        spec: PingCheck = self.job.probe  # type: ignore[assignment]
        if spec.hosts:
            return list(spec.hosts)
        own_ip = self.ctx.own_endpoint.ip
        return [Endpoint(hostname=name, ip=ip, port=0) for name, ip in self.ctx.node_hosts() if ip != own_ip]

    def run(self, destinations: Sequence[Endpoint], timeout_s: float) -> list[Observation]:
        return self._fan_out(destinations, ping, timeout_s)
