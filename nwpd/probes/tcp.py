"""TCP port check — connect to each destination and measure time-to-connect."""

from __future__ import annotations

import errno
import socket
import time
from collections.abc import Sequence

from nwpd.errors import ProbeError
from nwpd.jobs.config import TCPCheck
from nwpd.models import Endpoint, Observation
from nwpd.probes.base import Probe, elapsed_since


def check_tcp(endpoint: Endpoint, timeout_s: float) -> float:
    """Open and close a TCP connection. Returns the connect latency in seconds."""
    t0 = time.perf_counter()
    try:
        sock = socket.create_connection((endpoint.ip, endpoint.port), timeout=timeout_s)
    except ConnectionRefusedError as e:
        raise ProbeError("connection refused", str(e)) from e
    except TimeoutError as e:
        raise ProbeError("timeout", f"no connection within {timeout_s:.2f}s", timed_out=True) from e
    except socket.gaierror as e:
        raise ProbeError("dns failure", str(e)) from e
    except OSError as e:
        if e.errno == errno.EHOSTUNREACH:
            raise ProbeError("host unreachable", str(e)) from e
        if e.errno == errno.ENETUNREACH:
            raise ProbeError("network unreachable", str(e)) from e
        raise ProbeError(type(e).__name__, str(e)) from e
    latency = elapsed_since(t0)
    sock.close()
    return latency


class TCPProbe(Probe):
    """Raw TCP port connectivity check."""

    def destinations(self) -> list[Endpoint]:
        spec: TCPCheck = self.job.probe  # type: ignore[assignment]
        if spec.endpoints:
            return list(spec.endpoints)
        if spec.node_port is not None:
            return [Endpoint(hostname=name, ip=ip, port=spec.node_port) for name, ip in self.ctx.node_hosts()]
        if spec.pod_endpoints:
            return [e for e in self.ctx.pod_endpoints() if e != self.ctx.own_endpoint]
        return self.ctx.peer_endpoints()

    def run(self, destinations: Sequence[Endpoint], timeout_s: float) -> list[Observation]:
        return self._fan_out(destinations, check_tcp, timeout_s)
