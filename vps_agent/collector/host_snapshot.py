"""
Host snapshot collection for heartbeats and registration.

Uses psutil for every OS counter. Each metric group is collected on its own
and degrades to "unknown"/0/None on failure, so a broken counter never
prevents the heartbeat from going out.

CPU strategy: usage is 100 - idle_delta / total_delta * 100 between the
previous call's psutil.cpu_times() sample and the current one. The very
first call takes two samples `cpu_sample_interval` seconds apart.
"""
import logging
import platform
import socket
import sys
import time
from typing import Dict, Optional

import psutil

from ..schemas.snapshot import UNKNOWN, HostSnapshot, MemoryUsage, NetworkCounters, ServiceStatus
from .service_status import GostStatusProbe

logger = logging.getLogger("vps-agent.collector")


def _is_loopback(nic: str) -> bool:
    return nic.startswith("lo")


def _cpu_totals(sample) -> tuple:
    # guest time is already included in user on Linux
    total = sum(sample) - getattr(sample, "guest", 0) - getattr(sample, "guest_nice", 0)
    idle = sample.idle + getattr(sample, "iowait", 0)
    return total, idle


class HostSnapshotCollector:
    """Builds a fresh HostSnapshot on every call; keeps only the last CPU sample."""

    def __init__(self, status_probe: Optional[GostStatusProbe] = None, cpu_sample_interval: float = 0.1):
        self.status_probe = status_probe if status_probe is not None else GostStatusProbe()
        self.cpu_sample_interval = cpu_sample_interval
        self._last_cpu = None

    def host_identity(self) -> Dict[str, str]:
        """Cheap identity fields used in the register payload."""
        return {
            "hostname": self._hostname(),
            "ipAddress": self._ip_address(),
            "platform": sys.platform,
            "arch": platform.machine() or UNKNOWN,
        }

    def collect(self) -> HostSnapshot:
        identity = self.host_identity()
        return HostSnapshot(
            hostname=identity["hostname"],
            ip_address=identity["ipAddress"],
            platform=identity["platform"],
            arch=identity["arch"],
            cpu_usage_percent=self._cpu_percent(),
            memory=self._memory(),
            network=self._network(),
            uptime_seconds=self._uptime(),
            service_status=self._service_status(),
        )

    def invalidate_service_status(self) -> None:
        """Drop the cached service status so the next heartbeat re-queries it."""
        self.status_probe.invalidate()

    def _hostname(self) -> str:
        try:
            return socket.gethostname() or UNKNOWN
        except OSError:
            return UNKNOWN

    def _ip_address(self) -> str:
        """First non-loopback IPv4 address, then IPv6."""
        try:
            addrs = psutil.net_if_addrs()
        except Exception as e:
            logger.warning(f"Interface address lookup failed: {e}")
            return UNKNOWN
        for family in (socket.AF_INET, socket.AF_INET6):
            for nic, nic_addrs in addrs.items():
                if _is_loopback(nic):
                    continue
                for addr in nic_addrs:
                    if addr.family == family and addr.address:
                        return addr.address.split("%")[0]
        return UNKNOWN

    def _cpu_percent(self) -> float:
        try:
            previous = self._last_cpu
            if previous is None:
                previous = psutil.cpu_times()
                time.sleep(self.cpu_sample_interval)
            current = psutil.cpu_times()
            self._last_cpu = current
        except Exception as e:
            logger.warning(f"CPU metrics collection failed: {e}")
            return 0.0

        prev_total, prev_idle = _cpu_totals(previous)
        cur_total, cur_idle = _cpu_totals(current)
        total_delta = cur_total - prev_total
        idle_delta = cur_idle - prev_idle
        if total_delta <= 0:
            return 0.0
        usage = 100 - (idle_delta / total_delta * 100)
        return round(min(100.0, max(0.0, usage)), 1)

    def _memory(self) -> MemoryUsage:
        try:
            vm = psutil.virtual_memory()
        except Exception as e:
            logger.warning(f"Memory metrics collection failed: {e}")
            return MemoryUsage()
        used = vm.total - vm.available
        percent = round(used / vm.total * 100, 1) if vm.total else 0.0
        return MemoryUsage(total_bytes=vm.total, used_bytes=used, free_bytes=vm.available, percent=percent)

    def _network(self) -> Optional[NetworkCounters]:
        try:
            counters = psutil.net_io_counters(pernic=True)
        except Exception as e:
            logger.warning(f"Network counters unavailable: {e}")
            return None
        received = sent = 0
        for nic, c in counters.items():
            if _is_loopback(nic):
                continue
            received += c.bytes_recv
            sent += c.bytes_sent
        return NetworkCounters(bytes_received=received, bytes_sent=sent)

    def _uptime(self) -> int:
        try:
            return max(0, int(time.time() - psutil.boot_time()))
        except Exception as e:
            logger.warning(f"Uptime collection failed: {e}")
            return 0

    def _service_status(self) -> Optional[ServiceStatus]:
        try:
            return self.status_probe.status()
        except Exception as e:
            logger.warning(f"Service status collection failed: {e}")
            return None
