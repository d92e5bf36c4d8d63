import hashlib
import json
import logging
import subprocess
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Optional

from ..config import settings
from ..schemas.snapshot import ServiceStatus

logger = logging.getLogger("vps-agent.collector.service-status")


class GostStatusProbe:
    """
    Reports whether the GOST tunnel service is running and which config it serves.

    Costs at most one short subprocess (systemctl is-active) per refresh and
    caches the result for `cache_ttl` seconds, so heartbeats do not pay the
    subprocess latency every time.
    """

    def __init__(
        self,
        service_name: Optional[str] = None,
        config_path: Optional[str] = None,
        cache_ttl: Optional[float] = None,
        query_timeout: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.service_name = service_name or settings.GOST_SERVICE_NAME
        self.config_path = Path(config_path or settings.GOST_CONFIG_PATH)
        self.cache_ttl = settings.HEARTBEAT_INTERVAL_SECONDS if cache_ttl is None else cache_ttl
        self.query_timeout = query_timeout or settings.SERVICE_QUERY_TIMEOUT_SECONDS
        self._clock = clock
        self._cached: Optional[ServiceStatus] = None
        self._cached_at = 0.0

    def status(self) -> ServiceStatus:
        now = self._clock()
        if self._cached is not None and now - self._cached_at < self.cache_ttl:
            return self._cached
        self._cached = self._query()
        self._cached_at = now
        return self._cached

    def invalidate(self) -> None:
        self._cached = None

    def _query(self) -> ServiceStatus:
        if not self._is_active():
            return ServiceStatus(running=False)

        status = ServiceStatus(running=True)
        try:
            content = self.config_path.read_bytes()
        except FileNotFoundError:
            return status
        except OSError as e:
            logger.warning(f"Could not read GOST config {self.config_path}: {e}")
            return status

        status.config_fingerprint = hashlib.sha256(content).hexdigest()[:16]
        try:
            mtime = self.config_path.stat().st_mtime
            status.last_sync_timestamp = datetime.fromtimestamp(mtime, tz=timezone.utc).isoformat()
        except OSError:
            pass
        try:
            services = json.loads(content).get("services")
            if isinstance(services, list):
                status.rule_count = len(services)
        except (ValueError, AttributeError) as e:
            logger.warning(f"GOST config {self.config_path} is not a JSON object: {e}")
        return status

    def _is_active(self) -> bool:
        try:
            result = subprocess.run(
                ["systemctl", "is-active", self.service_name],
                capture_output=True,
                text=True,
                timeout=self.query_timeout,
            )
        except (OSError, subprocess.SubprocessError) as e:
            logger.debug(f"Service status query failed: {e}")
            return False
        return result.stdout.strip() == "active"
