"""
Health monitoring for the fulfillment service
Database probe, process resources and a rolling count of fulfillment errors
"""

import time
import logging
import threading
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Optional

import psutil

from database import probe_database
from fulfillment_errors import DatabaseError, ConfigurationError

logger = logging.getLogger(__name__)


class HealthMonitor:
    """Service health tracking"""

    def __init__(self, database_probe: Optional[Callable[[], Awaitable[bool]]] = None):
        self.start_time = time.time()
        self._database_probe = database_probe or probe_database
        self.error_log: List[Dict[str, Any]] = []
        self._lock = threading.Lock()

    def update_error_count(self, error_message: str) -> None:
        """Track errors from the last hour"""
        with self._lock:
            now = time.time()
            self.error_log.append({'timestamp': now, 'message': str(error_message)[:200]})
            one_hour_ago = now - 3600
            self.error_log = [err for err in self.error_log if err['timestamp'] > one_hour_ago]

    def error_count_1h(self) -> int:
        with self._lock:
            one_hour_ago = time.time() - 3600
            return sum(1 for err in self.error_log if err['timestamp'] > one_hour_ago)

    async def check_database_health(self) -> str:
        start_time = time.time()
        try:
            healthy = await self._database_probe()
        except (DatabaseError, ConfigurationError) as e:
            logger.warning(f"Database health check failed: {e}")
            return 'failed'
        if not healthy:
            return 'failed'
        response_time = time.time() - start_time
        if response_time < 1.0:
            return 'healthy'
        if response_time < 5.0:
            return 'slow'
        return 'degraded'

    def check_system_resources(self) -> Dict[str, Any]:
        memory_info = psutil.virtual_memory()
        process = psutil.Process()
        return {
            'memory_usage': memory_info.percent,
            'process_memory_mb': round(process.memory_info().rss / 1024 / 1024, 1),
            'uptime_seconds': int(time.time() - self.start_time),
        }

    async def perform_health_check(self) -> Dict[str, Any]:
        """Return a health snapshot; overall is healthy, warning or degraded"""
        database_status = await self.check_database_health()
        resources = self.check_system_resources()
        errors = self.error_count_1h()

        if database_status == 'failed':
            overall = 'degraded'
        elif resources['memory_usage'] > 90 or errors > 5 or database_status != 'healthy':
            overall = 'warning'
        else:
            overall = 'healthy'

        if resources['memory_usage'] > 90:
            logger.warning(f"⚠️ High memory usage: {resources['memory_usage']:.1f}%")

        return {
            'overall': overall,
            'database': database_status,
            'error_count_1h': errors,
            'last_check': datetime.now().isoformat(),
            **resources,
        }
