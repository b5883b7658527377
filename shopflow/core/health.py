"""
Health checks following the draft RFC "Health Check Response Format for
HTTP APIs" and the Kubernetes liveness/readiness probe conventions.
"""

import logging
import os
import time
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict

import psutil
from fastapi import APIRouter, status
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.engine import Engine

logger = logging.getLogger(__name__)


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


class HealthStatus(str, Enum):
    PASS = "pass"
    FAIL = "fail"
    WARN = "warn"


class ServiceHealth:
    """Builds the health router for one service.

    ``engine_provider`` returns the engine to probe; it is called on every
    readiness check so tests and the app can swap engines after start-up.
    """

    def __init__(
        self,
        service_name: str,
        engine_provider: Callable[[], Engine],
        version: str = "1.0.0",
    ):
        self.service_name = service_name
        self.version = version
        self.engine_provider = engine_provider
        self.start_time = time.time()
        self.checks_performed = 0
        self.last_check_time = None

    def create_health_router(self) -> APIRouter:
        router = APIRouter(tags=["health"])

        @router.get("/health", status_code=status.HTTP_200_OK)
        async def health_check() -> Dict[str, Any]:
            """Liveness probe used by load balancers."""
            return {
                "status": HealthStatus.PASS,
                "service": self.service_name,
                "version": self.version,
                "releaseId": os.getenv("RELEASE_ID", "unknown"),
                "timestamp": _now(),
            }

        @router.get("/health/live", status_code=status.HTTP_200_OK)
        async def liveness() -> Dict[str, Any]:
            return {"status": "alive"}

        @router.get("/health/ready")
        async def readiness() -> JSONResponse:
            """Readiness probe: database connectivity and memory headroom."""
            checks = self.perform_readiness_checks()
            overall_status = self.calculate_overall_status(checks)
            status_code = (
                status.HTTP_200_OK
                if overall_status != HealthStatus.FAIL
                else status.HTTP_503_SERVICE_UNAVAILABLE
            )
            return JSONResponse(
                status_code=status_code,
                content={
                    "status": overall_status,
                    "version": self.version,
                    "serviceId": self.service_name,
                    "checks": checks,
                    "timestamp": _now(),
                },
            )

        @router.get("/metrics")
        async def metrics() -> Dict[str, Any]:
            process = psutil.Process()
            memory = process.memory_info()
            return {
                "service": self.service_name,
                "version": self.version,
                "uptime_seconds": time.time() - self.start_time,
                "checks_performed": self.checks_performed,
                "timestamp": _now(),
                "system": {
                    "memory_rss_bytes": memory.rss,
                    "memory_vms_bytes": memory.vms,
                    "cpu_percent": process.cpu_percent(),
                    "num_threads": process.num_threads(),
                },
            }

        return router

    def perform_readiness_checks(self) -> Dict[str, Dict[str, Any]]:
        self.checks_performed += 1
        self.last_check_time = time.time()
        return {
            "database:connectivity": self._check_database(),
            "system:memory": self._check_memory(),
        }

    def _check_database(self) -> Dict[str, Any]:
        try:
            start_time = time.time()
            with self.engine_provider().connect() as conn:
                conn.execute(text("SELECT 1")).fetchone()
            response_time = (time.time() - start_time) * 1000
            return {
                "status": HealthStatus.PASS,
                "componentType": "datastore",
                "observedValue": f"{response_time:.2f}",
                "observedUnit": "ms",
                "time": _now(),
            }
        except Exception as e:
            logger.error(f"Database health check failed: {e}")
            return {
                "status": HealthStatus.FAIL,
                "componentType": "datastore",
                "output": str(e),
                "time": _now(),
            }

    def _check_memory(self) -> Dict[str, Any]:
        available_mb = psutil.virtual_memory().available / (1024 ** 2)
        if available_mb < 100:
            status_val = HealthStatus.FAIL
        elif available_mb < 500:
            status_val = HealthStatus.WARN
        else:
            status_val = HealthStatus.PASS
        return {
            "status": status_val,
            "componentType": "system",
            "observedValue": f"{available_mb:.2f}",
            "observedUnit": "MB",
            "time": _now(),
        }

    @staticmethod
    def calculate_overall_status(checks: Dict[str, Dict[str, Any]]) -> HealthStatus:
        statuses = [check.get("status", HealthStatus.PASS) for check in checks.values()]
        if HealthStatus.FAIL in statuses:
            return HealthStatus.FAIL
        if HealthStatus.WARN in statuses:
            return HealthStatus.WARN
        return HealthStatus.PASS
