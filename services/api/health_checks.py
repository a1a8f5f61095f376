#!/usr/bin/env python3
"""
Health check endpoints and system monitoring
"""
import time
from datetime import datetime, timezone
from typing import Any, Dict, Optional

import psutil

from services.api.logging_config import get_logger

logger = get_logger("health")

# Track API startup time
API_START_TIME = time.time()


async def check_rpc_health(source: Any) -> Dict[str, Any]:
    """
    Check Solana RPC connectivity

    Args:
        source: Transaction source; probed through its `health()` coroutine

    Returns:
        dict with status, response_time_ms, and rpc_url (if known)
    """
    start = time.time()
    healthy = await source.health()
    response_time = (time.time() - start) * 1000

    result = {
        "status": "healthy" if healthy else "unhealthy",
        "response_time_ms": round(response_time, 2),
    }
    rpc_url = getattr(source, "rpc_url", None)
    if rpc_url:
        result["rpc_url"] = rpc_url
    return result


def get_system_metrics() -> Dict[str, Any]:
    """
    Get system resource metrics

    Returns:
        dict with CPU, memory, and disk usage
    """
    try:
        cpu_percent = psutil.cpu_percent(interval=0.1)
        memory = psutil.virtual_memory()
        disk = psutil.disk_usage('/')

        return {
            "cpu": {
                "usage_percent": round(cpu_percent, 2)
            },
            "memory": {
                "usage_percent": round(memory.percent, 2),
                "used_mb": round(memory.used / (1024 * 1024), 2),
                "total_mb": round(memory.total / (1024 * 1024), 2)
            },
            "disk": {
                "usage_percent": round(disk.percent, 2),
                "used_gb": round(disk.used / (1024 ** 3), 2),
                "total_gb": round(disk.total / (1024 ** 3), 2)
            }
        }
    except (OSError, psutil.Error) as e:
        logger.error(f"Failed to get system metrics: {e}")
        return {"error": str(e)}


def get_uptime() -> Dict[str, Any]:
    """
    Get API uptime

    Returns:
        dict with uptime_seconds and uptime_formatted
    """
    uptime_seconds = time.time() - API_START_TIME
    uptime_minutes = uptime_seconds / 60
    uptime_hours = uptime_minutes / 60
    uptime_days = uptime_hours / 24

    if uptime_days >= 1:
        uptime_str = f"{int(uptime_days)}d {int(uptime_hours % 24)}h"
    elif uptime_hours >= 1:
        uptime_str = f"{int(uptime_hours)}h {int(uptime_minutes % 60)}m"
    else:
        uptime_str = f"{int(uptime_minutes)}m {int(uptime_seconds % 60)}s"

    return {
        "uptime_seconds": round(uptime_seconds, 2),
        "uptime_formatted": uptime_str
    }


def check_oracle_health(oracle: Any) -> Dict[str, Any]:
    """
    Summarise the reconciliation engine

    Returns:
        dict with status, monitoring flag, merchant and payment counts
    """
    stats = oracle.stats()
    return {
        "status": "healthy" if oracle.merchant_address else "not_configured",
        "monitoring": stats["monitoring"],
        "merchant_address": stats["merchantAddress"],
        "payments": stats["byStatus"],
        "merkle_tree_size": stats["proofs"]["merkleTreeSize"],
        "nullifiers_used": stats["proofs"]["nullifiersUsed"],
    }


async def comprehensive_health_check(oracle: Any, source: Optional[Any] = None) -> Dict[str, Any]:
    """
    Perform comprehensive health check of all services

    Args:
        oracle: The payment oracle
        source: Transaction source to probe (defaults to the oracle's)

    Returns:
        dict with overall status and component statuses
    """
    checks = {}

    source = source if source is not None else getattr(oracle, "source", None)
    if source is not None and hasattr(source, "health"):
        checks["rpc"] = await check_rpc_health(source)
    else:
        checks["rpc"] = {"status": "not_configured"}

    checks["oracle"] = check_oracle_health(oracle)
    checks["system"] = get_system_metrics()
    checks["uptime"] = get_uptime()

    component_statuses = [
        checks["rpc"].get("status"),
        checks["oracle"].get("status"),
    ]

    # Overall healthy if all configured components are healthy
    if all(s in ["healthy", "not_configured"] for s in component_statuses):
        overall_status = "healthy"
    else:
        overall_status = "unhealthy"

    return {
        "status": overall_status,
        "timestamp": datetime.now(timezone.utc).replace(tzinfo=None).isoformat() + "Z",
        "checks": checks
    }


async def readiness_check(oracle: Any) -> bool:
    """
    Check if API is ready to serve requests

    Ready means a merchant is configured and the RPC answers.

    Returns:
        True if ready, False otherwise
    """
    if not oracle.merchant_address:
        return False
    source = getattr(oracle, "source", None)
    if source is None or not hasattr(source, "health"):
        return True
    return (await check_rpc_health(source))["status"] == "healthy"


async def liveness_check() -> bool:
    """
    Check if API is alive (basic health check)

    Returns:
        True if alive
    """
    return True
