"""
Common: ヘルスチェック

依存先 (database / cache / mq) とコンシューマタスクを個別に確認し、1つでも不健全なら
status を degraded にして 503 を返す。
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable, Mapping

from .errors import TransportError

logger = logging.getLogger(__name__)

HealthCheck = Callable[[], Awaitable[object]]


async def check_health(
    service: str, checks: Mapping[str, HealthCheck]
) -> tuple[int, dict]:
    results: dict[str, str] = {}
    healthy = True
    for name, check in checks.items():
        try:
            await check()
        except Exception as exc:
            logger.warning("Health check '%s' failed: %s", name, exc)
            results[name] = f"unhealthy: {exc}"
            healthy = False
        else:
            results[name] = "healthy"

    body = {
        "status": "healthy" if healthy else "degraded",
        "service": service,
        "checks": results,
    }
    return (200 if healthy else 503), body


def task_check(task: asyncio.Task) -> HealthCheck:
    """バックグラウンドタスクが止まっていたら不健全とみなすチェック。"""

    async def check() -> None:
        if task.done():
            raise TransportError(f"{task.get_name()} stopped")

    return check
