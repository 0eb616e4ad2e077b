"""
Expiry Sweeper — background task that archives lapsed codes and services.

Every sweep_interval_seconds it opens a fresh session and runs:
    - control_number_service.sweep_expired()
    - delivery_service.sweep_expired_services()

Nothing depends on the sweep for correctness: validation, redemption and
access checks evaluate expiry against the clock themselves. The sweep keeps
stored statuses (and dashboards built on them) honest.

Runs as an asyncio task during the FastAPI app lifespan.
"""
import asyncio
import logging
from typing import Optional

from config import settings
from database import async_session
from services import control_number_service, delivery_service
from utils.clock import utcnow

logger = logging.getLogger(__name__)

_sweeper_task: Optional[asyncio.Task] = None
_is_running: bool = False
_errors_count: int = 0
_runs: int = 0
_last_run_at = None
_last_result: dict = {"controlNumbersExpired": 0, "servicesExpired": 0}


async def run_once(session_factory=async_session) -> dict:
    """One sweep in its own session; commits on success."""
    global _runs, _last_run_at, _last_result

    async with session_factory() as db:
        expired_codes = await control_number_service.sweep_expired(db)
        expired_services = await delivery_service.sweep_expired_services(db)
        await db.commit()

    _runs += 1
    _last_run_at = utcnow()
    _last_result = {"controlNumbersExpired": expired_codes, "servicesExpired": expired_services}
    return _last_result


async def _sweeper_loop():
    global _is_running, _errors_count

    _is_running = True
    interval = settings.sweep_interval_seconds
    logger.info(f"Sweeper started (every {interval}s)")

    while _is_running:
        try:
            await asyncio.sleep(interval)
            await run_once()
        except asyncio.CancelledError:
            logger.info("Sweeper cancelled")
            break
        except Exception as e:
            _errors_count += 1
            logger.error(f"Sweep cycle error: {e}", exc_info=True)

    _is_running = False
    logger.info("Sweeper stopped")


# ════════════════════════════════════════════════════════════════════
# Public API: start / stop / status
# ════════════════════════════════════════════════════════════════════


async def start():
    """Start the sweeper as a background asyncio task."""
    global _sweeper_task, _is_running

    if _sweeper_task and not _sweeper_task.done():
        logger.warning("Sweeper already running")
        return

    _is_running = True
    _sweeper_task = asyncio.create_task(_sweeper_loop())


async def stop():
    """Stop the sweeper gracefully."""
    global _sweeper_task, _is_running
    _is_running = False

    if _sweeper_task and not _sweeper_task.done():
        _sweeper_task.cancel()
        try:
            await _sweeper_task
        except asyncio.CancelledError:
            pass

    _sweeper_task = None


def get_status() -> dict:
    """Sweeper status for the /sweeper/status endpoint."""
    return {
        "running": _is_running,
        "runs": _runs,
        "lastRunAt": _last_run_at.isoformat() if _last_run_at else None,
        "lastResult": _last_result,
        "errorsCount": _errors_count,
        "intervalSeconds": settings.sweep_interval_seconds,
    }
