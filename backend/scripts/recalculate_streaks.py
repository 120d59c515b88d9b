import asyncio
import logging
import uuid

from inhabit.config import settings
from inhabit.db import db
from inhabit.habit_service import recalculate_all_streaks
from inhabit.streak_logic import reference_today


logger = logging.getLogger("inhabit-recalculate-streaks-script")


async def _run() -> int:
    job_run_id = str(uuid.uuid4())
    await db.create_pool()
    if db.pool is None:
        logger.error("STREAK_RECALCULATE_JOB_ABORT job_run_id=%s reason=no_db_pool", job_run_id)
        return 1

    today = reference_today(settings.get_streak_timezone())
    try:
        async with db.pool.acquire() as conn:
            summary = await recalculate_all_streaks(
                conn,
                today,
                db.capabilities,
                job_run_id=job_run_id,
            )
            logger.info(
                "STREAK_RECALCULATE_JOB_SUMMARY job_run_id=%s today=%s total_scanned=%s diverged=%s failed=%s",
                job_run_id,
                today.isoformat(),
                summary.total_scanned,
                summary.diverged,
                summary.failed,
            )
            return 1 if summary.failed else 0
    finally:
        await db.close_pool()


def main() -> None:
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    exit_code = asyncio.run(_run())
    raise SystemExit(exit_code)


if __name__ == "__main__":
    main()
