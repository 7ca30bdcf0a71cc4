"""
Shared job runner for scheduled background jobs.
Used by the server scheduler; each run_* returns a dict with "message" and "count".
"""
import logging
from datetime import timedelta

logger = logging.getLogger(__name__)

REMINDER_AFTER_HOURS = 12
PAUSE_WINDOW_HOURS = 24


async def run_paused_session_reminders():
    """Email one reminder for each session paused between 12 and 24 hours ago."""
    from database import database
    from models import SessionStatus
    from services.session_service import session_service
    from utils.dates import utc_now, utc_now_iso

    try:
        db = database.get_db()
        now = utc_now()
        sessions = await db.coaching_sessions.find(
            {
                "status": SessionStatus.ACTIVE.value,
                "paused_at": {
                    "$ne": None,
                    "$gte": (now - timedelta(hours=PAUSE_WINDOW_HOURS)).isoformat(),
                    "$lte": (now - timedelta(hours=REMINDER_AFTER_HOURS)).isoformat(),
                },
                "pause_reminder_sent_at": None,
            },
            {"_id": 0}
        ).to_list(500)

        count = 0
        for session in sessions:
            # Claim first so overlapping runs send one reminder per session
            claimed = await db.coaching_sessions.update_one(
                {"id": session["id"], "pause_reminder_sent_at": None},
                {"$set": {"pause_reminder_sent_at": utc_now_iso()}}
            )
            if not claimed.modified_count:
                continue
            if await session_service.send_pause_email(session, is_reminder=True):
                count += 1
            else:
                await db.coaching_sessions.update_one(
                    {"id": session["id"]},
                    {"$set": {"pause_reminder_sent_at": None}}
                )

        logger.info(f"Paused session reminders job completed: {count} reminders sent")
        return {"message": f"Paused session reminders sent: {count}", "count": count}
    except Exception as e:
        logger.error(f"Paused session reminders job failed: {e}")
        raise
