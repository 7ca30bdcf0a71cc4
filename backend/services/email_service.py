from postmarker.core import PostmarkClient
from database import database
from models import MessageLog, EmailTemplateAlias, AuditAction
from utils.audit import create_audit_log
from datetime import datetime, timezone
import os
import logging
from typing import Optional, Dict

logger = logging.getLogger(__name__)

# Verified sender in Postmark
DEFAULT_SENDER = os.getenv("EMAIL_SENDER", "Talendro Interview Coach <noreply@talendro.com>")
REPLY_TO = os.getenv("EMAIL_REPLY_TO", "greg@talendro.com")
ADMIN_EMAIL = os.getenv("ADMIN_EMAIL", "greg@talendro.com")

class EmailService:
    def __init__(self):
        postmark_token = os.getenv("POSTMARK_SERVER_TOKEN")
        if not postmark_token:
            logger.warning("POSTMARK_SERVER_TOKEN not set - emails will be logged but not sent")
            self.client = None
        else:
            self.client = PostmarkClient(server_token=postmark_token)
            logger.info("Postmark email client initialized")

    async def send_email(
        self,
        recipient: str,
        template_alias: EmailTemplateAlias,
        content: Dict[str, str],
        session_id: Optional[str] = None,
    ) -> MessageLog:
        """Send a built email (subject/html/text) and record it in message_logs.

        Delivery failures are recorded on the returned MessageLog (status "failed")
        rather than raised; callers decide whether a failed send matters.
        """
        db = database.get_db()

        message_log = MessageLog(
            session_id=session_id,
            recipient=recipient,
            template_alias=template_alias,
            subject=content["subject"],
            status="queued"
        )

        try:
            if self.client:
                response = self.client.emails.send(
                    From=DEFAULT_SENDER,
                    To=recipient,
                    ReplyTo=REPLY_TO,
                    Subject=content["subject"],
                    HtmlBody=content["html"],
                    TextBody=content.get("text") or "",
                    TrackOpens=True,
                    TrackLinks="HtmlOnly",
                    Tag=template_alias.value
                )

                message_log.postmark_message_id = response["MessageID"]
                message_log.status = "sent"
                message_log.sent_at = datetime.now(timezone.utc)
                logger.info(f"Email sent to {recipient} template={template_alias.value}: {response['MessageID']}")
            else:
                # Dev mode - just log
                message_log.status = "sent"
                message_log.sent_at = datetime.now(timezone.utc)
                logger.info(f"[DEV MODE] Email logged (not sent) to {recipient} template={template_alias.value}")

        except Exception as e:
            message_log.status = "failed"
            message_log.error_message = str(e)
            message_log.provider_error_type = type(e).__name__
            logger.error(f"Failed to send email to {recipient}: {e}")

        doc = message_log.model_dump()
        for key in ["created_at", "sent_at"]:
            if doc.get(key) and isinstance(doc[key], datetime):
                doc[key] = doc[key].isoformat()

        await db.message_logs.insert_one(doc)

        await create_audit_log(
            action=AuditAction.EMAIL_SENT if message_log.status == "sent" else AuditAction.EMAIL_FAILED,
            resource_type="coaching_session" if session_id else None,
            resource_id=session_id,
            metadata={
                "template": template_alias.value,
                "status": message_log.status,
                "postmark_id": message_log.postmark_message_id,
                "error": message_log.error_message,
            }
        )

        return message_log

email_service = EmailService()
