"""
Post-commit notifications for backup events.

Events are published after the state change they describe has been
persisted. Each sink (audit log, admin e-mail) runs as a background task
that the publisher tracks but never awaits on the caller's path.
"""

import asyncio
import logging
import smtplib
from dataclasses import dataclass, field
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Any, Dict, Optional, Set

from tradein.core.database import BACKUP_AUDIT_RESOURCE_TYPE
from tradein.services.audit import record_audit

logger = logging.getLogger(__name__)


@dataclass
class BackupEvent:
    """Something that happened to a backup."""
    action: str
    actor: str
    message: str
    resource_id: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    failed: bool = False


class BackupEventPublisher:
    """Dispatch backup events to the audit log and, for failures, by e-mail."""

    def __init__(self, db, settings=None):
        self.db = db
        self.settings = settings
        self._tasks: Set[asyncio.Task] = set()

    def publish(self, event: BackupEvent) -> None:
        """Schedule delivery of an event. Returns immediately."""
        self._spawn(self._write_audit(event))
        if event.failed and self._email_enabled:
            self._spawn(self._send_alert(event))

    def _spawn(self, coro) -> None:
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._on_done)

    def _on_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error(f"Backup notification failed: {task.exception()}")

    async def drain(self) -> None:
        """Wait for pending deliveries (shutdown, tests)."""
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    @property
    def pending(self) -> int:
        return len(self._tasks)

    async def _write_audit(self, event: BackupEvent) -> None:
        await record_audit(
            self.db,
            action=event.action,
            resource_type=BACKUP_AUDIT_RESOURCE_TYPE,
            resource_id=event.resource_id,
            staff_identifier=event.actor,
            metadata={"message": event.message, **event.metadata},
        )

    # ==================== E-mail ====================

    @property
    def _email_enabled(self) -> bool:
        return bool(
            self.settings is not None
            and self.settings.smtp_configured
            and self.settings.admin_email
        )

    async def _send_alert(self, event: BackupEvent) -> None:
        subject = f"[Trade-In Backups] {event.action.replace('_', ' ').title()}"
        body = (
            f"{event.message}\n\n"
            f"Triggered by: {event.actor}\n"
            f"Backup: {event.resource_id or '-'}\n"
        )
        for key, value in event.metadata.items():
            body += f"{key}: {value}\n"

        loop = asyncio.get_running_loop()
        await loop.run_in_executor(None, self._send_email_sync, subject, body)

    def _send_email_sync(self, subject: str, body: str) -> None:
        settings = self.settings
        msg = MIMEMultipart()
        msg["From"] = settings.smtp_from or settings.smtp_user
        msg["To"] = settings.admin_email
        msg["Subject"] = subject
        msg.attach(MIMEText(body, "plain"))

        try:
            with smtplib.SMTP(settings.smtp_host, settings.smtp_port, timeout=30) as server:
                server.starttls()
                server.login(settings.smtp_user, settings.smtp_pass)
                server.sendmail(msg["From"], [settings.admin_email], msg.as_string())
            logger.info(f"Backup alert e-mailed to {settings.admin_email}")
        except (smtplib.SMTPException, OSError) as e:
            logger.error(f"Failed to send backup alert e-mail: {e}")
