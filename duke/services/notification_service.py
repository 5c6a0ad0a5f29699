"""Background loop: reviewer notification emails plus periodic sweeps.

Runs schedule.run_pending() on a daemon thread. Each tick emails the
teachers of every organisation with unreviewed sections (at most once per
notification interval per organisation), then drops expired sessions and
links and runs the reconcile pass.
"""

import threading
from datetime import timedelta
from typing import List, Optional

import schedule

from ..core.config import APP_NAME, NotificationSettings
from ..models.org import Organisation
from ..stores.database import Database
from ..utils.exceptions import StoreError
from ..utils.logger import get_logger
from .mail_service import Mailer
from .reconcile_service import ReconcileService

logger = get_logger(__name__)


class NotificationService:
    def __init__(
        self,
        db: Database,
        mailer: Mailer,
        reconciler: ReconcileService,
        settings: NotificationSettings,
    ):
        self.db = db
        self.mailer = mailer
        self.reconciler = reconciler
        self.settings = settings
        self._scheduler = schedule.Scheduler()
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    # -- one tick ------------------------------------------------------

    def _due(self, org: Organisation, now) -> bool:
        if org.last_notification is None:
            return True
        return now >= org.last_notification + timedelta(seconds=self.settings.interval_seconds)

    def _recipients(self, org: Organisation) -> List[str]:
        emails = []
        for user_id in org.teachers:
            try:
                user = self.db.users.fetch(user_id)
            except StoreError:
                continue
            if user is not None and user.notifications:
                emails.append(user.email)
        return emails

    def notify_reviewers(self) -> int:
        """Email teachers about unreviewed sections. Returns the number of emails sent."""
        now = self.db.clock()
        total = 0
        for org in list(self.db.orgs.values()):
            if not self._due(org, now):
                continue
            count = len(org.unreviewed_sections)
            sent = 0
            if count > 0:
                message = f"There are {count} new unreviewed sections"
                for email in self._recipients(org):
                    if self.mailer.send(
                        email,
                        message,
                        "Unreviewed Sections",
                        message,
                        f"Sign in to your {APP_NAME} account to view these unreviewed sections.",
                    ):
                        sent += 1
                logger.info("Sent reviewer notifications", org_id=str(org.id), sent=sent, unreviewed=count)
            total += sent

            try:
                guard = self.db.orgs.write_lock(org.id)
                if guard is None:
                    continue
                with guard:
                    guard.mutable().last_notification = now
            except StoreError as e:
                logger.warning("Failed to record notification time", org_id=str(org.id), error=str(e))
        return total

    def tick(self) -> None:
        try:
            self.notify_reviewers()
        except StoreError as e:
            logger.error("Notification pass failed", error=str(e))
        try:
            self.db.sessions.sweep_expired()
            self.db.links.sweep_expired()
        except StoreError as e:
            logger.error("Expiry sweep failed", error=str(e))
        self.reconciler.run()

    # -- thread --------------------------------------------------------

    def _loop(self) -> None:
        logger.info("Notification loop started", sleep_seconds=self.settings.sleep_seconds)
        while not self._stop.is_set():
            try:
                self._scheduler.run_pending()
            except Exception as e:
                logger.error("Error in notification loop", error=str(e))
            self._stop.wait(1)
        logger.info("Notification loop stopped")

    def start(self) -> None:
        if self._thread is not None:
            logger.warning("Notification loop already running")
            return
        self._scheduler.every(self.settings.sleep_seconds).seconds.do(self.tick)
        self._stop.clear()
        self._thread = threading.Thread(target=self._loop, daemon=True, name="notification-loop")
        self._thread.start()

    def stop(self) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout=5)
            self._thread = None
        self._scheduler.clear()
