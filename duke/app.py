"""Portal application: wires settings, stores and services together."""

from typing import Optional

from .auth import passwords
from .auth.crypto import SecretBox
from .core.clock import Clock, utc_now
from .core.config import Settings
from .models.catalogue import load_catalogue
from .services.asset_service import AssetService
from .services.mail_service import Mailer
from .services.notification_service import NotificationService
from .services.portal_service import PortalService
from .services.reconcile_service import ReconcileService
from .services.section_service import SectionService
from .services.stats_service import StatsService
from .stores.database import Database
from .utils.logger import get_logger

logger = get_logger(__name__)


class DukePortal:
    """Owns every long-lived component of one portal process."""

    def __init__(self, settings: Settings, mailer: Optional[Mailer] = None, clock: Clock = utc_now):
        self.settings = settings
        self.clock = clock
        self.mailer = mailer or Mailer(settings.smtp)
        self.db = None
        self.catalogue = None
        self.assets = None
        self.portal_service = None
        self.section_service = None
        self.stats_service = None
        self.reconciler = None
        self.notifications = None

    def initialize(self) -> "DukePortal":
        logger.info("Initializing portal", fs_root=str(self.settings.fs_root))

        passwords.set_rounds(self.settings.auth.bcrypt_rounds)
        secret_box = SecretBox(self.settings.auth.secret_key)

        self.catalogue = load_catalogue(self.settings.catalogue_path)
        self.db = Database(self.settings.db_root, clock=self.clock, secret_box=secret_box)
        self.assets = AssetService(self.settings.sections_root)

        self.portal_service = PortalService(self.db, self.settings, self.mailer, self.catalogue, self.assets)
        self.section_service = SectionService(self.db, self.catalogue, self.assets, clock=self.clock)
        self.stats_service = StatsService(self.db, self.catalogue)
        self.reconciler = ReconcileService(self.db, self.assets)
        self.notifications = NotificationService(
            self.db, self.mailer, self.reconciler, self.settings.notifications
        )

        self.portal_service.ensure_owner()
        logger.info("Portal initialized", awards=len(self.catalogue.awards))
        return self

    def start_background(self) -> None:
        try:
            self.mailer.init()
        except OSError as e:
            # send() reconnects on demand
            logger.error("Failed to connect SMTP client", error=str(e))
        if self.settings.notifications.enabled:
            self.notifications.start()

    def shutdown(self) -> None:
        if self.notifications is not None:
            self.notifications.stop()
        self.mailer.teardown()
        logger.info("Portal stopped")
