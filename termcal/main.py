import logging
import signal
import sys

from PyQt6.QtCore import QCoreApplication, QTimer

from termcal.api.auth import TokenFile, TokenVault, run_consent_flow
from termcal.api.cache import EventStore
from termcal.api.calendar import GoogleCalendarClient
from termcal.api.outlook import OutlookCalendarClient
from termcal.api.sync import SyncEngine
from termcal.core.config import load_config
from termcal.core.errors import TermcalError
from termcal.core.utils import format_event_time
from termcal.reminders.multiplexer import detect_bridge
from termcal.reminders.reminder_manager import ReminderManager
from termcal.reminders.scheduler import NotificationScheduler
from termcal.workers.sync_worker import SignInWorker, SyncWorker

logger = logging.getLogger('termcal')


def build_provider(config):
    """Create the ProviderClient named by `config.provider`."""
    if config.provider == 'outlook':
        return OutlookCalendarClient(
            config.outlook_client_id,
            client_secret=config.outlook_client_secret,
            tenant=config.outlook_tenant,
            base_url=config.outlook_base_url,
            http_timeout=config.http_timeout_seconds,
        )
    return GoogleCalendarClient.from_client_secrets_file(
        config.credentials_file,
        calendar_id=config.calendar_id,
        http_timeout=config.http_timeout_seconds,
    )


class Services:
    """The core components, wired together for one calendar account."""

    def __init__(self, config, provider=None):
        self.config = config
        self.provider = provider or build_provider(config)
        self.vault = TokenVault(self.provider, TokenFile(config.token_file),
                                safety_margin=config.safety_margin)
        self.store = EventStore(retention=config.retention)
        self.scheduler = NotificationScheduler(
            bridge=detect_bridge(config.multiplexer),
            lead_time=config.lead_time,
            # a tick may come up to one interval before the exact fire time
            early_fire=config.tick_interval,
        )
        self.store.add_listener(self.scheduler.on_merge)
        self.engine = SyncEngine.from_config(config, self.vault, self.provider, self.store)

    def sign_in(self):
        """Run the browser consent flow and store the resulting credential."""
        credential = run_consent_flow(self.provider, timeout_seconds=self.config.auth_timeout_millis / 1000)
        self.vault.authenticate(credential)


def log_upcoming(store, limit=5):
    """Log the next few events after each sync."""
    events = store.upcoming(limit=limit)
    if not events:
        logger.info("No upcoming events")
    for event in events:
        logger.info("  %s  %s", format_event_time(event.start, event.end, event.all_day), event.title)


def main():
    """Main entry point for the application."""
    try:
        config = load_config()
    except TermcalError as e:
        print(f"termcal: {e}", file=sys.stderr)
        return 2

    logging.basicConfig(
        level=config.log_level,
        format='%(asctime)s %(levelname)s %(name)s: %(message)s',
    )

    try:
        services = Services(config)
        if not services.vault.is_authenticated:
            services.sign_in()
    except (TermcalError, OSError, ValueError) as e:
        logger.error("Could not sign in: %s", e)
        return 2

    app = QCoreApplication(sys.argv)
    worker = SyncWorker(services.engine, config.poll_interval)
    reminders = ReminderManager(services.scheduler, config.tick_interval)

    sign_in_worker = SignInWorker(services.sign_in)

    def on_auth_required(error):
        if sign_in_worker.isRunning():
            return
        # reminders keep firing from the cached snapshot meanwhile
        logger.warning("Signed out (%s); starting consent flow again", error)
        sign_in_worker.start()

    def on_sign_in_failed(error):
        app.quit()

    sign_in_worker.signedIn.connect(worker.request_sync)
    sign_in_worker.signInFailed.connect(on_sign_in_failed)

    worker.syncCompleted.connect(lambda result: log_upcoming(services.store))
    worker.syncFailed.connect(lambda e: logger.warning("Showing cached events: %s", e))
    worker.authRequired.connect(on_auth_required)
    app.aboutToQuit.connect(reminders.stop)
    app.aboutToQuit.connect(worker.stop)
    # the consent server gives up after auth_timeout_millis
    app.aboutToQuit.connect(sign_in_worker.wait)

    # Let the Python interpreter run so Ctrl+C reaches the handler
    signal.signal(signal.SIGINT, lambda *args: app.quit())
    heartbeat = QTimer()
    heartbeat.timeout.connect(lambda: None)
    heartbeat.start(500)

    worker.start()
    reminders.start()
    return app.exec()


if __name__ == "__main__":
    sys.exit(main())
