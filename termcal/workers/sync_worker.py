import logging
import queue
from datetime import timedelta

from PyQt6.QtCore import QThread, pyqtSignal

from termcal.core.errors import AuthError, SyncUnauthenticated, SyncUnavailable

logger = logging.getLogger(__name__)

MANUAL = 'manual'
STARTUP = 'startup'
TIMER = 'timer'
_STOP = object()


class SyncWorker(QThread):
    """Worker thread that runs SyncEngine.sync_once off the UI loop.

    Waits on its queue for up to one poll interval: a queued request means a
    manual refresh, a timeout means the periodic sync is due.
    """
    syncCompleted = pyqtSignal(object)
    syncFailed = pyqtSignal(Exception)
    authRequired = pyqtSignal(Exception)
    loadingChanged = pyqtSignal(bool)

    def __init__(self, engine, interval=timedelta(minutes=5), parent=None):
        super().__init__(parent)
        self.engine = engine
        self.interval = interval
        self.queue = queue.Queue()
        self.running = True
        self.paused = False

    def request_sync(self):
        """Ask for a sync as soon as possible; also resumes after re-auth."""
        self.paused = False
        self.queue.put(MANUAL)

        if not self.isRunning():
            self.start()

    def run(self):
        """Main worker loop: sync at startup, then on request or timeout."""
        self.run_once(STARTUP)
        while self.running:
            # no periodic polling while waiting for the user to sign in again
            timeout = None if self.paused else self.interval.total_seconds()
            try:
                reason = self.queue.get(block=True, timeout=timeout)
            except queue.Empty:
                reason = TIMER

            if reason is _STOP or not self.running:
                break
            self.run_once(reason)

        logger.info("Sync worker stopped")

    def run_once(self, reason=TIMER):
        """Run one sync and report the outcome through signals."""
        if reason == MANUAL:
            self.loadingChanged.emit(True)
        try:
            result = self.engine.sync_once()
        except SyncUnauthenticated as e:
            self.paused = True
            self.authRequired.emit(e)
        except SyncUnavailable as e:
            self.syncFailed.emit(e)
        except Exception as e:
            logger.exception("Unexpected error during %s sync", reason)
            self.syncFailed.emit(e)
        else:
            self.syncCompleted.emit(result)
        finally:
            if reason == MANUAL:
                self.loadingChanged.emit(False)

    def stop(self):
        """Stop the worker, letting an in-flight request finish or time out."""
        self.running = False
        self.engine.stop()
        self.queue.put(_STOP)
        self.wait()


class SignInWorker(QThread):
    """Runs the blocking browser consent flow off the Qt event loop."""
    signedIn = pyqtSignal()
    signInFailed = pyqtSignal(Exception)

    def __init__(self, sign_in, parent=None):
        super().__init__(parent)
        self.sign_in = sign_in

    def run(self):
        try:
            self.sign_in()
        except (AuthError, OSError, ValueError) as e:
            logger.error("Sign-in failed: %s", e)
            self.signInFailed.emit(e)
        else:
            self.signedIn.emit()
