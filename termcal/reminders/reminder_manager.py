from datetime import timedelta

from PyQt6.QtCore import QObject, QTimer, pyqtSignal


class ReminderManager(QObject):
    """Drives NotificationScheduler.tick from a Qt timer."""
    reminderReady = pyqtSignal(object)

    def __init__(self, scheduler, interval=timedelta(seconds=30), parent=None):
        super().__init__(parent)
        self.scheduler = scheduler
        self.timer = QTimer(self)
        self.timer.setInterval(int(interval.total_seconds() * 1000))
        self.timer.timeout.connect(self.check_reminders)

    def start(self):
        """Check once right away, then on every timer tick."""
        self.check_reminders()
        self.timer.start()

    def stop(self):
        self.timer.stop()

    def check_reminders(self):
        """Dispatch due reminders and announce each one."""
        for notification in self.scheduler.tick():
            self.reminderReady.emit(notification)
