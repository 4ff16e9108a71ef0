# Reminder modules initialization
from termcal.reminders.multiplexer import MultiplexerBridge, detect_bridge
from termcal.reminders.scheduler import NotificationScheduler

__all__ = ['MultiplexerBridge', 'detect_bridge', 'NotificationScheduler']
