"""Terminal calendar with multiplexer popup reminders."""

__version__ = '0.1.0'
