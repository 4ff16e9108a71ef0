# API modules initialization
from termcal.api.auth import TokenFile, TokenVault
from termcal.api.cache import EventStore
from termcal.api.calendar import GoogleCalendarClient, ProviderClient
from termcal.api.outlook import OutlookCalendarClient
from termcal.api.sync import SyncEngine

__all__ = [
    'TokenFile', 'TokenVault', 'EventStore', 'GoogleCalendarClient', 'OutlookCalendarClient',
    'ProviderClient', 'SyncEngine',
]
