"""Offline Mail Sync - offline-first mail synchronization core.

This package keeps a durable, size-bounded local cache of mail threads
consistent with a remote mail service under intermittent connectivity,
and replays mutations and sends queued while offline.
"""

__version__ = "0.1.0"

from offline_mail_sync.config import Settings, get_settings

__all__ = ["Settings", "get_settings", "__version__"]
