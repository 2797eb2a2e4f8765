"""Local cache store for threads, messages and offline queues."""

from offline_mail_sync.cache.store import CacheStore, ContactSuggestion

__all__ = ["CacheStore", "ContactSuggestion"]
