"""Remote mail service interface and the Gmail implementation."""

from offline_mail_sync.remote.gmail import GmailRemoteService, build_mime_message, classify_error
from offline_mail_sync.remote.protocol import RemoteMailService

__all__ = ["GmailRemoteService", "RemoteMailService", "build_mime_message", "classify_error"]
