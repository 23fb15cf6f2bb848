"""
Error taxonomy for the backup viewer.

- StoreUnavailable: the SQLite export is missing or corrupt. Fatal for the
  session, surfaced to the client as 503, never retried.
- DecodeError: a conversation identifier could not be decoded. Treated as
  "conversation not found".
- TransferAborted: the client went away while an attachment was streaming.
  Logged only.

A missing attachment is not an error: the resolver returns None and the
client renders a placeholder.
"""


class ViewerError(Exception):
    """Base class for viewer errors."""


class StoreUnavailable(ViewerError):
    def __init__(self, message: str, path: str = None):
        super().__init__(message)
        self.path = path


class DecodeError(ViewerError, ValueError):
    pass


class TransferAborted(ViewerError):
    def __init__(self, path: str, reason: str = ""):
        super().__init__(f"Transfer of {path} aborted by client{': ' + reason if reason else ''}")
        self.path = path
        self.reason = reason
