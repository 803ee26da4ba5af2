"""Error taxonomy shared by the registry, the reconciliation loop and the supervisor."""

from __future__ import annotations


class DispatcherError(Exception):
    """Base class for all dispatcher errors."""


class SourceConstructionError(DispatcherError):
    """A membership source could not be created. Fatal at startup."""


class WatchError(DispatcherError):
    """A watcher failed; ends the current reconciliation attempt."""


class StreamClosed(DispatcherError):
    """The watch stream ended without reporting a change."""


class WriteError(DispatcherError):
    """The dispatcher list could not be written."""


class NotifyError(DispatcherError):
    """The reload request could not be sent."""


class ServeError(DispatcherError):
    """The membership query service could not start listening."""
