"""Error taxonomy for the call-session core."""
from __future__ import annotations


class CallError(Exception):
    """Base class for call-session failures."""


class TransportError(CallError):
    """The signaling connection dropped or could not be opened."""


class TransportNotReady(TransportError):
    """A message was sent while the signaling connection was not open."""


class MediaAcquisitionError(CallError):
    """Local capture devices could not be opened (permission or hardware)."""


class NegotiationError(CallError):
    """A session description or candidate could not be produced or applied."""


class PeerLost(CallError):
    """The remote party left or the peer transport closed underneath us."""
