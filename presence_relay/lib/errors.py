"""Error taxonomy for the relay link.

None of these are fatal to the host process; each is caught at the seam
where it is raised and degrades to "stay disconnected / stay unsynced".
"""


class RelayError(Exception):
    """Base class for link and presence failures."""


class TransportError(RelayError):
    """Connect, read or write failure on the WebSocket link."""


class ProtocolError(RelayError):
    """An inbound frame that is not a well-formed wire event."""


class ExternalApiError(RelayError):
    """The presence API (Discord RPC) rejected or failed a call."""
