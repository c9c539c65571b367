from typing import ClassVar

from attrs import frozen

from .codec import FileMeta

# One class per status a front end can display. The ``name`` is the
# lowercase label for a status badge.


@frozen
class Idle:
    name: ClassVar[str] = "idle"


@frozen
class Preparing:
    """
    We are building our local session description
    """
    name: ClassVar[str] = "preparing"


@frozen
class Waiting:
    """
    Our connection code (or 6-digit transfer code) is ready to be shown,
    and we are waiting for the other device to act on it
    """
    name: ClassVar[str] = "waiting"
    code: str


@frozen
class Connecting:
    name: ClassVar[str] = "connecting"


@frozen
class Connected:
    """
    The data channel is open, and the transfer has not started yet
    """
    name: ClassVar[str] = "connected"


@frozen
class Sending:
    name: ClassVar[str] = "sending"


@frozen
class Receiving:
    name: ClassVar[str] = "receiving"


@frozen
class Complete:
    name: ClassVar[str] = "complete"


@frozen
class Error:
    """
    Something went wrong locally (bad code, wrong order of steps, short
    file). Reset to try again.
    """
    name: ClassVar[str] = "error"
    reason: str


@frozen
class Failed:
    """
    The link to the other device could not be established
    """
    name: ClassVar[str] = "failed"


@frozen
class Disconnected:
    """
    The other device went away
    """
    name: ClassVar[str] = "disconnected"


Phase = (Idle | Preparing | Waiting | Connecting | Connected | Sending
         | Receiving | Complete | Error | Failed | Disconnected)


@frozen
class SessionStatus(object):
    """
    Represents the current status of a transfer session for use by the
    outside
    """

    phase: Phase = Idle()

    # 0..100, never goes down within one transfer
    progress: int = 0

    # what is being sent or received, once known
    file: FileMeta | None = None

    # "sender" or "receiver", once known
    role: str | None = None
