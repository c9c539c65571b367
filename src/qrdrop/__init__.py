from .session import create
from ._status import SessionStatus  # export as public API
from .transfer import DirectorySink, MemorySink
from .rendezvous import RendezvousStore

__version__ = "0.1.0"

__all__ = [
    "__version__",
    "create",
    "SessionStatus",
    "DirectorySink", "MemorySink",
    "RendezvousStore",
]
