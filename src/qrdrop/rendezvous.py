"""Short-code rendezvous.

Instead of carrying a whole connection code back and forth, a sender can
publish its request under a 6-digit identifier. The receiver looks the
request up by that identifier and publishes its response next to it, and
the sender polls until the response shows up.

The store is an ordinary object: whoever runs both sides (a single process,
or a small service in front of it) creates one and hands it to both flows.
"""

import random
import re
import threading

from attrs import define
from twisted.internet import defer, task
from twisted.python import log
from twisted.python.failure import Failure
from zope.interface import implementer

from . import _interfaces
from .errors import IdentifierFormatError, RendezvousTimeout

EXPIRY = 5 * 60.0
POLL_INTERVAL = 1.0
POLL_TIMEOUT = 5 * 60.0
MAX_ALLOCATION_TRIES = 20

_random = random.SystemRandom()


def generate_identifier():
    return "%d" % _random.randint(100000, 999999)


def validate_identifier(identifier):
    if not isinstance(identifier, str):
        raise IdentifierFormatError("not a string: %r" % (identifier,))
    if not re.fullmatch(r"[0-9]{6}", identifier):
        raise IdentifierFormatError(identifier)
    return identifier


@define
class PendingNegotiation:
    identifier: str
    descriptor: dict
    file_meta: object
    created_at: float
    response: dict | None = None


@implementer(_interfaces.IRendezvousStore)
class RendezvousStore:
    """In-memory identifier -> PendingNegotiation map with lazy expiry.

    Entries older than ``expiry`` seconds (measured from publish_request,
    reads do not refresh them) behave exactly like entries that were never
    published. Every method takes the lock, so a reader never sees an entry
    between its request and its response being filled in.
    """

    def __init__(self, clock, expiry=EXPIRY):
        self._clock = clock
        self._expiry = expiry
        self._lock = threading.Lock()
        self._entries = {}

    def _live_entry(self, identifier):
        # caller holds the lock
        entry = self._entries.get(identifier)
        if entry is None:
            return None
        if self._clock.seconds() - entry.created_at > self._expiry:
            log.msg("rendezvous %s expired" % identifier)
            del self._entries[identifier]
            return None
        return entry

    def publish_request(self, identifier, descriptor, file_meta):
        validate_identifier(identifier)
        with self._lock:
            self._entries[identifier] = PendingNegotiation(
                identifier, descriptor, file_meta, self._clock.seconds())

    def lookup_request(self, identifier):
        with self._lock:
            entry = self._live_entry(identifier)
            if entry is None:
                return None
            return (entry.descriptor, entry.file_meta)

    def publish_response(self, identifier, descriptor):
        """
        Returns False, and changes nothing, if there is no live request
        under ``identifier`` or it has already been answered.
        """
        with self._lock:
            entry = self._live_entry(identifier)
            if entry is None or entry.response is not None:
                return False
            entry.response = descriptor
            return True

    def poll_response(self, identifier):
        with self._lock:
            entry = self._live_entry(identifier)
            if entry is None:
                return None
            return entry.response

    def remove(self, identifier):
        with self._lock:
            self._entries.pop(identifier, None)

    def is_live(self, identifier):
        with self._lock:
            return self._live_entry(identifier) is not None


def allocate_identifier(store, tries=MAX_ALLOCATION_TRIES):
    """Pick an identifier that no live entry in ``store`` is using.

    After ``tries`` collisions in a row we give up avoiding them, and the
    last candidate is returned anyway.
    """
    for _ in range(tries):
        identifier = generate_identifier()
        if not store.is_live(identifier):
            return identifier
        log.msg("rendezvous identifier collision, picking another")
    return identifier


class ResponsePoller:
    """Poll a store once per ``interval`` until a response appears.

    start() returns a Deferred that fires with the response descriptor, or
    errbacks with RendezvousTimeout after ``timeout`` seconds. stop() (or
    cancelling that Deferred) stops the timers right away.
    """

    def __init__(self, store, identifier, clock,
                 interval=POLL_INTERVAL, timeout=POLL_TIMEOUT):
        self._store = _interfaces.IRendezvousStore(store)
        self._identifier = identifier
        self._clock = clock
        self._interval = interval
        self._timeout = timeout
        self._loop = None
        self._timer = None
        self._d = None

    def start(self):
        assert self._d is None, "already started"
        self._d = defer.Deferred(lambda d: self.stop())
        self._timer = self._clock.callLater(self._timeout, self._timed_out)
        self._loop = task.LoopingCall(self._poll)
        self._loop.clock = self._clock
        loop_d = self._loop.start(self._interval, now=True)
        loop_d.addErrback(self._poll_failed)
        return self._d

    def _poll(self):
        descriptor = self._store.poll_response(self._identifier)
        if descriptor is not None:
            log.msg("rendezvous %s answered" % self._identifier)
            self._halt()
            self._d.callback(descriptor)

    def _poll_failed(self, f):
        self._halt()
        if not self._d.called:
            self._d.errback(f)

    def _timed_out(self):
        self._timer = None
        log.msg("rendezvous %s: no response after %ss"
                % (self._identifier, self._timeout))
        self._halt()
        self._d.errback(RendezvousTimeout(self._identifier))

    def _halt(self):
        if self._loop is not None and self._loop.running:
            self._loop.stop()
        self._loop = None
        if self._timer is not None and self._timer.active():
            self._timer.cancel()
        self._timer = None

    def stop(self):
        self._halt()
        if self._d is not None and not self._d.called:
            self._d.errback(Failure(defer.CancelledError()))
