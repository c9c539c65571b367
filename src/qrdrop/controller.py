from attrs import Factory, define
from twisted.internet import defer
from twisted.internet.defer import inlineCallbacks
from twisted.python import log
from twisted.python.failure import Failure

from . import _interfaces
from .errors import ConnectivityFailure, NegotiationError
from .observer import OneShotObserver
from .rendezvous import ResponsePoller

OFFERER = "offerer"
ANSWERER = "answerer"

CHANNEL_LABEL = "fileTransfer"
GATHER_TIMEOUT = 2.0

# protocol-level connectivity states
NEW = "new"
CONNECTING = "connecting"
CONNECTED = "connected"
FAILED = "failed"
DISCONNECTED = "disconnected"
CLOSED = "closed"

TERMINAL_STATES = frozenset([FAILED, DISCONNECTED, CLOSED])

_SUBSTRATE_STATES = {
    "new": CONNECTING,
    "checking": CONNECTING,
    "connecting": CONNECTING,
    "connected": CONNECTED,
    "completed": CONNECTED,
    "failed": FAILED,
    "disconnected": DISCONNECTED,
    "closed": DISCONNECTED,
}


def map_connection_state(substrate_state):
    """Translate a substrate connection state into our own vocabulary.

    Every input maps to something: a state we have never heard of is
    treated as a failure.
    """
    try:
        return _SUBSTRATE_STATES[substrate_state]
    except (KeyError, TypeError):
        log.msg("unknown connection state %r, treating as failed"
                % (substrate_state,))
        return FAILED


@define(eq=False)
class SessionHandle:
    role: str
    connection: object
    state: str = NEW
    channel: object = None
    local_produced: bool = False
    remote_applied: bool = False
    closed: bool = False
    poller: ResponsePoller | None = None
    channel_observer: OneShotObserver = Factory(OneShotObserver)


class SessionController:
    """Drive one IPeerConnection per SessionHandle through negotiation.

    ``connection_factory`` is called with no arguments and must return a
    fresh IPeerConnection configured without any traversal or relay
    servers.
    """

    def __init__(self, connection_factory, clock,
                 gather_timeout=GATHER_TIMEOUT):
        self._connection_factory = connection_factory
        self._clock = clock
        self._gather_timeout = gather_timeout

    def create_session(self, role, on_state_change):
        if role not in (OFFERER, ANSWERER):
            raise ValueError("role must be %r or %r, not %r"
                             % (OFFERER, ANSWERER, role))
        pc = _interfaces.IPeerConnection(self._connection_factory())
        handle = SessionHandle(role, pc)

        def _state_changed(substrate_state):
            self._state_changed(handle, substrate_state, on_state_change)

        def _channel_arrived(channel):
            self._channel_arrived(handle, channel)

        pc.set_listener(_state_changed, _channel_arrived)
        if role == OFFERER:
            # the offer has to describe the channel, so it comes first
            handle.channel = _interfaces.IChannel(
                pc.create_channel(CHANNEL_LABEL))
            handle.channel_observer.fire(handle.channel)
        return handle

    def _state_changed(self, handle, substrate_state, on_state_change):
        if handle.closed or handle.state in TERMINAL_STATES:
            return
        state = map_connection_state(substrate_state)
        if state == handle.state:
            return
        log.msg("%s: connection %s -> %s (%s)"
                % (handle.role, handle.state, state, substrate_state))
        handle.state = state
        on_state_change(state)
        if state in TERMINAL_STATES:
            handle.channel_observer.error(Failure(ConnectivityFailure(state)))
            if handle.channel is not None:
                # wakes up anyone still waiting for it to open
                handle.channel.close()

    def _channel_arrived(self, handle, channel):
        if handle.closed:
            channel.close()
            return
        if handle.role != ANSWERER or handle.channel is not None:
            log.msg("%s: ignoring unexpected channel %r"
                    % (handle.role, channel.label))
            return
        if channel.label != CHANNEL_LABEL:
            log.msg("ignoring channel with unknown label %r" % channel.label)
            return
        handle.channel = _interfaces.IChannel(channel)
        handle.channel_observer.fire(handle.channel)

    def _check_usable(self, handle):
        if handle.closed:
            raise NegotiationError("session is closed")
        if handle.state in TERMINAL_STATES:
            raise ConnectivityFailure(handle.state)

    @inlineCallbacks
    def _gathered(self, pc):
        d = pc.when_gathering_complete()
        d.addTimeout(self._gather_timeout, self._clock)
        try:
            yield d
        except defer.TimeoutError:
            log.msg("candidate gathering not done after %ss, "
                    "using what we have" % self._gather_timeout)
        return pc.local_description

    @inlineCallbacks
    def create_local_offer(self, handle):
        self._check_usable(handle)
        if handle.role != OFFERER:
            raise NegotiationError("only the sending side makes an offer")
        if handle.local_produced:
            raise NegotiationError("offer was already created")
        pc = handle.connection
        offer = yield pc.create_offer()
        yield pc.set_local_description(offer)
        descriptor = yield self._gathered(pc)
        handle.local_produced = True
        return descriptor

    @inlineCallbacks
    def create_local_answer(self, handle):
        self._check_usable(handle)
        if handle.role != ANSWERER:
            raise NegotiationError("only the receiving side makes an answer")
        if not handle.remote_applied:
            raise NegotiationError("cannot answer before an offer is applied")
        if handle.local_produced:
            raise NegotiationError("answer was already created")
        pc = handle.connection
        answer = yield pc.create_answer()
        yield pc.set_local_description(answer)
        descriptor = yield self._gathered(pc)
        handle.local_produced = True
        return descriptor

    @inlineCallbacks
    def apply_remote_descriptor(self, handle, descriptor):
        self._check_usable(handle)
        if handle.remote_applied:
            raise NegotiationError("remote description was already applied")
        if handle.role == OFFERER and not handle.local_produced:
            raise NegotiationError(
                "cannot apply an answer before our offer was created")
        try:
            yield handle.connection.set_remote_description(descriptor)
        except (ValueError, TypeError, KeyError) as e:
            raise NegotiationError(str(e))
        handle.remote_applied = True

    def await_channel(self, handle):
        """
        Fires with the open IChannel. Errbacks with ConnectivityFailure if
        the session fails or is closed first.
        """
        d = handle.channel_observer.when_fired()
        d.addCallback(lambda channel: channel.when_open())
        return d

    def start_polling(self, handle, store, identifier):
        assert handle.poller is None, "already polling"
        handle.poller = ResponsePoller(store, identifier, self._clock)
        return handle.poller.start()

    def close(self, handle):
        if handle.closed:
            return
        handle.closed = True
        if handle.poller is not None:
            handle.poller.stop()
        if handle.channel is not None:
            handle.channel.close()
        handle.connection.close()
        log.msg("%s: session closed" % handle.role)
        handle.state = CLOSED
        handle.channel_observer.error(Failure(ConnectivityFailure(CLOSED)))
