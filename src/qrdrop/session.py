from twisted.internet import defer
from twisted.internet.defer import inlineCallbacks
from twisted.python import log
from twisted.python.failure import Failure

from . import controller as _controller
from ._machine import SessionMachine
from .codec import FileMeta, Request, decode, encode_request, encode_response
from .errors import (ConnectivityFailure, InternalError, NegotiationError,
                     RendezvousNotFoundError, SessionReset, TransferError)
from .observer import OneShotObserver
from .rendezvous import allocate_identifier, validate_identifier
from .transfer import MemorySink, Receiver, receive_file, send_file

SENDER = "sender"
RECEIVER = "receiver"


def _describe(f):
    message = f.getErrorMessage()
    name = f.type.__name__
    if message:
        return "%s: %s" % (name, message)
    return name


class Session:
    """One file transfer, from either end.

    A sender calls offer_file() and shows the result to the other device,
    then passes the code that comes back to submit_text(). A receiver
    passes the sender's code to submit_text() and shows the result, or
    calls join() with a 6-digit transfer code instead.

    Every method that can wait returns a Deferred. Anything that goes wrong
    also moves current_status() to an error state and errbacks when_done().
    reset() abandons whatever is in progress, from any state, and leaves the
    session ready for a new transfer.
    """

    def __init__(self, controller, clock, sink, store=None,
                 on_status_update=None, strict_size=False):
        self._controller = controller
        self._clock = clock
        self._sink = sink
        self._store = store
        self._on_status_update = on_status_update
        self._strict_size = strict_size
        self._machine = SessionMachine(self._status_changed)
        self._generation = 0
        self._flows = set()
        self._done = OneShotObserver()
        self._clear()

    def _clear(self):
        self._role = None
        self._file = None
        self._file_meta = None
        self._handle = None
        self._identifier = None
        self._channel = None
        self._receiver = None

    def _status_changed(self, status):
        if self._on_status_update:
            self._on_status_update(status)

    # observation points

    def status(self):
        return self._machine.status

    def current_status(self):
        return self._machine.status.phase.name

    def current_progress(self):
        return self._machine.status.progress

    def current_file_meta(self):
        return self._machine.status.file

    def when_done(self):
        """
        Fires when the transfer completes: with the number of bytes sent on
        the sending side, or with whatever the sink returned (usually a
        path) on the receiving side.
        """
        return self._done.when_fired()

    def when_channel_closed(self):
        if self._channel is None:
            return defer.succeed(None)
        return self._channel.when_closed()

    # flow bookkeeping

    def _run(self, f, *args, public=True):
        generation = self._generation
        d = f(*args)
        self._flows.add(d)

        def _untrack(res):
            self._flows.discard(d)
            return res
        d.addBoth(_untrack)
        d.addErrback(self._flow_failed, generation, public)
        return d

    def _flow_failed(self, f, generation, public):
        if generation != self._generation:
            # reset() got here first and already cleaned up
            if public:
                raise SessionReset()
            return None
        self._fail(f)
        if public:
            return f
        return None

    def _fail(self, f):
        reason = _describe(f)
        log.msg("session failed: %s" % reason)
        self._machine.fail(reason)
        self._done.error(f)
        if self._handle is not None:
            # the peer sees us hang up instead of waiting forever
            self._controller.close(self._handle)

    def _connection_state_callback(self):
        generation = self._generation

        def _changed(state):
            if generation != self._generation:
                return
            if state == _controller.CONNECTING:
                self._machine.link_connecting()
            elif state == _controller.FAILED:
                self._machine.link_failed()
                self._done.error(Failure(ConnectivityFailure(state)))
            elif state == _controller.DISCONNECTED:
                self._machine.link_lost()
                self._done.error(Failure(ConnectivityFailure(state)))
        return _changed

    def _begin(self, role, file_meta):
        if self._done.has_fired:
            # left over from bad input before anything was started
            self._done = OneShotObserver()
        self._role = role
        self._file_meta = file_meta
        if role == SENDER:
            self._machine.start_send(file_meta)
            handle_role = _controller.OFFERER
        else:
            self._machine.start_receive(file_meta)
            handle_role = _controller.ANSWERER
        self._handle = self._controller.create_session(
            handle_role, self._connection_state_callback())

    def _check_not_failed(self):
        if self._role is not None and self.current_status() == "error":
            raise NegotiationError("this transfer has failed; reset the "
                                   "session first")

    def _check_idle(self, what):
        if self._role is not None:
            raise NegotiationError("got %s, but this session is already in "
                                   "use as a %s; reset it first"
                                   % (what, self._role))

    # sending side

    def offer_file(self, f, name, size, file_type="", use_rendezvous=False):
        """Start offering the file-like ``f`` (``size`` bytes).

        Fires with the request code to hand to the receiver. With
        ``use_rendezvous``, the request goes into the rendezvous store
        instead, the Deferred fires with the 6-digit identifier, and the
        response is picked up from the store automatically.
        """
        return self._run(self._offer_file, f, name, size, file_type,
                         use_rendezvous)

    @inlineCallbacks
    def _offer_file(self, f, name, size, file_type, use_rendezvous):
        self._check_idle("a file to send")
        if use_rendezvous and self._store is None:
            raise InternalError("transfer codes need a rendezvous store")
        if not name:
            raise TransferError("the file needs a name")
        if size <= 0:
            raise TransferError("cannot send an empty file")
        file_meta = FileMeta(name, size, file_type)
        self._file = f
        self._begin(SENDER, file_meta)
        descriptor = yield self._controller.create_local_offer(self._handle)
        if not use_rendezvous:
            blob = encode_request(descriptor, name, size, file_type)
            self._machine.code_ready(blob)
            return blob
        identifier = allocate_identifier(self._store)
        self._store.publish_request(identifier, descriptor, file_meta)
        self._identifier = identifier
        self._machine.code_ready(identifier)
        responded = self._controller.start_polling(self._handle, self._store,
                                                   identifier)
        self._run(self._accept_polled_response, responded, public=False)
        return identifier

    @inlineCallbacks
    def _accept_polled_response(self, responded):
        descriptor = yield responded
        yield self._accept_answer(descriptor)

    @inlineCallbacks
    def _accept_answer(self, descriptor):
        self._check_not_failed()
        yield self._controller.apply_remote_descriptor(self._handle,
                                                       descriptor)
        self._machine.answer_applied()
        self._run(self._send_flow, public=False)

    @inlineCallbacks
    def _send_flow(self):
        channel = yield self._controller.await_channel(self._handle)
        self._channel = channel
        self._machine.channel_open()
        if self._identifier is not None:
            # both ends are connected, nobody needs the entry any more
            self._store.remove(self._identifier)
        self._machine.sending_started()
        sent = yield send_file(channel, self._file, self._file_meta.size,
                               self._clock,
                               on_progress=self._machine.chunk_sent)
        self._machine.finished()
        self._done.fire_if_not_fired(sent)

    # either side

    def submit_text(self, text):
        """Feed in a scanned or pasted connection code.

        A request code (on an unused session) fires with the response code
        to show the sender. A response code (on a session that offered a
        file) fires with None once it has been applied, and the transfer
        then starts on its own.
        """
        return self._run(self._submit_text, text)

    @inlineCallbacks
    def _submit_text(self, text):
        self._check_not_failed()
        # a bad code is rejected here, before any session object is touched
        message = decode(text)
        if isinstance(message, Request):
            self._check_idle("a request code")
            blob = encode_response((yield self._answer(message)))
            self._machine.code_ready(blob)
            self._run(self._receive_flow, public=False)
            return blob
        if self._role != SENDER:
            raise NegotiationError("got a response code, but no file has "
                                   "been offered")
        if self._identifier is not None:
            raise NegotiationError("got a response code, but this offer is "
                                   "waiting on transfer code %s"
                                   % self._identifier)
        yield self._accept_answer(message.descriptor)

    # receiving side

    def join(self, identifier):
        """Receive the file published under a 6-digit transfer code."""
        return self._run(self._join, identifier)

    @inlineCallbacks
    def _join(self, identifier):
        if self._store is None:
            raise InternalError("transfer codes need a rendezvous store")
        validate_identifier(identifier)
        self._check_idle("a transfer code")
        found = self._store.lookup_request(identifier)
        if found is None:
            raise RendezvousNotFoundError(identifier)
        descriptor, file_meta = found
        answer = yield self._answer(Request(descriptor, file_meta.name,
                                            file_meta.size, file_meta.type))
        if not self._store.publish_response(identifier, answer):
            # expired (or answered by someone else) while we were gathering
            raise RendezvousNotFoundError(identifier)
        self._identifier = identifier
        self._machine.code_ready(identifier)
        self._run(self._receive_flow, public=False)

    @inlineCallbacks
    def _answer(self, request):
        self._begin(RECEIVER, request.file_meta)
        yield self._controller.apply_remote_descriptor(self._handle,
                                                       request.descriptor)
        answer = yield self._controller.create_local_answer(self._handle)
        return answer

    @inlineCallbacks
    def _receive_flow(self):
        channel = yield self._controller.await_channel(self._handle)
        self._channel = channel
        self._machine.channel_open()
        self._receiver = Receiver(self._file_meta, self._sink,
                                  on_progress=self._machine.chunk_received,
                                  strict_size=self._strict_size)
        result = yield receive_file(channel, self._receiver)
        self._machine.finished()
        self._done.fire_if_not_fired(result)
        # hanging up tells the sender we have everything
        self._controller.close(self._handle)

    # teardown

    def reset(self):
        """Abandon the current transfer and return to idle.

        Stops the rendezvous poll, closes channel and session, and drops
        any partially received data, all before returning. Pending
        Deferreds from this session errback with SessionReset.
        """
        self._generation += 1
        flows, self._flows = self._flows, set()
        for d in flows:
            d.cancel()
        if self._handle is not None:
            self._controller.close(self._handle)
        if self._identifier is not None and self._role == SENDER:
            self._store.remove(self._identifier)
        if self._receiver is not None:
            self._receiver.discard()
        self._clear()
        self._machine.reset()
        done, self._done = self._done, OneShotObserver()
        done.error(Failure(SessionReset()))


def create(reactor, connection_factory=None, store=None, sink=None,
           on_status_update=None, gather_timeout=_controller.GATHER_TIMEOUT,
           strict_size=False, port=0):
    """Build a Session.

    By default the session talks direct TCP on the local network
    (listening on ``port`` when sending, 0 for any) and keeps received
    files in memory (``sink.files``). Pass a DirectorySink to write them
    to disk instead, and a RendezvousStore to use 6-digit transfer codes.
    """
    if connection_factory is None:
        from .lan import LANPeerConnection

        def connection_factory():
            return LANPeerConnection(reactor, port=port)
    if sink is None:
        sink = MemorySink()
    controller = _controller.SessionController(connection_factory, reactor,
                                               gather_timeout=gather_timeout)
    return Session(controller, reactor, sink, store=store,
                   on_status_update=on_status_update, strict_size=strict_size)
