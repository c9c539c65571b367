"""Direct-TCP peer connections for two devices on the same network.

This is the transport the command-line tool uses. It follows the shape of
a browser peer connection (offer, answer, one ordered channel), with no
traversal or relay servers anywhere: the offering side listens on a TCP
port and lists its local addresses in the offer, and the answering side
connects to each of them.

The beginning of each TCP connection is a handshake that proves both ends
are looking at the same offer/answer pair:

 answerer -> offerer: qrdrop answerer TOKEN_HEX ready\\n\\n
 offerer -> answerer: qrdrop offerer TOKEN_HEX ready\\n\\n

Each TOKEN is HKDF over both session ids, with a different context string
per direction. Any deviation results in the socket being closed. The
offerer then sends "go\\n" on the first connection to get this far, and
"nevermind\\n" followed by a hang-up on every other one.

After "go\\n", both directions carry frames: a 4-byte big-endian length
(covering the rest of the frame), one type byte (0 = binary, 1 = UTF-8
text), and the payload.
"""

import re
from collections import deque
from binascii import hexlify

from twisted.internet import address, defer, protocol, threads
from twisted.internet.endpoints import HostnameEndpoint, serverFromString
from twisted.internet.interfaces import IPushProducer
from twisted.protocols import policies
from twisted.python import log
from twisted.python.failure import Failure
from zope.interface import implementer

from . import _interfaces, ipaddrs
from .errors import ChannelNotOpenError, ConnectivityFailure
from .observer import OneShotObserver, SequenceObserver
from .util import HKDF, from_be4, random_hexstr, to_be4

HANDSHAKE_TIMEOUT = 15
# the answering side connects as soon as it has made its answer, and then
# waits while a person carries that answer over to the offering side
CONNECT_TIMEOUT = 5 * 60
# what an answerer may send before we know its answer and can check it
MAX_EARLY_DATA = 1024

FRAME_BINARY = 0
FRAME_TEXT = 1

OFFERER = "offerer"
ANSWERER = "answerer"

_SESSION_RE = re.compile(r"[0-9a-f]{32}")


class LANProtocolError(Exception):
    pass


class BadHandshake(LANProtocolError):
    pass


class BadFrame(LANProtocolError):
    pass


def _session_key(offer_session, answer_session):
    return (offer_session + answer_session).encode("ascii")


def build_answerer_handshake(offer_session, answer_session):
    token = HKDF(_session_key(offer_session, answer_session), 32,
                 CTXinfo=b"qrdrop_answerer")
    return b"qrdrop answerer " + hexlify(token) + b" ready\n\n"


def build_offerer_handshake(offer_session, answer_session):
    token = HKDF(_session_key(offer_session, answer_session), 32,
                 CTXinfo=b"qrdrop_offerer")
    return b"qrdrop offerer " + hexlify(token) + b" ready\n\n"


def encode_frame(data):
    if isinstance(data, bytes):
        kind, payload = FRAME_BINARY, data
    elif isinstance(data, str):
        kind, payload = FRAME_TEXT, data.encode("utf-8")
    else:
        raise TypeError("frames are bytes or str, not %r" % type(data))
    return to_be4(len(payload) + 1) + bytes([kind]) + payload


def describe_inbound(addr):
    if isinstance(addr, address.HostnameAddress):
        return "<-tcp:%s:%d" % (addr.hostname, addr.port)
    elif isinstance(addr, address.IPv4Address):
        return "<-tcp:%s:%d" % (addr.host, addr.port)
    elif isinstance(addr, address.IPv6Address):
        return "<-tcp:[%s]:%d" % (addr.host, addr.port)
    return "<-%r" % (addr,)


class LANConnection(protocol.Protocol, policies.TimeoutMixin):
    def __init__(self, owner, description):
        self.state = "too-early"
        self.buf = b""
        self.owner = owner
        self._description = description
        self._negotiation_d = defer.Deferred(self._cancel)
        self._error = None
        self._channel = None
        self._early_frames = deque()

    def callLater(self, period, func):
        return self.owner.reactor.callLater(period, func)

    def connectionMade(self):
        self.factory.connectionWasMade(self)

    def describe(self):
        return self._description

    def startNegotiation(self):
        self.state = "start"
        self.dataReceived(b"")  # cycle the state machine
        return self._negotiation_d

    def answerArrived(self):
        if self.state == "wait-for-answer":
            self.state = "start"
            self.dataReceived(b"")

    def _cancel(self, d):
        self.state = "hung up"  # stop reacting to anything further
        self._error = defer.CancelledError()
        self.transport.loseConnection()
        # Deferred.cancel (our caller) errbacks it if connectionLost did not
        self._negotiation_d = None

    def dataReceived(self, data):
        try:
            self._dataReceived(data)
        except Exception as e:
            self.setTimeout(None)
            self._error = e
            self.transport.loseConnection()
            self.state = "hung up"
            if not isinstance(e, LANProtocolError):
                raise
            log.msg("%s: %s" % (self._description, e))

    def _check_and_remove(self, expected):
        # any divergence is a handshake error
        if not self.buf.startswith(expected[:len(self.buf)]):
            raise BadHandshake("got %r want %r" % (self.buf, expected))
        if len(self.buf) < len(expected):
            return False  # keep waiting
        self.buf = self.buf[len(expected):]
        return True

    def _dataReceived(self, data):
        # protocol is:
        #  offerer: wait until the answer has been applied
        #  send (offerer|answerer) handshake
        #  wait for (answerer|offerer) handshake
        #  offerer: decide, send "go" or hang up
        #  answerer: wait for "go"
        self.buf += data

        assert self.state != "too-early"
        if self.state == "hung up":
            return
        if self.state == "start" and not self.owner.ready_to_handshake():
            self.state = "wait-for-answer"
            self.owner.waiting_for_answer(self)
        if self.state == "wait-for-answer":
            if len(self.buf) > MAX_EARLY_DATA:
                raise BadHandshake("too much data before the answer")
            return
        if self.state == "start":
            self.setTimeout(self.owner.handshake_timeout)
            self.transport.write(self.owner.send_this())
            self.state = "handshake"
        if self.state == "handshake":
            if not self._check_and_remove(self.owner.expect_this()):
                return
            self.state = self.owner.connection_ready(self)
            # the answerer moves to "wait-for-decision". The offerer moves to
            # "go" (send GO and move directly to "records") or "nevermind"
            # (send NEVERMIND and hang up).

        if self.state == "wait-for-decision":
            if not self._check_and_remove(b"go\n"):
                return
            self._negotiationSuccessful()
        if self.state == "go":
            self.transport.write(b"go\n")
            self._negotiationSuccessful()
        if self.state == "nevermind":
            self.transport.write(b"nevermind\n")
            raise BadHandshake("abandoned")
        if self.state == "records":
            return self.dataReceivedRECORDS()

    def _negotiationSuccessful(self):
        self.state = "records"
        self.setTimeout(None)
        d, self._negotiation_d = self._negotiation_d, None
        d.callback(self)

    def dataReceivedRECORDS(self):
        while len(self.buf) >= 4:
            length = from_be4(self.buf[:4])
            if length < 1:
                raise BadFrame("zero-length frame")
            if len(self.buf) < 4 + length:
                return
            frame, self.buf = self.buf[4:4+length], self.buf[4+length:]
            self.frameReceived(frame[0], frame[1:])

    def frameReceived(self, kind, payload):
        if kind == FRAME_BINARY:
            data = payload
        elif kind == FRAME_TEXT:
            try:
                data = payload.decode("utf-8")
            except UnicodeDecodeError:
                raise BadFrame("text frame is not UTF-8")
        else:
            raise BadFrame("unknown frame type %d" % kind)
        if self._channel is None:
            self._early_frames.append(data)
        else:
            self._channel.frame_received(data)

    def attach(self, channel):
        self._channel = channel
        while self._early_frames:
            channel.frame_received(self._early_frames.popleft())

    def send_frame(self, data):
        self.transport.write(encode_frame(data))

    def timeoutConnection(self):
        self._error = BadHandshake("timeout")
        self.transport.loseConnection()

    def connectionLost(self, reason=None):
        self.setTimeout(None)
        d, self._negotiation_d = self._negotiation_d, None
        # still set only while negotiating
        if d:
            d.errback(self._error or BadHandshake("connection lost"))
        # the link state changes first, so a reader blocked on the channel
        # finds the session already marked disconnected
        self.owner.connection_lost(self)
        if self._channel is not None:
            self._channel.detached()


@implementer(_interfaces.IChannel, IPushProducer)
class LANChannel:
    """The one ordered channel of a LANPeerConnection.

    It is registered as a streaming producer on the TCP transport, so the
    transport's pauseProducing/resumeProducing calls tell us when its write
    buffer crosses the high-water mark. when_drained() waits for that.
    """

    def __init__(self, label):
        self.label = label
        self.ready_state = "connecting"
        self._protocol = None
        self._paused = False
        self._drain_waiters = []
        self._opened = OneShotObserver()
        self._closed = OneShotObserver()
        self._frames = SequenceObserver()

    def attach(self, p):
        self._protocol = p
        self.ready_state = "open"
        p.transport.registerProducer(self, True)
        p.attach(self)
        self._opened.fire(self)

    def when_open(self):
        return self._opened.when_fired()

    def when_closed(self):
        return self._closed.when_fired()

    def send(self, data):
        if self.ready_state != "open":
            raise ChannelNotOpenError("channel is %s" % self.ready_state)
        self._protocol.send_frame(data)

    def when_drained(self):
        if not self._paused:
            return defer.succeed(None)
        d = defer.Deferred(self._drain_waiters.remove)
        self._drain_waiters.append(d)
        return d

    def receive_frame(self):
        return self._frames.when_next_event()

    def frame_received(self, data):
        self._frames.fire(data)

    # IPushProducer, driven by the transport
    def pauseProducing(self):
        self._paused = True

    def resumeProducing(self):
        self._paused = False
        waiters, self._drain_waiters = self._drain_waiters, []
        for d in waiters:
            d.callback(None)

    def stopProducing(self):
        pass

    def close(self):
        if self.ready_state == "open":
            self.ready_state = "closing"
            self._protocol.transport.loseConnection()
        elif self.ready_state == "connecting":
            self.detached()

    def detached(self):
        if self.ready_state == "closed":
            return
        self.ready_state = "closed"
        self._opened.error(Failure(ConnectivityFailure("closed")))
        self._frames.error(Failure(ChannelNotOpenError("channel closed")))
        # let a sender blocked on the buffer notice the channel is gone
        self.resumeProducing()
        self._closed.fire(None)


class OutboundConnectionFactory(protocol.ClientFactory):
    protocol = LANConnection

    def __init__(self, owner, description):
        self.owner = owner
        self._description = description

    def buildProtocol(self, addr):
        p = self.protocol(self.owner, self._description)
        p.factory = self
        return p

    def connectionWasMade(self, p):
        # outbound connections are handled via the endpoint
        pass


class InboundConnectionFactory(protocol.ServerFactory):
    protocol = LANConnection

    def __init__(self, owner):
        self.owner = owner
        self._pending_connections = set()

    def buildProtocol(self, addr):
        p = self.protocol(self.owner, describe_inbound(addr))
        p.factory = self
        return p

    def connectionWasMade(self, p):
        d = p.startNegotiation()
        self._pending_connections.add(d)
        d.addBoth(self._remove, d)
        d.addCallbacks(self.owner.use_connection, self._proto_failed)

    def _remove(self, res, d):
        self._pending_connections.discard(d)
        return res

    def _proto_failed(self, f):
        # ignore these two, let Twisted log everything else
        f.trap(LANProtocolError, defer.CancelledError)

    def shutdown(self):
        for d in list(self._pending_connections):
            d.cancel()


def first_success(contenders):
    """Fire with the result of whichever contender succeeds first, and
    cancel the others. If they all fail, errback with the earliest failure.
    Cancelling the returned Deferred cancels every contender.
    """
    pending = set(contenders)
    failures = []

    def _cancel(_):
        for c in list(pending):
            c.cancel()
    winner = defer.Deferred(_cancel)

    def _succeeded(res, c):
        pending.discard(c)
        if winner.called:
            return
        losers = list(pending)
        pending.clear()
        for loser in losers:
            loser.cancel()
        winner.callback(res)

    def _failed(f, c):
        if c not in pending:
            return  # cancelled because someone else won
        pending.discard(c)
        failures.append(f)
        if not pending and not winner.called:
            winner.errback(failures[0])

    for c in contenders:
        c.addCallbacks(_succeeded, _failed,
                       callbackArgs=(c,), errbackArgs=(c,))
    return winner


def _parse_candidates(candidates):
    if not isinstance(candidates, list):
        raise ValueError("offer has no candidate list")
    parsed = []
    for c in candidates:
        if not isinstance(c, dict):
            log.msg("ignoring malformed candidate %r" % (c,))
            continue
        host, port = c.get("host"), c.get("port")
        if (not isinstance(host, str) or isinstance(port, bool)
                or not isinstance(port, int) or not 0 < port < 65536):
            log.msg("ignoring malformed candidate %r" % (c,))
            continue
        parsed.append((host, port))
    return parsed


@implementer(_interfaces.IPeerConnection)
class LANPeerConnection:
    def __init__(self, reactor, port=0, find_addresses=ipaddrs.find_addresses,
                 handshake_timeout=HANDSHAKE_TIMEOUT,
                 connect_timeout=CONNECT_TIMEOUT):
        self.reactor = reactor
        self._port = port
        self._find_addresses = find_addresses
        self._handshake_timeout = handshake_timeout
        self._connect_timeout = connect_timeout
        self.connection_state = "new"
        self.local_description = None
        self._session = random_hexstr(16)
        self._role = None
        self._remote = None
        self._offer_session = None
        self._answer_session = None
        self._candidates = []
        self._channel = None
        self._on_state_change = None
        self._on_channel = None
        self._gathered = OneShotObserver()
        self._listening_port = None
        self._listener_factory = None
        self._listener_stopped = OneShotObserver()
        self._waiting = set()
        self._connecting = None
        self._connect_timer = None
        self._winner = None
        self._closed = False

    def _set_state(self, state):
        if state == self.connection_state:
            return
        log.msg("lan %s: %s -> %s" % (self._role, self.connection_state, state))
        self.connection_state = state
        if self._on_state_change:
            self._on_state_change(state)

    def set_listener(self, on_state_change, on_channel):
        self._on_state_change = on_state_change
        self._on_channel = on_channel

    def create_channel(self, label):
        if self._channel is not None:
            raise ValueError("only one channel per connection")
        self._channel = LANChannel(label)
        return self._channel

    # offering side

    @defer.inlineCallbacks
    def create_offer(self):
        if self._channel is None:
            raise ValueError("create_channel() must be called first")
        if self._role is not None:
            raise ValueError("this connection is already an %s" % self._role)
        self._role = OFFERER
        ep = serverFromString(self.reactor, "tcp:%d" % self._port)
        self._listener_factory = InboundConnectionFactory(self)
        self._listening_port = yield ep.listen(self._listener_factory)
        return {"type": "offer",
                "session": self._session,
                "channel": self._channel.label,
                "candidates": [],
                }

    def _start_gathering(self, description):
        self.local_description = dict(description, candidates=[])
        portnum = self._listening_port.getHost().port
        # always usable when both ends share a machine, and gathering may
        # not finish in time
        self._add_candidate("127.0.0.1", portnum)
        d = threads.deferToThread(self._find_addresses)
        d.addCallback(self._got_addresses, portnum)
        d.addErrback(log.err, "unable to list local addresses")
        d.addBoth(lambda _: self._gathered.fire_if_not_fired(None))

    def _got_addresses(self, addresses, portnum):
        for addr in addresses:
            if addr != "127.0.0.1":
                self._add_candidate(addr, portnum)

    def _add_candidate(self, host, portnum):
        self.local_description["candidates"].append({"host": host,
                                                     "port": portnum})

    def ready_to_handshake(self):
        return self._answer_session is not None

    def waiting_for_answer(self, p):
        self._waiting.add(p)

    # answering side

    def create_answer(self):
        if self._role != ANSWERER:
            return defer.fail(ValueError("no offer has been applied"))
        return defer.succeed({"type": "answer", "session": self._session})

    def _start_connecting(self):
        self._set_state("checking")
        contenders = []
        for host, portnum in self._candidates:
            ep = HostnameEndpoint(self.reactor, host, portnum)
            contenders.append(self._start_connector(ep, "->tcp:%s:%d"
                                                    % (host, portnum)))
        if not contenders:
            log.msg("offer lists no usable candidates")
            self._set_state("failed")
            return
        d = first_success(contenders)
        self._connecting = self._not_forever(self._connect_timeout, d)
        self._connecting.addCallbacks(self.use_connection,
                                      self._connect_failed)

    def _start_connector(self, ep, description):
        f = OutboundConnectionFactory(self, description)
        d = ep.connect(f)
        # fires with protocol, or ConnectError
        d.addCallback(lambda p: p.startNegotiation())
        return d

    def _not_forever(self, timeout, d):
        """Cancel ``d`` after ``timeout`` seconds unless it fired first."""
        t = self.reactor.callLater(timeout, d.cancel)

        def _done(res):
            if t.active():
                t.cancel()
            return res
        d.addBoth(_done)
        return d

    def _connect_failed(self, f):
        self._connecting = None
        if self._closed:
            return
        log.msg("no connection to the offering side: %s"
                % f.getErrorMessage())
        self._set_state("failed")

    # both sides

    def set_local_description(self, description):
        kind = description.get("type") if isinstance(description, dict) else None
        if self._role == OFFERER and kind == "offer":
            self._start_gathering(description)
            return defer.succeed(None)
        if self._role == ANSWERER and kind == "answer":
            self.local_description = dict(description)
            self._gathered.fire_if_not_fired(None)
            self._start_connecting()
            return defer.succeed(None)
        return defer.fail(ValueError("cannot use a local %r description as "
                                     "the %s" % (kind, self._role)))

    def set_remote_description(self, description):
        return defer.maybeDeferred(self._apply_remote, description)

    def _apply_remote(self, description):
        if not isinstance(description, dict):
            raise ValueError("description must be a dict")
        if self._remote is not None:
            raise ValueError("remote description was already set")
        kind = description.get("type")
        session = description.get("session")
        if not isinstance(session, str) or not _SESSION_RE.fullmatch(session):
            raise ValueError("description has no valid session id")
        if kind == "offer":
            if self._role is not None:
                raise ValueError("cannot take an offer after making one")
            label = description.get("channel")
            if not isinstance(label, str):
                raise ValueError("offer names no channel")
            self._candidates = _parse_candidates(description.get("candidates"))
            self._role = ANSWERER
            self._remote = description
            self._offer_session = session
            self._answer_session = self._session
        elif kind == "answer":
            if self._role != OFFERER or self.local_description is None:
                raise ValueError("got an answer without having made an offer")
            self._remote = description
            self._offer_session = self._session
            self._answer_session = session
            self._set_state("connecting")
            self._connect_timer = self.reactor.callLater(
                self._connect_timeout, self._answerer_never_came)
            waiting, self._waiting = self._waiting, set()
            for p in waiting:
                p.answerArrived()
        else:
            raise ValueError("unknown description type %r" % (kind,))

    def _answerer_never_came(self):
        self._connect_timer = None
        log.msg("the answering side never connected")
        self._set_state("failed")
        self._stop_listening()

    def when_gathering_complete(self):
        return self._gathered.when_fired()

    @property
    def handshake_timeout(self):
        if self._role == OFFERER:
            return self._handshake_timeout
        return None  # bounded by CONNECT_TIMEOUT instead

    def send_this(self):
        if self._role == OFFERER:
            return build_offerer_handshake(self._offer_session,
                                           self._answer_session)
        return build_answerer_handshake(self._offer_session,
                                        self._answer_session)

    def expect_this(self):
        if self._role == OFFERER:
            return build_answerer_handshake(self._offer_session,
                                            self._answer_session)
        return build_offerer_handshake(self._offer_session,
                                       self._answer_session)

    def connection_ready(self, p):
        # inbound/outbound connections call this when they finish the
        # handshake. On the offering side the first one wins and gets a
        # "go". Any subsequent ones lose and get a "nevermind" before being
        # closed.
        if self._role == ANSWERER:
            return "wait-for-decision"
        if self._winner is not None or self._closed:
            return "nevermind"
        self._winner = p
        return "go"

    def use_connection(self, p):
        self._connecting = None
        if self._closed:
            p.transport.loseConnection()
            return
        log.msg("lan %s: connected %s" % (self._role, p.describe()))
        self._winner = p
        if self._connect_timer is not None:
            self._connect_timer.cancel()
            self._connect_timer = None
        self._stop_listening()
        if self._role == ANSWERER:
            self._channel = LANChannel(self._remote["channel"])
        self._channel.attach(p)
        self._set_state("connected")
        if self._role == ANSWERER and self._on_channel:
            self._on_channel(self._channel)

    def connection_lost(self, p):
        self._waiting.discard(p)
        if p is self._winner and not self._closed:
            self._set_state("disconnected")

    def _stop_listening(self):
        if self._listener_factory is not None:
            self._listener_factory.shutdown()
        if self._listening_port is None:
            return
        port, self._listening_port = self._listening_port, None
        d = defer.maybeDeferred(port.stopListening)
        d.addBoth(self._listener_stopped.fire_if_not_fired)

    def when_listener_stopped(self):
        return self._listener_stopped.when_fired()

    def close(self):
        if self._closed:
            return
        self._closed = True
        if self._connecting is not None:
            d, self._connecting = self._connecting, None
            d.cancel()
        if self._connect_timer is not None:
            self._connect_timer.cancel()
            self._connect_timer = None
        self._stop_listening()
        waiting, self._waiting = self._waiting, set()
        for p in waiting:
            p.transport.loseConnection()
        if self._channel is not None:
            self._channel.close()
        if self._winner is not None:
            self._winner.transport.loseConnection()
        self.connection_state = "closed"
