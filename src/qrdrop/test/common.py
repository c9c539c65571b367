from unittest import mock

from click.testing import CliRunner
from twisted.internet import defer
from twisted.python.failure import Failure
from zope.interface import implementer

from .. import _interfaces
from ..cli import cli
from ..errors import ChannelNotOpenError, ConnectivityFailure
from ..observer import OneShotObserver, SequenceObserver
from ..util import random_hexstr

# how far to move a Clock per step when letting a loopback transfer run
STEP = 0.001


def successful(d):
    """The result of a Deferred that has already fired successfully"""
    results = []
    failures = []
    d.addCallbacks(results.append, failures.append)
    if failures:
        failures[0].raiseException()
    assert results, "Deferred has not fired"
    return results[0]


def failed(d, *errortypes):
    """The Failure of a Deferred that has already errbacked"""
    results = []
    failures = []
    d.addCallbacks(results.append, failures.append)
    assert not results, "Deferred succeeded with %r" % (results,)
    assert failures, "Deferred has not fired"
    f = failures[0]
    if errortypes:
        assert f.check(*errortypes), f
    return f


def run_until_idle(clock, limit=100000):
    """Advance ``clock`` in small steps until nothing is scheduled."""
    for _ in range(limit):
        if not clock.getDelayedCalls():
            return
        clock.advance(STEP)
    raise AssertionError("clock never went idle")


@implementer(_interfaces.IChannel)
class LoopbackChannel:
    def __init__(self, network, label, owner=None):
        self._network = network
        self.owner = owner
        self.label = label
        self.ready_state = "connecting"
        self.peer = None
        self.sent = []
        self.paused = False
        self._drain_waiters = []
        self._opened = OneShotObserver()
        self._closed = OneShotObserver()
        self._frames = SequenceObserver()

    def open(self):
        self.ready_state = "open"
        self._opened.fire(self)

    def when_open(self):
        return self._opened.when_fired()

    def when_closed(self):
        return self._closed.when_fired()

    def send(self, data):
        if self.ready_state != "open":
            raise ChannelNotOpenError("channel is %s" % self.ready_state)
        self.sent.append(data)
        self._network.later(self.peer.frame_received, data)

    def frame_received(self, data):
        if self.ready_state == "open":
            self._frames.fire(data)

    def receive_frame(self):
        return self._frames.when_next_event()

    def when_drained(self):
        if not self.paused:
            return defer.succeed(None)
        d = defer.Deferred(self._drain_waiters.remove)
        self._drain_waiters.append(d)
        return d

    def resume(self):
        self.paused = False
        waiters, self._drain_waiters = self._drain_waiters, []
        for d in waiters:
            d.callback(None)

    def close(self):
        if self.ready_state == "closed":
            return
        was_open = self.ready_state == "open"
        self.ready_state = "closed"
        self._opened.error(Failure(ConnectivityFailure("closed")))
        self._frames.error(Failure(ChannelNotOpenError("channel closed")))
        self.resume()
        self._closed.fire(None)
        if was_open and self.peer is not None:
            self._network.later(self.peer.remote_closed)

    def remote_closed(self):
        # like a TCP hang-up: the connection notices first, then the channel
        if self.owner is not None:
            self.owner.peer_went_away()
        else:
            self.close()


@implementer(_interfaces.IPeerConnection)
class LoopbackConnection:
    """Pretends to be a peer connection, with both ends in one process.

    Descriptions are tiny dicts naming a session id. Once the offering side
    applies an answer, the network links the two ends on its next turn.
    """

    def __init__(self, network):
        self._network = network
        self.session = random_hexstr(8)
        self.connection_state = "new"
        self.local_description = None
        self.role = None
        self.channel = None
        self.closed = False
        self.peer = None
        self._on_state_change = None
        self._on_channel = None

    def set_state(self, state):
        if self.closed or state == self.connection_state:
            return
        self.connection_state = state
        if self._on_state_change:
            self._on_state_change(state)

    def set_listener(self, on_state_change, on_channel):
        self._on_state_change = on_state_change
        self._on_channel = on_channel

    def create_channel(self, label):
        self.channel = LoopbackChannel(self._network, label, owner=self)
        return self.channel

    def create_offer(self):
        if self.channel is None:
            return defer.fail(ValueError("create_channel() must come first"))
        self.role = "offerer"
        return defer.succeed({"type": "offer", "session": self.session,
                              "channel": self.channel.label})

    def create_answer(self):
        if self.role != "answerer":
            return defer.fail(ValueError("no offer has been applied"))
        return defer.succeed({"type": "answer", "session": self.session})

    def set_local_description(self, description):
        self.local_description = dict(description)
        if self.role == "answerer":
            self.set_state("checking")
        return defer.succeed(None)

    def set_remote_description(self, description):
        if not isinstance(description, dict) or "session" not in description:
            return defer.fail(ValueError("unusable description"))
        kind = description.get("type")
        if kind == "offer" and self.role is None:
            self.role = "answerer"
            self._offer = description
            return defer.succeed(None)
        if kind == "answer" and self.role == "offerer":
            peer = self._network.find(description["session"])
            if peer is None:
                return defer.fail(ValueError("no such session"))
            self.set_state("connecting")
            self._network.later(self._network.link, self, peer)
            return defer.succeed(None)
        return defer.fail(ValueError("unexpected %r description" % (kind,)))

    def when_gathering_complete(self):
        if self._network.gathering_hangs:
            return defer.Deferred()
        return defer.succeed(None)

    def channel_arrived(self, channel):
        self.channel = channel
        if self._on_channel:
            self._on_channel(channel)

    def peer_went_away(self):
        self.set_state("disconnected")
        if self.channel is not None:
            self.channel.close()

    def close(self):
        if self.closed:
            return
        self.closed = True
        self.connection_state = "closed"
        if self.peer is not None:
            self._network.later(self.peer.peer_went_away)
        if self.channel is not None:
            self.channel.close()


class LoopbackNetwork:
    """Hands out LoopbackConnections and carries traffic between them.

    Everything crosses the network on a later turn of ``clock``, the way
    real sockets never deliver inside the caller's stack frame.
    """

    def __init__(self, clock):
        self.clock = clock
        self.connections = []
        self.fail_connect = False
        self.gathering_hangs = False

    def connection_factory(self):
        c = LoopbackConnection(self)
        self.connections.append(c)
        return c

    def later(self, f, *args):
        self.clock.callLater(0, f, *args)

    def find(self, session):
        for c in self.connections:
            if c.session == session and c.role == "answerer":
                return c
        return None

    def link(self, offerer, answerer):
        if offerer.closed or answerer.closed:
            return
        if self.fail_connect:
            answerer.set_state("failed")
            offerer.set_state("failed")
            return
        offerer.peer, answerer.peer = answerer, offerer
        channel = LoopbackChannel(self, offerer.channel.label, owner=answerer)
        channel.peer, offerer.channel.peer = offerer.channel, channel
        answerer.set_state("connected")
        offerer.set_state("connected")
        offerer.channel.open()
        channel.open()
        answerer.channel_arrived(channel)


def config(*argv):
    r = CliRunner()
    with mock.patch("qrdrop.cli.cli.go") as go:
        res = r.invoke(cli.qrdrop, argv, catch_exceptions=False)
        if res.exit_code != 0:
            print(res.exit_code)
            print(res.output)
            print(res)
            assert 0
        cfg = go.call_args[0][1]
    return cfg
