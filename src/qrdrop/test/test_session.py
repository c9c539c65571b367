import io

from twisted.internet.task import Clock
import pytest

from .. import create
from ..errors import (ConnectivityFailure, IdentifierFormatError,
                      InternalError, MalformedBlobError, NegotiationError,
                      RendezvousNotFoundError, RendezvousTimeout,
                      SchemaError, SessionReset, TransferError)
from ..rendezvous import POLL_TIMEOUT, RendezvousStore
from ..transfer import CHUNK_SIZE, MemorySink
from .common import LoopbackNetwork, failed, run_until_idle, successful

N = CHUNK_SIZE * 5 + 123
DATA = bytes(i % 253 for i in range(N))


class Pair:
    def __init__(self, rendezvous=False):
        self.clock = Clock()
        store = RendezvousStore(self.clock) if rendezvous else None
        self.store = store
        self.net = LoopbackNetwork(self.clock)
        self.sink = MemorySink()
        self.sender_updates = []
        self.receiver_updates = []
        self.sender = create(self.clock,
                             connection_factory=self.net.connection_factory,
                             store=store,
                             on_status_update=self.sender_updates.append)
        self.receiver = create(self.clock,
                               connection_factory=self.net.connection_factory,
                               store=store, sink=self.sink,
                               on_status_update=self.receiver_updates.append)

    def offer(self, **kwargs):
        return successful(self.sender.offer_file(io.BytesIO(DATA), "data.bin",
                                                 N, "application/x-thing",
                                                 **kwargs))

    def connect(self):
        request = self.offer()
        response = successful(self.receiver.submit_text(request))
        assert successful(self.sender.submit_text(response)) is None


def phases(updates):
    names = []
    for u in updates:
        if not names or names[-1] != u.phase.name:
            names.append(u.phase.name)
    return names


def test_transfer():
    p = Pair()
    sent = p.sender.when_done()
    received = p.receiver.when_done()
    p.connect()
    run_until_idle(p.clock)
    assert successful(sent) == N
    assert successful(received) == "data.bin"
    assert p.sink.files["data.bin"] == ("application/x-thing", DATA)

    assert p.sender.current_status() == "complete"
    assert p.receiver.current_status() == "complete"
    assert p.sender.current_progress() == 100
    assert p.receiver.current_progress() == 100
    meta = p.receiver.current_file_meta()
    assert (meta.name, meta.size, meta.type) == ("data.bin", N,
                                                  "application/x-thing")
    assert p.sender.status().role == "sender"
    assert p.receiver.status().role == "receiver"

    assert phases(p.sender_updates) == ["preparing", "waiting", "connecting",
                                        "connected", "sending", "complete"]
    assert phases(p.receiver_updates) == ["preparing", "waiting",
                                          "connected", "receiving",
                                          "complete"]
    for updates in (p.sender_updates, p.receiver_updates):
        progress = [u.progress for u in updates]
        assert progress == sorted(progress)

    # the receiver hangs up once it has everything
    successful(p.sender.when_channel_closed())


def test_no_connection_before_both_codes():
    p = Pair()
    request = p.offer()
    successful(p.receiver.submit_text(request))
    run_until_idle(p.clock)
    assert p.sender.current_status() == "waiting"
    assert p.receiver.current_status() == "waiting"
    assert all(c.connection_state != "connected" for c in p.net.connections)
    assert not p.receiver.when_done().called


def test_waiting_code_is_the_blob():
    p = Pair()
    request = p.offer()
    assert p.sender.status().phase.code == request


def test_bad_code():
    p = Pair()
    d = p.receiver.submit_text("definitely not a code")
    failed(d, MalformedBlobError)
    assert p.receiver.current_status() == "error"
    failed(p.receiver.when_done(), MalformedBlobError)
    # nothing was built for it
    assert p.net.connections == []


def test_incomplete_code():
    p = Pair()
    failed(p.receiver.submit_text("e30="), SchemaError)  # {}
    assert p.receiver.current_status() == "error"


def test_retry_after_bad_code():
    p = Pair()
    failed(p.receiver.submit_text("garbage"), MalformedBlobError)
    request = p.offer()
    response = successful(p.receiver.submit_text(request))
    successful(p.sender.submit_text(response))
    d = p.receiver.when_done()
    run_until_idle(p.clock)
    assert successful(d) == "data.bin"


def test_response_without_offer():
    p = Pair()
    request = p.offer()
    response = successful(p.receiver.submit_text(request))
    fresh = create(p.clock, connection_factory=p.net.connection_factory)
    failed(fresh.submit_text(response), NegotiationError)
    assert fresh.current_status() == "error"


def test_request_on_busy_session():
    p = Pair()
    request = p.offer()
    failed(p.sender.submit_text(request), NegotiationError)
    assert p.sender.current_status() == "error"


def test_offer_twice():
    p = Pair()
    p.offer()
    failed(p.sender.offer_file(io.BytesIO(b"x"), "x", 1), NegotiationError)


@pytest.mark.parametrize("name, size", [("", 10), ("a", 0), ("a", -1)])
def test_unsendable(name, size):
    p = Pair()
    failed(p.sender.offer_file(io.BytesIO(b"x"), name, size), TransferError)
    assert p.sender.current_status() == "error"


def test_connect_failure():
    p = Pair()
    p.net.fail_connect = True
    sent = p.sender.when_done()
    received = p.receiver.when_done()
    p.connect()
    run_until_idle(p.clock)
    assert failed(sent, ConnectivityFailure).value.state == "failed"
    failed(received, ConnectivityFailure)
    assert p.sender.current_status() == "failed"
    assert p.receiver.current_status() == "failed"
    assert p.sink.files == {}


def test_reset_sender_mid_transfer():
    p = Pair()
    sent = p.sender.when_done()
    received = p.receiver.when_done()
    p.connect()
    for _ in range(50):
        p.clock.advance(0)
        if p.receiver.current_status() == "receiving":
            break
    else:
        raise AssertionError("transfer never started")
    p.sender.reset()
    assert p.sender.current_status() == "idle"
    assert p.sender.current_progress() == 0
    assert p.sender.current_file_meta() is None
    failed(sent, SessionReset)
    run_until_idle(p.clock)
    assert p.clock.getDelayedCalls() == []
    assert p.sender.current_status() == "idle"
    assert p.receiver.current_status() == "disconnected"
    failed(received, ConnectivityFailure)
    assert p.sink.files == {}


def test_reset_receiver_mid_transfer():
    p = Pair()
    sent = p.sender.when_done()
    received = p.receiver.when_done()
    p.connect()
    for _ in range(50):
        p.clock.advance(0)
        if p.receiver.current_status() == "receiving":
            break
    p.receiver.reset()
    assert p.receiver.current_status() == "idle"
    failed(received, SessionReset)
    run_until_idle(p.clock)
    assert p.clock.getDelayedCalls() == []
    assert p.sender.current_status() == "disconnected"
    failed(sent, ConnectivityFailure)
    assert p.sink.files == {}


def test_reset_then_reuse():
    p = Pair()
    p.offer()
    p.sender.reset()
    assert p.sender.current_status() == "idle"
    run_until_idle(p.clock)
    p.connect()
    d = p.receiver.when_done()
    run_until_idle(p.clock)
    assert successful(d) == "data.bin"
    assert p.sender.current_status() == "complete"


def test_reset_idle():
    p = Pair()
    d = p.sender.when_done()
    p.sender.reset()
    failed(d, SessionReset)
    assert p.sender.current_status() == "idle"


def test_rendezvous():
    p = Pair(rendezvous=True)
    store = p.store
    identifier = p.offer(use_rendezvous=True)
    assert len(identifier) == 6 and identifier.isdigit()
    assert p.sender.status().phase.code == identifier
    assert store.is_live(identifier)
    sent = p.sender.when_done()
    received = p.receiver.when_done()
    assert successful(p.receiver.join(identifier)) is None
    assert p.receiver.status().phase.code == identifier
    run_until_idle(p.clock)
    assert successful(sent) == N
    assert successful(received) == "data.bin"
    assert p.sink.files["data.bin"][1] == DATA
    # the entry is gone once both ends are connected
    assert not store.is_live(identifier)


def test_rendezvous_without_store():
    p = Pair()
    failed(p.sender.offer_file(io.BytesIO(b"x"), "x", 1,
                               use_rendezvous=True), InternalError)
    failed(p.receiver.join("123456"), InternalError)


def test_join_unknown():
    p = Pair(rendezvous=True)
    failed(p.receiver.join("123456"), RendezvousNotFoundError)
    assert p.receiver.current_status() == "error"
    failed(p.receiver.join("12345"), IdentifierFormatError)


def test_join_answered_twice():
    p = Pair(rendezvous=True)
    store = p.store
    identifier = p.offer(use_rendezvous=True)
    successful(p.receiver.join(identifier))
    other = create(p.clock, connection_factory=p.net.connection_factory,
                   store=store)
    failed(other.join(identifier), RendezvousNotFoundError)


def test_response_code_on_rendezvous_offer():
    p = Pair(rendezvous=True)
    p.offer(use_rendezvous=True)
    other = Pair()
    response = successful(other.receiver.submit_text(other.offer()))
    failed(p.sender.submit_text(response), NegotiationError)


def test_rendezvous_timeout():
    p = Pair(rendezvous=True)
    p.offer(use_rendezvous=True)
    d = p.sender.when_done()
    p.clock.advance(POLL_TIMEOUT)
    failed(d, RendezvousTimeout)
    assert p.sender.current_status() == "error"
    assert p.clock.getDelayedCalls() == []


def test_reset_while_polling():
    p = Pair(rendezvous=True)
    store = p.store
    identifier = p.offer(use_rendezvous=True)
    assert p.clock.getDelayedCalls()
    p.sender.reset()
    assert p.clock.getDelayedCalls() == []
    assert not store.is_live(identifier)
    assert p.sender.current_status() == "idle"


def test_bad_paste_then_good_paste():
    p = Pair()
    sent = p.sender.when_done()
    request = p.offer()
    response = successful(p.receiver.submit_text(request))
    failed(p.sender.submit_text("garbage!!"), MalformedBlobError)
    assert p.sender.current_status() == "error"
    # the failed offer is torn down, so the good code comes too late
    assert p.net.connections[0].closed
    failed(p.sender.submit_text(response), NegotiationError)
    run_until_idle(p.clock)
    assert p.sink.files == {}
    assert p.sender.current_status() == "error"
    assert p.sender.current_progress() == 0
    failed(sent, MalformedBlobError)
    assert p.clock.getDelayedCalls() == []


def test_peer_hears_about_failure():
    p = Pair()
    sent = p.sender.when_done()
    received = p.receiver.when_done()
    # claims N bytes but only has 100
    request = successful(p.sender.offer_file(io.BytesIO(DATA[:100]),
                                             "data.bin", N))
    response = successful(p.receiver.submit_text(request))
    successful(p.sender.submit_text(response))
    run_until_idle(p.clock)
    assert "file ended" in str(failed(sent, TransferError).value)
    assert p.sender.current_status() == "error"
    failed(received, ConnectivityFailure)
    assert p.receiver.current_status() == "disconnected"
    assert p.sink.files == {}
    assert p.clock.getDelayedCalls() == []


def test_failed_join_hangs_up():
    p = Pair(rendezvous=True)
    identifier = p.offer(use_rendezvous=True)
    successful(p.receiver.join(identifier))
    other = create(p.clock, connection_factory=p.net.connection_factory,
                   store=p.store)
    failed(other.join(identifier), RendezvousNotFoundError)
    assert p.net.connections[-1].closed
