"""Chunked file transfer over an open IChannel.

Wire format: the file travels as a sequence of binary frames of at most
CHUNK_SIZE bytes, in order, followed by one text frame holding the JSON
object ``{"type":"EOF"}``. Chunk boundaries carry no meaning; the receiver
simply concatenates. The channel staying open or closing says nothing about
completion, only the marker does.
"""

import json
import os

from attrs import Factory, define
from twisted.internet import task
from twisted.internet.defer import inlineCallbacks
from twisted.python import log
from zope.interface import implementer

from . import _interfaces
from .errors import ChannelNotOpenError, TransferError

CHUNK_SIZE = 16 * 1024
# a short breather after each chunk, so the channel's buffered amount has a
# chance to drop before the next write
PACE_DELAY = 0.001
EOF_MARKER = json.dumps({"type": "EOF"}, separators=(",", ":"))

SEND = "send"
RECEIVE = "receive"

ACTIVE = "active"
COMPLETE = "complete"
DISCARDED = "discarded"


def percent(done, total):
    """Whole percent, rounding halves up, capped at 100."""
    if total <= 0:
        return 100
    return min(100, (done * 200 + total) // (2 * total))


def is_marker(frame):
    if not isinstance(frame, str):
        return False
    try:
        message = json.loads(frame)
    except ValueError:
        return False
    return isinstance(message, dict) and message.get("type") == "EOF"


@define
class TransferState:
    direction: str
    total_bytes: int
    bytes_moved: int = 0
    chunks: list = Factory(list)
    status: str = ACTIVE


def _check_open(channel):
    if channel.ready_state != "open":
        raise ChannelNotOpenError("channel is %s" % channel.ready_state)


@inlineCallbacks
def send_file(channel, f, total_bytes, clock, on_progress=None):
    """Stream ``total_bytes`` from the file-like ``f``, then the marker.

    Fires with the number of bytes sent. Errbacks with ChannelNotOpenError
    if the channel is not open at the start, or stops being open before the
    marker went out, and with TransferError if ``f`` runs out early. Nothing
    is retried.
    """
    channel = _interfaces.IChannel(channel)
    state = TransferState(SEND, total_bytes)
    _check_open(channel)
    log.msg("sending %d bytes on %r" % (total_bytes, channel.label))
    while state.bytes_moved < total_bytes:
        chunk = f.read(min(CHUNK_SIZE, total_bytes - state.bytes_moved))
        if not chunk:
            raise TransferError("file ended after %d of %d bytes"
                                % (state.bytes_moved, total_bytes))
        _check_open(channel)
        channel.send(chunk)
        state.bytes_moved += len(chunk)
        if on_progress:
            on_progress(percent(state.bytes_moved, total_bytes))
        yield task.deferLater(clock, PACE_DELAY)
        yield channel.when_drained()
    _check_open(channel)
    channel.send(EOF_MARKER)
    state.status = COMPLETE
    log.msg("sent %d bytes and the end marker" % state.bytes_moved)
    return state.bytes_moved


class Receiver:
    """Reassemble one file from chunks, and hand it to a sink at the marker.

    The declared size drives progress. More data than declared is always
    an error. Less data than declared at marker time is written out as-is,
    unless ``strict_size`` is set, in which case it is a TransferError and
    nothing is written.
    """

    def __init__(self, file_meta, sink, on_progress=None, strict_size=False):
        self._file_meta = file_meta
        self._sink = _interfaces.IFileSink(sink)
        self._on_progress = on_progress
        self._strict_size = strict_size
        self.state = TransferState(RECEIVE, file_meta.size)

    def on_chunk(self, buffer):
        state = self.state
        if state.status != ACTIVE:
            raise TransferError("transfer is already %s" % state.status)
        if state.bytes_moved + len(buffer) > state.total_bytes:
            self.discard()
            raise TransferError("received more than the announced %d bytes"
                                % state.total_bytes)
        state.chunks.append(bytes(buffer))
        state.bytes_moved += len(buffer)
        if self._on_progress:
            self._on_progress(percent(state.bytes_moved, state.total_bytes))

    def on_marker(self):
        state = self.state
        if state.status != ACTIVE:
            raise TransferError("transfer is already %s" % state.status)
        if state.bytes_moved != state.total_bytes:
            if self._strict_size:
                received = state.bytes_moved
                self.discard()
                raise TransferError("transfer ended after %d of %d bytes"
                                    % (received, state.total_bytes))
            log.msg("end marker after %d of %d announced bytes, "
                    "keeping what arrived"
                    % (state.bytes_moved, state.total_bytes))
        data = b"".join(state.chunks)
        state.chunks = []
        result = self._sink.write_file(self._file_meta.name,
                                       self._file_meta.type, data)
        state.bytes_moved = state.total_bytes
        if self._on_progress:
            self._on_progress(100)
        state.status = COMPLETE
        log.msg("received %d bytes of %r" % (len(data), self._file_meta.name))
        return result

    def discard(self):
        self.state.chunks = []
        if self.state.status == ACTIVE:
            self.state.status = DISCARDED


@inlineCallbacks
def receive_file(channel, receiver):
    """Feed inbound frames to ``receiver`` until the marker arrives.

    Fires with whatever the sink returned. Errbacks with
    ChannelNotOpenError if the channel closes first, and the partial data is
    dropped.
    """
    channel = _interfaces.IChannel(channel)
    try:
        while True:
            frame = yield channel.receive_frame()
            if isinstance(frame, bytes):
                receiver.on_chunk(frame)
            elif is_marker(frame):
                return receiver.on_marker()
            else:
                log.msg("ignoring unexpected text frame %r" % (frame[:80],))
    except (ChannelNotOpenError, TransferError):
        receiver.discard()
        raise


@implementer(_interfaces.IFileSink)
class DirectorySink:
    """Write each received file into ``directory``.

    Only the last path component of the sender's file name is used. The
    data goes to NAME.tmp first and is renamed into place, so a crash never
    leaves a half-written file under the real name.
    """

    def __init__(self, directory, overwrite=False):
        self._directory = directory
        self._overwrite = overwrite

    def target_for(self, name):
        basename = os.path.basename(name.replace("\\", "/"))
        if basename in ("", ".", ".."):
            raise TransferError("refusing unsafe file name %r" % (name,))
        return os.path.join(self._directory, basename)

    def write_file(self, name, file_type, data):
        path = self.target_for(name)
        if os.path.exists(path) and not self._overwrite:
            raise TransferError("refusing to overwrite existing '%s'"
                                % os.path.basename(path))
        tmp = path + ".tmp"
        with open(tmp, "wb") as f:
            f.write(data)
        os.replace(tmp, path)
        return path


@implementer(_interfaces.IFileSink)
class MemorySink:
    def __init__(self):
        self.files = {}

    def write_file(self, name, file_type, data):
        self.files[name] = (file_type, data)
        return name
