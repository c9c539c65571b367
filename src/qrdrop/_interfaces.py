from zope.interface import Attribute, Interface

# The core drives the transport substrate through these two interfaces. The
# shape follows a browser RTCPeerConnection/RTCDataChannel pair, with
# callbacks replaced by Deferred-returning methods wherever the core has to
# wait for something.


class IPeerConnection(Interface):
    """One point-to-point transport session."""

    connection_state = Attribute(
        "one of new/checking/connecting/connected/completed/"
        "disconnected/failed/closed")
    local_description = Attribute(
        "the current local description dict, or None. It may grow while "
        "gathering is still in progress")

    def set_listener(on_state_change, on_channel):
        """
        Register callbacks. ``on_state_change(state)`` is called with each new
        ``connection_state``. ``on_channel(channel)`` is called when the
        remote side's channel arrives (answering side only).
        """

    def create_channel(label):
        """
        Create the ordered binary channel this session will carry. Must be
        called before ``create_offer()``. Returns an ``IChannel``.
        """

    def create_offer():
        """:rtype: ``Deferred[dict]``"""

    def create_answer():
        """
        Only valid after an offer was applied with
        ``set_remote_description()``.

        :rtype: ``Deferred[dict]``
        """

    def set_local_description(description):
        """
        Commit to a description from create_offer/create_answer and start
        gathering candidates for it.

        :rtype: ``Deferred[None]``
        """

    def set_remote_description(description):
        """
        Apply the peer's description. Errbacks with ValueError if the
        description is unusable or does not fit this session's current
        signalling state.

        :rtype: ``Deferred[None]``
        """

    def when_gathering_complete():
        """
        :rtype: ``Deferred[None]``, fires when no more candidates will be
            added to ``local_description``. It may never fire.
        """

    def close():
        """Tear everything down, synchronously."""


class IChannel(Interface):
    """An ordered, reliable, message-framed channel."""

    label = Attribute("the label given to create_channel()")
    ready_state = Attribute("one of connecting/open/closing/closed")

    def when_open():
        """
        :rtype: ``Deferred[IChannel]``, fires with self once ``ready_state``
            is "open". Errbacks with ConnectivityFailure if the channel
            closes first.
        """

    def send(data):
        """
        Queue one frame. ``bytes`` are sent as a binary frame, ``str`` as a
        text frame. Raises ChannelNotOpenError unless the channel is open.
        """

    def when_drained():
        """
        :rtype: ``Deferred[None]``, fires once the outbound buffer is below
            its high-water mark (right away if it already is).
        """

    def receive_frame():
        """
        :rtype: ``Deferred[bytes or str]``, fires with the next inbound frame
            in arrival order. Errbacks with ChannelNotOpenError once the
            channel has closed and no frames are left.
        """

    def when_closed():
        """:rtype: ``Deferred[None]``, fires once ``ready_state`` is closed"""

    def close():
        pass


class IFileSink(Interface):
    def write_file(name, file_type, data):
        """
        Materialize one received file. ``data`` is the complete byte
        sequence. Returns a description of where it went (usually a path).
        """


class IRendezvousStore(Interface):
    def publish_request(identifier, descriptor, file_meta):
        """Replace whatever was stored under ``identifier``."""

    def lookup_request(identifier):
        """:return: (descriptor, FileMeta), or None if absent or expired"""

    def publish_response(identifier, descriptor):
        """:return: False if there is no live request to answer"""

    def poll_response(identifier):
        """:return: the response descriptor, or None"""

    def remove(identifier):
        pass

    def is_live(identifier):
        pass
