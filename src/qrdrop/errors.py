class QRDropError(Exception):
    """Parent class for all qrdrop-related errors"""


class EncodingError(QRDropError):
    """
    The local session description could not be serialized into a connection
    code. This is a bug in the transport layer, not something you typed.
    """


class MalformedBlobError(QRDropError):
    """
    The connection code could not be read. It may have been cut off while
    copying, or the scanned QR code was not a qrdrop code at all. Please
    copy or scan it again.
    """


class SchemaError(QRDropError):
    """
    The connection code was readable but is missing required information
    (session description, file name or file size). It was probably made by
    a different program, or by an incompatible version of this one.
    """


class NegotiationError(QRDropError):
    """
    A connection code was applied at the wrong point of the handshake, for
    example a response code was used before any request was made. Please
    start over on both devices.
    """


class RendezvousNotFoundError(QRDropError):
    """
    No pending transfer matches that code. Check the 6-digit code shown on
    the sending device; codes expire after 5 minutes.
    """


class IdentifierFormatError(QRDropError):
    """
    Transfer codes are exactly 6 digits, with no spaces or dashes.
    """


class RendezvousTimeout(QRDropError):
    """
    Nobody answered the transfer code in time. Start a new transfer and
    share the new code.
    """


class ChannelNotOpenError(QRDropError):
    """
    The data channel to the other device is not open, so the file could not
    be transferred.
    """


class ConnectivityFailure(QRDropError):
    """
    The connection to the other device failed or was lost. Make sure both
    devices are on the same local network, then start over.
    """

    def __init__(self, state):
        QRDropError.__init__(self, state)
        self.state = state

    def __str__(self):
        return "connection %s" % (self.state,)


class TransferError(QRDropError):
    """Something bad happened and the transfer failed."""


class SessionReset(QRDropError):
    """The session was reset while this operation was still pending."""


class InternalError(QRDropError):
    """The programmer did something wrong."""
