import os
import struct
from binascii import hexlify
from cryptography.hazmat.primitives.kdf import hkdf
from cryptography.hazmat.primitives import hashes


def HKDF(skm, outlen, salt=None, CTXinfo=b""):
    """
    Return the RFC5869 'HMAC-based Key Derivation Function' result of
    using the given `salt`, tag from `CTXinfo` and secret from `skm`
    with a SHA256 hash.
    """
    return hkdf.HKDF(
        hashes.SHA256(),
        outlen,
        salt,
        CTXinfo,
    ).derive(skm)


def bytes_to_hexstr(b):
    assert isinstance(b, bytes)
    return hexlify(b).decode("ascii")


def random_hexstr(numbytes=16):
    return bytes_to_hexstr(os.urandom(numbytes))


def to_be4(value):
    if not 0 <= value < 2**32:
        raise ValueError
    return struct.pack(">L", value)


def from_be4(b):
    if not isinstance(b, bytes):
        raise TypeError(repr(b))
    if len(b) != 4:
        raise ValueError
    return struct.unpack(">L", b)[0]


def estimate_free_space(target):
    # f_bfree is the blocks available to a root user, which is the larger
    # (more optimistic) estimate
    try:
        s = os.statvfs(os.path.dirname(os.path.abspath(target)))
        return s.f_frsize * s.f_bfree
    except AttributeError:
        return None
