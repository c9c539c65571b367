"""Connection codes.

A connection code is the text a person carries from one device to the
other, by QR code or copy-and-paste. It is standard base64 of a UTF-8 JSON
object. The sender's code (a "request") looks like::

    {"localDescription": {...}, "fileName": "cat.jpg",
     "fileSize": 12345, "fileType": "image/jpeg"}

and the receiver's code (a "response") like::

    {"localDescription": {...}}

The session description is opaque here; it only has to be a non-empty JSON
object. Unknown fields are ignored, missing ones are an error.
"""

import base64
import binascii
import json

from attrs import frozen

from .errors import EncodingError, MalformedBlobError, SchemaError

REQUEST = "request"
RESPONSE = "response"
INVALID = "invalid"

_FILE_FIELDS = ("fileName", "fileSize", "fileType")


@frozen
class FileMeta:
    name: str
    size: int
    type: str


@frozen
class Request:
    descriptor: dict
    file_name: str
    file_size: int
    file_type: str

    @property
    def file_meta(self):
        return FileMeta(self.file_name, self.file_size, self.file_type)


@frozen
class Response:
    descriptor: dict


def _encode(d):
    try:
        data = json.dumps(d, separators=(",", ":"), allow_nan=False)
    except (TypeError, ValueError) as e:
        raise EncodingError(str(e))
    return base64.b64encode(data.encode("utf-8")).decode("ascii")


def encode_request(descriptor, file_name, file_size, file_type):
    return _encode({
        "localDescription": descriptor,
        "fileName": file_name,
        "fileSize": file_size,
        "fileType": file_type,
    })


def encode_response(descriptor):
    return _encode({"localDescription": descriptor})


def _parse(blob):
    if not isinstance(blob, str):
        raise MalformedBlobError("connection code must be text, not %s"
                                 % type(blob).__name__)
    # pasted codes sometimes arrive wrapped over several lines
    text = "".join(blob.split())
    if not text:
        raise MalformedBlobError("empty connection code")
    try:
        raw = base64.b64decode(text, validate=True)
        return json.loads(raw.decode("utf-8"))
    except (binascii.Error, UnicodeDecodeError, ValueError,
            RecursionError) as e:
        # json gives up on very deeply nested arrays with RecursionError
        raise MalformedBlobError(str(e))


def _validate(d):
    if not isinstance(d, dict):
        raise SchemaError("expected a JSON object, got %s" % type(d).__name__)
    descriptor = d.get("localDescription")
    if not isinstance(descriptor, dict) or not descriptor:
        raise SchemaError("missing or empty localDescription")
    if not any(name in d for name in _FILE_FIELDS):
        return Response(descriptor)

    file_name = d.get("fileName")
    file_size = d.get("fileSize")
    file_type = d.get("fileType")
    if not isinstance(file_name, str) or not file_name:
        raise SchemaError("fileName must be a non-empty string")
    # bool is an int subclass, and True is not a file size
    if (isinstance(file_size, bool) or not isinstance(file_size, int)
            or file_size <= 0):
        raise SchemaError("fileSize must be a positive integer, not %r"
                          % (file_size,))
    if not isinstance(file_type, str):
        raise SchemaError("fileType must be a string")
    return Request(descriptor, file_name, file_size, file_type)


def decode(blob):
    """Turn a connection code back into a Request or a Response.

    Raises MalformedBlobError if the text is not a readable code at all, and
    SchemaError if it is readable but incomplete. Nothing outside this
    function is touched before both checks pass.
    """
    return _validate(_parse(blob))


def classify(blob):
    """Return "request", "response", or "invalid". Never raises."""
    try:
        message = decode(blob)
    except (MalformedBlobError, SchemaError):
        return INVALID
    if isinstance(message, Request):
        return REQUEST
    return RESPONSE
