import io
import sys

import qrdrop
from twisted.internet.defer import ensureDeferred
from twisted.internet.task import react

# Both ends of a transfer in one process, talking over loopback TCP.
#   1 -- with no arguments, a short message is sent using a 6-digit
#        transfer code from a shared RendezvousStore
#   2 -- with a filename, that file is sent by trading connection codes,
#        the way two separate devices would


async def with_transfer_code(reactor):
    """A shared store stands in for the two devices' common rendezvous."""
    store = qrdrop.RendezvousStore(reactor)
    sender = qrdrop.create(reactor, store=store)
    sink = qrdrop.MemorySink()
    receiver = qrdrop.create(reactor, store=store, sink=sink)

    message = b"privacy is a human right"
    code = await sender.offer_file(io.BytesIO(message), "message.txt",
                                   len(message), "text/plain",
                                   use_rendezvous=True)
    print(f"transfer code: {code}")
    # this is what the receiving device would type in
    await receiver.join(code)

    sent = await sender.when_done()
    name = await receiver.when_done()
    print(f"sent {sent} bytes, got {sink.files[name]}")
    sender.reset()
    receiver.reset()


async def with_connection_codes(reactor, filename):
    sender = qrdrop.create(reactor)
    receiver = qrdrop.create(reactor, sink=qrdrop.DirectorySink("."))

    with open(filename, "rb") as f:
        size = f.seek(0, io.SEEK_END)
        f.seek(0)
        request = await sender.offer_file(f, filename + ".copy", size)
        # shown as a QR code on the sender, scanned by the receiver
        response = await receiver.submit_text(request)
        # shown as a QR code on the receiver, scanned by the sender
        await sender.submit_text(response)
        await sender.when_done()
        path = await receiver.when_done()
    print(f"wrote {path}")
    sender.reset()
    receiver.reset()


if __name__ == "__main__":
    if len(sys.argv) > 1:
        react(lambda reactor: ensureDeferred(
            with_connection_codes(reactor, sys.argv[1])
        ))
    else:
        react(lambda reactor: ensureDeferred(
            with_transfer_code(reactor)
        ))
