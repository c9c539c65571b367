import mimetypes
import os

from humanize import naturalsize
from qrcode import QRCode
from tqdm import tqdm
from twisted.internet import reactor
from twisted.internet.defer import TimeoutError, inlineCallbacks
from twisted.internet.threads import deferToThread

from .. import create
from ..codec import INVALID, RESPONSE, classify
from ..errors import TransferError

# after the last byte, how long to wait for the receiver to hang up
CLOSE_TIMEOUT = 10.0


def send(args, reactor=reactor):
    """I implement 'qrdrop send'. I return a Deferred that fires with None
    (for success), or signals one of the following errors:
    * TransferError: the file could not be read, or was empty
    * ConnectivityFailure: the two devices could not reach each other
    * NegotiationError/MalformedBlobError/SchemaError: a bad code was pasted
    * any other error: something unexpected happened
    """
    return Sender(args, reactor).go()


def print_code(code, args):
    if args.qr:
        qr = QRCode(border=1)
        qr.add_data(code)
        # block characters on a terminal, plain ASCII elsewhere
        qr.print_ascii(out=args.stderr, tty=args.stderr.isatty(),
                       invert=False)
    print(code, file=args.stderr)
    print("", file=args.stderr)


def read_code(prompt, want, args):
    """Ask (in a thread) until the user pastes a code of kind ``want``"""
    @inlineCallbacks
    def _ask():
        while True:
            text = yield deferToThread(input, prompt)
            kind = classify(text)
            if kind == want:
                return text
            if kind == INVALID:
                print("That is not a qrdrop code, please try again.",
                      file=args.stderr)
            else:
                print("That is a %s code, but a %s code is needed here."
                      % (kind, want), file=args.stderr)
    return _ask()


class Sender:
    def __init__(self, args, reactor):
        self._args = args
        self._reactor = reactor
        self._fd_to_send = None
        self._progress = None
        self._filesize = None

    @inlineCallbacks
    def go(self):
        s = create(
            self._reactor,
            port=self._args.port,
            gather_timeout=self._args.gather_timeout,
            on_status_update=self._on_status,
        )
        d = self._go(s)

        # we either succeed or fail, the session gets torn down either way
        def _good(res):
            s.reset()
            return res

        def _bad(f):
            s.reset()
            return f

        d.addCallbacks(_good, _bad)
        try:
            yield d
        finally:
            if self._fd_to_send is not None:
                self._fd_to_send.close()
            if self._progress is not None:
                self._progress.close()

    def _on_status(self, status):
        if self._progress is None or status.phase.name not in ("sending",
                                                               "complete"):
            return
        done = status.progress * self._filesize // 100
        if done > self._progress.n:
            self._progress.update(done - self._progress.n)

    @inlineCallbacks
    def _go(self, s):
        args = self._args
        name, filesize, file_type = self._open_file()
        self._filesize = filesize
        print("Sending %s file named '%s'"
              % (naturalsize(filesize), name), file=args.stderr)

        blob = yield s.offer_file(self._fd_to_send, name, filesize,
                                  file_type)
        print("On the other computer, please run:", file=args.stderr)
        print("", file=args.stderr)
        print("qrdrop receive", file=args.stderr)
        print("", file=args.stderr)
        print("and scan or paste this code:", file=args.stderr)
        print_code(blob, args)
        # flush stderr so the code is displayed immediately
        args.stderr.flush()

        response = yield read_code("Paste the code shown by the receiver: ",
                                   RESPONSE, args)
        self._progress = tqdm(
            file=args.stderr,
            disable=args.hide_progress,
            unit="B",
            unit_scale=True,
            dynamic_ncols=True,
            total=filesize)
        yield s.submit_text(response)
        print("Connecting..", file=args.stderr)
        yield s.when_done()
        self._progress.close()

        # the receiver hangs up once it has everything
        closed = s.when_channel_closed()
        closed.addTimeout(CLOSE_TIMEOUT, self._reactor)
        try:
            yield closed
        except TimeoutError:
            print("The receiver did not confirm, the file may not have "
                  "arrived in full.", file=args.stderr)
            return
        print("File sent.", file=args.stderr)

    def _open_file(self):
        args = self._args
        # relative to cfg.cwd, and the receiver sees the name as typed even
        # when it is a symlink
        what = os.path.join(args.cwd, args.what)
        basename = os.path.basename(os.path.normpath(what))
        if not os.path.exists(what):
            raise TransferError("Cannot send: no file named '%s'" % args.what)
        if not os.path.isfile(what):
            raise TransferError("Cannot send '%s': only regular files can be "
                                "sent" % args.what)
        filesize = os.stat(what).st_size
        if filesize == 0:
            raise TransferError("Cannot send '%s': the file is empty"
                                % args.what)
        try:
            self._fd_to_send = open(what, "rb")
        except OSError as e:
            raise TransferError("Cannot send '%s': %s" % (args.what,
                                                          e.strerror))
        file_type = mimetypes.guess_type(basename)[0] or ""
        return basename, filesize, file_type
