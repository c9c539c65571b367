import os
import sys

from humanize import naturalsize
from tqdm import tqdm
from twisted.internet import reactor
from twisted.internet.defer import inlineCallbacks

from .. import create
from ..codec import REQUEST, classify, decode
from ..errors import TransferError
from ..transfer import DirectorySink
from ..util import estimate_free_space
from .cmd_send import print_code, read_code


class TransferRejectedError(TransferError):
    def __init__(self):
        TransferError.__init__(self, "transfer rejected")


def receive(args, reactor=reactor):
    """I implement 'qrdrop receive'. I return a Deferred that fires with
    None (for success), or signals one of the following errors:
    * TransferError: the user or the local filesystem refused the file, or
                     it did not arrive in full
    * ConnectivityFailure: the two devices could not reach each other
    * MalformedBlobError/SchemaError: the code given was not usable
    * any other error: something unexpected happened
    """
    return Receiver(args, reactor).go()


class Receiver:
    def __init__(self, args, reactor):
        assert isinstance(args.code, (str, type(None)))
        self.args = args
        self._reactor = reactor
        self._progress = None
        self.xfersize = None
        self.abs_destname = None

    def _msg(self, *args, **kwargs):
        print(*args, file=self.args.stderr, **kwargs)

    @inlineCallbacks
    def go(self):
        self.outdir = os.path.join(self.args.cwd, self.args.output_dir or "")
        s = create(
            self._reactor,
            port=self.args.port,
            gather_timeout=self.args.gather_timeout,
            sink=DirectorySink(self.outdir, overwrite=self.args.overwrite),
            on_status_update=self._on_status,
            # a short file is a failed transfer on the command line
            strict_size=True,
        )
        d = self._go(s)

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
            if self._progress is not None:
                self._progress.close()

    def _on_status(self, status):
        if self._progress is None or status.phase.name not in ("receiving",
                                                               "complete"):
            return
        done = status.progress * self.xfersize // 100
        if done > self._progress.n:
            self._progress.update(done - self._progress.n)

    @inlineCallbacks
    def _go(self, s):
        if not os.path.isdir(self.outdir):
            raise TransferError("output directory %s does not exist"
                                % repr(self.outdir))
        code = self.args.code
        if code is not None and classify(code) != REQUEST:
            # a bad code on the command line is fatal, decode() says why
            decode(code)
            raise TransferError("that is a response code: pass the code "
                                "shown by 'qrdrop send' instead")
        if code is None:
            code = yield read_code("Paste the code shown by the sender: ",
                                   REQUEST, self.args)
        request = decode(code)
        self._handle_file(request.file_meta)

        response = yield s.submit_text(code)
        self._msg("On the sending computer, scan or paste this code:")
        print_code(response, self.args)
        # flush stderr so the code is displayed immediately
        self.args.stderr.flush()

        self._progress = tqdm(
            file=self.args.stderr,
            disable=self.args.hide_progress,
            unit="B",
            unit_scale=True,
            dynamic_ncols=True,
            total=self.xfersize)
        path = yield s.when_done()
        self._progress.close()
        self._msg("Received file written to: %s" % path)

    def _handle_file(self, file_meta):
        self.abs_destname = self._decide_destname(file_meta.name)
        self.xfersize = file_meta.size
        free = estimate_free_space(self.abs_destname)
        if free is not None and free < self.xfersize:
            self._msg("Error: insufficient free space (%sB) for file (%sB)" %
                      (free, self.xfersize))
            raise TransferRejectedError()

        # repr() keeps control characters in the name off the terminal
        self._msg("Receiving file (%s) into: %s" %
                  (naturalsize(self.xfersize),
                   repr(os.path.basename(self.abs_destname))))
        self._ask_permission()

    def _decide_destname(self, name):
        # DirectorySink drops any directories in the suggested name
        abs_destname = os.path.abspath(
            DirectorySink(self.outdir).target_for(name))
        if os.path.isdir(abs_destname):
            self._msg("Error: %s is an existing directory" %
                      repr(os.path.basename(abs_destname)))
            raise TransferRejectedError()
        if os.path.exists(abs_destname):
            if self.args.overwrite:
                self._msg("Overwriting %s" %
                          repr(os.path.basename(abs_destname)))
            else:
                self._msg("Error: refusing to overwrite existing %s" %
                          repr(os.path.basename(abs_destname)))
                raise TransferRejectedError()
        return abs_destname

    def _ask_permission(self):
        if self.args.accept_file:
            return
        ok = input("ok? (Y/n): ")
        if ok.lower().startswith("y") or len(ok) == 0:
            return
        print("transfer rejected", file=sys.stderr)
        raise TransferRejectedError()
