import os
from sys import stderr, stdout
from textwrap import dedent, fill

import click
from twisted.internet.defer import inlineCallbacks, maybeDeferred
from twisted.internet.task import react
from twisted.python.failure import Failure

from .. import __version__
from ..controller import GATHER_TIMEOUT
from ..errors import (ConnectivityFailure, IdentifierFormatError,
                      MalformedBlobError, NegotiationError, QRDropError,
                      RendezvousNotFoundError, RendezvousTimeout,
                      SchemaError, TransferError)


class Config(object):
    """
    Everything a command needs, from the group options down to the
    subcommand's own.
    """

    def __init__(self):
        # click fills in the rest, so its defaults are the only defaults
        self.cwd = os.getcwd()
        self.stdout = stdout
        self.stderr = stderr


def _compose(*decorators):
    def decorate(f):
        for d in reversed(decorators):
            f = d(f)
        return f

    return decorate


ALIASES = {
    "tx": "send",
    "rx": "receive",
    "recieve": "receive",
    "recv": "receive",
}


class AliasedGroup(click.Group):
    def get_command(self, ctx, cmd_name):
        cmd_name = ALIASES.get(cmd_name, cmd_name)
        return click.Group.get_command(self, ctx, cmd_name)


# top-level command ("qrdrop ...")
@click.group(cls=AliasedGroup)
@click.option(
    "--port",
    default=0,
    type=click.IntRange(0, 65535),
    envvar="QRDROP_PORT",
    metavar="PORT",
    help="TCP port to listen on when sending (default: any free port)",
)
@click.option(
    "--gather-timeout",
    default=GATHER_TIMEOUT,
    type=click.FloatRange(min=0, min_open=True),
    metavar="SECONDS",
    help="how long to wait for local address discovery",
)
@click.version_option(
    message="qrdrop %(version)s",
    version=__version__,
)
@click.pass_context
def qrdrop(context, gather_timeout, port):
    """
    Move a file between two devices on the same network.

    The sending side shows a code (as text and as a QR code). The receiving
    side scans or pastes it, and shows a code back. Once the sender has
    that one, the file goes directly from one device to the other.
    """
    context.obj = cfg = Config()
    cfg.port = port
    cfg.gather_timeout = gather_timeout


@inlineCallbacks
def _dispatch_command(reactor, cfg, command):
    """
    Internal helper. This calls the given command (a no-argument
    callable) with the Config instance in cfg and interprets any
    errors for the user.
    """
    try:
        yield maybeDeferred(command)
    except (MalformedBlobError, SchemaError, NegotiationError,
            IdentifierFormatError, RendezvousTimeout) as e:
        msg = fill("ERROR: " + dedent(e.__doc__))
        print(msg, file=cfg.stderr)
        raise SystemExit(1)
    except (RendezvousNotFoundError, ConnectivityFailure) as e:
        msg = fill("ERROR: " + dedent(e.__doc__))
        print(msg, file=cfg.stderr)
        print("", file=cfg.stderr)
        print(str(e), file=cfg.stderr)
        raise SystemExit(1)
    except TransferError as e:
        print("TransferError: %s" % str(e), file=cfg.stderr)
        raise SystemExit(1)
    except QRDropError as e:
        print("ERROR: %s: %s" % (type(e).__name__, e), file=cfg.stderr)
        raise SystemExit(1)
    except Exception as e:
        # Failure() keeps the frames from inside the command
        Failure().printTraceback(file=cfg.stderr)
        print("ERROR:", str(e), file=cfg.stderr)
        raise SystemExit(1)


CommonArgs = _compose(
    click.option(
        "--hide-progress",
        is_flag=True,
        default=False,
        help="suppress the progress bar",
    ),
    click.option(
        "--qr/--no-qr",
        default=True,
        help="also show codes as QR codes",
    ),
)


@qrdrop.command()
@click.pass_context
def help(context, **kwargs):
    print(context.find_root().get_help())


# qrdrop send (or "qrdrop tx")
@qrdrop.command()
@CommonArgs
@click.argument("what", type=click.Path(path_type=str))
@click.pass_obj
def send(cfg, **kwargs):
    """Send a file"""
    for name, value in kwargs.items():
        setattr(cfg, name, value)
    from . import cmd_send

    return go(cmd_send.send, cfg)


# tests mock this out to look at the Config
def go(f, cfg):
    # react() exits the process when the command is done
    return react(_dispatch_command, (cfg, lambda: f(cfg)))


# qrdrop receive (or "qrdrop rx")
@qrdrop.command()
@CommonArgs
@click.option(
    "--accept-file",
    is_flag=True,
    help="accept file transfer without asking for confirmation",
)
@click.option(
    "--output-dir",
    "-o",
    metavar="DIRNAME",
    type=click.Path(file_okay=False, path_type=str),
    help="directory to write the received file into",
)
@click.option(
    "--overwrite",
    is_flag=True,
    help="replace an existing file with the same name",
)
@click.argument(
    "code",
    nargs=-1,
    default=None,
)
@click.pass_obj
def receive(cfg, code, **kwargs):
    """
    Receive a file (from 'qrdrop send')
    """
    for name, value in kwargs.items():
        setattr(cfg, name, value)
    from . import cmd_receive
    if len(code) == 1:
        cfg.code = code[0]
    elif len(code) > 1:
        print("Pass either no code or just one code; you passed"
              " {}".format(len(code)))
        raise SystemExit(1)
    else:
        cfg.code = None

    return go(cmd_receive.receive, cfg)
