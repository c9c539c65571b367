from collections import deque

from twisted.internet.defer import Deferred, fail, succeed
from twisted.python.failure import Failure

NoResult = object()


class OneShotObserver:
    """Hand out Deferreds that all fire with the same single result.

    Unlike a bare Deferred, any number of callers can wait, and callers that
    show up after the result arrived still get it. A Failure result errbacks
    every waiter.
    """

    def __init__(self):
        self._result = NoResult
        self._observers = []

    @property
    def has_fired(self):
        return self._result is not NoResult

    def when_fired(self):
        if self._result is not NoResult:
            d = Deferred()
            self._deliver(d)
            return d
        d = Deferred(self._observers.remove)
        self._observers.append(d)
        return d

    def _deliver(self, d):
        if isinstance(self._result, Failure):
            d.errback(self._result)
        else:
            d.callback(self._result)

    def fire(self, result):
        assert self._result is NoResult
        self._result = result
        observers, self._observers = self._observers, []
        for d in observers:
            self._deliver(d)

    def fire_if_not_fired(self, result):
        if self._result is NoResult:
            self.fire(result)

    def error(self, f):
        assert isinstance(f, Failure)
        self.fire_if_not_fired(f)


class SequenceObserver:
    """An ordered queue of events, consumed one Deferred at a time.

    Events that arrive with nobody waiting are kept until asked for. After
    error(), queued events are still handed out, then every further request
    errbacks.
    """

    def __init__(self):
        self._error = None
        self._results = deque()
        self._observers = deque()

    def when_next_event(self):
        if self._results:
            return succeed(self._results.popleft())
        if self._error is not None:
            return fail(self._error)
        d = Deferred(self._observers.remove)
        self._observers.append(d)
        return d

    def fire(self, result):
        if self._error is not None:
            return
        if self._observers:
            self._observers.popleft().callback(result)
        else:
            self._results.append(result)

    def error(self, f):
        assert isinstance(f, Failure)
        if self._error is not None:
            return
        self._error = f
        observers, self._observers = self._observers, deque()
        for d in observers:
            d.errback(f)

    def discard(self):
        self._results.clear()
