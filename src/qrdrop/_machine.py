from attrs import evolve
from automat import MethodicalMachine

from . import _status
from ._status import SessionStatus


class SessionMachine:
    """The aggregate status of one transfer session.

    The Session facade feeds inputs in as its flows make progress; every
    change of the published SessionStatus is handed to ``on_update``.
    Bad inputs never raise: once a session has failed, late reports from
    the substrate or the transfer engine are dropped.
    """
    m = MethodicalMachine()
    set_trace = getattr(m, "_setTrace",
                        lambda self, f: None)  # pragma: no cover

    def __init__(self, on_update):
        self._on_update = on_update
        self._status = SessionStatus()

    @property
    def status(self):
        return self._status

    def _publish(self, **changes):
        self._status = evolve(self._status, **changes)
        self._on_update(self._status)

    @m.state(initial=True)
    def S0_idle(self):
        pass  # pragma: no cover

    @m.state()
    def S1a_preparing_offer(self):
        pass  # pragma: no cover

    @m.state()
    def S1b_preparing_answer(self):
        pass  # pragma: no cover

    @m.state()
    def S2a_waiting_for_answer(self):
        pass  # pragma: no cover

    @m.state()
    def S2b_waiting_for_channel(self):
        pass  # pragma: no cover

    @m.state()
    def S3_connecting(self):
        pass  # pragma: no cover

    @m.state()
    def S4_connected(self):
        pass  # pragma: no cover

    @m.state()
    def S5a_sending(self):
        pass  # pragma: no cover

    @m.state()
    def S5b_receiving(self):
        pass  # pragma: no cover

    @m.state()
    def S6_complete(self):
        pass  # pragma: no cover

    @m.state()
    def S_error(self):
        pass  # pragma: no cover

    @m.state()
    def S_failed(self):
        pass  # pragma: no cover

    @m.state()
    def S_disconnected(self):
        pass  # pragma: no cover

    # from Session
    @m.input()
    def start_send(self, file_meta):
        pass

    @m.input()
    def start_receive(self, file_meta):
        pass

    @m.input()
    def code_ready(self, code):
        pass

    @m.input()
    def answer_applied(self):
        pass

    @m.input()
    def channel_open(self):
        pass

    @m.input()
    def sending_started(self):
        pass

    @m.input()
    def finished(self):
        pass

    @m.input()
    def fail(self, reason):
        pass

    @m.input()
    def reset(self):
        pass

    # from the transfer engine
    @m.input()
    def chunk_sent(self, progress):
        pass

    @m.input()
    def chunk_received(self, progress):
        pass

    # from SessionController
    @m.input()
    def link_connecting(self):
        pass

    @m.input()
    def link_failed(self):
        pass

    @m.input()
    def link_lost(self):
        pass

    @m.output()
    def begin_sending(self, file_meta):
        self._status = SessionStatus(file=file_meta, role="sender")
        self._publish(phase=_status.Preparing())

    @m.output()
    def begin_receiving(self, file_meta):
        self._status = SessionStatus(file=file_meta, role="receiver")
        self._publish(phase=_status.Preparing())

    @m.output()
    def show_code(self, code):
        self._publish(phase=_status.Waiting(code))

    @m.output()
    def show_connecting(self):
        self._publish(phase=_status.Connecting())

    @m.output()
    def show_connected(self):
        self._publish(phase=_status.Connected())

    @m.output()
    def show_sending(self):
        self._publish(phase=_status.Sending())

    @m.output()
    def show_sending_progress(self, progress):
        self._publish(phase=_status.Sending(),
                      progress=max(self._status.progress, progress))

    @m.output()
    def show_receiving_progress(self, progress):
        self._publish(phase=_status.Receiving(),
                      progress=max(self._status.progress, progress))

    @m.output()
    def show_complete(self):
        self._publish(phase=_status.Complete(), progress=100)

    @m.output()
    def show_error(self, reason):
        self._publish(phase=_status.Error(reason))

    @m.output()
    def show_failed(self):
        self._publish(phase=_status.Failed())

    @m.output()
    def show_disconnected(self):
        self._publish(phase=_status.Disconnected())

    @m.output()
    def clear(self):
        self._status = SessionStatus()
        self._on_update(self._status)

    S0_idle.upon(start_send, enter=S1a_preparing_offer,
                 outputs=[begin_sending])
    S0_idle.upon(start_receive, enter=S1b_preparing_answer,
                 outputs=[begin_receiving])
    S0_idle.upon(fail, enter=S_error, outputs=[show_error])
    S0_idle.upon(link_connecting, enter=S0_idle, outputs=[])
    S0_idle.upon(link_failed, enter=S0_idle, outputs=[])
    S0_idle.upon(link_lost, enter=S0_idle, outputs=[])
    S0_idle.upon(reset, enter=S0_idle, outputs=[clear])

    S1a_preparing_offer.upon(code_ready, enter=S2a_waiting_for_answer,
                             outputs=[show_code])
    S1a_preparing_offer.upon(link_connecting, enter=S1a_preparing_offer,
                             outputs=[])
    S1a_preparing_offer.upon(fail, enter=S_error, outputs=[show_error])
    S1a_preparing_offer.upon(link_failed, enter=S_failed,
                             outputs=[show_failed])
    S1a_preparing_offer.upon(link_lost, enter=S_disconnected,
                             outputs=[show_disconnected])
    S1a_preparing_offer.upon(reset, enter=S0_idle, outputs=[clear])

    S1b_preparing_answer.upon(code_ready, enter=S2b_waiting_for_channel,
                              outputs=[show_code])
    S1b_preparing_answer.upon(link_connecting, enter=S1b_preparing_answer,
                              outputs=[])
    S1b_preparing_answer.upon(fail, enter=S_error, outputs=[show_error])
    S1b_preparing_answer.upon(link_failed, enter=S_failed,
                              outputs=[show_failed])
    S1b_preparing_answer.upon(link_lost, enter=S_disconnected,
                              outputs=[show_disconnected])
    S1b_preparing_answer.upon(reset, enter=S0_idle, outputs=[clear])

    # the sender can only reach "connected" after the answer is applied
    S2a_waiting_for_answer.upon(answer_applied, enter=S3_connecting,
                                outputs=[show_connecting])
    S2a_waiting_for_answer.upon(link_connecting, enter=S2a_waiting_for_answer,
                                outputs=[])
    S2a_waiting_for_answer.upon(fail, enter=S_error, outputs=[show_error])
    S2a_waiting_for_answer.upon(link_failed, enter=S_failed,
                                outputs=[show_failed])
    S2a_waiting_for_answer.upon(link_lost, enter=S_disconnected,
                                outputs=[show_disconnected])
    S2a_waiting_for_answer.upon(reset, enter=S0_idle, outputs=[clear])

    # the receiver applied the offer before it could produce its code
    S2b_waiting_for_channel.upon(link_connecting, enter=S3_connecting,
                                 outputs=[show_connecting])
    S2b_waiting_for_channel.upon(channel_open, enter=S4_connected,
                                 outputs=[show_connected])
    S2b_waiting_for_channel.upon(fail, enter=S_error, outputs=[show_error])
    S2b_waiting_for_channel.upon(link_failed, enter=S_failed,
                                 outputs=[show_failed])
    S2b_waiting_for_channel.upon(link_lost, enter=S_disconnected,
                                 outputs=[show_disconnected])
    S2b_waiting_for_channel.upon(reset, enter=S0_idle, outputs=[clear])

    S3_connecting.upon(channel_open, enter=S4_connected,
                       outputs=[show_connected])
    S3_connecting.upon(link_connecting, enter=S3_connecting, outputs=[])
    S3_connecting.upon(fail, enter=S_error, outputs=[show_error])
    S3_connecting.upon(link_failed, enter=S_failed, outputs=[show_failed])
    S3_connecting.upon(link_lost, enter=S_disconnected,
                       outputs=[show_disconnected])
    S3_connecting.upon(reset, enter=S0_idle, outputs=[clear])

    S4_connected.upon(sending_started, enter=S5a_sending,
                      outputs=[show_sending])
    S4_connected.upon(chunk_received, enter=S5b_receiving,
                      outputs=[show_receiving_progress])
    S4_connected.upon(finished, enter=S6_complete, outputs=[show_complete])
    S4_connected.upon(link_connecting, enter=S4_connected, outputs=[])
    S4_connected.upon(fail, enter=S_error, outputs=[show_error])
    S4_connected.upon(link_failed, enter=S_failed, outputs=[show_failed])
    S4_connected.upon(link_lost, enter=S_disconnected,
                      outputs=[show_disconnected])
    S4_connected.upon(reset, enter=S0_idle, outputs=[clear])

    S5a_sending.upon(chunk_sent, enter=S5a_sending,
                     outputs=[show_sending_progress])
    S5a_sending.upon(finished, enter=S6_complete, outputs=[show_complete])
    S5a_sending.upon(link_connecting, enter=S5a_sending, outputs=[])
    S5a_sending.upon(fail, enter=S_error, outputs=[show_error])
    S5a_sending.upon(link_failed, enter=S_failed, outputs=[show_failed])
    S5a_sending.upon(link_lost, enter=S_disconnected,
                     outputs=[show_disconnected])
    S5a_sending.upon(reset, enter=S0_idle, outputs=[clear])

    S5b_receiving.upon(chunk_received, enter=S5b_receiving,
                       outputs=[show_receiving_progress])
    S5b_receiving.upon(finished, enter=S6_complete, outputs=[show_complete])
    S5b_receiving.upon(link_connecting, enter=S5b_receiving, outputs=[])
    S5b_receiving.upon(fail, enter=S_error, outputs=[show_error])
    S5b_receiving.upon(link_failed, enter=S_failed, outputs=[show_failed])
    S5b_receiving.upon(link_lost, enter=S_disconnected,
                       outputs=[show_disconnected])
    S5b_receiving.upon(reset, enter=S0_idle, outputs=[clear])

    # once we're done, the peer hanging up is expected
    S6_complete.upon(fail, enter=S6_complete, outputs=[])
    S6_complete.upon(link_connecting, enter=S6_complete, outputs=[])
    S6_complete.upon(link_failed, enter=S6_complete, outputs=[])
    S6_complete.upon(link_lost, enter=S6_complete, outputs=[])
    S6_complete.upon(reset, enter=S0_idle, outputs=[clear])

    # an error from bad input can be retried without a reset, as long as
    # nothing was started. Session enforces the "nothing was started" part.
    S_error.upon(start_send, enter=S1a_preparing_offer,
                 outputs=[begin_sending])
    S_error.upon(start_receive, enter=S1b_preparing_answer,
                 outputs=[begin_receiving])
    S_error.upon(fail, enter=S_error, outputs=[])
    S_error.upon(finished, enter=S_error, outputs=[])
    S_error.upon(link_connecting, enter=S_error, outputs=[])
    S_error.upon(link_failed, enter=S_error, outputs=[])
    S_error.upon(link_lost, enter=S_error, outputs=[])
    S_error.upon(reset, enter=S0_idle, outputs=[clear])

    S_failed.upon(fail, enter=S_failed, outputs=[])
    S_failed.upon(finished, enter=S_failed, outputs=[])
    S_failed.upon(link_connecting, enter=S_failed, outputs=[])
    S_failed.upon(link_failed, enter=S_failed, outputs=[])
    S_failed.upon(link_lost, enter=S_failed, outputs=[])
    S_failed.upon(reset, enter=S0_idle, outputs=[clear])

    S_disconnected.upon(fail, enter=S_disconnected, outputs=[])
    S_disconnected.upon(finished, enter=S_disconnected, outputs=[])
    S_disconnected.upon(link_connecting, enter=S_disconnected, outputs=[])
    S_disconnected.upon(link_failed, enter=S_disconnected, outputs=[])
    S_disconnected.upon(link_lost, enter=S_disconnected, outputs=[])
    S_disconnected.upon(reset, enter=S0_idle, outputs=[clear])

    # reports that were already on their way when the session stopped
    for _state in (S6_complete, S_error, S_failed, S_disconnected):
        for _input in (code_ready, answer_applied, channel_open,
                       sending_started, chunk_sent, chunk_received):
            _state.upon(_input, enter=_state, outputs=[])
    S6_complete.upon(finished, enter=S6_complete, outputs=[])
    del _state, _input
