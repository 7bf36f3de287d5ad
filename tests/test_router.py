"""
Tests for the Router.

Tests for:
1. Program changes routed end to end (MIDI and OSC destinations)
2. Broken mappings don't stop healthy ones
3. Inbound MIDI: only program changes, channel shifted to 1-16
4. Tempo intake from dispatcher handlers and raw packets
5. Sleeping tap sequences never hold up newer events
6. Shutdown halts tap sequences, joins input threads, closes transports

Transports are replaced by the recording doubles from conftest.py.
"""

import threading
import time
from unittest.mock import patch

import mido
import pytest

from patchbay import model, osc
from patchbay.executor import Outcome
from patchbay.router import Router
from patchbay.tempo import TAP_COUNT


class FakeMidiInput:
    """mido input port double with nothing pending."""

    def __init__(self):
        self.closed = False

    def iter_pending(self):
        return iter(())

    def close(self):
        self.closed = True


def wait_until(predicate, timeout=2.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.001)
    return False


@pytest.fixture
def router(configuration, sessions, osc_sender):
    router = Router(configuration, sessions=sessions, osc_sender=osc_sender, workers=4)
    yield router
    if router.running:
        router.shutdown()


class TestProgramChanges:
    """Program change handling."""

    def test_midi_program_executes_commands_in_order(self, router, midi_port):
        outcomes = router.handle_program_change(1, 0)

        assert outcomes == [Outcome.SENT, Outcome.SENT]
        first, second = midi_port.messages
        assert (first.type, first.channel, first.program) == ('program_change', 0, 12)
        assert (second.type, second.control, second.value) == ('control_change', 74, 64)

    def test_osc_program(self, router, osc_sender, midi_port):
        outcomes = router.handle_program_change(2, 0)

        assert outcomes == [Outcome.SENT]
        assert osc_sender.messages == [("/scene/load", ["calm", 0.25, True])]
        assert midi_port.messages == []

    def test_unmapped_channel_does_nothing(self, router, midi_port, osc_sender):
        assert router.handle_program_change(9, 0) == []
        assert midi_port.messages == []
        assert osc_sender.messages == []

    def test_broken_mapping_does_not_block_healthy_one(self, synth, build_configuration, sessions,
                                                       osc_sender, midi_port):
        configuration = build_configuration(
            [synth],
            [
                model.DeviceMapping("ghost", 1, 1, model.SessionDestination("Studio")),
                model.DeviceMapping("synth", 1, 1, model.OscDestination("visuals")),
                model.DeviceMapping("synth", 1, 3, model.SessionDestination("Studio")),
            ],
        )
        router = Router(configuration, sessions=sessions, osc_sender=osc_sender, workers=2)

        try:
            outcomes = router.handle_program_change(1, 1)
        finally:
            router.shutdown()

        assert outcomes == [Outcome.MISMATCH, Outcome.SENT]
        [message] = midi_port.messages
        assert (message.channel, message.program) == (2, 40)
        assert router.stats.get('mismatches') == 1

    def test_midi_message_routed_with_one_based_channel(self, router, midi_port):
        future = router.handle_midi_message(mido.Message('program_change', channel=0, program=1))

        assert future.result(timeout=2.0) == [Outcome.SENT]
        [message] = midi_port.messages
        assert message.program == 40

    def test_other_midi_messages_ignored(self, router, midi_port):
        assert router.handle_midi_message(mido.Message('note_on', note=60)) is None
        assert router.handle_midi_message(mido.Message('control_change', control=1, value=2)) is None
        assert midi_port.messages == []
        assert router.stats.get('ignored_midi') == 2


class TestTempo:
    """Tempo intake and distribution."""

    def test_tempo_message_distributes(self, router, midi_port, osc_sender):
        run = router.handle_tempo_message(osc.TEMPO_ADDRESS, 6000)

        assert run.wait(timeout=2.0) == [True, True]
        assert router.current_bpm == 6000.0
        assert len(midi_port.messages) == TAP_COUNT
        assert osc_sender.messages == [("/tempo", [6000.0])]

    def test_invalid_tempo_argument_ignored(self, router, midi_port):
        assert router.handle_tempo_message(osc.TEMPO_ADDRESS, "fast") is None
        assert router.handle_tempo_message(osc.TEMPO_ADDRESS) is None
        assert router.stats.get('invalid_tempo') == 2
        assert router.current_bpm is None

    def test_non_positive_tempo_rejected(self, router, osc_sender):
        assert router.handle_tempo(0) is None
        assert router.handle_tempo(-120.0) is None
        assert osc_sender.messages == []

    def test_raw_packet(self, router, osc_sender):
        packet = osc.build_message(osc.TEMPO_ADDRESS, [(6000.0, osc.TYPE_FLOAT)]).dgram

        router.handle_osc_packet(packet).wait(timeout=2.0)

        assert router.current_bpm == 6000.0
        assert ("/tempo", [6000.0]) in osc_sender.messages

    def test_unrelated_packet_ignored(self, router):
        packet = osc.build_message("/volume", [(0.5, osc.TYPE_FLOAT)]).dgram
        assert router.handle_osc_packet(packet) is None


class TestBusyTapSequences:
    """Sleeping tap sequences never delay the next event.

    Two tap devices at 60 BPM sleep a full second between taps; with only
    two router workers they must not hold up a newer tempo or a program change.
    """

    @pytest.fixture
    def busy_router(self, synth, build_configuration, sessions, osc_sender):
        drum = model.Device("drum", "Drum Machine", model.DeviceKind.MIDI,
                            tempo_spec=model.TapTempo((model.ControlChange(10, 20, 1),)))
        configuration = build_configuration(
            [synth, drum],
            [
                model.DeviceMapping("synth", 1, 1, model.SessionDestination("Studio")),
                model.DeviceMapping("drum", 3, 10, model.SessionDestination("Studio")),
            ],
        )
        router = Router(configuration, sessions=sessions, osc_sender=osc_sender, workers=2)
        yield router
        if router.running:
            router.shutdown()

    def test_newer_tempo_supersedes_without_delay(self, busy_router, midi_port):
        slow = busy_router.handle_tempo_message(osc.TEMPO_ADDRESS, 60)
        assert wait_until(lambda: len(midi_port.messages) >= 2)

        start = time.monotonic()
        fast = busy_router.handle_tempo_message(osc.TEMPO_ADDRESS, 6000)
        slow_results = slow.wait(timeout=2.0)
        elapsed = time.monotonic() - start

        assert elapsed < 0.5
        assert slow_results == [False, False]
        assert fast.wait(timeout=2.0) == [True, True]
        assert len(midi_port.messages) == 2 + 2 * TAP_COUNT

    def test_program_change_not_queued_behind_taps(self, busy_router, midi_port):
        busy_router.handle_tempo(60.0)
        assert wait_until(lambda: len(midi_port.messages) >= 2)

        start = time.monotonic()
        future = busy_router.handle_midi_message(mido.Message('program_change', channel=0, program=1))

        assert future.result(timeout=2.0) == [Outcome.SENT]
        assert time.monotonic() - start < 0.5


class TestShutdown:
    def test_shutdown_halts_tap_sequence_and_closes(self, router, midi_port, osc_sender, sessions):
        run = router.handle_tempo(30.0)  # 2s between taps

        router.shutdown()

        assert run.wait(timeout=2.0)[0] is False
        assert len(midi_port.messages) <= 1
        assert midi_port.closed
        assert osc_sender.closed
        assert sessions.get_session_names() == []

    def test_shutdown_stops_tempo_engine(self, router):
        with patch.object(router.tempo, 'shutdown', wraps=router.tempo.shutdown) as mock_shutdown:
            router.shutdown()

        mock_shutdown.assert_called_once()
        with pytest.raises(RuntimeError):
            router.tempo.pool.submit(time.sleep, 0)

    def test_midi_input_threads_joined_before_pool_closes(self, router):
        port = FakeMidiInput()
        thread = threading.Thread(target=router._midi_input_loop, args=(port, "Studio"), daemon=True)
        thread.start()
        router.midi_inputs.append(port)
        router.midi_threads.append(thread)

        router.shutdown()

        assert not thread.is_alive()
        assert port.closed

    def test_event_after_shutdown_is_dropped(self, router, midi_port):
        router.shutdown()

        assert router.handle_midi_message(mido.Message('program_change', program=1)) is None
        assert midi_port.messages == []
