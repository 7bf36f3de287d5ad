"""Shared fixtures: recording transports and a small configuration.

Transports are replaced by recorders so no MIDI port or socket is opened:
- FakeMidiPort: stands in for a mido output port, records sent messages
- RecordingOscSender: stands in for OscSender, records sent messages
"""

import threading
import time

import pytest

from patchbay import model
from patchbay.executor import CommandExecutor
from patchbay.sessions import SessionManager
from patchbay.state import SharedConfig


class FakeMidiPort:
    """mido output port double."""

    def __init__(self, fail=False):
        self.sent = []
        self.closed = False
        self.fail = fail
        self.lock = threading.Lock()

    def send(self, message):
        if self.fail:
            raise OSError("port unplugged")
        with self.lock:
            self.sent.append((time.monotonic(), message))

    def close(self):
        self.closed = True

    @property
    def messages(self):
        with self.lock:
            return [message for _, message in self.sent]

    @property
    def times(self):
        with self.lock:
            return [ts for ts, _ in self.sent]


class RecordingOscSender:
    """OscSender double; keeps (time, host, port, address, params)."""

    def __init__(self, fail=False):
        self.sent = []
        self.fail = fail
        self.closed = False
        self.lock = threading.Lock()

    def send(self, host, port, message):
        if self.fail:
            raise OSError("network unreachable")
        with self.lock:
            self.sent.append((time.monotonic(), host, port, message.address, list(message.params)))

    def close(self):
        self.closed = True

    @property
    def messages(self):
        with self.lock:
            return [(address, params) for _, _, _, address, params in self.sent]


def make_configuration(devices, mappings, osc_destinations=None, **kwargs):
    return model.Configuration(
        devices={d.id: d for d in devices},
        mappings=list(mappings),
        osc_destinations=osc_destinations or {"visuals": model.OscTarget("127.0.0.1", 7000)},
        **kwargs
    )


@pytest.fixture
def midi_port():
    return FakeMidiPort()


@pytest.fixture
def sessions(midi_port):
    manager = SessionManager()
    manager.add_session("Studio", midi_port)
    return manager


@pytest.fixture
def osc_sender():
    return RecordingOscSender()


@pytest.fixture
def synth():
    return model.Device(
        id="synth",
        name="Poly Synth",
        kind=model.DeviceKind.MIDI,
        programs=(
            model.Program(0, "Pad", (model.ProgramChange(1, 12), model.ControlChange(1, 74, 64))),
            model.Program(1, "Lead", (model.ProgramChange(1, 40),)),
        ),
        tempo_spec=model.TapTempo((model.ControlChange(1, 64, 127),)),
    )


@pytest.fixture
def visuals():
    return model.Device(
        id="visuals",
        name="Visuals",
        kind=model.DeviceKind.OSC,
        programs=(
            model.Program(0, "Calm", (model.OscCommand("/scene/load", (
                model.StringArg("calm"), model.NormalizedArg(0.25, 0.0, 1.0), model.BoolArg(True),
            )),)),
        ),
        tempo_spec=model.RawTempo(
            (model.OscCommand("/tempo", (model.FloatArg(0.0),)),),
            model.TempoDataType.TEMPO,
        ),
    )


@pytest.fixture
def configuration(synth, visuals):
    return make_configuration(
        [synth, visuals],
        [
            model.DeviceMapping("synth", 1, 1, model.SessionDestination("Studio")),
            model.DeviceMapping("visuals", 2, None, model.OscDestination("visuals")),
        ],
    )


@pytest.fixture
def shared_config(configuration):
    return SharedConfig(configuration)


@pytest.fixture
def executor(shared_config, sessions, osc_sender):
    return CommandExecutor(shared_config, sessions, osc_sender)


@pytest.fixture
def build_configuration():
    """Factory fixture: build_configuration(devices, mappings, osc_destinations=None)."""
    return make_configuration
