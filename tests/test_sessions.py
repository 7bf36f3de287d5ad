"""
Tests for the session table and MIDI port discovery.
"""

from unittest.mock import patch

import mido
import pytest

from patchbay import model
from patchbay.sessions import SessionManager, SessionNotFound, find_session_ports


class TestSessionManager:
    def test_send_by_name(self, sessions, midi_port):
        sessions.send_midi_to_session("Studio", mido.Message('program_change', program=3))

        [message] = midi_port.messages
        assert message.program == 3

    def test_unknown_session(self, sessions):
        with pytest.raises(SessionNotFound, match="Nowhere"):
            sessions.send_midi_to_session("Nowhere", mido.Message('program_change', program=3))

    def test_add_remove(self, midi_port):
        manager = SessionManager()
        manager.add_session("A", midi_port)

        assert manager.has_session("A")
        assert manager.remove_session("A") is midi_port
        assert manager.get_session_names() == []

    def test_close_all_closes_ports(self, sessions, midi_port):
        sessions.close_all()

        assert midi_port.closed
        assert not sessions.has_session("Studio")


class TestFindSessionPorts:
    """Port lookup by the session's port filter."""

    @patch('patchbay.sessions.mido.get_output_names')
    @patch('patchbay.sessions.mido.get_input_names')
    def test_matches_port_name_filter(self, mock_inputs, mock_outputs):
        mock_inputs.return_value = ["IAC Driver Bus 1", "rtpmidid:Studio"]
        mock_outputs.return_value = ["rtpmidid:Studio", "Other"]
        session = model.RtpMidiSession(name="Studio", port=5004)

        assert find_session_ports(session) == ("rtpmidid:Studio", "rtpmidid:Studio")

    @patch('patchbay.sessions.mido.get_output_names', return_value=[])
    @patch('patchbay.sessions.mido.get_input_names', return_value=[])
    def test_missing_ports(self, mock_inputs, mock_outputs):
        session = model.RtpMidiSession(name="Stage", port=5006, port_name="rtp-stage")

        assert find_session_ports(session) == (None, None)
