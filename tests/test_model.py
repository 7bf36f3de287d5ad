"""
Tests for the configuration model parsers.

Validates tagged variant parsing, range checks and program lookup.
"""

import pytest

from patchbay import model


class TestParseCommand:
    """Test parse_command() tagged variants."""

    def test_program_change(self):
        command = model.parse_command({'type': 'program_change', 'channel': 3, 'program': 42})
        assert command == model.ProgramChange(channel=3, program=42)

    def test_control_change(self):
        command = model.parse_command({'type': 'control_change', 'channel': 1, 'controller': 7, 'value': 100})
        assert command == model.ControlChange(channel=1, controller=7, value=100)

    def test_osc_command_with_args(self):
        command = model.parse_command({
            'type': 'osc',
            'address': '/mixer/fader',
            'args': [
                {'type': 'int', 'value': 3},
                {'type': 'float', 'value': 0.5},
                {'type': 'string', 'value': 'main'},
                {'type': 'bool', 'value': False},
                {'type': 'normalized', 'value': 64, 'min': 0, 'max': 127},
            ],
        })

        assert command.address == '/mixer/fader'
        assert command.args == (
            model.IntArg(3),
            model.FloatArg(0.5),
            model.StringArg('main'),
            model.BoolArg(False),
            model.NormalizedArg(64.0, 0.0, 127.0),
        )

    def test_osc_command_without_args(self):
        command = model.parse_command({'type': 'osc', 'address': '/go'})
        assert command == model.OscCommand('/go', ())

    def test_unknown_type_rejected(self):
        with pytest.raises(ValueError, match="Unknown command type"):
            model.parse_command({'type': 'note_on', 'note': 60})

    def test_program_out_of_range(self):
        with pytest.raises(ValueError, match="0-127"):
            model.parse_command({'type': 'program_change', 'channel': 1, 'program': 128})

    def test_channel_out_of_range(self):
        with pytest.raises(ValueError, match="1-16"):
            model.parse_command({'type': 'control_change', 'channel': 17, 'controller': 1, 'value': 1})

    def test_osc_address_must_start_with_slash(self):
        with pytest.raises(ValueError, match="must start with '/'"):
            model.parse_command({'type': 'osc', 'address': 'tempo'})

    def test_bool_value_must_be_bool(self):
        with pytest.raises(ValueError, match="true/false"):
            model.parse_osc_arg({'type': 'bool', 'value': 1})


class TestParseTempoSpec:
    """Test parse_tempo_spec()."""

    def test_none_passes_through(self):
        assert model.parse_tempo_spec(None) is None

    def test_tap_tempo(self):
        spec = model.parse_tempo_spec({
            'type': 'tap_tempo',
            'commands': [{'type': 'control_change', 'channel': 1, 'controller': 64, 'value': 127}],
        })
        assert spec == model.TapTempo((model.ControlChange(1, 64, 127),))

    def test_raw_tempo_time(self):
        spec = model.parse_tempo_spec({
            'type': 'raw_tempo',
            'data_type': 'time',
            'commands': [{'type': 'osc', 'address': '/delay', 'args': [{'type': 'float', 'value': 0}]}],
        })
        assert isinstance(spec, model.RawTempo)
        assert spec.data_type == model.TempoDataType.TIME

    def test_raw_tempo_bad_data_type(self):
        with pytest.raises(ValueError, match="data_type"):
            model.parse_tempo_spec({'type': 'raw_tempo', 'data_type': 'beats', 'commands': []})


class TestParseDevice:
    """Test parse_device() and Device.get_program()."""

    def make_entry(self, **overrides):
        entry = {
            'id': 'synth',
            'name': 'Poly Synth',
            'device_type': 'midi',
            'programs': [
                {'number': 0, 'name': 'Pad', 'commands': [{'type': 'program_change', 'channel': 1, 'program': 5}]},
                {'number': 7, 'name': 'Lead', 'commands': []},
            ],
        }
        entry.update(overrides)
        return entry

    def test_device_fields(self):
        device = model.parse_device(self.make_entry())

        assert device.id == 'synth'
        assert device.kind == model.DeviceKind.MIDI
        assert [p.number for p in device.programs] == [0, 7]
        assert device.tempo_spec is None

    def test_get_program_exact_match(self):
        device = model.parse_device(self.make_entry())

        assert device.get_program(7).name == 'Lead'
        assert device.get_program(1) is None

    def test_duplicate_program_numbers_rejected(self):
        entry = self.make_entry(programs=[
            {'number': 3, 'name': 'A', 'commands': []},
            {'number': 3, 'name': 'B', 'commands': []},
        ])
        with pytest.raises(ValueError, match="duplicate program number 3"):
            model.parse_device(entry)

    def test_unknown_device_type(self):
        with pytest.raises(ValueError, match="device_type"):
            model.parse_device(self.make_entry(device_type='dmx'))


class TestParseMapping:
    """Test parse_mapping() and destinations."""

    def test_rtp_midi_mapping(self):
        mapping = model.parse_mapping({
            'device_id': 'synth',
            'listen_channel': 1,
            'send_channel': 10,
            'destination': {'type': 'rtp_midi', 'session_name': 'Studio'},
        })
        assert mapping == model.DeviceMapping('synth', 1, 10, model.SessionDestination('Studio'))

    def test_osc_mapping_without_send_channel(self):
        mapping = model.parse_mapping({
            'device_id': 'visuals',
            'listen_channel': 16,
            'destination': {'type': 'osc', 'destination_name': 'visuals'},
        })
        assert mapping.send_channel is None
        assert mapping.destination == model.OscDestination('visuals')

    def test_listen_channel_zero_rejected(self):
        with pytest.raises(ValueError, match="listen_channel"):
            model.parse_mapping({
                'device_id': 'synth',
                'listen_channel': 0,
                'destination': {'type': 'rtp_midi', 'session_name': 'Studio'},
            })

    def test_unknown_destination_type(self):
        with pytest.raises(ValueError, match="Unknown destination type"):
            model.parse_destination({'type': 'serial', 'device': '/dev/ttyUSB0'})


class TestSessionConfig:
    """Test parse_session() port filter defaults."""

    def test_port_filter_defaults_to_name(self):
        session = model.parse_session({'name': 'Studio', 'port': 5004})
        assert session.port_filter == 'Studio'
        assert session.listen is False

    def test_port_filter_override(self):
        session = model.parse_session({'name': 'Studio', 'port': 5004, 'port_name': 'rtpmidid:Studio',
                                       'connect_to': [{'host': '10.0.0.2', 'port': 5004, 'name': 'Rack'}]})
        assert session.port_filter == 'rtpmidid:Studio'
        assert session.connect_to[0].host == '10.0.0.2'
