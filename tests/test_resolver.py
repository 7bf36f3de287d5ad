"""
Tests for resolve().

Covers every (device, program) being reachable through its mapping, shared
listen channels, and partial resolution when a mapping is broken.
"""

from unittest.mock import patch

from patchbay import model
from patchbay.resolver import resolve


class TestResolve:
    """Tests for resolve()."""

    def test_every_program_resolves_through_its_mapping(self, configuration):
        for mapping in configuration.mappings:
            device = configuration.get_device(mapping.device_id)
            for program in device.programs:
                result = resolve(configuration, mapping.listen_channel, program.number)
                assert (device, program, mapping) in result

    def test_other_channel_does_not_match(self, configuration):
        assert resolve(configuration, 5, 0) == []

    def test_shared_listen_channel_fires_all_mappings(self, synth, build_configuration):
        echo = model.Device("echo", "Echo", model.DeviceKind.MIDI,
                            programs=(model.Program(0, "Room", (model.ControlChange(1, 1, 1),)),))
        configuration = build_configuration(
            [synth, echo],
            [
                model.DeviceMapping("synth", 1, 1, model.SessionDestination("Studio")),
                model.DeviceMapping("echo", 1, 2, model.SessionDestination("Studio")),
            ],
        )

        result = resolve(configuration, 1, 0)

        assert [r.device.id for r in result] == ["synth", "echo"]
        assert [r.mapping.send_channel for r in result] == [1, 2]

    def test_unknown_device_reported_and_siblings_resolve(self, synth, build_configuration):
        configuration = build_configuration(
            [synth],
            [
                model.DeviceMapping("ghost", 1, 1, model.SessionDestination("Studio")),
                model.DeviceMapping("synth", 1, 1, model.SessionDestination("Studio")),
            ],
        )

        with patch('patchbay.resolver.logger') as mock_logger:
            result = resolve(configuration, 1, 1)

        assert len(result) == 1
        assert result[0].device is synth
        assert result[0].program.name == "Lead"
        mock_logger.warning.assert_called_once()
        assert "ghost" in mock_logger.warning.call_args[0][0]

    def test_missing_program_reported(self, configuration):
        with patch('patchbay.resolver.logger') as mock_logger:
            result = resolve(configuration, 1, 99)

        assert result == []
        mock_logger.warning.assert_called_once()
        assert "Program 99" in mock_logger.warning.call_args[0][0]
