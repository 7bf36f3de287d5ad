#!/usr/bin/env python3
"""
Configuration Model - Devices, programs, commands and mappings.

Immutable description of everything the router knows about: which devices
exist, what each of their programs sends, how they take tempo, and where the
commands for a listen channel go.

TYPES:
- Device: id, name, kind (midi/osc), programs, optional tempo spec
- Program: number (0-127), name, ordered commands
- Command: ProgramChange | ControlChange | OscCommand
- OscArg: IntArg | FloatArg | StringArg | BoolArg | NormalizedArg
- TempoSpec: TapTempo | RawTempo (data type tempo or time)
- DeviceMapping: device id, listen channel (1-16), optional send channel, destination
- Destination: SessionDestination (named MIDI session) | OscDestination (named host:port)
- Configuration: the snapshot consumed by the router

DOCUMENT FORMAT:
Variants are tagged with a "type" key, e.g.
    {type: control_change, channel: 1, controller: 7, value: 100}
    {type: normalized, value: 0.5, min: 0.0, max: 1.0}
    {type: raw_tempo, data_type: time, commands: [...]}

Parsing functions raise ValueError with a readable message on bad input.
Cross references (mapping -> device, mapping -> destination) are not checked
here: the router reports them when an event hits them.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple, Union


# MIDI value ranges
MIDI_VALUE_MIN = 0
MIDI_VALUE_MAX = 127
CHANNEL_MIN = 1
CHANNEL_MAX = 16
PORT_MIN = 1
PORT_MAX = 65535


# ============================================================================
# ENUMS
# ============================================================================

class DeviceKind(Enum):
    """Which protocol a device speaks natively."""
    MIDI = "midi"
    OSC = "osc"


class TempoDataType(Enum):
    """Scalar carried by a raw tempo send."""
    TEMPO = "tempo"  # BPM unchanged
    TIME = "time"    # Quarter-note duration in milliseconds


# ============================================================================
# OSC ARGUMENTS
# ============================================================================

@dataclass(frozen=True)
class IntArg:
    value: int


@dataclass(frozen=True)
class FloatArg:
    value: float


@dataclass(frozen=True)
class StringArg:
    value: str


@dataclass(frozen=True)
class BoolArg:
    value: bool


@dataclass(frozen=True)
class NormalizedArg:
    """Value mapped into 0.0-1.0 as (value - min) / (max - min) before sending."""
    value: float
    min: float
    max: float


OscArg = Union[IntArg, FloatArg, StringArg, BoolArg, NormalizedArg]


# ============================================================================
# COMMANDS
# ============================================================================

@dataclass(frozen=True)
class ProgramChange:
    channel: int
    program: int


@dataclass(frozen=True)
class ControlChange:
    channel: int
    controller: int
    value: int


@dataclass(frozen=True)
class OscCommand:
    address: str
    args: Tuple[OscArg, ...] = ()


Command = Union[ProgramChange, ControlChange, OscCommand]


# ============================================================================
# TEMPO SPECS
# ============================================================================

@dataclass(frozen=True)
class TapTempo:
    """Replay commands four times, a quarter note apart."""
    commands: Tuple[Command, ...]


@dataclass(frozen=True)
class RawTempo:
    """Send commands once with the tempo scalar substituted in."""
    commands: Tuple[Command, ...]
    data_type: TempoDataType


TempoSpec = Union[TapTempo, RawTempo]


# ============================================================================
# DEVICES
# ============================================================================

@dataclass(frozen=True)
class Program:
    number: int
    name: str
    commands: Tuple[Command, ...] = ()


@dataclass(frozen=True)
class Device:
    """A configured device.

    Attributes:
        id (str): Unique identifier, key in the device table
        name (str): Human-readable name used in logs
        kind (DeviceKind): Native protocol
        programs (tuple): Programs in declared order, unique by number
        tempo_spec (TempoSpec): How the device takes tempo, or None
    """
    id: str
    name: str
    kind: DeviceKind
    programs: Tuple[Program, ...] = ()
    tempo_spec: Optional[TempoSpec] = None

    def get_program(self, number: int) -> Optional[Program]:
        """Return the program with this exact number, or None."""
        for program in self.programs:
            if program.number == number:
                return program
        return None


# ============================================================================
# MAPPINGS AND DESTINATIONS
# ============================================================================

@dataclass(frozen=True)
class SessionDestination:
    """Named MIDI session (RTP-MIDI, established outside the router)."""
    session_name: str


@dataclass(frozen=True)
class OscDestination:
    """Name resolved against the osc_destinations table."""
    destination_name: str


Destination = Union[SessionDestination, OscDestination]


@dataclass(frozen=True)
class DeviceMapping:
    device_id: str
    listen_channel: int
    send_channel: Optional[int]
    destination: Destination


@dataclass(frozen=True)
class OscTarget:
    host: str
    port: int


@dataclass(frozen=True)
class RtpMidiRemote:
    host: str
    port: int
    name: str


@dataclass(frozen=True)
class RtpMidiSession:
    """Session declaration.

    The session itself is brought up by an external RTP-MIDI daemon; the
    router talks to it through the MIDI port whose name contains port_name.
    """
    name: str
    port: int
    listen: bool = False
    connect_to: Tuple[RtpMidiRemote, ...] = ()
    port_name: Optional[str] = None

    @property
    def port_filter(self) -> str:
        return self.port_name or self.name


@dataclass(frozen=True)
class OscSource:
    name: str
    port: int


@dataclass
class Configuration:
    """Snapshot consumed by the router.

    Attributes:
        devices (dict): Device id -> Device
        mappings (list): DeviceMapping in configuration order
        osc_destinations (dict): Destination name -> OscTarget
        rtp_midi_sessions (list): Session declarations
        osc_sources (list): OSC listen ports for incoming tempo
    """
    devices: Dict[str, Device] = field(default_factory=dict)
    mappings: List[DeviceMapping] = field(default_factory=list)
    osc_destinations: Dict[str, OscTarget] = field(default_factory=dict)
    rtp_midi_sessions: List[RtpMidiSession] = field(default_factory=list)
    osc_sources: List[OscSource] = field(default_factory=list)

    def get_device(self, device_id: str) -> Optional[Device]:
        return self.devices.get(device_id)


# ============================================================================
# PARSING
# ============================================================================

def _require(data: Dict[str, Any], key: str, context: str) -> Any:
    if not isinstance(data, dict):
        raise ValueError(f"{context} must be a mapping, got {type(data).__name__}")
    if key not in data:
        raise ValueError(f"{context} missing '{key}'")
    return data[key]


def _require_int(value: Any, low: int, high: int, what: str) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValueError(f"{what} must be an integer, got {value!r}")
    if not (low <= value <= high):
        raise ValueError(f"{what} must be in range {low}-{high}, got {value}")
    return value


def _require_number(value: Any, what: str) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValueError(f"{what} must be a number, got {value!r}")
    return float(value)


def parse_osc_arg(data: Dict[str, Any]) -> OscArg:
    """Parse a tagged OSC argument.

    Raises:
        ValueError: Unknown tag or wrong value type
    """
    arg_type = _require(data, 'type', "OSC argument")

    if arg_type == 'int':
        value = _require(data, 'value', "int argument")
        if isinstance(value, bool) or not isinstance(value, int):
            raise ValueError(f"int argument value must be an integer, got {value!r}")
        return IntArg(value)
    if arg_type == 'float':
        return FloatArg(_require_number(_require(data, 'value', "float argument"), "float argument value"))
    if arg_type == 'string':
        return StringArg(str(_require(data, 'value', "string argument")))
    if arg_type == 'bool':
        value = _require(data, 'value', "bool argument")
        if not isinstance(value, bool):
            raise ValueError(f"bool argument value must be true/false, got {value!r}")
        return BoolArg(value)
    if arg_type == 'normalized':
        return NormalizedArg(
            value=_require_number(data.get('value', 0.0), "normalized value"),
            min=_require_number(_require(data, 'min', "normalized argument"), "normalized min"),
            max=_require_number(_require(data, 'max', "normalized argument"), "normalized max"),
        )

    raise ValueError(f"Unknown OSC argument type: '{arg_type}'")


def parse_command(data: Dict[str, Any]) -> Command:
    """Parse a tagged command.

    Raises:
        ValueError: Unknown tag or out-of-range field
    """
    command_type = _require(data, 'type', "Command")

    if command_type == 'program_change':
        return ProgramChange(
            channel=_require_int(data.get('channel', CHANNEL_MIN), CHANNEL_MIN, CHANNEL_MAX, "program_change channel"),
            program=_require_int(_require(data, 'program', "program_change"), MIDI_VALUE_MIN, MIDI_VALUE_MAX,
                                 "program_change program"),
        )
    if command_type == 'control_change':
        return ControlChange(
            channel=_require_int(data.get('channel', CHANNEL_MIN), CHANNEL_MIN, CHANNEL_MAX, "control_change channel"),
            controller=_require_int(_require(data, 'controller', "control_change"), MIDI_VALUE_MIN, MIDI_VALUE_MAX,
                                    "control_change controller"),
            value=_require_int(data.get('value', 0), MIDI_VALUE_MIN, MIDI_VALUE_MAX, "control_change value"),
        )
    if command_type == 'osc':
        address = _require(data, 'address', "osc command")
        if not isinstance(address, str) or not address.startswith('/'):
            raise ValueError(f"OSC address must start with '/', got {address!r}")
        args = data.get('args') or []
        return OscCommand(address=address, args=tuple(parse_osc_arg(arg) for arg in args))

    raise ValueError(f"Unknown command type: '{command_type}'")


def _parse_commands(items: Any, context: str) -> Tuple[Command, ...]:
    if items is None:
        return ()
    if not isinstance(items, list):
        raise ValueError(f"{context} commands must be a list")
    return tuple(parse_command(item) for item in items)


def parse_tempo_spec(data: Optional[Dict[str, Any]]) -> Optional[TempoSpec]:
    """Parse a tagged tempo spec (None passes through)."""
    if data is None:
        return None

    spec_type = _require(data, 'type', "tempo_spec")
    commands = _parse_commands(data.get('commands'), "tempo_spec")

    if spec_type == 'tap_tempo':
        return TapTempo(commands=commands)
    if spec_type == 'raw_tempo':
        raw_type = _require(data, 'data_type', "raw_tempo")
        try:
            data_type = TempoDataType(raw_type)
        except ValueError:
            raise ValueError(f"Unknown raw_tempo data_type: '{raw_type}' (expected 'tempo' or 'time')")
        return RawTempo(commands=commands, data_type=data_type)

    raise ValueError(f"Unknown tempo_spec type: '{spec_type}'")


def parse_device(data: Dict[str, Any]) -> Device:
    """Parse a device entry.

    Raises:
        ValueError: Bad field or duplicate program number
    """
    device_id = str(_require(data, 'id', "Device"))
    context = f"Device '{device_id}'"

    raw_kind = _require(data, 'device_type', context)
    try:
        kind = DeviceKind(raw_kind)
    except ValueError:
        raise ValueError(f"{context}: unknown device_type '{raw_kind}' (expected 'midi' or 'osc')")

    programs = []
    seen_numbers = set()
    for entry in data.get('programs') or []:
        number = _require_int(_require(entry, 'number', f"{context} program"), MIDI_VALUE_MIN, MIDI_VALUE_MAX,
                              f"{context} program number")
        if number in seen_numbers:
            raise ValueError(f"{context}: duplicate program number {number}")
        seen_numbers.add(number)
        programs.append(Program(
            number=number,
            name=str(entry.get('name', f"Program {number}")),
            commands=_parse_commands(entry.get('commands'), f"{context} program {number}"),
        ))

    return Device(
        id=device_id,
        name=str(data.get('name', device_id)),
        kind=kind,
        programs=tuple(programs),
        tempo_spec=parse_tempo_spec(data.get('tempo_spec')),
    )


def parse_destination(data: Dict[str, Any]) -> Destination:
    destination_type = _require(data, 'type', "destination")

    if destination_type == 'rtp_midi':
        return SessionDestination(session_name=str(_require(data, 'session_name', "rtp_midi destination")))
    if destination_type == 'osc':
        return OscDestination(destination_name=str(_require(data, 'destination_name', "osc destination")))

    raise ValueError(f"Unknown destination type: '{destination_type}'")


def parse_mapping(data: Dict[str, Any]) -> DeviceMapping:
    device_id = str(_require(data, 'device_id', "Device mapping"))
    context = f"Mapping for '{device_id}'"

    send_channel = data.get('send_channel')
    if send_channel is not None:
        send_channel = _require_int(send_channel, CHANNEL_MIN, CHANNEL_MAX, f"{context} send_channel")

    return DeviceMapping(
        device_id=device_id,
        listen_channel=_require_int(_require(data, 'listen_channel', context), CHANNEL_MIN, CHANNEL_MAX,
                                    f"{context} listen_channel"),
        send_channel=send_channel,
        destination=parse_destination(_require(data, 'destination', context)),
    )


def parse_session(data: Dict[str, Any]) -> RtpMidiSession:
    name = str(_require(data, 'name', "RTP MIDI session"))
    remotes = tuple(
        RtpMidiRemote(
            host=str(_require(remote, 'host', f"Session '{name}' remote")),
            port=_require_int(_require(remote, 'port', f"Session '{name}' remote"), PORT_MIN, PORT_MAX,
                              f"Session '{name}' remote port"),
            name=str(remote.get('name', '')),
        )
        for remote in data.get('connect_to') or []
    )
    return RtpMidiSession(
        name=name,
        port=_require_int(_require(data, 'port', f"Session '{name}'"), PORT_MIN, PORT_MAX, f"Session '{name}' port"),
        listen=bool(data.get('listen', False)),
        connect_to=remotes,
        port_name=data.get('port_name'),
    )


def parse_osc_target(name: str, data: Dict[str, Any]) -> OscTarget:
    return OscTarget(
        host=str(_require(data, 'host', f"OSC destination '{name}'")),
        port=_require_int(_require(data, 'port', f"OSC destination '{name}'"), PORT_MIN, PORT_MAX,
                          f"OSC destination '{name}' port"),
    )


def parse_osc_source(data: Dict[str, Any]) -> OscSource:
    name = str(_require(data, 'name', "OSC source"))
    return OscSource(
        name=name,
        port=_require_int(_require(data, 'port', f"OSC source '{name}'"), PORT_MIN, PORT_MAX,
                          f"OSC source '{name}' port"),
    )
