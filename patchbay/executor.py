#!/usr/bin/env python3
"""
Command Executor - dispatches one command to one destination.

Any mapping may pair any command with any destination, so compatibility is
checked at send time:

    Command          SessionDestination     OscDestination
    ProgramChange    sent                   mismatch
    ControlChange    sent                   mismatch
    OscCommand       mismatch               sent

MIDI commands take their channel from the mapping's send_channel (1-16),
shifted to the zero-based wire range and clamped to 4 bits; program,
controller and value are clamped to 7 bits. OSC commands resolve their
destination name against the osc_destinations table, and NormalizedArg
values are sent as (value - min) / (max - min).

ERRORS:
Nothing raised by a collaborator or caused by configuration escapes
execute(): configuration mismatches are logged at WARNING, transport
failures at ERROR, and the outcome is returned so the caller can carry on
with the next command.
"""

from enum import Enum
from typing import Any, Optional, Tuple

import mido

from patchbay import osc
from patchbay.log import get_logger
from patchbay.model import (
    BoolArg, Command, ControlChange, Destination, FloatArg, IntArg,
    NormalizedArg, OscArg, OscCommand, OscDestination, ProgramChange,
    SessionDestination, StringArg,
)
from patchbay.sessions import SessionManager, SessionNotFound
from patchbay.state import SharedConfig

logger = get_logger(__name__)


MIDI_CHANNEL_MAX = 0x0F  # 4 bits, zero-based
MIDI_DATA_MAX = 0x7F     # 7 bits


class ConfigurationMismatch(ValueError):
    """Command can't be executed as configured (skipped, not fatal)."""


class TransportError(RuntimeError):
    """A transport collaborator failed to deliver a command."""


class Outcome(Enum):
    SENT = "sent"
    MISMATCH = "mismatch"
    TRANSPORT_FAILED = "transport_failed"


# ============================================================================
# PURE HELPERS
# ============================================================================

def clamp(value: int, low: int, high: int) -> int:
    return max(low, min(high, int(value)))


def to_wire_channel(channel: int) -> int:
    """Map a 1-16 channel to the zero-based 4-bit wire channel.

    Examples:
        >>> to_wire_channel(1)
        0
        >>> to_wire_channel(16)
        15
        >>> to_wire_channel(0)
        0
    """
    return clamp(channel - 1, 0, MIDI_CHANNEL_MAX)


def normalize(value: float, low: float, high: float) -> float:
    """Linear position of value within [low, high].

    Raises:
        ConfigurationMismatch: If low == high (degenerate range)

    Examples:
        >>> normalize(64.0, 0.0, 128.0)
        0.5
    """
    if high == low:
        raise ConfigurationMismatch(f"Degenerate normalization range: min == max == {low}")
    return (float(value) - low) / (high - low)


def typed_osc_arg(arg: OscArg) -> Tuple[Any, str]:
    """Convert an OscArg into a (value, type_tag) pair for osc.build_message().

    Raises:
        ConfigurationMismatch: NormalizedArg with a degenerate range
    """
    if isinstance(arg, IntArg):
        return int(arg.value), osc.TYPE_INT
    if isinstance(arg, FloatArg):
        return float(arg.value), osc.TYPE_FLOAT
    if isinstance(arg, StringArg):
        return str(arg.value), osc.TYPE_STRING
    if isinstance(arg, BoolArg):
        return bool(arg.value), osc.TYPE_TRUE if arg.value else osc.TYPE_FALSE
    if isinstance(arg, NormalizedArg):
        return normalize(arg.value, arg.min, arg.max), osc.TYPE_FLOAT
    raise ConfigurationMismatch(f"Unsupported OSC argument: {arg!r}")


def is_compatible(command: Command, destination: Destination) -> bool:
    """True if this command kind can be sent to this destination kind."""
    if isinstance(command, (ProgramChange, ControlChange)):
        return isinstance(destination, SessionDestination)
    if isinstance(command, OscCommand):
        return isinstance(destination, OscDestination)
    return False


def describe_destination(destination: Destination) -> str:
    if isinstance(destination, SessionDestination):
        return f"RTP MIDI session '{destination.session_name}'"
    return f"OSC destination '{destination.destination_name}'"


def midi_message_for(command: Command, send_channel: int) -> mido.Message:
    """Build the wire message for a MIDI command on the mapping's channel."""
    channel = to_wire_channel(send_channel)
    if isinstance(command, ProgramChange):
        return mido.Message('program_change', channel=channel,
                            program=clamp(command.program, 0, MIDI_DATA_MAX))
    return mido.Message('control_change', channel=channel,
                        control=clamp(command.controller, 0, MIDI_DATA_MAX),
                        value=clamp(command.value, 0, MIDI_DATA_MAX))


# ============================================================================
# EXECUTOR
# ============================================================================

class CommandExecutor:
    """Sends commands through the MIDI session table or the OSC sender.

    Attributes:
        config (SharedConfig): Snapshot used to resolve OSC destination names
        sessions (SessionManager): Named MIDI sessions
        osc_sender (OscSender): Cached python-osc UDP clients per target
        stats (MessageStatistics): commands_sent / mismatches / transport_failures
    """

    def __init__(self, config: SharedConfig, sessions: SessionManager, osc_sender,
                 stats: Optional[osc.MessageStatistics] = None):
        self.config = config
        self.sessions = sessions
        self.osc_sender = osc_sender
        self.stats = stats or osc.MessageStatistics()

    def execute(self, command: Command, destination: Destination, send_channel: Optional[int]) -> Outcome:
        """Execute one command against one destination.

        Args:
            command: Command to send
            destination: Where the mapping sends its commands
            send_channel: Mapping-supplied MIDI channel (1-16), required for MIDI commands

        Returns:
            Outcome.SENT, Outcome.MISMATCH or Outcome.TRANSPORT_FAILED
        """
        try:
            if not is_compatible(command, destination):
                kind = "OSC" if isinstance(command, OscCommand) else "MIDI"
                raise ConfigurationMismatch(
                    f"Cannot send {kind} command to {describe_destination(destination)}")

            if isinstance(command, OscCommand):
                self._send_osc(command, destination)
            else:
                self._send_midi(command, destination, send_channel)

        except ConfigurationMismatch as e:
            logger.warning(f"{e} (skipped)")
            self.stats.increment('mismatches')
            return Outcome.MISMATCH

        except TransportError as e:
            logger.error(f"{e}")
            self.stats.increment('transport_failures')
            return Outcome.TRANSPORT_FAILED

        self.stats.increment('commands_sent')
        return Outcome.SENT

    def _send_midi(self, command: Command, destination: SessionDestination, send_channel: Optional[int]) -> None:
        kind = "Program Change" if isinstance(command, ProgramChange) else "Control Change"
        if send_channel is None:
            raise ConfigurationMismatch(f"No channel specified for MIDI {kind} command")

        message = midi_message_for(command, send_channel)
        logger.info(f"Sending MIDI {kind} to session '{destination.session_name}': "
                    f"channel {send_channel}, {_describe_midi(message)}")

        try:
            self.sessions.send_midi_to_session(destination.session_name, message)
        except SessionNotFound as e:
            raise ConfigurationMismatch(str(e))
        except Exception as e:
            raise TransportError(f"Failed to send MIDI to session '{destination.session_name}': {e}") from e

    def _send_osc(self, command: OscCommand, destination: OscDestination) -> None:
        name = destination.destination_name
        with self.config.read() as config:
            target = config.osc_destinations.get(name)

        if target is None:
            raise ConfigurationMismatch(f"OSC destination '{name}' not found in configuration")

        typed_args = [typed_osc_arg(arg) for arg in command.args]

        try:
            message = osc.build_message(command.address, typed_args)
            self.osc_sender.send(target.host, target.port, message)
        except Exception as e:
            raise TransportError(f"Failed to send OSC {command.address} to '{name}' "
                                 f"({target.host}:{target.port}): {e}") from e

        logger.info(f"Sent OSC message to {name} ({target.host}:{target.port}): "
                    f"{command.address} {[value for value, _ in typed_args]}")


def _describe_midi(message: mido.Message) -> str:
    if message.type == 'program_change':
        return f"program {message.program}"
    return f"controller {message.control}, value {message.value}"
