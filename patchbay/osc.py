#!/usr/bin/env python3
"""
Patchbay OSC Infrastructure - Shared OSC networking and validation utilities.

Provides the OSC server class used for tempo intake, message encoding and the
UDP sender used for outbound OSC commands, tempo decoding, and statistics
tracking used across router, executor and tempo modules.

Classes:
    - ReusePortThreadingOSCUDPServer: Threading OSC server with SO_REUSEPORT
    - OscSender: SimpleUDPClient per host:port, cached, for outbound commands
    - MessageStatistics: Thread-safe message counter with formatted output

Functions:
    - build_message(address, typed_args): Encode a typed OscMessage
    - tempo_from_args(args): BPM from /tempo/raw arguments
    - decode_incoming_tempo(dgram): BPM from a raw packet, or None
    - validate_port(port): Validate port in range 1-65535
    - validate_osc_address(address): Validate OSC address pattern

Constants:
    - TEMPO_ADDRESS: Address carrying tempo updates (/tempo/raw)
    - PORT_TEMPO: Default tempo listen port for the CLI (9000)
"""

import re
import socket
import threading
from typing import Any, Dict, List, Optional, Sequence, Tuple

from pythonosc import osc_server, udp_client
from pythonosc.osc_message import OscMessage
from pythonosc.osc_message_builder import OscMessageBuilder
from pythonosc.osc_packet import OscPacket, ParseError

from patchbay.log import get_logger

logger = get_logger(__name__)


# ============================================================================
# CONSTANTS
# ============================================================================

TEMPO_ADDRESS = "/tempo/raw"  # [bpm] as int or float
PORT_TEMPO = 9000             # Default port for python -m patchbay.cli

# Port validation range
PORT_MIN = 1
PORT_MAX = 65535

# OSC type tags used for outbound arguments
TYPE_INT = OscMessageBuilder.ARG_TYPE_INT
TYPE_FLOAT = OscMessageBuilder.ARG_TYPE_FLOAT
TYPE_STRING = OscMessageBuilder.ARG_TYPE_STRING
TYPE_TRUE = OscMessageBuilder.ARG_TYPE_TRUE
TYPE_FALSE = OscMessageBuilder.ARG_TYPE_FALSE

OSC_ADDRESS_PATTERN = re.compile(r'^/[^\s#]*$')


# ============================================================================
# SO_REUSEPORT SERVER
# ============================================================================

class ReusePortThreadingOSCUDPServer(osc_server.ThreadingOSCUDPServer):
    """ThreadingOSCUDPServer with SO_REUSEPORT socket option enabled.

    Lets a monitor (or a second router instance during a restart) listen on
    the same tempo port. On systems without SO_REUSEPORT, binding proceeds
    without the option.
    """

    daemon_threads = True

    def server_bind(self):
        if hasattr(socket, 'SO_REUSEPORT'):
            self.socket.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEPORT, 1)
        self.socket.bind(self.server_address)
        self.server_address = self.socket.getsockname()


# ============================================================================
# ENCODING AND SENDING
# ============================================================================

def build_message(address: str, typed_args: Sequence[Tuple[Any, str]]) -> OscMessage:
    """Encode an OSC message.

    Args:
        address: OSC address (e.g. "/tempo")
        typed_args: (value, type_tag) pairs, type tags from TYPE_* constants

    Returns:
        OscMessage ready for OscSender.send() (raw bytes in .dgram)

    Raises:
        pythonosc.osc_message_builder.BuildError: If a value doesn't fit its tag
    """
    builder = OscMessageBuilder(address=address)
    for value, type_tag in typed_args:
        if type_tag in (TYPE_TRUE, TYPE_FALSE):
            builder.add_arg(type_tag == TYPE_TRUE, type_tag)
        else:
            builder.add_arg(value, type_tag)
    return builder.build()


class OscSender:
    """Sends OSC messages to host:port through one SimpleUDPClient per target.

    Clients are created on first use and cached by (host, port), so every
    configured OSC destination keeps its own socket. UDP sends on a client
    are safe to call from several executor threads at once.

    Example:
        >>> with OscSender() as sender:
        ...     sender.send("127.0.0.1", 7000, build_message("/tempo", [(120.0, TYPE_FLOAT)]))
    """

    def __init__(self):
        self._clients: Dict[Tuple[str, int], udp_client.SimpleUDPClient] = {}
        self._lock = threading.Lock()

    def client_for(self, host: str, port: int) -> udp_client.SimpleUDPClient:
        """Cached client for host:port.

        Raises:
            OSError: If the host can't be resolved
        """
        with self._lock:
            client = self._clients.get((host, port))
            if client is None:
                client = udp_client.SimpleUDPClient(host, port)
                self._clients[(host, port)] = client
                logger.debug(f"Opened OSC client for {host}:{port}")
            return client

    def send(self, host: str, port: int, message: OscMessage) -> None:
        """Send one message.

        Raises:
            OSError: On socket or name resolution failure
        """
        self.client_for(host, port).send(message)

    def close(self) -> None:
        with self._lock:
            clients = list(self._clients.values())
            self._clients.clear()

        for client in clients:
            client._sock.close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False


# ============================================================================
# TEMPO DECODING
# ============================================================================

def tempo_from_args(args: Sequence[Any]) -> Optional[float]:
    """Extract BPM from /tempo/raw arguments.

    Returns:
        BPM as float, or None if the first argument isn't an int or float

    Examples:
        >>> tempo_from_args([120])
        120.0
        >>> tempo_from_args(["fast"]) is None
        True
    """
    if not args:
        return None
    value = args[0]
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    return float(value)


def decode_incoming_tempo(dgram: bytes) -> Optional[float]:
    """Decode a raw OSC packet into a BPM value.

    Bundles are flattened; the first /tempo/raw message with a numeric
    first argument wins.

    Args:
        dgram: Raw UDP payload

    Returns:
        BPM, or None if the packet isn't a recognized tempo message
    """
    try:
        packet = OscPacket(dgram)
    except ParseError as e:
        logger.warning(f"Failed to decode OSC packet: {e}")
        return None

    for timed in packet.messages:
        message = timed.message
        if message.address != TEMPO_ADDRESS:
            continue
        bpm = tempo_from_args(message.params)
        if bpm is None:
            logger.warning(f"Invalid argument type for {TEMPO_ADDRESS}: {message.params}")
            continue
        return bpm

    return None


# ============================================================================
# VALIDATION FUNCTIONS
# ============================================================================

def validate_port(port: int) -> None:
    """Validate UDP port number is in valid range.

    Raises:
        ValueError: If port is outside range 1-65535
    """
    if port < PORT_MIN or port > PORT_MAX:
        raise ValueError(f"Port must be in range {PORT_MIN}-{PORT_MAX}, got {port}")


def validate_osc_address(address: str) -> bool:
    """Check that address looks like an OSC address (/a/b, no spaces)."""
    return bool(OSC_ADDRESS_PATTERN.match(address))


# ============================================================================
# MESSAGE STATISTICS
# ============================================================================

class MessageStatistics:
    """Thread-safe message statistics tracker with formatted output.

    Typical counters:
        - program_changes: Program change events handled
        - tempo_updates: Tempo values received
        - commands_sent: Commands handed to a transport
        - mismatches: Commands skipped for configuration reasons
        - tap_sequences_superseded: Tap sequences halted by a newer tempo

    Examples:
        >>> stats = MessageStatistics()
        >>> stats.increment('commands_sent')
        >>> stats.get('commands_sent')
        1
    """

    def __init__(self):
        self.counters = {}
        self.lock = threading.Lock()

    def increment(self, counter_name: str, amount: int = 1) -> None:
        with self.lock:
            self.counters[counter_name] = self.counters.get(counter_name, 0) + amount

    def get(self, counter_name: str) -> int:
        with self.lock:
            return self.counters.get(counter_name, 0)

    def snapshot(self) -> dict:
        with self.lock:
            return dict(self.counters)

    def format_lines(self, title: str = "STATISTICS") -> List[str]:
        lines = ["=" * 60, title, "=" * 60]
        snapshot = self.snapshot()
        for name in sorted(snapshot.keys()):
            display_name = name.replace('_', ' ').title()
            lines.append(f"{display_name}: {snapshot[name]}")
        lines.append("=" * 60)
        return lines

    def print_stats(self, title: str = "STATISTICS") -> None:
        """Print formatted statistics to console.

        Output format:
            ============================================================
            TITLE
            ============================================================
            Counter Name: value
            ...
            ============================================================
        """
        print()
        for line in self.format_lines(title):
            print(line)
