#!/usr/bin/env python3
"""
Session table - named MIDI sessions shared by router and executor.

RTP-MIDI sessions are brought up by an external daemon (e.g. rtpmidid),
which exposes each session as a local MIDI port. The router opens those
ports with mido and registers them here under the session name from the map
file. Commands are then sent "to a session" by name.

The table is guarded by a ReadWriteLock: handler threads only read it,
startup (and shutdown) write it. Handles are shared by reference; the table
owns closing them.
"""

from typing import Dict, List, Optional, Tuple

import mido

from patchbay.log import get_logger
from patchbay.model import RtpMidiSession
from patchbay.state import ReadWriteLock

logger = get_logger(__name__)


class SessionNotFound(LookupError):
    """No session registered under this name."""


class SessionManager:
    """Name -> mido output port table.

    Example:
        >>> sessions = SessionManager()
        >>> sessions.add_session("Studio", mido.open_output("rtpmidid:Studio"))
        >>> sessions.send_midi_to_session("Studio", mido.Message('program_change', program=3))
    """

    def __init__(self):
        self._sessions: Dict[str, object] = {}
        self._lock = ReadWriteLock()

    def add_session(self, name: str, port) -> None:
        with self._lock.write():
            self._sessions[name] = port
        logger.info(f"Registered MIDI session '{name}'")

    def remove_session(self, name: str):
        with self._lock.write():
            return self._sessions.pop(name, None)

    def has_session(self, name: str) -> bool:
        with self._lock.read():
            return name in self._sessions

    def get_session_names(self) -> List[str]:
        with self._lock.read():
            return list(self._sessions.keys())

    def send_midi_to_session(self, session_name: str, message: mido.Message) -> None:
        """Deliver one MIDI message to a named session.

        The read lock only covers the lookup; the send itself runs unlocked.

        Raises:
            SessionNotFound: No session registered under session_name
            OSError / IOError: Port failure (from the MIDI backend)
        """
        with self._lock.read():
            port = self._sessions.get(session_name)

        if port is None:
            raise SessionNotFound(f"Session '{session_name}' not found")

        logger.debug(f"Sending MIDI message to session '{session_name}': {message}")
        port.send(message)

    def close_all(self) -> None:
        with self._lock.write():
            ports = list(self._sessions.items())
            self._sessions.clear()

        for name, port in ports:
            try:
                port.close()
            except Exception as e:
                logger.warning(f"Error closing session '{name}': {e}")


# ============================================================================
# PORT DISCOVERY
# ============================================================================

def find_session_ports(session: RtpMidiSession) -> Tuple[Optional[str], Optional[str]]:
    """Find the MIDI ports the RTP-MIDI daemon exposes for a session.

    Returns:
        Tuple of (input_port_name, output_port_name), None where not found
    """
    name_filter = session.port_filter

    input_port = next((p for p in mido.get_input_names() if name_filter in p), None)
    output_port = next((p for p in mido.get_output_names() if name_filter in p), None)

    return input_port, output_port


def log_available_ports() -> None:
    logger.info("Available MIDI input ports:")
    for port in mido.get_input_names():
        logger.info(f"  - {port}")
    logger.info("Available MIDI output ports:")
    for port in mido.get_output_names():
        logger.info(f"  - {port}")
