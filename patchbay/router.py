#!/usr/bin/env python3
"""
Patchbay Router - MIDI program changes and OSC tempo in, device commands out.

Architecture:
    MIDI session input (program_change) -> Resolver -> Executor -> sessions / OSC
    OSC /tempo/raw [bpm] -> TempoDistributor -> Executor (one task per device)

Every program change is handled as its own task on the router's worker
pool, so a slow send never holds up the next event. Tempo updates are
handled on the intake thread: distribute() only mints epochs and submits
deliveries, and those deliveries run on the tempo engine's own pool. A tap
sequence sleeping between taps therefore never occupies a worker that the
next event (or the next tempo, which wakes it) is waiting for.
Configuration is read under short read locks; nothing is sent while a lock
is held.

Configuration:
    config/devices.yaml  - devices, programs, tempo specs
    config/map.yaml      - sessions, OSC destinations, OSC sources, mappings

Usage:
    python -m patchbay
    python -m patchbay --devices config/devices.yaml --map config/map.yaml
    python -m patchbay --log-level DEBUG
"""

import argparse
import os
import signal
import sys
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from typing import List, Optional

import mido
import yaml
from pythonosc import dispatcher

from patchbay import config as config_loader
from patchbay import osc
from patchbay.executor import CommandExecutor, Outcome
from patchbay.log import LOG_LEVEL_ENV, get_logger, set_level
from patchbay.model import Configuration, OscSource, RtpMidiSession
from patchbay.resolver import resolve
from patchbay.sessions import SessionManager, find_session_ports, log_available_ports
from patchbay.state import SharedConfig
from patchbay.tempo import TempoDistributor, TempoRun, is_valid_bpm

logger = get_logger(__name__)


DEFAULT_WORKERS = 16
MIDI_POLL_INTERVAL = 0.01  # seconds between iter_pending() sweeps
MIDI_JOIN_TIMEOUT = 1.0    # seconds to wait for an input thread on shutdown


class Router:
    """Routes program changes and tempo updates to configured devices.

    Attributes:
        config (SharedConfig): Configuration snapshot behind a read-write lock
        sessions (SessionManager): Named MIDI sessions (shared with executor)
        executor (CommandExecutor): Single-command dispatch
        tempo (TempoDistributor): Raw/tap tempo distribution
        pool (ThreadPoolExecutor): Worker pool for program change tasks
                                   (tempo deliveries run on tempo.pool)
        current_bpm (float): Last tempo received, None until the first one
        stats (MessageStatistics): Counters printed on shutdown
    """

    def __init__(self, configuration: Configuration, sessions: Optional[SessionManager] = None,
                 osc_sender=None, workers: int = DEFAULT_WORKERS):
        self.config = SharedConfig(configuration)
        self.sessions = sessions or SessionManager()
        self.osc_sender = osc_sender or osc.OscSender()
        self.stats = osc.MessageStatistics()
        self.pool = ThreadPoolExecutor(max_workers=workers, thread_name_prefix="router")

        self.executor = CommandExecutor(self.config, self.sessions, self.osc_sender, self.stats)
        self.tempo = TempoDistributor(self.config, self.executor, stats=self.stats, workers=workers)

        self.current_bpm: Optional[float] = None
        self._bpm_lock = threading.Lock()

        self.osc_servers = []
        self.midi_inputs = []
        self.midi_threads = []
        self.running = True

    # ------------------------------------------------------------------
    # Task scheduling
    # ------------------------------------------------------------------

    def submit(self, fn, *args) -> Optional[Future]:
        """Run fn(*args) as an independent task; exceptions are logged, not raised.

        Returns:
            Future for the task, or None if the pool is already shut down
        """
        try:
            return self.pool.submit(self._run_task, fn, *args)
        except RuntimeError:
            logger.debug(f"Dropping {fn.__name__}{args}: router is shutting down")
            return None

    def _run_task(self, fn, *args):
        try:
            return fn(*args)
        except Exception as e:
            logger.error(f"Error handling event {fn.__name__}{args}: {e}", exc_info=True)
            return None

    # ------------------------------------------------------------------
    # Program changes
    # ------------------------------------------------------------------

    def handle_program_change(self, listen_channel: int, program: int) -> List[Outcome]:
        """Execute every program mapped to (listen_channel, program).

        Args:
            listen_channel: Incoming channel, 1-16
            program: Incoming program number, 0-127

        Returns:
            Outcomes of all executed commands, in execution order
        """
        logger.info(f"Program change received: channel {listen_channel}, program {program}")
        self.stats.increment('program_changes')

        with self.config.read() as config:
            resolutions = resolve(config, listen_channel, program)

        outcomes = []
        for device, device_program, mapping in resolutions:
            logger.info(f"Executing program '{device_program.name}' on device '{device.name}'")
            for command in device_program.commands:
                outcomes.append(self.executor.execute(command, mapping.destination, mapping.send_channel))

        return outcomes

    def handle_midi_message(self, message: mido.Message) -> Optional[Future]:
        """Route an incoming MIDI message; only program changes are handled."""
        if message.type != 'program_change':
            logger.debug(f"Ignoring MIDI message: {message}")
            self.stats.increment('ignored_midi')
            return None

        return self.submit(self.handle_program_change, message.channel + 1, message.program)

    # ------------------------------------------------------------------
    # Tempo
    # ------------------------------------------------------------------

    def handle_tempo(self, bpm: float) -> Optional[TempoRun]:
        """Record the tempo and distribute it to all tempo-capable devices."""
        if not is_valid_bpm(bpm):
            logger.warning(f"Ignoring invalid tempo: {bpm!r}")
            self.stats.increment('invalid_tempo')
            return None

        logger.info(f"Tempo updated via OSC: {bpm:.1f} BPM")
        self.stats.increment('tempo_updates')

        with self._bpm_lock:
            self.current_bpm = float(bpm)

        return self.tempo.distribute(bpm)

    def handle_tempo_message(self, address: str, *args) -> Optional[TempoRun]:
        """Dispatcher handler for /tempo/raw [bpm].

        Runs on the OSC server thread; returns once deliveries are submitted.
        """
        bpm = osc.tempo_from_args(args)
        if bpm is None:
            logger.warning(f"Invalid argument type for {address}: {list(args)}")
            self.stats.increment('invalid_tempo')
            return None

        return self.handle_tempo(bpm)

    def handle_osc_packet(self, dgram: bytes) -> Optional[TempoRun]:
        """Handle a raw OSC datagram (tempo is the only recognized message)."""
        bpm = osc.decode_incoming_tempo(dgram)
        if bpm is None:
            return None
        return self.handle_tempo(bpm)

    # ------------------------------------------------------------------
    # Transports
    # ------------------------------------------------------------------

    def open_sessions(self) -> int:
        """Open the MIDI ports exposed for each configured session.

        Returns:
            Number of sessions registered for output
        """
        with self.config.read() as config:
            declared = list(config.rtp_midi_sessions)

        opened = 0
        for session in declared:
            if self._open_session(session):
                opened += 1

        if opened < len(declared):
            log_available_ports()

        return opened

    def _open_session(self, session: RtpMidiSession) -> bool:
        logger.info(f"Opening RTP MIDI session '{session.name}' (port {session.port}, "
                    f"MIDI port filter '{session.port_filter}')")

        for remote in session.connect_to:
            logger.info(f"  Remote {remote.host}:{remote.port} ({remote.name}) is invited by the RTP MIDI daemon")

        input_name, output_name = find_session_ports(session)

        if output_name is None:
            logger.warning(f"No MIDI output port found for session '{session.name}'")
        else:
            self.sessions.add_session(session.name, mido.open_output(output_name))

        if session.listen:
            if input_name is None:
                logger.warning(f"No MIDI input port found for session '{session.name}'")
            else:
                port = mido.open_input(input_name)
                self.midi_inputs.append(port)
                thread = threading.Thread(target=self._midi_input_loop, args=(port, session.name), daemon=True)
                thread.start()
                self.midi_threads.append(thread)
                logger.info(f"Starting listener for session '{session.name}'")

        return output_name is not None

    def _midi_input_loop(self, port, session_name: str):
        """Poll one MIDI input (runs in its own thread)."""
        logger.info(f"MIDI input thread started for '{session_name}'")

        while self.running:
            for message in port.iter_pending():
                if not self.running:
                    break
                logger.debug(f"Received MIDI message in session '{session_name}': {message}")
                self.handle_midi_message(message)

            time.sleep(MIDI_POLL_INTERVAL)

        logger.info(f"MIDI input thread exiting for '{session_name}'")

    def start_osc_listeners(self) -> int:
        """Start one OSC server per configured source.

        Returns:
            Number of listeners started

        Raises:
            OSError: If a port can't be bound
        """
        with self.config.read() as config:
            sources = list(config.osc_sources)

        for source in sources:
            self._start_osc_listener(source)

        return len(sources)

    def _start_osc_listener(self, source: OscSource):
        osc.validate_port(source.port)

        disp = dispatcher.Dispatcher()
        disp.map(osc.TEMPO_ADDRESS, self.handle_tempo_message)

        server = osc.ReusePortThreadingOSCUDPServer(("0.0.0.0", source.port), disp)
        thread = threading.Thread(target=server.serve_forever, daemon=True)
        thread.start()

        self.osc_servers.append(server)
        logger.info(f"Starting OSC listener '{source.name}' on port {source.port}")

    def shutdown(self):
        """Stop listeners, halt tempo sequences, close transports."""
        logger.info("Shutting down router...")
        self.running = False

        # Intake first, so nothing is submitted to a closed pool
        for server in self.osc_servers:
            server.shutdown()
            server.server_close()
        self.osc_servers = []

        for thread in self.midi_threads:
            thread.join(timeout=MIDI_JOIN_TIMEOUT)
        self.midi_threads = []

        for port in self.midi_inputs:
            port.close()
        self.midi_inputs = []

        # Wakes and halts every tap sequence in flight
        self.tempo.shutdown()
        self.pool.shutdown(wait=True)

        self.sessions.close_all()
        self.osc_sender.close()

        self.stats.print_stats("ROUTER STATISTICS")


# ============================================================================
# MAIN
# ============================================================================

def main():
    """Main entry point with command-line argument parsing.

    Command-line arguments:
        --devices PATH      Device file (default: config/devices.yaml)
        --map PATH          Map file (default: config/map.yaml)
        --workers N         Worker pool size (default: 16)
        --log-level LEVEL   DEBUG/INFO/WARNING/ERROR

    Exits with code 1 on missing/invalid config or port conflicts.
    """
    parser = argparse.ArgumentParser(
        description="Patchbay - MIDI/OSC command router with tempo distribution"
    )
    parser.add_argument(
        "--devices",
        type=str,
        default=config_loader.DEFAULT_DEVICE_CONFIG,
        help=f"Path to device config (default: {config_loader.DEFAULT_DEVICE_CONFIG})",
    )
    parser.add_argument(
        "--map",
        type=str,
        default=config_loader.DEFAULT_MAP_CONFIG,
        help=f"Path to map config (default: {config_loader.DEFAULT_MAP_CONFIG})",
    )
    parser.add_argument(
        "--workers",
        type=int,
        default=DEFAULT_WORKERS,
        help=f"Worker pool size (default: {DEFAULT_WORKERS})",
    )
    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        default=os.getenv(LOG_LEVEL_ENV, "INFO"),
        help="Logging verbosity (default: INFO)",
    )

    args = parser.parse_args()

    set_level(args.log_level)

    if args.workers < 1:
        logger.error(f"--workers must be at least 1, got {args.workers}")
        sys.exit(1)

    logger.info("Starting Patchbay router")

    try:
        configuration = config_loader.load_configuration(args.devices, args.map)
    except FileNotFoundError as e:
        logger.error(f"{e}")
        sys.exit(1)
    except (ValueError, yaml.YAMLError) as e:
        logger.error(f"Invalid config: {e}")
        sys.exit(1)

    router = Router(configuration, workers=args.workers)

    try:
        router.open_sessions()
        listeners = router.start_osc_listeners()
        if listeners:
            logger.info(f"Started {listeners} OSC listeners")
    except OSError as e:
        if "Address already in use" in str(e):
            logger.error("OSC port already in use. Is the router already running?")
        else:
            logger.error(f"{e}")
        router.shutdown()
        sys.exit(1)

    def signal_handler(sig, frame):
        router.shutdown()
        sys.exit(0)

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    logger.info(f"Router ready with {len(router.sessions.get_session_names())} sessions. Press Ctrl+C to exit.")

    while True:
        time.sleep(1)


if __name__ == "__main__":
    main()
