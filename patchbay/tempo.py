#!/usr/bin/env python3
"""
Tempo Distribution - raw and tap tempo delivery to every tempo-capable device.

STATE MACHINE:
    Idle --tempo--> Running(epoch) --tempo--> Running(epoch') ...
Every new tempo supersedes whatever is in flight, whatever state it is in.

ALGORITHM (distribute(bpm)):
1. Advance the epoch (cancel). Any tap sequence in flight sees a different
   epoch at its next check and halts; one sleeping between taps is woken.
2. Under one short read of the configuration, collect
   (device, tempo_spec, destination, send_channel) for every mapping whose
   device has a tempo spec. The lock is released before anything is sent.
3. Advance the epoch again (run). New tap sequences validate against it.
4. Submit one delivery per collected mapping to the worker pool:
   - RawTempo: one send per command with the tempo scalar substituted
       tempo -> bpm
       time  -> 60000 / bpm (quarter note in ms)
     OSC int/float args take the scalar, normalized args become
     (scalar - min) / (max - min), control changes take a calibrated CC value:
       tempo: 60..180 BPM   -> 0..127
       time:  1000..333 ms  -> 0..127 (faster tempo, higher value)
   - TapTempo: four replays of the command list, a quarter note apart. The
     epoch is checked before every command and the waits wake up early when
     the epoch changes; a stale sequence just stops.

Steps 1-3 run under a mint lock so epochs are minted in arrival order: a
later tempo always ends up with the greater run epoch.
"""

import math
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass
from typing import List, NamedTuple, Optional

from patchbay import osc
from patchbay.executor import CommandExecutor, ConfigurationMismatch, normalize
from patchbay.log import get_logger
from patchbay.model import (
    Command, Configuration, ControlChange, Destination, Device, FloatArg,
    IntArg, NormalizedArg, OscCommand, RawTempo, TapTempo, TempoDataType,
    TempoSpec,
)
from patchbay.state import SharedConfig, TempoEpoch

logger = get_logger(__name__)


TAP_COUNT = 4                 # Taps per tap tempo sequence
DEFAULT_TEMPO_WORKERS = 8     # Private delivery pool size

# Control change calibration for raw tempo
CC_TEMPO_MIN_BPM = 60.0       # -> CC 0
CC_TEMPO_MAX_BPM = 180.0      # -> CC 127
CC_TIME_MIN_MS = 333.0        # 180 BPM -> CC 127
CC_TIME_MAX_MS = 1000.0       # 60 BPM  -> CC 0
CC_MAX = 127


# ============================================================================
# PURE CONVERSIONS
# ============================================================================

def quarter_note_ms(bpm: float) -> float:
    """Quarter-note duration in milliseconds.

    Examples:
        >>> quarter_note_ms(120)
        500.0
    """
    return 60000.0 / bpm


def tempo_scalar(bpm: float, data_type: TempoDataType) -> float:
    """Scalar sent by a raw tempo spec."""
    if data_type == TempoDataType.TIME:
        return quarter_note_ms(bpm)
    return float(bpm)


def tempo_to_cc(scalar: float, data_type: TempoDataType) -> int:
    """Map a raw tempo scalar onto a 7-bit control change value.

    Examples:
        >>> tempo_to_cc(60, TempoDataType.TEMPO)
        0
        >>> tempo_to_cc(180, TempoDataType.TEMPO)
        127
        >>> tempo_to_cc(500.0, TempoDataType.TIME)
        95
    """
    if data_type == TempoDataType.TEMPO:
        position = (scalar - CC_TEMPO_MIN_BPM) / (CC_TEMPO_MAX_BPM - CC_TEMPO_MIN_BPM)
    else:
        position = (CC_TIME_MAX_MS - scalar) / (CC_TIME_MAX_MS - CC_TIME_MIN_MS)

    return int(max(0.0, min(float(CC_MAX), position * CC_MAX)))


def substitute_tempo(command: Command, scalar: float, data_type: TempoDataType) -> Command:
    """Return command with the tempo scalar written into its payload.

    Raises:
        ConfigurationMismatch: NormalizedArg with a degenerate range
    """
    if isinstance(command, OscCommand):
        args = []
        for arg in command.args:
            if isinstance(arg, FloatArg):
                args.append(FloatArg(float(scalar)))
            elif isinstance(arg, IntArg):
                args.append(IntArg(int(scalar)))
            elif isinstance(arg, NormalizedArg):
                args.append(FloatArg(normalize(scalar, arg.min, arg.max)))
            else:
                args.append(arg)
        return OscCommand(address=command.address, args=tuple(args))

    if isinstance(command, ControlChange):
        return ControlChange(channel=command.channel, controller=command.controller,
                             value=tempo_to_cc(scalar, data_type))

    return command


def is_valid_bpm(bpm: float) -> bool:
    return isinstance(bpm, (int, float)) and math.isfinite(bpm) and bpm > 0


# ============================================================================
# DISTRIBUTOR
# ============================================================================

class TempoDelivery(NamedTuple):
    device: Device
    tempo_spec: TempoSpec
    destination: Destination
    send_channel: Optional[int]


@dataclass
class TempoRun:
    """Handle on one distribute() call.

    Attributes:
        bpm (float): Tempo being distributed
        epoch (int): Run epoch the tap sequences validate against
        futures (list): One future per device delivery
    """
    bpm: float
    epoch: int
    futures: List[Future]

    def wait(self, timeout: Optional[float] = None) -> list:
        return [future.result(timeout=timeout) for future in self.futures]


def collect_deliveries(config: Configuration) -> List[TempoDelivery]:
    """Every mapping whose device takes tempo, in mapping order."""
    deliveries = []
    for mapping in config.mappings:
        device = config.get_device(mapping.device_id)
        if device is None or device.tempo_spec is None:
            continue
        deliveries.append(TempoDelivery(device, device.tempo_spec, mapping.destination, mapping.send_channel))
    return deliveries


class TempoDistributor:
    """Distributes tempo to devices, newest tempo always wins.

    Attributes:
        config (SharedConfig): Configuration snapshot
        executor (CommandExecutor): Sends the individual commands
        epoch (TempoEpoch): Published generation shared by all sequences
        pool: Worker pool with submit(); a private one of `workers` threads
              is created if not given. Tap sequences sleep on their worker,
              so the pool must not be shared with event intake.
        stats (MessageStatistics): tempo_runs, tap_sequences_completed, tap_sequences_superseded
    """

    def __init__(self, config: SharedConfig, executor: CommandExecutor,
                 epoch: Optional[TempoEpoch] = None, pool=None,
                 stats: Optional[osc.MessageStatistics] = None,
                 workers: int = DEFAULT_TEMPO_WORKERS):
        self.config = config
        self.executor = executor
        self.epoch = epoch or TempoEpoch()
        self.stats = stats or osc.MessageStatistics()
        self._owns_pool = pool is None
        self.pool = pool or ThreadPoolExecutor(max_workers=workers, thread_name_prefix="tempo")
        self._mint_lock = threading.Lock()

    def distribute(self, bpm: float) -> TempoRun:
        """Start distributing a new tempo to every tempo-capable mapping.

        Returns immediately after the deliveries are submitted.

        Args:
            bpm: Beats per minute, > 0

        Returns:
            TempoRun with the run epoch and delivery futures

        Raises:
            ValueError: If bpm is not a positive finite number
        """
        if not is_valid_bpm(bpm):
            raise ValueError(f"Tempo must be a positive number, got {bpm!r}")

        with self._mint_lock:
            cancel_epoch = self.epoch.advance()
            with self.config.read() as config:
                deliveries = collect_deliveries(config)
            run_epoch = self.epoch.advance()

        logger.debug(f"Tempo {bpm:.1f} BPM: cancelled up to epoch {cancel_epoch}, running epoch {run_epoch}")
        self.stats.increment('tempo_runs')

        if not deliveries:
            logger.info(f"No tempo-capable devices mapped for {bpm:.1f} BPM")

        futures = []
        for delivery in deliveries:
            logger.info(f"Updating tempo for device '{delivery.device.name}' to {bpm:.1f} BPM")
            futures.append(self.pool.submit(self._deliver, delivery, float(bpm), run_epoch))

        return TempoRun(bpm=float(bpm), epoch=run_epoch, futures=futures)

    def shutdown(self) -> None:
        """Halt in-flight sequences and stop the pool if we created it."""
        self.epoch.advance()
        if self._owns_pool:
            self.pool.shutdown(wait=True)

    def _deliver(self, delivery: TempoDelivery, bpm: float, run_epoch: int) -> bool:
        try:
            if isinstance(delivery.tempo_spec, TapTempo):
                return self.send_tap_tempo(delivery, bpm, run_epoch)
            if isinstance(delivery.tempo_spec, RawTempo):
                return self.send_raw_tempo(delivery, bpm)
            logger.warning(f"Unsupported tempo spec on '{delivery.device.name}': {delivery.tempo_spec!r}")
            return False
        except Exception as e:
            logger.error(f"Tempo delivery to '{delivery.device.name}' failed: {e}", exc_info=True)
            return False

    def send_raw_tempo(self, delivery: TempoDelivery, bpm: float) -> bool:
        """Send each command once with the tempo scalar substituted.

        Returns:
            True (raw tempo has nothing to supersede)
        """
        spec = delivery.tempo_spec
        scalar = tempo_scalar(bpm, spec.data_type)
        label = "BPM" if spec.data_type == TempoDataType.TEMPO else "quarter note ms"
        logger.info(f"Sending raw tempo to '{delivery.device.name}': {label} = {scalar:.1f} (BPM: {bpm:.1f})")

        for command in spec.commands:
            try:
                command = substitute_tempo(command, scalar, spec.data_type)
            except ConfigurationMismatch as e:
                logger.warning(f"Raw tempo on '{delivery.device.name}': {e} (skipped)")
                self.executor.stats.increment('mismatches')
                continue
            self.executor.execute(command, delivery.destination, delivery.send_channel)

        return True

    def send_tap_tempo(self, delivery: TempoDelivery, bpm: float, run_epoch: int) -> bool:
        """Replay the tap commands TAP_COUNT times, a quarter note apart.

        Returns:
            True if all taps were sent, False if a newer epoch superseded the run
        """
        commands = delivery.tempo_spec.commands
        interval_ms = quarter_note_ms(bpm)
        logger.info(f"Sending tap tempo to '{delivery.device.name}': {TAP_COUNT} taps with "
                    f"{interval_ms:.0f}ms intervals using {len(commands)} commands (epoch {run_epoch})")

        for tap in range(TAP_COUNT):
            if not self.epoch.is_current(run_epoch):
                return self._superseded(delivery, run_epoch, tap)

            for command in commands:
                if not self.epoch.is_current(run_epoch):
                    return self._superseded(delivery, run_epoch, tap)
                self.executor.execute(command, delivery.destination, delivery.send_channel)

            if tap < TAP_COUNT - 1:
                if not self.epoch.wait_while_current(run_epoch, interval_ms / 1000.0):
                    return self._superseded(delivery, run_epoch, tap + 1)

        logger.info(f"Tap tempo completed on '{delivery.device.name}' (epoch {run_epoch})")
        self.stats.increment('tap_sequences_completed')
        return True

    def _superseded(self, delivery: TempoDelivery, run_epoch: int, tap: int) -> bool:
        logger.debug(f"Tap tempo on '{delivery.device.name}' superseded before tap {tap + 1} "
                     f"(epoch {run_epoch}, now {self.epoch.current()})")
        self.stats.increment('tap_sequences_superseded')
        return False
