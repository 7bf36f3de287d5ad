#!/usr/bin/env python3
"""
Command Resolver - (listen channel, program number) -> device programs.

A program change arriving on a listen channel fires every mapping bound to
that channel. For each one the mapped device is looked up and its program
with the incoming number is selected:

    mapping.listen_channel == channel
        -> device = devices[mapping.device_id]
        -> program = device.programs[number]
        -> Resolution(device, program, mapping)

ERRORS:
A mapping naming an unknown device, or a device without that program, is
logged once at WARNING and skipped. The other mappings still resolve, so
one broken entry in the map file never silences the rest.

Usage:
    with shared_config.read() as config:
        for device, program, mapping in resolve(config, 1, 12):
            ...
"""

from typing import List, NamedTuple

from patchbay.log import get_logger
from patchbay.model import Configuration, Device, DeviceMapping, Program

logger = get_logger(__name__)


# ============================================================================
# RESOLUTION
# ============================================================================

class Resolution(NamedTuple):
    device: Device
    program: Program
    mapping: DeviceMapping


def resolve(config: Configuration, listen_channel: int, program_number: int) -> List[Resolution]:
    """Find every (device, program, mapping) that fires for this event.

    Mappings are scanned in configuration order. A mapping whose device is
    unknown, or whose device has no program with this number, is logged and
    left out; the remaining mappings still resolve.

    Args:
        config: Configuration snapshot (caller holds the read lock)
        listen_channel: Incoming channel, 1-16
        program_number: Incoming program number, 0-127

    Returns:
        Resolutions in mapping order (possibly empty)
    """
    resolved = []

    for mapping in config.mappings:
        if mapping.listen_channel != listen_channel:
            continue

        device = config.get_device(mapping.device_id)
        if device is None:
            logger.warning(f"Device '{mapping.device_id}' not found in configuration")
            continue

        program = device.get_program(program_number)
        if program is None:
            logger.warning(f"Program {program_number} not found on device '{device.name}'")
            continue

        resolved.append(Resolution(device, program, mapping))

    if not resolved:
        logger.debug(f"No programs resolved for channel {listen_channel}, program {program_number}")

    return resolved
