#!/usr/bin/env python3
"""
Config loading for the device file and the map file.

Both files are YAML (JSON is accepted too, YAML being a superset). They are
read once at startup and turned into a single Configuration snapshot.

Device file:
    devices:
      <id>:
        id: <id>
        name: ...
        device_type: midi | osc
        programs: [{number, name, commands: [...]}]
        tempo_spec: {type: tap_tempo | raw_tempo, ...}   # optional

Map file:
    rtp_midi_sessions: [{name, port, listen, connect_to, port_name}]
    osc_destinations: {<name>: {host, port}}
    osc_sources: [{name, port}]
    device_mappings: [{device_id, listen_channel, send_channel, destination}]
"""

from pathlib import Path
from typing import Any, Dict

import yaml

from patchbay import model
from patchbay.log import get_logger

logger = get_logger(__name__)


DEFAULT_DEVICE_CONFIG = "config/devices.yaml"
DEFAULT_MAP_CONFIG = "config/map.yaml"

MAP_SECTIONS = ('rtp_midi_sessions', 'osc_destinations', 'osc_sources', 'device_mappings')


def _read_document(path: str, kind: str) -> Any:
    """Read a YAML/JSON document.

    Raises:
        FileNotFoundError: If the file doesn't exist
        yaml.YAMLError: If the syntax is invalid
    """
    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(
            f"{kind} config file not found: {path}\n"
            f"See config/{Path(path).name} for a template."
        )

    with open(config_path, 'r') as f:
        return yaml.safe_load(f)


def parse_device_config(document: Any) -> Dict[str, model.Device]:
    """Build the device table from a loaded document.

    Raises:
        ValueError: If the document is malformed
    """
    if not isinstance(document, dict) or 'devices' not in document:
        raise ValueError("Device config missing 'devices' section")

    entries = document['devices'] or {}
    if not isinstance(entries, dict):
        raise ValueError("'devices' must map device id -> device")

    devices = {}
    for key, entry in entries.items():
        if not isinstance(entry, dict):
            raise ValueError(f"Device '{key}' must be a mapping")
        entry = dict(entry)
        entry.setdefault('id', key)
        if str(entry['id']) != str(key):
            raise ValueError(f"Device key '{key}' does not match its id '{entry['id']}'")
        devices[str(key)] = model.parse_device(entry)

    return devices


def parse_map_config(document: Any, configuration: model.Configuration) -> model.Configuration:
    """Fill sessions, destinations, sources and mappings into configuration.

    Raises:
        ValueError: If the document is malformed
    """
    if not isinstance(document, dict):
        raise ValueError("Map config must be a mapping")

    for section in MAP_SECTIONS:
        if section not in document:
            raise ValueError(f"Map config missing '{section}' section")

    destinations = document['osc_destinations'] or {}
    if not isinstance(destinations, dict):
        raise ValueError("'osc_destinations' must map name -> {host, port}")

    configuration.rtp_midi_sessions = [model.parse_session(s) for s in document['rtp_midi_sessions'] or []]
    configuration.osc_destinations = {
        str(name): model.parse_osc_target(str(name), target) for name, target in destinations.items()
    }
    configuration.osc_sources = [model.parse_osc_source(s) for s in document['osc_sources'] or []]
    configuration.mappings = [model.parse_mapping(m) for m in document['device_mappings'] or []]

    session_names = [s.name for s in configuration.rtp_midi_sessions]
    if len(session_names) != len(set(session_names)):
        raise ValueError("Duplicate RTP MIDI session names in map config")

    return configuration


def load_configuration(device_path: str = DEFAULT_DEVICE_CONFIG,
                       map_path: str = DEFAULT_MAP_CONFIG) -> model.Configuration:
    """Load both files into one snapshot.

    Args:
        device_path: Path to the device file
        map_path: Path to the map file

    Returns:
        Configuration snapshot

    Raises:
        FileNotFoundError: If either file doesn't exist
        yaml.YAMLError: If YAML syntax is invalid
        ValueError: If either document fails validation
    """
    configuration = model.Configuration(devices=parse_device_config(_read_document(device_path, "Device")))
    logger.info(f"Loaded device configuration from {device_path}")

    parse_map_config(_read_document(map_path, "Map"), configuration)
    logger.info(f"Loaded map configuration from {map_path}")

    tempo_devices = sum(1 for d in configuration.devices.values() if d.tempo_spec is not None)
    logger.info(f"  Devices: {len(configuration.devices)} ({tempo_devices} tempo-capable)")
    logger.info(f"  Mappings: {len(configuration.mappings)}")
    logger.info(f"  OSC destinations: {len(configuration.osc_destinations)}")
    logger.info(f"  RTP MIDI sessions: {len(configuration.rtp_midi_sessions)}")
    logger.info(f"  OSC sources: {len(configuration.osc_sources)}")

    # Dangling references are reported here and again when an event hits them
    for mapping in configuration.mappings:
        if mapping.device_id not in configuration.devices:
            logger.warning(f"Mapping references unknown device '{mapping.device_id}'")
        if isinstance(mapping.destination, model.OscDestination) and \
                mapping.destination.destination_name not in configuration.osc_destinations:
            logger.warning(f"Mapping for '{mapping.device_id}' references unknown OSC destination "
                           f"'{mapping.destination.destination_name}'")

    return configuration
