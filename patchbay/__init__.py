"""
Patchbay - MIDI/OSC command router with tempo distribution.

Modules:
    model: Device, program, command and mapping configuration types
    config: YAML/JSON loaders for the device and map files
    state: Shared configuration snapshot and tempo epoch
    resolver: Listen channel + program number -> device programs
    executor: Command dispatch to MIDI sessions and OSC destinations
    tempo: Raw and tap tempo distribution
    router: Event intake, worker pool and process entry point
"""

__version__ = "0.1.0"

# Note: Modules are imported on-demand so that python -m patchbay.cli
# does not pull in the MIDI stack.
# Use: from patchbay import router, tempo, etc.
