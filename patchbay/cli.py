#!/usr/bin/env python3
"""
Command-line tool for poking a running router over OSC.

Usage:
    python -m patchbay.cli <address> [arg1] [arg2] ... [--host H] [--port P]

Examples:
    python -m patchbay.cli /tempo/raw 120.0
    python -m patchbay.cli /tempo/raw 96 --host 192.168.1.20 --port 9001
"""

import argparse
import sys

from pythonosc import udp_client

from patchbay import osc


def parse_argument(arg: str):
    """Parse a command-line argument to int, float, or leave it a string."""
    try:
        return int(arg)
    except ValueError:
        pass
    try:
        return float(arg)
    except ValueError:
        pass
    return arg


def send_osc_message(address: str, args: list, host: str = "127.0.0.1", port: int = osc.PORT_TEMPO):
    """Send one OSC message to host:port."""
    osc.validate_port(port)
    client = udp_client.SimpleUDPClient(host, port)
    client.send_message(address, args)
    print(f"Sent to {host}:{port} → {address} {args}")


def main(argv=None):
    parser = argparse.ArgumentParser(description="Send one OSC message to a patchbay router")
    parser.add_argument("address", help="OSC address, e.g. /tempo/raw")
    parser.add_argument("args", nargs="*", help="Message arguments (ints, floats or strings)")
    parser.add_argument("--host", default="127.0.0.1", help="Router host (default: 127.0.0.1)")
    parser.add_argument("--port", type=int, default=osc.PORT_TEMPO,
                        help=f"Router OSC source port (default: {osc.PORT_TEMPO})")

    options = parser.parse_args(argv)

    if not osc.validate_osc_address(options.address):
        print(f"Invalid OSC address: {options.address} (must start with '/')")
        sys.exit(1)

    try:
        send_osc_message(options.address, [parse_argument(a) for a in options.args],
                         host=options.host, port=options.port)
    except ValueError as e:
        print(f"Error: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
