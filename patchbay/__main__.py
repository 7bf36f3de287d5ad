#!/usr/bin/env python3
"""
Entry point for running the router as a module.

Usage:
    python -m patchbay [--devices PATH] [--map PATH] [--log-level LEVEL]
"""

from patchbay.router import main

main()
