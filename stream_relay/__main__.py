"""
Stream Relay - Entry point

Run with: python -m stream_relay
"""

import sys

from .cli import main

if __name__ == "__main__":
    sys.exit(main())
