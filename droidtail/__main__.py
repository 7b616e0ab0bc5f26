#!/usr/bin/env python3
"""
droidtail main entry point.

Allows droidtail to be run as a module: python3 -m droidtail
"""

from droidtail.cli import main

if __name__ == "__main__":
    main()
