#!/usr/bin/env python3
"""modelbroker - entry point for ``python -m modelbroker``."""

from .cli import main

if __name__ == "__main__":
    main()
