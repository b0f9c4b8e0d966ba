#!/usr/bin/env python3
"""Conduit hub daemon."""

from __future__ import annotations

import sys

from conduit.hub import main

if __name__ == "__main__":
    try:
        sys.exit(main())
    except KeyboardInterrupt:
        pass
