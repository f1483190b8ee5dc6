#!/usr/bin/env python3
"""MCP Engine - Main entry point.

Runs the engine from a source checkout without installing it:

    python main.py --config config/transports.yaml
    python main.py --transport http --port 8080

Installed copies expose the same command as ``mcp-engine``.
"""

from __future__ import annotations

import sys

from mcp_engine.cli import main

if __name__ == "__main__":
    sys.exit(main())
