#!/usr/bin/env python3
"""
Sandbox MCP server launcher.

Drives an ephemeral sandbox instance through one persistent shell:
- commands framed by single-use end markers, run one at a time
- secrets passed over stdin after a ready handshake, never on a command line
- paced, retried web search and page fetch from inside the instance
- a relay to the long-lived proxy instance, adopting verified orphans
"""

from sandbox_mcp.main import main

if __name__ == "__main__":
    main()
