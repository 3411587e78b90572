#!/usr/bin/env python3
"""
SSH MCP server.

- One persistent SSH connection shared by every tool call
- Optional `su -` elevation into a long-lived root shell
- exec / sudo-exec tools with per-command timeout and best-effort abort
- Session event log in .ssh-cache
"""

from ssh_mcp.main import main

if __name__ == "__main__":
    main()
