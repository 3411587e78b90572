"""SSH MCP server: persistent SSH session with optional su elevation."""

__version__ = "1.1.0"
