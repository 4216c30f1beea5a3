"""megatool: launch, track, and inspect MCP tool servers.

The ``megatool`` front-end dispatches operator commands (run, ls, ps, stop,
logs, cleanup, install).  Each tool server is a separate ``megatool-<name>``
executable that speaks MCP over its standard streams.
"""

__version__ = "0.4.0"

__all__ = ["__version__"]
