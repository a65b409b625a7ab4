"""berth — sandbox container lifecycle for agent tool execution."""

__version__ = "0.1.0"
