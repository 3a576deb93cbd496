"""Tool-calling conversation engine with multi-tool execution and a WebSocket surface."""

__version__ = "0.1.0"
