"""JSON-RPC 2.0 toolkit with knowledge-graph and sequential-thinking backends."""

__version__ = "0.1.0"