"""A minimal JSON-RPC 2.0 implementation: messages, framing, listeners and connections."""