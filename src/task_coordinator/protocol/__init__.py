"""JSON-RPC tool protocol: request parsing, tool handlers, server and client process."""
