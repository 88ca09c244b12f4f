"""Model backends for NanoServe."""
