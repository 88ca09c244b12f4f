"""HTTP serving for NanoServe."""
