"""Generation loop, sinks, sampling and telemetry."""
