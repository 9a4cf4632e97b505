"""Infrastructure layers: telemetry, hardware and model runtime."""
