"""Application helper package (settings, constants, telemetry, runtime wiring)."""
