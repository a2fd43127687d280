"""Shared infrastructure: configuration, logging, telemetry and stream framing."""
