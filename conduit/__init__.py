"""
Conduit - MQTT hub for low-rate telemetry and presentation sources

Bridges weather reports, temperature sensors, images, strings and an SDR
sensor receiver onto one or more MQTT brokers, and runs periodic work
against wall-clock offsets.

Core modules:
- broker_mux: Namespaced publish/subscribe across several brokers
- jobs: Offset, interval and randomized job scheduling
- sdr: rtl_433 supervision and sensor state coalescing
- config: Configuration from environment-style sources
"""

__version__ = "0.4.2"
