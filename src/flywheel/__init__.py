"""Flywheel - fee collection, buyback and burn automation for launch-platform pools."""

__version__ = "0.1.0"
