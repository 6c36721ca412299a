"""Agent Farm: port allocation, process state and builder lifecycle for
architect/builder agent sessions sharing one machine."""

__version__ = "0.4.0"
