"""Suricata EVE alert monitor: remote log polling, classification and block tracking."""

__version__ = "0.1.0"
