"""Operational tooling for the MyTunnel QUIC tunnel."""

__version__ = "1.0.8"
