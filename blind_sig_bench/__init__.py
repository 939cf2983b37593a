"""Benchmark rig for a blind Schnorr issuance server."""

__version__ = "0.1.0"
