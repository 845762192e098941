"""Provision Outline VPN servers on cloud providers and track their installation."""

__version__ = "0.1.0"
