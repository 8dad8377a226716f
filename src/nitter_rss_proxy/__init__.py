"""Proxy that serves Nitter feeds with links rewritten to point at Twitter."""

__version__ = "0.1.0"
