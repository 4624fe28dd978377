"""Stress testing of HTTP/2 CONNECT tunnels, with an echo server and a memory watcher."""

__version__ = "0.1.0"