"""Sandboxed execution worker run as a child process of the bridge."""
