"""Testdroid Proxy: hands out flashed, session-locked devices from a Testdroid device cloud."""

__version__ = "0.2.0"
