"""CC Status - session lifecycle tracking and window focus for coding-agent CLIs."""

__version__ = "0.1.0"
