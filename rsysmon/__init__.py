"""Remote system monitor: CPU, memory and disk of a host over SSH."""

__version__ = "0.1.0"
