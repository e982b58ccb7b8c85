"""Oscillator drivers, PPS phasemeter, external timestamps and production checks for time cards."""

__version__ = "0.1.0"