"""Babymonitor: live MP3 microphone stream with a loudness-triggered webhook."""

__version__ = "1.0.0"
