"""adbpair - wireless-debugging pairing for Android devices."""

__version__ = "0.1.0"
