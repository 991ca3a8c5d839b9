"""Multi-device race timing sync: coordinator service and device-side store."""

__version__ = "0.1.0"
