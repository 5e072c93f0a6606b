"""CamHub - unified camera discovery, streaming and recording."""

__version__ = "0.1.0"
