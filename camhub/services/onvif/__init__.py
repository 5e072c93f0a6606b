"""ONVIF camera discovery and SOAP introspection."""

from camhub.services.onvif.client import (
    AudioEncoderInfo,
    MediaProfile,
    ONVIFCapabilities,
    ONVIFClient,
    VideoEncoderInfo,
)
from camhub.services.onvif.discovery import ONVIFDevice, ONVIFDiscovery

__all__ = [
    "ONVIFClient",
    "ONVIFDiscovery",
    "ONVIFDevice",
    "MediaProfile",
    "ONVIFCapabilities",
    "VideoEncoderInfo",
    "AudioEncoderInfo",
]
