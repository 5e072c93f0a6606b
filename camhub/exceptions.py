"""Exception hierarchy for CamHub services."""


class CamHubError(Exception):
    """Base class for all CamHub errors."""


class ConfigurationError(CamHubError):
    """A configuration value or override was rejected."""


class DeviceNotFoundError(CamHubError):
    """No device with the given id is registered."""


class UnsupportedTransportError(CamHubError):
    """The operation is not available for the device's transport."""


class DiscoveryInProgressError(CamHubError):
    """A scan or discovery pass is already running."""


class StreamAlreadyActiveError(CamHubError):
    """A stream session already exists for the device."""


class StreamStartError(CamHubError):
    """The stream pipeline could not be started."""


class AlreadyRecordingError(CamHubError):
    """A recording session already exists for the device."""


class RecordingCapacityError(CamHubError):
    """The concurrent recording cap has been reached."""


class RecordingNotFoundError(CamHubError):
    """No recording session exists for the device."""


class InsufficientStorageError(CamHubError):
    """Free space is below the configured floor and cannot be reclaimed."""
