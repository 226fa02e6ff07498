class GsUsbError(Exception):
    """Base class for every error raised by gs_usb_core."""


class DeviceNotFound(GsUsbError):
    """No gs_usb device matched the enumeration criteria."""


class TransportError(GsUsbError):
    """The underlying USB transfer failed. Never retried by this package."""


class Disconnected(GsUsbError):
    """The device went away. Terminal for the session until it is re-opened."""


class ReadTimeout(GsUsbError, TimeoutError):
    """No frame from the bus arrived before the read deadline."""


class WriteTimeout(GsUsbError, TimeoutError):
    """A transmission was not confirmed by the device before the deadline."""


class UnsupportedBitrate(GsUsbError, ValueError):
    def __init__(self, bitrate, clock_hz, reason=None):
        self.bitrate = bitrate
        self.clock_hz = clock_hz
        message = "Unsupported bitrate %u for clock %u Hz" % (bitrate, clock_hz)
        if reason:
            message += ": " + reason
        super().__init__(message)


class InvalidFrame(GsUsbError, ValueError):
    """A frame cannot be encoded, or a packet cannot be decoded."""


class InvalidState(GsUsbError):
    def __init__(self, operation, state):
        self.operation = operation
        self.state = state
        super().__init__("%s is not allowed in state %s" % (operation, state.name))


class UnsupportedFeature(GsUsbError):
    def __init__(self, feature):
        self.feature = feature
        super().__init__("Device does not support %s" % feature)


class TransmitError(GsUsbError):
    """The device reported the transmission back with the error flag set."""

    def __init__(self, frame):
        self.frame = frame
        super().__init__("Transmission failed: %s" % frame)
