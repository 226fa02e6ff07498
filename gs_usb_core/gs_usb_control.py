import enum
import logging
import threading
from struct import calcsize, pack, unpack
from typing import Optional

from . import gs_usb_timing
from .constants import (
    GS_CAN_FEATURE_BT_CONST_EXT,
    GS_CAN_FEATURE_FD,
    GS_CAN_FEATURE_GET_STATE,
    GS_CAN_FEATURE_IDENTIFY,
    GS_CAN_FEATURE_NAMES,
    GS_CAN_FEATURE_TERMINATION,
    GS_CAN_FEATURE_USER_ID,
    GS_CAN_MODE_DRIVER_SUPPORTED,
    GS_CAN_MODE_FD,
    GS_CAN_MODE_HW_TIMESTAMP,
    GS_CAN_MODE_NORMAL,
    GS_CAN_MODE_RESET,
    GS_CAN_MODE_START,
    GS_USB_BREQ_BITTIMING,
    GS_USB_BREQ_BT_CONST,
    GS_USB_BREQ_BT_CONST_EXT,
    GS_USB_BREQ_DATA_BITTIMING,
    GS_USB_BREQ_DEVICE_CONFIG,
    GS_USB_BREQ_GET_STATE,
    GS_USB_BREQ_GET_TERMINATION,
    GS_USB_BREQ_GET_USER_ID,
    GS_USB_BREQ_HOST_FORMAT,
    GS_USB_BREQ_IDENTIFY,
    GS_USB_BREQ_MODE,
    GS_USB_BREQ_SET_TERMINATION,
    GS_USB_BREQ_SET_USER_ID,
    GS_USB_BREQ_TIMESTAMP,
    GS_USB_HOST_FORMAT_LITTLE_ENDIAN,
    SAMPLE_POINT_DATA,
    SAMPLE_POINT_NOMINAL,
)
from .errors import (
    Disconnected,
    GsUsbError,
    InvalidState,
    TransportError,
    UnsupportedFeature,
)
from .gs_usb_structures import (
    BT_CONST_EXT_SIZE,
    BT_CONST_SIZE,
    DEVICE_INFO_SIZE,
    DEVICE_STATE_SIZE,
    DeviceBitTiming,
    DeviceCapability,
    DeviceInfo,
    DeviceMode,
    DeviceState,
)

logger = logging.getLogger(__name__)

_U32 = "<I"
_U32_SIZE = calcsize(_U32)


class SessionState(enum.Enum):
    CLOSED = "closed"
    OPENED = "opened"
    CONFIGURED = "configured"
    RUNNING = "running"
    STOPPED = "stopped"
    DISCONNECTED = "disconnected"


_OPEN_STATES = frozenset(
    {
        SessionState.OPENED,
        SessionState.CONFIGURED,
        SessionState.RUNNING,
        SessionState.STOPPED,
    }
)
# Timing may only change while the channel is not running
_IDLE_STATES = frozenset(
    {SessionState.OPENED, SessionState.CONFIGURED, SessionState.STOPPED}
)
# A channel that ran once keeps its bit timing, so STOPPED may start again
_STARTABLE_STATES = frozenset({SessionState.CONFIGURED, SessionState.STOPPED})


def _mode_flag_names(flags):
    names = [name for bit, name in GS_CAN_FEATURE_NAMES.items() if flags & bit]
    unknown = flags & ~sum(GS_CAN_FEATURE_NAMES)
    if unknown:
        names.append("mode flags 0x%08x" % unknown)
    return ", ".join(names)


class ControlProtocol:
    r"""
    Control requests of one gs_usb channel and the state machine around them.

    CLOSED -> open -> OPENED -> set_bitrate/set_timing -> CONFIGURED -> start ->
    RUNNING -> stop -> STOPPED -> start -> RUNNING ...; close from anywhere.
    A disconnect reported by the transport parks the machine in DISCONNECTED
    until open() is called again.
    """

    def __init__(self, transport, channel=0):
        self.transport = transport
        self.channel = channel
        self._state = SessionState.CLOSED
        self._capability: Optional[DeviceCapability] = None
        self._flags = GS_CAN_MODE_NORMAL
        self._lock = threading.RLock()

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def flags(self) -> int:
        """Mode flags the channel was started with."""
        return self._flags

    @property
    def hw_timestamp(self) -> bool:
        return (self._flags & GS_CAN_MODE_HW_TIMESTAMP) == GS_CAN_MODE_HW_TIMESTAMP

    @property
    def fd_mode(self) -> bool:
        return (self._flags & GS_CAN_MODE_FD) == GS_CAN_MODE_FD

    def _set_state(self, state):
        if state is not self._state:
            logger.debug("Channel %u: %s -> %s", self.channel, self._state.name, state.name)
            self._state = state

    def _require(self, operation, allowed):
        if self._state in allowed:
            return
        if self._state is SessionState.DISCONNECTED:
            raise Disconnected("Device disconnected, open it again to continue")
        raise InvalidState(operation, self._state)

    def _require_feature(self, feature):
        if not self._capability.supports(feature):
            raise UnsupportedFeature(GS_CAN_FEATURE_NAMES[feature])

    def mark_disconnected(self):
        with self._lock:
            if self._state is not SessionState.CLOSED:
                logger.info("Channel %u: device disconnected", self.channel)
                self._set_state(SessionState.DISCONNECTED)

    def require_running(self, operation):
        self._require(operation, (SessionState.RUNNING,))

    def _control_out(self, request, data, value=None):
        try:
            self.transport.control_out(
                request, self.channel if value is None else value, data
            )
        except Disconnected:
            self.mark_disconnected()
            raise

    def _control_in(self, request, length, value=None):
        try:
            return self.transport.control_in(
                request, self.channel if value is None else value, length
            )
        except Disconnected:
            self.mark_disconnected()
            raise

    def open(self):
        r"""
        Claim the device, announce the host byte order and fetch the capability
        """
        with self._lock:
            self._require("open", (SessionState.CLOSED, SessionState.DISCONNECTED))
            try:
                self.transport.open()
            except Disconnected:
                self.mark_disconnected()
                raise

            try:
                capability = self._read_capability()
            except GsUsbError:
                self._release()
                raise
            self._capability = capability
            self._flags = GS_CAN_MODE_NORMAL
            self._set_state(SessionState.OPENED)
            logger.info(
                "Opened channel %u of %s, clock %u Hz, features %s",
                self.channel,
                self.transport,
                capability.fclk_can,
                ", ".join(capability.feature_names) or "none",
            )

    def _read_capability(self):
        # HOST_FORMAT is a legacy request, some firmwares stall it
        try:
            self._control_out(
                GS_USB_BREQ_HOST_FORMAT,
                pack(_U32, GS_USB_HOST_FORMAT_LITTLE_ENDIAN),
                value=0,
            )
        except TransportError as e:
            logger.debug("HOST_FORMAT rejected (optional on this device): %s", e)

        capability = DeviceCapability.unpack(
            self._control_in(GS_USB_BREQ_BT_CONST, BT_CONST_SIZE)
        )
        if capability.supports(GS_CAN_FEATURE_BT_CONST_EXT):
            capability = DeviceCapability.unpack_extended(
                self._control_in(GS_USB_BREQ_BT_CONST_EXT, BT_CONST_EXT_SIZE)
            )
        return capability

    def _release(self):
        try:
            self.transport.close()
        except (TransportError, Disconnected) as e:
            logger.warning("Channel %u: releasing device failed: %s", self.channel, e)

    def close(self):
        r"""
        Stop the channel if needed and release the device. Closing twice is harmless.
        """
        with self._lock:
            if self._state is SessionState.CLOSED:
                return
            if self._state is SessionState.RUNNING:
                try:
                    self._control_out(
                        GS_USB_BREQ_MODE, DeviceMode(GS_CAN_MODE_RESET, 0).pack()
                    )
                except (TransportError, Disconnected) as e:
                    logger.warning("Channel %u: reset at close failed: %s", self.channel, e)
            self._release()
            self._capability = None
            self._flags = GS_CAN_MODE_NORMAL
            self._set_state(SessionState.CLOSED)
            logger.info("Closed channel %u", self.channel)

    @property
    def device_capability(self) -> DeviceCapability:
        r"""
        Get gs_usb device capability, fetched once at open
        """
        self._require("get_capability", _OPEN_STATES)
        return self._capability

    def get_capability(self) -> DeviceCapability:
        return self.device_capability

    def get_device_info(self) -> DeviceInfo:
        r"""
        Get gs_usb device info
        """
        with self._lock:
            self._require("get_device_info", _OPEN_STATES)
            data = self._control_in(GS_USB_BREQ_DEVICE_CONFIG, DEVICE_INFO_SIZE, value=0)
            return DeviceInfo.unpack(data, serial_number=self.transport.serial_number)

    def get_state(self) -> DeviceState:
        r"""
        Get CAN bus state and error counters.

        :return: DeviceState with state enum and error counters
        :raises UnsupportedFeature: if device doesn't support GET_STATE
        """
        with self._lock:
            self._require("get_state", _OPEN_STATES)
            self._require_feature(GS_CAN_FEATURE_GET_STATE)
            return DeviceState.unpack(
                self._control_in(GS_USB_BREQ_GET_STATE, DEVICE_STATE_SIZE)
            )

    def get_timestamp(self) -> int:
        r"""
        Read the free running microsecond counter of the device
        """
        with self._lock:
            self._require("get_timestamp", _OPEN_STATES)
            data = self._control_in(GS_USB_BREQ_TIMESTAMP, _U32_SIZE, value=0)
            return unpack(_U32, data)[0]

    def identify(self, on=True):
        r"""
        Blink the LEDs of the channel so it can be told apart from others
        """
        with self._lock:
            self._require("identify", _OPEN_STATES)
            self._require_feature(GS_CAN_FEATURE_IDENTIFY)
            self._control_out(GS_USB_BREQ_IDENTIFY, pack(_U32, 1 if on else 0))

    def set_termination(self, on):
        with self._lock:
            self._require("set_termination", _OPEN_STATES)
            self._require_feature(GS_CAN_FEATURE_TERMINATION)
            self._control_out(GS_USB_BREQ_SET_TERMINATION, pack(_U32, 1 if on else 0))

    def get_termination(self) -> bool:
        with self._lock:
            self._require("get_termination", _OPEN_STATES)
            self._require_feature(GS_CAN_FEATURE_TERMINATION)
            data = self._control_in(GS_USB_BREQ_GET_TERMINATION, _U32_SIZE)
            return bool(unpack(_U32, data)[0])

    def set_user_id(self, user_id):
        with self._lock:
            self._require("set_user_id", _OPEN_STATES)
            self._require_feature(GS_CAN_FEATURE_USER_ID)
            self._control_out(GS_USB_BREQ_SET_USER_ID, pack(_U32, user_id), value=0)

    def get_user_id(self) -> int:
        with self._lock:
            self._require("get_user_id", _OPEN_STATES)
            self._require_feature(GS_CAN_FEATURE_USER_ID)
            data = self._control_in(GS_USB_BREQ_GET_USER_ID, _U32_SIZE, value=0)
            return unpack(_U32, data)[0]

    def set_bitrate(self, bitrate, sample_point=SAMPLE_POINT_NOMINAL, sjw=None):
        r"""
        Set the nominal (arbitration) bitrate.

        Timing registers are derived from the device clock and BT_CONST limits,
        see gs_usb_timing.compute.

        :param bitrate: bitrate in bit/s
        :param sample_point: sample point in percent
        :return: the DeviceBitTiming sent to the device
        :raises UnsupportedBitrate: if the device cannot realise the bitrate exactly
        """
        with self._lock:
            self._require("set_bitrate", _IDLE_STATES)
            capability = self._capability
            timing = gs_usb_timing.compute(
                bitrate, capability.fclk_can, sample_point, capability.nominal_limits, sjw
            )
            self._write_timing(GS_USB_BREQ_BITTIMING, timing)
            self._set_state(SessionState.CONFIGURED)
            return timing

    def set_timing(self, prop_seg, phase_seg1, phase_seg2, sjw, brp):
        r"""
        Set CAN bit timing (nominal/arbitration phase)
        :param prop_seg: propagation Segment (const 1)
        :param phase_seg1: phase segment 1
        :param phase_seg2: phase segment 2
        :param sjw: synchronization jump width
        :param brp: prescaler for quantum
        """
        with self._lock:
            self._require("set_timing", _IDLE_STATES)
            timing = DeviceBitTiming(prop_seg, phase_seg1, phase_seg2, sjw, brp)
            self._write_timing(GS_USB_BREQ_BITTIMING, timing)
            self._set_state(SessionState.CONFIGURED)
            return timing

    def set_data_bitrate(self, bitrate, sample_point=SAMPLE_POINT_DATA, sjw=None):
        r"""
        Set CAN FD data phase bitrate.
        Common data bitrates: 2000000 (2 Mbps), 5000000 (5 Mbps), 8000000 (8 Mbps)

        Uses the BT_CONST_EXT data phase limits, or the nominal limits when the
        device does not report separate ones.
        Data bitrates above GS_CAN_FD_DATA_BITRATE_MAX for the device clock are
        refused, e.g. 10 Mbps needs a 40 MHz clock.

        :param bitrate: Data phase bitrate in bps
        :param sample_point: Sample point percentage (default 75% for high-speed data phase)
        :raises UnsupportedFeature: if the device has no CAN FD support
        """
        with self._lock:
            self._require("set_data_bitrate", _IDLE_STATES)
            self._require_feature(GS_CAN_FEATURE_FD)
            capability = self._capability
            limits = capability.data_limits or capability.nominal_limits
            timing = gs_usb_timing.compute_data(
                bitrate, capability.fclk_can, sample_point, limits, sjw
            )
            self._write_timing(GS_USB_BREQ_DATA_BITTIMING, timing)
            return timing

    def set_data_timing(self, prop_seg, phase_seg1, phase_seg2, sjw, brp):
        r"""
        Set CAN FD data phase bit timing
        """
        with self._lock:
            self._require("set_data_timing", _IDLE_STATES)
            self._require_feature(GS_CAN_FEATURE_FD)
            timing = DeviceBitTiming(prop_seg, phase_seg1, phase_seg2, sjw, brp)
            self._write_timing(GS_USB_BREQ_DATA_BITTIMING, timing)
            return timing

    def _write_timing(self, request, timing):
        logger.debug(
            "Channel %u: %s brp=%u tseg1=%u tseg2=%u sjw=%u",
            self.channel,
            "BITTIMING" if request == GS_USB_BREQ_BITTIMING else "DATA_BITTIMING",
            timing.brp,
            timing.tseg1,
            timing.tseg2,
            timing.sjw,
        )
        self._control_out(request, timing.pack())

    def start(self, flags=GS_CAN_MODE_NORMAL):
        r"""
        Start the channel
        :param flags: GS_CAN_MODE_LISTEN_ONLY, GS_CAN_MODE_HW_TIMESTAMP, etc.
        :raises InvalidState: if no bit timing was configured
        :raises UnsupportedFeature: if a flag is not supported by the device or driver
        """
        with self._lock:
            self._require("start", _STARTABLE_STATES)

            if flags & GS_CAN_MODE_FD:
                self._require_feature(GS_CAN_FEATURE_FD)
            unknown = flags & ~GS_CAN_MODE_DRIVER_SUPPORTED
            if unknown:
                raise UnsupportedFeature(_mode_flag_names(unknown))
            # Mode flags share their bit positions with the feature flags
            missing = flags & ~self._capability.feature
            if missing:
                raise UnsupportedFeature(_mode_flag_names(missing))

            mode = DeviceMode(GS_CAN_MODE_START, flags)
            self._control_out(GS_USB_BREQ_MODE, mode.pack())
            self._flags = flags
            self._set_state(SessionState.RUNNING)
            logger.info("Started channel %u with flags 0x%08x", self.channel, flags)

    def stop(self):
        r"""
        Stop the channel, keeping its configuration
        """
        with self._lock:
            self._require("stop", (SessionState.RUNNING,))
            mode = DeviceMode(GS_CAN_MODE_RESET, 0)
            self._control_out(GS_USB_BREQ_MODE, mode.pack())
            self._set_state(SessionState.STOPPED)
            logger.info("Stopped channel %u", self.channel)
