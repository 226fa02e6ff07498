from dataclasses import dataclass
from struct import calcsize, pack, unpack
from typing import Optional, Union

from .constants import (
    GS_CAN_FEATURE_FD,
    GS_CAN_FEATURE_NAMES,
    GS_CAN_STATE_NAMES,
    CanState,
)

_DEVICE_MODE_FORMAT = "<II"
_BIT_TIMING_FORMAT = "<5I"
_DEVICE_INFO_FORMAT = "<4B2I"
_BT_CONST_FORMAT = "<10I"
_BT_CONST_EXT_FORMAT = "<18I"
_DEVICE_STATE_FORMAT = "<3I"

DEVICE_INFO_SIZE = calcsize(_DEVICE_INFO_FORMAT)
BT_CONST_SIZE = calcsize(_BT_CONST_FORMAT)
BT_CONST_EXT_SIZE = calcsize(_BT_CONST_EXT_FORMAT)
DEVICE_STATE_SIZE = calcsize(_DEVICE_STATE_FORMAT)


class DeviceMode:
    def __init__(self, mode, flags):
        self.mode = mode
        self.flags = flags

    def __str__(self):
        return "Mode: %u\r\nFlags: 0x%08x\r\n" % (self.mode, self.flags)

    def pack(self):
        return pack(_DEVICE_MODE_FORMAT, self.mode, self.flags)


@dataclass(frozen=True)
class DeviceBitTiming:
    """
    Bit timing register set for one CAN phase.

    ``tseg1`` as the device limits call it is ``prop_seg + phase_seg1``; one bit
    lasts ``1 + prop_seg + phase_seg1 + phase_seg2`` time quanta of
    ``brp / fclk_can`` seconds each.
    """

    prop_seg: int
    phase_seg1: int
    phase_seg2: int
    sjw: int
    brp: int

    def __post_init__(self):
        if self.prop_seg < 0 or min(self.phase_seg1, self.phase_seg2, self.brp) < 1:
            raise ValueError("Bit timing segments and prescaler must be positive")
        if not 1 <= self.sjw <= min(self.phase_seg1, self.phase_seg2):
            raise ValueError(
                "SJW %u must be between 1 and min(phase_seg1, phase_seg2)" % self.sjw
            )

    @property
    def tseg1(self) -> int:
        return self.prop_seg + self.phase_seg1

    @property
    def tseg2(self) -> int:
        return self.phase_seg2

    @property
    def total_quanta(self) -> int:
        return 1 + self.tseg1 + self.tseg2

    @property
    def sample_point(self) -> float:
        """Sample point in percent of the bit time."""
        return 100.0 * (1 + self.tseg1) / self.total_quanta

    def bitrate(self, clock_hz: int) -> float:
        return clock_hz / (self.brp * self.total_quanta)

    def __str__(self):
        return (
            "Prop Seg: %u\r\n"
            "Phase Seg 1: %u\r\n"
            "Phase Seg 2: %u\r\n"
            "SJW: %u\r\n"
            "BRP: %u\r\n"
            % (self.prop_seg, self.phase_seg1, self.phase_seg2, self.sjw, self.brp)
        )

    def pack(self) -> bytes:
        return pack(
            _BIT_TIMING_FORMAT,
            self.prop_seg,
            self.phase_seg1,
            self.phase_seg2,
            self.sjw,
            self.brp,
        )

    @staticmethod
    def unpack(data: bytes) -> "DeviceBitTiming":
        return DeviceBitTiming(*unpack(_BIT_TIMING_FORMAT, bytes(data)))


@dataclass(frozen=True)
class TimingLimits:
    """Register ranges for one CAN phase, as reported by BT_CONST(_EXT)."""

    tseg1_min: int
    tseg1_max: int
    tseg2_min: int
    tseg2_max: int
    sjw_max: int
    brp_min: int
    brp_max: int
    brp_inc: int


@dataclass(frozen=True)
class DeviceInfo:
    reserved1: int
    reserved2: int
    reserved3: int
    icount: int
    fw_version: int
    hw_version: int
    serial_number: str = ""

    @property
    def channel_count(self) -> int:
        return self.icount + 1

    @property
    def firmware_version(self) -> float:
        return self.fw_version / 10.0

    @property
    def hardware_version(self) -> float:
        return self.hw_version / 10.0

    def __str__(self):
        return "iCount: %u\r\nFW Version: %.1f\r\nHW Version: %.1f\r\n" % (
            self.icount,
            self.firmware_version,
            self.hardware_version,
        )

    @staticmethod
    def unpack(data: bytes, serial_number: str = "") -> "DeviceInfo":
        unpacked_data = unpack(_DEVICE_INFO_FORMAT, bytes(data))
        return DeviceInfo(*unpacked_data, serial_number=serial_number)


@dataclass(frozen=True)
class DeviceCapability:
    """
    Device capability including bit timing constraints.

    Supports both classic CAN (BT_CONST) and CAN FD (BT_CONST_EXT) devices.
    When created from BT_CONST_EXT data, the data phase timing fields are populated.
    """

    # Nominal (arbitration) phase timing
    feature: int
    fclk_can: int
    tseg1_min: int
    tseg1_max: int
    tseg2_min: int
    tseg2_max: int
    sjw_max: int
    brp_min: int
    brp_max: int
    brp_inc: int
    # Data phase timing (CAN FD) - None if not available
    dtseg1_min: Optional[int] = None
    dtseg1_max: Optional[int] = None
    dtseg2_min: Optional[int] = None
    dtseg2_max: Optional[int] = None
    dsjw_max: Optional[int] = None
    dbrp_min: Optional[int] = None
    dbrp_max: Optional[int] = None
    dbrp_inc: Optional[int] = None

    @property
    def has_fd_timing(self) -> bool:
        """Check if CAN FD data phase timing is available."""
        return self.dtseg1_min is not None

    @property
    def supports_fd(self) -> bool:
        return self.supports(GS_CAN_FEATURE_FD)

    def supports(self, feature: int) -> bool:
        return (self.feature & feature) == feature

    @property
    def feature_names(self):
        return [name for bit, name in GS_CAN_FEATURE_NAMES.items() if self.feature & bit]

    @property
    def nominal_limits(self) -> TimingLimits:
        return TimingLimits(
            self.tseg1_min,
            self.tseg1_max,
            self.tseg2_min,
            self.tseg2_max,
            self.sjw_max,
            self.brp_min,
            self.brp_max,
            self.brp_inc,
        )

    @property
    def data_limits(self) -> Optional[TimingLimits]:
        if not self.has_fd_timing:
            return None
        return TimingLimits(
            self.dtseg1_min,
            self.dtseg1_max,
            self.dtseg2_min,
            self.dtseg2_max,
            self.dsjw_max,
            self.dbrp_min,
            self.dbrp_max,
            self.dbrp_inc,
        )

    def __str__(self):
        result = (
            "Feature bitfield: 0x%08x\r\n"
            "Clock: %u\r\n"
            "TSEG1: %u - %u\r\n"
            "TSEG2: %u - %u\r\n"
            "SJW (max): %u\r\n"
            "BRP: %u - %u\r\n"
            % (
                self.feature,
                self.fclk_can,
                self.tseg1_min,
                self.tseg1_max,
                self.tseg2_min,
                self.tseg2_max,
                self.sjw_max,
                self.brp_min,
                self.brp_max,
            )
        )
        if self.has_fd_timing:
            result += (
                "Data Phase (CAN FD):\r\n"
                "  DTSEG1: %u - %u\r\n"
                "  DTSEG2: %u - %u\r\n"
                "  DSJW (max): %u\r\n"
                "  DBRP: %u - %u\r\n"
                % (
                    self.dtseg1_min,
                    self.dtseg1_max,
                    self.dtseg2_min,
                    self.dtseg2_max,
                    self.dsjw_max,
                    self.dbrp_min,
                    self.dbrp_max,
                )
            )
        return result

    @staticmethod
    def unpack(data: bytes) -> "DeviceCapability":
        """Unpack from BT_CONST response (40 bytes, 10 x uint32)."""
        return DeviceCapability(*unpack(_BT_CONST_FORMAT, bytes(data)))

    @staticmethod
    def unpack_extended(data: bytes) -> "DeviceCapability":
        """Unpack from BT_CONST_EXT response (72 bytes, 18 x uint32)."""
        return DeviceCapability(*unpack(_BT_CONST_EXT_FORMAT, bytes(data)))


@dataclass(frozen=True)
class DeviceState:
    """
    CAN device state from GS_USB_BREQ_GET_STATE response.

    Contains the current CAN bus state and error counters.
    """

    state: Union[CanState, int]
    rxerr: int
    txerr: int

    @property
    def state_name(self) -> str:
        """Get human-readable state name."""
        return GS_CAN_STATE_NAMES.get(self.state, f"UNKNOWN({self.state})")

    @property
    def is_error_active(self) -> bool:
        return self.state == CanState.ERROR_ACTIVE

    @property
    def is_error_warning(self) -> bool:
        return self.state == CanState.ERROR_WARNING

    @property
    def is_error_passive(self) -> bool:
        return self.state == CanState.ERROR_PASSIVE

    @property
    def is_bus_off(self) -> bool:
        return self.state == CanState.BUS_OFF

    def __str__(self):
        return (
            f"State: {self.state_name}\r\n"
            f"RX Error Counter: {self.rxerr}\r\n"
            f"TX Error Counter: {self.txerr}\r\n"
        )

    @staticmethod
    def unpack(data: bytes) -> "DeviceState":
        """Unpack from GET_STATE response (12 bytes, 3 x uint32)."""
        state, rxerr, txerr = unpack(_DEVICE_STATE_FORMAT, bytes(data))
        if state in GS_CAN_STATE_NAMES:
            state = CanState(state)
        return DeviceState(state, rxerr, txerr)
