from enum import IntEnum
from types import MappingProxyType

# gs_usb mode flags
GS_CAN_MODE_NORMAL = 0
GS_CAN_MODE_LISTEN_ONLY = 1 << 0
GS_CAN_MODE_LOOP_BACK = 1 << 1
GS_CAN_MODE_TRIPLE_SAMPLE = 1 << 2
GS_CAN_MODE_ONE_SHOT = 1 << 3
GS_CAN_MODE_HW_TIMESTAMP = 1 << 4
GS_CAN_MODE_IDENTIFY = 1 << 5
GS_CAN_MODE_USER_ID = 1 << 6
GS_CAN_MODE_PAD_PKTS_TO_MAX_PKT_SIZE = 1 << 7
GS_CAN_MODE_FD = 1 << 8
GS_CAN_MODE_BERR_REPORTING = 1 << 12

# Mode flags this driver knows how to operate with
GS_CAN_MODE_DRIVER_SUPPORTED = (
    GS_CAN_MODE_LISTEN_ONLY
    | GS_CAN_MODE_LOOP_BACK
    | GS_CAN_MODE_ONE_SHOT
    | GS_CAN_MODE_HW_TIMESTAMP
    | GS_CAN_MODE_FD
)

# gs_usb channel mode (DeviceMode.mode)
GS_CAN_MODE_RESET = 0
GS_CAN_MODE_START = 1

# gs_usb device feature flags (from BT_CONST response)
GS_CAN_FEATURE_LISTEN_ONLY = 1 << 0
GS_CAN_FEATURE_LOOP_BACK = 1 << 1
GS_CAN_FEATURE_TRIPLE_SAMPLE = 1 << 2
GS_CAN_FEATURE_ONE_SHOT = 1 << 3
GS_CAN_FEATURE_HW_TIMESTAMP = 1 << 4
GS_CAN_FEATURE_IDENTIFY = 1 << 5
GS_CAN_FEATURE_USER_ID = 1 << 6
GS_CAN_FEATURE_PAD_PKTS_TO_MAX_PKT_SIZE = 1 << 7
GS_CAN_FEATURE_FD = 1 << 8
GS_CAN_FEATURE_REQ_USB_QUIRK_LPC546XX = 1 << 9
GS_CAN_FEATURE_BT_CONST_EXT = 1 << 10
GS_CAN_FEATURE_TERMINATION = 1 << 11
GS_CAN_FEATURE_BERR_REPORTING = 1 << 12
GS_CAN_FEATURE_GET_STATE = 1 << 13

GS_CAN_FEATURE_NAMES = MappingProxyType(
    {
        GS_CAN_FEATURE_LISTEN_ONLY: "LISTEN_ONLY",
        GS_CAN_FEATURE_LOOP_BACK: "LOOP_BACK",
        GS_CAN_FEATURE_TRIPLE_SAMPLE: "TRIPLE_SAMPLE",
        GS_CAN_FEATURE_ONE_SHOT: "ONE_SHOT",
        GS_CAN_FEATURE_HW_TIMESTAMP: "HW_TIMESTAMP",
        GS_CAN_FEATURE_IDENTIFY: "IDENTIFY",
        GS_CAN_FEATURE_USER_ID: "USER_ID",
        GS_CAN_FEATURE_PAD_PKTS_TO_MAX_PKT_SIZE: "PAD_PKTS_TO_MAX_PKT_SIZE",
        GS_CAN_FEATURE_FD: "FD",
        GS_CAN_FEATURE_REQ_USB_QUIRK_LPC546XX: "REQ_USB_QUIRK_LPC546XX",
        GS_CAN_FEATURE_BT_CONST_EXT: "BT_CONST_EXT",
        GS_CAN_FEATURE_TERMINATION: "TERMINATION",
        GS_CAN_FEATURE_BERR_REPORTING: "BERR_REPORTING",
        GS_CAN_FEATURE_GET_STATE: "GET_STATE",
    }
)

# gs_usb control requests (bRequest)
GS_USB_BREQ_HOST_FORMAT = 0
GS_USB_BREQ_BITTIMING = 1
GS_USB_BREQ_MODE = 2
GS_USB_BREQ_BERR = 3
GS_USB_BREQ_BT_CONST = 4
GS_USB_BREQ_DEVICE_CONFIG = 5
GS_USB_BREQ_TIMESTAMP = 6
GS_USB_BREQ_IDENTIFY = 7
GS_USB_BREQ_GET_USER_ID = 8
GS_USB_BREQ_SET_USER_ID = 9
GS_USB_BREQ_DATA_BITTIMING = 10
GS_USB_BREQ_BT_CONST_EXT = 11
GS_USB_BREQ_SET_TERMINATION = 12
GS_USB_BREQ_GET_TERMINATION = 13
GS_USB_BREQ_GET_STATE = 14

# bmRequestType: vendor request addressed to the interface
GS_USB_REQ_TYPE_OUT = 0x41
GS_USB_REQ_TYPE_IN = 0xC1

# HOST_FORMAT payload announcing little endian transfers
GS_USB_HOST_FORMAT_LITTLE_ENDIAN = 0x0000BEEF

# gs_usb VIDs/PIDs (devices currently in the linux kernel driver)
GS_USB_ID_VENDOR = 0x1D50
GS_USB_ID_PRODUCT = 0x606F

GS_USB_CANDLELIGHT_VENDOR_ID = 0x1209
GS_USB_CANDLELIGHT_PRODUCT_ID = 0x2323

GS_USB_CES_CANEXT_FD_VENDOR_ID = 0x1CD2
GS_USB_CES_CANEXT_FD_PRODUCT_ID = 0x606F

GS_USB_ABE_CANDEBUGGER_FD_VENDOR_ID = 0x16D0
GS_USB_ABE_CANDEBUGGER_FD_PRODUCT_ID = 0x10B8

GS_USB_DEVICE_IDS = frozenset(
    {
        (GS_USB_ID_VENDOR, GS_USB_ID_PRODUCT),
        (GS_USB_CANDLELIGHT_VENDOR_ID, GS_USB_CANDLELIGHT_PRODUCT_ID),
        (GS_USB_CES_CANEXT_FD_VENDOR_ID, GS_USB_CES_CANEXT_FD_PRODUCT_ID),
        (GS_USB_ABE_CANDEBUGGER_FD_VENDOR_ID, GS_USB_ABE_CANDEBUGGER_FD_PRODUCT_ID),
    }
)

# USB endpoints and interface
GS_USB_ENDPOINT_OUT = 0x02
GS_USB_ENDPOINT_IN = 0x81
GS_USB_INTERFACE = 0

# Special address description flags for the CAN_ID
CAN_EFF_FLAG = 0x80000000  # EFF/SFF is set in the MSB
CAN_RTR_FLAG = 0x40000000  # remote transmission request
CAN_ERR_FLAG = 0x20000000  # error message frame

# Valid bits in CAN ID for frame formats
CAN_SFF_MASK = 0x000007FF  # standard frame format (SFF)
CAN_EFF_MASK = 0x1FFFFFFF  # extended frame format (EFF)
CAN_ERR_MASK = 0x1FFFFFFF  # omit EFF, RTR, ERR flags

# CAN payload length and DLC definitions according to ISO 11898-1
CAN_MAX_DLC = 8
CAN_MAX_DLEN = 8

# CAN FD payload length and DLC definitions
CANFD_MAX_DLC = 15
CANFD_MAX_DLEN = 64

# CAN FD frame flags (in gs_host_frame.flags field)
GS_CAN_FLAG_OVERFLOW = 1 << 0  # RX overflow occurred
GS_CAN_FLAG_FD = 1 << 1  # CAN FD frame
GS_CAN_FLAG_BRS = 1 << 2  # Bit rate switch (FD frame transmitted at data bitrate)
GS_CAN_FLAG_ESI = 1 << 3  # Error state indicator

# DLC to length conversion for CAN FD
CANFD_DLC_TO_LEN = (0, 1, 2, 3, 4, 5, 6, 7, 8, 12, 16, 20, 24, 32, 48, 64)

# Echo id carried by frames received from the bus
GS_USB_RX_ECHO_ID = 0xFFFFFFFF

# Host frame sizes: 12 byte header + data slot + optional 4 byte timestamp
GS_USB_FRAME_HEADER_SIZE = 12
GS_USB_FRAME_SIZE = 20
GS_USB_FRAME_SIZE_HW_TIMESTAMP = 24
GS_USB_FRAME_SIZE_FD = 76
GS_USB_FRAME_SIZE_FD_HW_TIMESTAMP = 80

# Hardware timestamps are a free running 32 bit microsecond counter
GS_USB_TIMESTAMP_MODULUS = 1 << 32

# Default sample points (percent)
SAMPLE_POINT_NOMINAL = 87.5
SAMPLE_POINT_DATA = 75.0

# Highest CAN FD data phase bitrate per CAN clock. A 10 Mbit/s data phase needs
# the 40 MHz clock, an 80 MHz clock stops at 8 Mbit/s.
GS_CAN_FD_DATA_BITRATE_MAX = MappingProxyType({80000000: 8000000, 40000000: 10000000})


class CanState(IntEnum):
    """CAN channel bus state reported by GET_STATE."""

    ERROR_ACTIVE = 0  # TEC/REC < 96
    ERROR_WARNING = 1  # TEC/REC >= 96
    ERROR_PASSIVE = 2  # TEC/REC >= 128
    BUS_OFF = 3  # TEC >= 256
    STOPPED = 4
    SLEEPING = 5


GS_CAN_STATE_NAMES = MappingProxyType({state: state.name for state in CanState})
