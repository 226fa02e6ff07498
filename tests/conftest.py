import queue
from struct import pack, unpack

import pytest

from gs_usb_core.constants import (
    CAN_ERR_FLAG,
    GS_CAN_FEATURE_BT_CONST_EXT,
    GS_CAN_FEATURE_FD,
    GS_CAN_FEATURE_GET_STATE,
    GS_CAN_FEATURE_HW_TIMESTAMP,
    GS_CAN_FEATURE_IDENTIFY,
    GS_CAN_FEATURE_LISTEN_ONLY,
    GS_CAN_FEATURE_LOOP_BACK,
    GS_CAN_FEATURE_ONE_SHOT,
    GS_CAN_FEATURE_TERMINATION,
    GS_CAN_MODE_HW_TIMESTAMP,
    GS_CAN_MODE_LOOP_BACK,
    GS_CAN_MODE_START,
    GS_USB_BREQ_BITTIMING,
    GS_USB_BREQ_BT_CONST,
    GS_USB_BREQ_BT_CONST_EXT,
    GS_USB_BREQ_DATA_BITTIMING,
    GS_USB_BREQ_DEVICE_CONFIG,
    GS_USB_BREQ_GET_STATE,
    GS_USB_BREQ_GET_TERMINATION,
    GS_USB_BREQ_MODE,
    GS_USB_BREQ_TIMESTAMP,
    GS_USB_RX_ECHO_ID,
)
from gs_usb_core.errors import Disconnected, ReadTimeout, TransportError
from gs_usb_core.gs_usb import DeviceSession
from gs_usb_core.gs_usb_frame import GsUsbFrame
from gs_usb_core.gs_usb_structures import DeviceBitTiming

CLASSIC_FEATURES = (
    GS_CAN_FEATURE_LISTEN_ONLY
    | GS_CAN_FEATURE_LOOP_BACK
    | GS_CAN_FEATURE_ONE_SHOT
    | GS_CAN_FEATURE_HW_TIMESTAMP
    | GS_CAN_FEATURE_IDENTIFY
    | GS_CAN_FEATURE_GET_STATE
)
FD_FEATURES = (
    CLASSIC_FEATURES
    | GS_CAN_FEATURE_FD
    | GS_CAN_FEATURE_BT_CONST_EXT
    | GS_CAN_FEATURE_TERMINATION
)

# tseg1_min, tseg1_max, tseg2_min, tseg2_max, sjw_max, brp_min, brp_max, brp_inc
CANDLELIGHT_LIMITS = (1, 16, 1, 8, 4, 1, 1024, 1)
# register ranges of an M_CAN style FD controller
FD_NOMINAL_LIMITS = (1, 256, 1, 128, 128, 1, 512, 1)
FD_DATA_LIMITS = (1, 32, 1, 16, 16, 1, 32, 1)


def bt_const(feature, fclk_can, limits=CANDLELIGHT_LIMITS):
    return pack("<10I", feature, fclk_can, *limits)


def bt_const_ext(feature, fclk_can, limits, data_limits):
    return pack("<18I", feature, fclk_can, *limits, *data_limits)


class FakeGsUsbDevice:
    r"""
    In-memory gs_usb adapter speaking the Transport protocol.

    Every transmitted frame is echoed back. In LOOP_BACK mode a copy with the
    RX echo id follows the echo, like a frame received from the bus.
    """

    def __init__(self, feature=CLASSIC_FEATURES, fclk_can=48000000, ext=None):
        self.responses = {GS_USB_BREQ_BT_CONST: bt_const(feature, fclk_can)}
        if ext is not None:
            self.responses[GS_USB_BREQ_BT_CONST_EXT] = ext
        self.responses[GS_USB_BREQ_DEVICE_CONFIG] = pack("<4B2I", 0, 0, 0, 1, 22, 10)
        self.responses[GS_USB_BREQ_GET_STATE] = pack("<3I", 0, 0, 0)
        self.responses[GS_USB_BREQ_TIMESTAMP] = pack("<I", 123456)
        self.responses[GS_USB_BREQ_GET_TERMINATION] = pack("<I", 1)
        self.control_out_calls = []
        self.control_in_calls = []
        self.bulk_out_packets = []
        self.bulk_in_sizes = []
        self.bit_timings = {}
        self.inbound = queue.Queue()
        self.stalled = set()
        self.opened = 0
        self.closed = 0
        self.connected = True
        self.auto_echo = True
        self.error_echo = False
        self.bulk_out_error = None
        self.mode_flags = 0
        self.clock_us = 1000

    @property
    def serial_number(self):
        return "FAKE0001"

    @property
    def hw_timestamp(self):
        return bool(self.mode_flags & GS_CAN_MODE_HW_TIMESTAMP)

    def _check_connected(self):
        if not self.connected:
            raise Disconnected("No such device")

    def open(self):
        self._check_connected()
        self.opened += 1

    def close(self):
        self.closed += 1

    def control_out(self, request, value, data):
        self._check_connected()
        if request in self.stalled:
            raise TransportError("Pipe error")
        data = bytes(data)
        self.control_out_calls.append((request, value, data))
        if request == GS_USB_BREQ_MODE:
            mode, flags = unpack("<II", data)
            self.mode_flags = flags if mode == GS_CAN_MODE_START else 0
        elif request in (GS_USB_BREQ_BITTIMING, GS_USB_BREQ_DATA_BITTIMING):
            self.bit_timings[request] = DeviceBitTiming.unpack(data)

    def control_in(self, request, value, length):
        self._check_connected()
        if request in self.stalled or request not in self.responses:
            raise TransportError("Pipe error")
        self.control_in_calls.append((request, value, length))
        return self.responses[request][:length]

    def bulk_out(self, data, timeout_ms):
        self._check_connected()
        if self.bulk_out_error is not None:
            raise self.bulk_out_error
        data = bytes(data)
        self.bulk_out_packets.append(data)
        if not self.auto_echo:
            return
        frame = GsUsbFrame.from_bytes(data, self.hw_timestamp)
        self.clock_us += 100
        frame.timestamp_us = self.clock_us
        if self.error_echo:
            frame.can_id |= CAN_ERR_FLAG
        self.inbound.put(frame.pack(self.hw_timestamp))
        if self.mode_flags & GS_CAN_MODE_LOOP_BACK:
            self.inbound.put(frame.with_echo_id(GS_USB_RX_ECHO_ID).pack(self.hw_timestamp))

    def bulk_in(self, size, timeout_ms):
        self._check_connected()
        self.bulk_in_sizes.append(size)
        try:
            packet = self.inbound.get(timeout=timeout_ms / 1000.0)
        except queue.Empty:
            raise ReadTimeout("Operation timed out") from None
        if packet is None:
            raise Disconnected("No such device")
        return packet

    def inject(self, frame):
        self.inbound.put(frame.pack(self.hw_timestamp))

    def inject_raw(self, packet):
        self.inbound.put(bytes(packet))

    def disconnect(self):
        self.connected = False
        # wake up a pending bulk_in
        self.inbound.put(None)

    def reconnect(self):
        self.connected = True
        self.inbound = queue.Queue()

    def requests(self, request):
        return [call for call in self.control_out_calls if call[0] == request]

    def __str__(self):
        return "FakeGsUsbDevice"


@pytest.fixture
def device():
    r"""candleLight style classic CAN adapter, 48 MHz"""
    return FakeGsUsbDevice()


@pytest.fixture
def fd_device():
    r"""CAN FD adapter with an 80 MHz clock"""
    return FakeGsUsbDevice(
        FD_FEATURES,
        80000000,
        ext=bt_const_ext(FD_FEATURES, 80000000, FD_NOMINAL_LIMITS, FD_DATA_LIMITS),
    )


@pytest.fixture
def fd_device_40mhz():
    return FakeGsUsbDevice(
        FD_FEATURES,
        40000000,
        ext=bt_const_ext(FD_FEATURES, 40000000, FD_NOMINAL_LIMITS, FD_DATA_LIMITS),
    )


@pytest.fixture
def session(device):
    dev = DeviceSession(device)
    dev.open()
    yield dev
    dev.close()


@pytest.fixture
def running(session):
    session.set_bitrate(500000)
    session.start(GS_CAN_MODE_LOOP_BACK)
    return session
