import logging
import threading
import time
from collections import deque
from typing import List, Optional

from .constants import (
    GS_CAN_FEATURE_GET_STATE,
    GS_CAN_MODE_NORMAL,
    SAMPLE_POINT_DATA,
    SAMPLE_POINT_NOMINAL,
)
from .errors import (
    Disconnected,
    InvalidFrame,
    ReadTimeout,
    TransmitError,
    WriteTimeout,
)
from .gs_usb_control import ControlProtocol, SessionState
from .gs_usb_echo import EchoCorrelator
from .gs_usb_frame import GsUsbFrame, frame_size
from .gs_usb_structures import DeviceCapability, DeviceInfo, DeviceState
from .gs_usb_transport import PyUsbTransport

logger = logging.getLogger(__name__)

# How long a sender holds the inbound stream while pumping echoes itself
PUMP_SLICE_MS = 10

# Bus frames a sender may queue for the next read, oldest dropped first
RX_QUEUE_SIZE = 1024


def _remaining_ms(deadline):
    return (deadline - time.monotonic()) * 1000.0


class DeviceSession:
    r"""
    One opened gs_usb channel.

    Usage::

        with open_device() as dev:
            dev.set_bitrate(500000)
            dev.start(GS_CAN_MODE_LOOP_BACK)
            dev.send(GsUsbFrame(0x123, b"\x01\x02\x03"))
            frame = dev.read(100)

    One send and one read may be in flight at the same time, from different
    threads. Echo frames and bus frames share the bulk IN endpoint; whoever
    currently owns that endpoint classifies each packet and routes echoes to
    the correlator and bus frames to the read queue.
    """

    def __init__(self, transport, channel=0, correlator=None, rx_queue_size=RX_QUEUE_SIZE):
        self.transport = transport
        self.control = ControlProtocol(transport, channel)
        self.correlator = correlator if correlator is not None else EchoCorrelator()
        self._send_lock = threading.Lock()
        self._read_lock = threading.Lock()
        self._inbound_lock = threading.Lock()
        self._rx_queue = deque(maxlen=rx_queue_size)
        self._rx_overrun = False
        self.rx_dropped = 0

    def __enter__(self):
        if self.state in (SessionState.CLOSED, SessionState.DISCONNECTED):
            self.open()
        return self

    def __exit__(self, exc_type, exc_value, traceback):
        self.close()

    def __str__(self):
        return str(self.transport)

    @property
    def state(self) -> SessionState:
        return self.control.state

    @property
    def channel(self) -> int:
        return self.control.channel

    def open(self):
        self.control.open()
        with self._inbound_lock:
            self._rx_queue.clear()

    def close(self):
        self.control.close()
        self.correlator.cancel_all()
        with self._inbound_lock:
            self._rx_queue.clear()

    def start(self, flags=GS_CAN_MODE_NORMAL):
        r"""
        Start gs_usb channel
        :param flags: GS_CAN_MODE_LISTEN_ONLY, GS_CAN_MODE_HW_TIMESTAMP, etc.
        """
        with self._inbound_lock:
            self._rx_queue.clear()
        self.control.start(flags)

    def stop(self):
        self.control.stop()
        self.correlator.cancel_all()

    def set_bitrate(self, bitrate, sample_point=SAMPLE_POINT_NOMINAL, sjw=None):
        return self.control.set_bitrate(bitrate, sample_point, sjw)

    def set_timing(self, prop_seg, phase_seg1, phase_seg2, sjw, brp):
        return self.control.set_timing(prop_seg, phase_seg1, phase_seg2, sjw, brp)

    def set_data_bitrate(self, bitrate, sample_point=SAMPLE_POINT_DATA, sjw=None):
        return self.control.set_data_bitrate(bitrate, sample_point, sjw)

    def set_data_timing(self, prop_seg, phase_seg1, phase_seg2, sjw, brp):
        return self.control.set_data_timing(prop_seg, phase_seg1, phase_seg2, sjw, brp)

    @property
    def device_info(self) -> DeviceInfo:
        return self.control.get_device_info()

    @property
    def device_capability(self) -> DeviceCapability:
        return self.control.device_capability

    @property
    def supports_fd(self) -> bool:
        return self.device_capability.supports_fd

    @property
    def supports_get_state(self) -> bool:
        return self.device_capability.supports(GS_CAN_FEATURE_GET_STATE)

    def get_state(self) -> DeviceState:
        return self.control.get_state()

    def _receive_packet(self, timeout_ms):
        size = frame_size(self.control.hw_timestamp, self.control.fd_mode)
        try:
            return self.transport.bulk_in(size, max(1, int(timeout_ms)))
        except Disconnected:
            self.control.mark_disconnected()
            raise

    def _dispatch(self, packet) -> Optional[GsUsbFrame]:
        r"""
        Classify one inbound packet
        :return: the frame if it is bus traffic, None if it was an echo or unusable
        """
        try:
            frame = GsUsbFrame.from_bytes(packet, self.control.hw_timestamp)
        except InvalidFrame as e:
            logger.warning("Dropping undecodable packet %s: %s", bytes(packet).hex(), e)
            return None
        if frame.is_echo_frame:
            self.correlator.resolve(frame.echo_id, frame)
            return None
        if frame.is_overflow:
            logger.warning("Channel %u: receive overflow, frames were lost", frame.channel)
        return frame

    def send(self, frame: GsUsbFrame, timeout_ms=1000) -> GsUsbFrame:
        r"""
        Send frame and wait until the device reports it transmitted
        :param frame: GsUsbFrame
        :param timeout_ms: deadline for the whole operation in ms
        :return: the echoed frame, carrying the transmit timestamp in HW_TIMESTAMP mode
        :raises WriteTimeout: if the device did not confirm in time. The frame may
                              still go out later; its echo is then ignored.
        :raises TransmitError: if the device echoed the frame with the error flag
        """
        deadline = time.monotonic() + timeout_ms / 1000.0
        self.control.require_running("send")
        if not self._send_lock.acquire(timeout=max(0.0, _remaining_ms(deadline) / 1000.0)):
            raise WriteTimeout("Another send is still in flight")
        try:
            echo_id = self.correlator.allocate()
            pending = self.correlator.pending(echo_id)
            try:
                packet = frame.with_echo_id(echo_id).pack(self.control.hw_timestamp)
                self.transport.bulk_out(packet, max(1, int(_remaining_ms(deadline))))
                self._wait_for_echo(pending, deadline)
            except Disconnected:
                self.correlator.cancel(echo_id)
                self.control.mark_disconnected()
                raise
            except BaseException:
                self.correlator.cancel(echo_id)
                raise
        finally:
            self._send_lock.release()

        echo = pending.outcome
        if echo.is_error_frame:
            raise TransmitError(echo)
        return echo

    def _wait_for_echo(self, pending, deadline):
        while not pending.done:
            remaining = _remaining_ms(deadline)
            if remaining <= 0:
                raise WriteTimeout(
                    "Echo id %u not confirmed by the device in time" % pending.echo_id
                )
            # A reader owns the inbound stream and will resolve the echo
            if not self._inbound_lock.acquire(blocking=False):
                pending.wait(min(remaining, PUMP_SLICE_MS) / 1000.0)
                continue
            try:
                packet = self._receive_packet(min(remaining, PUMP_SLICE_MS))
            except ReadTimeout:
                continue
            else:
                frame = self._dispatch(packet)
                if frame is not None:
                    self._queue_frame(frame)
            finally:
                self._inbound_lock.release()

    def _queue_frame(self, frame):
        if len(self._rx_queue) == self._rx_queue.maxlen:
            if not self._rx_overrun:
                logger.warning(
                    "Channel %u: receive queue full (%u frames), dropping the oldest",
                    self.control.channel,
                    self._rx_queue.maxlen,
                )
            self._rx_overrun = True
            self.rx_dropped += 1
        else:
            self._rx_overrun = False
        self._rx_queue.append(frame)

    def read(self, timeout_ms) -> GsUsbFrame:
        r"""
        Read the next frame received from the bus
        :param timeout_ms: deadline in ms
        :return: GsUsbFrame with echo_id GS_USB_RX_ECHO_ID
        :raises ReadTimeout: if no bus frame arrived in time
        """
        deadline = time.monotonic() + timeout_ms / 1000.0
        self.control.require_running("read")
        if not self._read_lock.acquire(timeout=max(0.0, _remaining_ms(deadline) / 1000.0)):
            raise ReadTimeout("Another read is still in flight")
        try:
            if not self._inbound_lock.acquire(
                timeout=max(0.0, _remaining_ms(deadline) / 1000.0)
            ):
                raise ReadTimeout("No frame received in time")
            try:
                while True:
                    if self._rx_queue:
                        return self._rx_queue.popleft()
                    remaining = _remaining_ms(deadline)
                    if remaining <= 0:
                        raise ReadTimeout("No frame received in time")
                    frame = self._dispatch(self._receive_packet(remaining))
                    if frame is not None:
                        return frame
            finally:
                self._inbound_lock.release()
        finally:
            self._read_lock.release()


def scan() -> List[DeviceSession]:
    r"""
    Retrieve the list of gs_usb devices, not yet opened
    """
    return [DeviceSession(transport) for transport in PyUsbTransport.scan()]


def find(bus, address) -> Optional[DeviceSession]:
    r"""
    Find a specific gs_usb device
    :return: The unopened session if found, else None
    """
    transport = PyUsbTransport.find(bus, address)
    if transport is None:
        return None
    return DeviceSession(transport)


def open_device(bus=None, address=None, channel=0) -> DeviceSession:
    r"""
    Open the first gs_usb device, or the one at bus/address
    :raises DeviceNotFound: if there is no such device
    """
    session = DeviceSession(PyUsbTransport.find_first(bus, address), channel)
    session.open()
    return session
