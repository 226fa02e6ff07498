import errno
import logging
import platform
from contextlib import contextmanager
from typing import List, Optional, Protocol

import usb.core
import usb.util
from usb.backend import libusb1

from .constants import (
    GS_USB_DEVICE_IDS,
    GS_USB_ENDPOINT_IN,
    GS_USB_ENDPOINT_OUT,
    GS_USB_INTERFACE,
    GS_USB_REQ_TYPE_IN,
    GS_USB_REQ_TYPE_OUT,
)
from .errors import (
    DeviceNotFound,
    Disconnected,
    ReadTimeout,
    TransportError,
    WriteTimeout,
)

logger = logging.getLogger(__name__)

# libusb reports a vanished device as LIBUSB_ERROR_NO_DEVICE
_LIBUSB_ERROR_NO_DEVICE = -4

CONTROL_TIMEOUT_MS = 1000


class Transport(Protocol):
    """
    What the protocol engine needs from the USB layer.

    Implementations raise Disconnected when the device is gone, ReadTimeout /
    WriteTimeout when a bulk transfer times out and TransportError otherwise.
    """

    def open(self) -> None:
        ...

    def close(self) -> None:
        ...

    def control_out(self, request: int, value: int, data: bytes) -> None:
        ...

    def control_in(self, request: int, value: int, length: int) -> bytes:
        ...

    def bulk_out(self, data: bytes, timeout_ms: int) -> None:
        ...

    def bulk_in(self, size: int, timeout_ms: int) -> bytes:
        ...

    @property
    def serial_number(self) -> str:
        ...


def _is_disconnect(error):
    return (
        error.errno == errno.ENODEV
        or getattr(error, "backend_error_code", None) == _LIBUSB_ERROR_NO_DEVICE
    )


@contextmanager
def _usb_errors(timeout_error=TransportError):
    try:
        yield
    except usb.core.USBTimeoutError as e:
        raise timeout_error(str(e)) from e
    except usb.core.USBError as e:
        if _is_disconnect(e):
            raise Disconnected(str(e)) from e
        raise TransportError(str(e)) from e


def is_gs_usb_device(dev) -> bool:
    return (dev.idVendor, dev.idProduct) in GS_USB_DEVICE_IDS


class PyUsbTransport:
    def __init__(
        self,
        gs_usb,
        interface=GS_USB_INTERFACE,
        endpoint_out=GS_USB_ENDPOINT_OUT,
        endpoint_in=GS_USB_ENDPOINT_IN,
        control_timeout_ms=CONTROL_TIMEOUT_MS,
    ):
        r"""
        :param gs_usb: usb.core.Device of a gs_usb adapter
        :param interface: interface number carrying the CAN channel
        :param control_timeout_ms: timeout of every control transfer
        """
        self.gs_usb = gs_usb
        self.interface = interface
        self.endpoint_out = endpoint_out
        self.endpoint_in = endpoint_in
        self.control_timeout_ms = control_timeout_ms
        self._claimed = False

    def open(self):
        r"""
        Reset the device and claim its interface
        """
        with _usb_errors():
            # Reset to support restart multiple times
            self.gs_usb.reset()

            # Detach usb from kernel driver in Linux/Unix system to perform IO
            if (
                "windows" not in platform.system().lower()
                and self.gs_usb.is_kernel_driver_active(self.interface)
            ):
                self.gs_usb.detach_kernel_driver(self.interface)

            usb.util.claim_interface(self.gs_usb, self.interface)
        self._claimed = True
        logger.debug("Claimed interface %u of %s", self.interface, self)

    def close(self):
        if not self._claimed:
            return
        self._claimed = False
        with _usb_errors():
            usb.util.release_interface(self.gs_usb, self.interface)
            usb.util.dispose_resources(self.gs_usb)

    def control_out(self, request, value, data):
        with _usb_errors():
            self.gs_usb.ctrl_transfer(
                GS_USB_REQ_TYPE_OUT, request, value, 0, data, self.control_timeout_ms
            )

    def control_in(self, request, value, length):
        with _usb_errors():
            data = self.gs_usb.ctrl_transfer(
                GS_USB_REQ_TYPE_IN, request, value, 0, length, self.control_timeout_ms
            )
        if len(data) < length:
            raise TransportError(
                "Short control response to request %u: expected %u bytes, got %u"
                % (request, length, len(data))
            )
        return bytes(data)

    def bulk_out(self, data, timeout_ms):
        with _usb_errors(WriteTimeout):
            self.gs_usb.write(self.endpoint_out, data, timeout_ms)

    def bulk_in(self, size, timeout_ms):
        r"""
        Read one packet
        :param timeout_ms: read time out in ms. pyusb treats 0 as no timeout,
                           so 0 is raised to 1 ms and the read never blocks forever
        """
        with _usb_errors(ReadTimeout):
            return bytes(self.gs_usb.read(self.endpoint_in, size, max(1, int(timeout_ms))))

    @property
    def bus(self):
        return self.gs_usb.bus

    @property
    def address(self):
        return self.gs_usb.address

    @property
    def serial_number(self):
        r"""
        Get gs_usb device serial number in string format
        """
        try:
            return self.gs_usb.serial_number or ""
        except (ValueError, usb.core.USBError):
            return ""

    def __str__(self):
        try:
            _ = "{} ({})".format(self.gs_usb.product, repr(self.gs_usb))
        except (ValueError, usb.core.USBError):
            return "gs_usb {:04x}:{:04x} (bus {}, address {})".format(
                self.gs_usb.idVendor, self.gs_usb.idProduct, self.bus, self.address
            )
        return _

    @classmethod
    def scan(cls) -> List["PyUsbTransport"]:
        r"""
        Retrieve the list of gs_usb devices handle
        :return: list of gs_usb transports
        """
        with _usb_errors():
            devices = usb.core.find(
                find_all=True,
                custom_match=is_gs_usb_device,
                backend=libusb1.get_backend(),
            )
            if devices is None:
                return []
            return [cls(dev) for dev in devices]

    @classmethod
    def find(cls, bus, address) -> Optional["PyUsbTransport"]:
        r"""
        Find a specific gs_usb device
        :return: The gs_usb transport if found, else None
        """
        with _usb_errors():
            gs_usb = usb.core.find(
                custom_match=is_gs_usb_device,
                bus=bus,
                address=address,
                backend=libusb1.get_backend(),
            )
        if gs_usb:
            return cls(gs_usb)
        return None

    @classmethod
    def find_first(cls, bus=None, address=None) -> "PyUsbTransport":
        r"""
        Pick one gs_usb device, the first enumerated one unless bus/address are given
        :raises DeviceNotFound: if nothing matches
        """
        if bus is not None and address is not None:
            transport = cls.find(bus, address)
        else:
            transports = cls.scan()
            transport = transports[0] if transports else None
        if transport is None:
            raise DeviceNotFound(
                "No gs_usb device found"
                if bus is None
                else "No gs_usb device at bus %s address %s" % (bus, address)
            )
        return transport
