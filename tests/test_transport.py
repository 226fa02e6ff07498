import errno
from array import array
from unittest import mock

import pytest
import usb.core

from gs_usb_core import gs_usb
from gs_usb_core.constants import (
    GS_USB_BREQ_BT_CONST,
    GS_USB_BREQ_MODE,
    GS_USB_CANDLELIGHT_PRODUCT_ID,
    GS_USB_CANDLELIGHT_VENDOR_ID,
)
from gs_usb_core.errors import (
    DeviceNotFound,
    Disconnected,
    ReadTimeout,
    TransportError,
    WriteTimeout,
)
from gs_usb_core.gs_usb_transport import PyUsbTransport, is_gs_usb_device


def usb_device(vendor=GS_USB_CANDLELIGHT_VENDOR_ID, product=GS_USB_CANDLELIGHT_PRODUCT_ID):
    dev = mock.Mock()
    dev.idVendor = vendor
    dev.idProduct = product
    dev.bus = 1
    dev.address = 7
    dev.serial_number = "0042"
    return dev


def timeout_error():
    return usb.core.USBTimeoutError("Operation timed out", -7, errno.ETIMEDOUT)


def test_control_out_request_layout():
    dev = usb_device()
    transport = PyUsbTransport(dev)

    transport.control_out(GS_USB_BREQ_MODE, 1, b"\x01\x00\x00\x00\x00\x00\x00\x00")

    dev.ctrl_transfer.assert_called_once_with(
        0x41, GS_USB_BREQ_MODE, 1, 0, b"\x01\x00\x00\x00\x00\x00\x00\x00", 1000
    )


def test_control_in_returns_bytes():
    dev = usb_device()
    dev.ctrl_transfer.return_value = array("B", range(40))

    data = PyUsbTransport(dev).control_in(GS_USB_BREQ_BT_CONST, 0, 40)

    assert data == bytes(range(40))
    dev.ctrl_transfer.assert_called_once_with(0xC1, GS_USB_BREQ_BT_CONST, 0, 0, 40, 1000)


def test_short_control_response():
    dev = usb_device()
    dev.ctrl_transfer.return_value = array("B", [1, 2])

    with pytest.raises(TransportError):
        PyUsbTransport(dev).control_in(GS_USB_BREQ_BT_CONST, 0, 40)


def test_bulk_transfers():
    dev = usb_device()
    dev.read.return_value = array("B", range(20))
    transport = PyUsbTransport(dev)

    transport.bulk_out(b"\x00" * 20, 100)
    data = transport.bulk_in(20, 50)

    dev.write.assert_called_once_with(0x02, b"\x00" * 20, 100)
    dev.read.assert_called_once_with(0x81, 20, 50)
    assert data == bytes(range(20))


def test_read_timeout_translation():
    dev = usb_device()
    dev.read.side_effect = timeout_error()

    with pytest.raises(ReadTimeout) as exc_info:
        PyUsbTransport(dev).bulk_in(20, 10)

    assert isinstance(exc_info.value.__cause__, usb.core.USBTimeoutError)


def test_write_timeout_translation():
    dev = usb_device()
    dev.write.side_effect = timeout_error()

    with pytest.raises(WriteTimeout):
        PyUsbTransport(dev).bulk_out(b"\x00" * 20, 10)


def test_vanished_device_translation():
    dev = usb_device()
    dev.read.side_effect = usb.core.USBError("No such device", -4, errno.ENODEV)

    with pytest.raises(Disconnected):
        PyUsbTransport(dev).bulk_in(20, 10)


def test_other_usb_errors_translation():
    dev = usb_device()
    dev.ctrl_transfer.side_effect = usb.core.USBError("Pipe error", -9, errno.EPIPE)

    with pytest.raises(TransportError):
        PyUsbTransport(dev).control_out(GS_USB_BREQ_MODE, 0, b"")


@mock.patch("gs_usb_core.gs_usb_transport.platform.system", return_value="Linux")
@mock.patch("gs_usb_core.gs_usb_transport.usb.util")
def test_open_claims_interface(usb_util, _system):
    dev = usb_device()
    dev.is_kernel_driver_active.return_value = True
    transport = PyUsbTransport(dev)

    transport.open()
    transport.close()
    transport.close()

    dev.reset.assert_called_once_with()
    dev.detach_kernel_driver.assert_called_once_with(0)
    usb_util.claim_interface.assert_called_once_with(dev, 0)
    usb_util.release_interface.assert_called_once_with(dev, 0)
    usb_util.dispose_resources.assert_called_once_with(dev)


def test_serial_number_unreadable():
    dev = mock.Mock()
    type(dev).serial_number = mock.PropertyMock(side_effect=ValueError("no langid"))

    assert PyUsbTransport(dev).serial_number == ""


def test_device_id_filter():
    assert is_gs_usb_device(usb_device())
    assert not is_gs_usb_device(usb_device(0x1234, 0x5678))


@mock.patch("gs_usb_core.gs_usb_transport.libusb1.get_backend")
@mock.patch("gs_usb_core.gs_usb_transport.usb.core.find")
def test_scan(find, _backend):
    devices = [usb_device(), usb_device()]
    find.return_value = iter(devices)

    sessions = gs_usb.scan()

    assert [session.transport.gs_usb for session in sessions] == devices
    assert find.call_args.kwargs["find_all"] is True


@mock.patch("gs_usb_core.gs_usb_transport.libusb1.get_backend")
@mock.patch("gs_usb_core.gs_usb_transport.usb.core.find")
def test_find_by_bus_and_address(find, _backend):
    dev = usb_device()
    find.return_value = dev

    session = gs_usb.find(1, 7)

    assert session.transport.gs_usb is dev
    assert find.call_args.kwargs["bus"] == 1
    assert find.call_args.kwargs["address"] == 7


@mock.patch("gs_usb_core.gs_usb_transport.libusb1.get_backend")
@mock.patch("gs_usb_core.gs_usb_transport.usb.core.find", return_value=None)
def test_find_nothing(_find, _backend):
    assert gs_usb.find(1, 7) is None


@mock.patch("gs_usb_core.gs_usb_transport.libusb1.get_backend")
@mock.patch("gs_usb_core.gs_usb_transport.usb.core.find")
def test_open_device_without_adapter(find, _backend):
    find.return_value = iter([])

    with pytest.raises(DeviceNotFound):
        gs_usb.open_device()


def test_zero_read_timeout_does_not_block_forever():
    dev = usb_device()
    dev.read.side_effect = timeout_error()

    with pytest.raises(ReadTimeout):
        PyUsbTransport(dev).bulk_in(20, 0)

    dev.read.assert_called_once_with(0x81, 20, 1)
