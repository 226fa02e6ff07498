from struct import pack, unpack_from

from .constants import (
    CAN_EFF_FLAG,
    CAN_EFF_MASK,
    CAN_ERR_FLAG,
    CAN_MAX_DLEN,
    CAN_RTR_FLAG,
    CAN_SFF_MASK,
    CANFD_DLC_TO_LEN,
    CANFD_MAX_DLC,
    CANFD_MAX_DLEN,
    GS_CAN_FLAG_BRS,
    GS_CAN_FLAG_ESI,
    GS_CAN_FLAG_FD,
    GS_CAN_FLAG_OVERFLOW,
    GS_USB_FRAME_HEADER_SIZE,
    GS_USB_FRAME_SIZE,
    GS_USB_FRAME_SIZE_FD,
    GS_USB_FRAME_SIZE_FD_HW_TIMESTAMP,
    GS_USB_FRAME_SIZE_HW_TIMESTAMP,
    GS_USB_RX_ECHO_ID,
    GS_USB_TIMESTAMP_MODULUS,
)
from .errors import InvalidFrame

_HEADER_FORMAT = "<2I4B"
_TIMESTAMP_FORMAT = "<I"


def dlc_to_len(dlc: int, fd: bool = False) -> int:
    """Convert DLC to data length."""
    if fd:
        if dlc < len(CANFD_DLC_TO_LEN):
            return CANFD_DLC_TO_LEN[dlc]
        return CANFD_MAX_DLEN
    else:
        return min(dlc, CAN_MAX_DLEN)


def len_to_dlc(length: int, fd: bool = False) -> int:
    """Convert data length to DLC, rounding FD lengths up to the next valid size."""
    if fd:
        for dlc, dlen in enumerate(CANFD_DLC_TO_LEN):
            if dlen >= length:
                return dlc
        return CANFD_MAX_DLC
    else:
        return min(length, CAN_MAX_DLEN)


def frame_size(hw_timestamp=False, fd=False) -> int:
    """Return the host frame size in bytes."""
    if fd:
        return GS_USB_FRAME_SIZE_FD_HW_TIMESTAMP if hw_timestamp else GS_USB_FRAME_SIZE_FD
    return GS_USB_FRAME_SIZE_HW_TIMESTAMP if hw_timestamp else GS_USB_FRAME_SIZE


def timestamp_diff_us(later: int, earlier: int) -> int:
    """Microseconds from ``earlier`` to ``later`` across counter wraparound."""
    return (later - earlier) % GS_USB_TIMESTAMP_MODULUS


class GsUsbFrame:
    def __init__(
        self,
        can_id=0,
        data=None,
        fd=False,
        brs=False,
        esi=False,
        channel=0,
        echo_id=GS_USB_RX_ECHO_ID,
        timestamp_us=0,
        flags=0,
    ):
        """
        Create a CAN frame.

        :param can_id: CAN identifier (with flags like CAN_EFF_FLAG if needed)
        :param data: Frame data (bytes or list of ints)
        :param fd: True for CAN FD frame (allows up to 64 bytes)
        :param brs: True for Bit Rate Switch (CAN FD only, transmit data at higher rate)
        :param esi: True for Error State Indicator (CAN FD only)
        :param channel: CAN channel of the device
        :param echo_id: GS_USB_RX_ECHO_ID for bus traffic, else a local transmission
        :param timestamp_us: hardware timestamp, opaque 32 bit microsecond ticks
        :param flags: raw GS_CAN_FLAG_* bits, combined with fd/brs/esi
        """
        self.echo_id = echo_id
        self.can_id = can_id
        self.channel = channel
        self.timestamp_us = timestamp_us
        self.data = bytes(data) if data is not None else b""

        self.flags = flags
        if fd:
            self.flags |= GS_CAN_FLAG_FD
        if brs:
            self.flags |= GS_CAN_FLAG_BRS
        if esi:
            self.flags |= GS_CAN_FLAG_ESI

    @property
    def arbitration_id(self) -> int:
        return self.can_id & CAN_EFF_MASK

    @property
    def is_extended_id(self) -> bool:
        return bool(self.can_id & CAN_EFF_FLAG)

    @property
    def is_remote_frame(self) -> bool:
        return bool(self.can_id & CAN_RTR_FLAG)

    @property
    def is_error_frame(self) -> bool:
        return bool(self.can_id & CAN_ERR_FLAG)

    @property
    def is_fd(self) -> bool:
        return bool(self.flags & GS_CAN_FLAG_FD)

    @property
    def is_brs(self) -> bool:
        return bool(self.flags & GS_CAN_FLAG_BRS)

    @property
    def is_esi(self) -> bool:
        return bool(self.flags & GS_CAN_FLAG_ESI)

    @property
    def is_overflow(self) -> bool:
        return bool(self.flags & GS_CAN_FLAG_OVERFLOW)

    @property
    def is_echo_frame(self) -> bool:
        return self.echo_id != GS_USB_RX_ECHO_ID

    @property
    def timestamp(self):
        return self.timestamp_us / 1000000.0

    @property
    def can_dlc(self) -> int:
        return len_to_dlc(len(self.data), self.is_fd)

    @property
    def data_length(self) -> int:
        """Length of the data field on the wire (FD lengths are rounded up)."""
        return dlc_to_len(self.can_dlc, self.is_fd)

    def with_echo_id(self, echo_id) -> "GsUsbFrame":
        return GsUsbFrame(
            can_id=self.can_id,
            data=self.data,
            channel=self.channel,
            echo_id=echo_id,
            timestamp_us=self.timestamp_us,
            flags=self.flags,
        )

    def _key(self):
        return (
            self.echo_id,
            self.can_id,
            self.channel,
            self.flags,
            self.data,
            self.timestamp_us,
        )

    def __eq__(self, other):
        if not isinstance(other, GsUsbFrame):
            return NotImplemented
        return self._key() == other._key()

    def __hash__(self):
        return hash(self._key())

    def __repr__(self):
        return (
            "GsUsbFrame(can_id=0x%08x, data=%r, flags=0x%02x, channel=%u, "
            "echo_id=0x%08x, timestamp_us=%u)"
            % (
                self.can_id,
                self.data,
                self.flags,
                self.channel,
                self.echo_id,
                self.timestamp_us,
            )
        )

    def __str__(self) -> str:
        fd_indicator = " FD" if self.is_fd else ""
        brs_indicator = " BRS" if self.is_brs else ""
        data = (
            "remote request"
            if self.is_remote_frame
            else " ".join("{:02X}".format(b) for b in self.data)
        )
        return "{: >8X}{}{}   [{}]  {}".format(
            self.arbitration_id, fd_indicator, brs_indicator, len(self.data), data
        )

    def validate(self):
        r"""
        Check the frame can be put on the wire
        :raises InvalidFrame: describing the first violated constraint
        """
        if not 0 <= self.can_id <= 0xFFFFFFFF:
            raise InvalidFrame("CAN id 0x%x does not fit 32 bits" % self.can_id)
        if not (self.is_extended_id or self.is_error_frame) and (
            self.arbitration_id & ~CAN_SFF_MASK
        ):
            raise InvalidFrame(
                "Standard frame id 0x%x exceeds 11 bits" % self.arbitration_id
            )
        if not 0 <= self.channel <= 0xFF:
            raise InvalidFrame("Channel %d out of range" % self.channel)
        if not 0 <= self.echo_id <= 0xFFFFFFFF:
            raise InvalidFrame("Echo id 0x%x does not fit 32 bits" % self.echo_id)
        if self.is_fd:
            if len(self.data) > CANFD_MAX_DLEN:
                raise InvalidFrame(
                    "CAN FD frame carries %u bytes, at most %u allowed"
                    % (len(self.data), CANFD_MAX_DLEN)
                )
            if self.is_remote_frame:
                raise InvalidFrame("CAN FD frames cannot be remote frames")
        else:
            if len(self.data) > CAN_MAX_DLEN:
                raise InvalidFrame(
                    "Classic CAN frame carries %u bytes, at most %u allowed"
                    % (len(self.data), CAN_MAX_DLEN)
                )
            if self.flags & (GS_CAN_FLAG_BRS | GS_CAN_FLAG_ESI):
                raise InvalidFrame("BRS and ESI are only valid on CAN FD frames")

    def pack(self, hw_timestamp=False) -> bytes:
        """
        Pack frame into bytes for transmission.

        FD payloads are zero padded up to the length their DLC stands for, so a
        10 byte payload goes out as 12 bytes. The data slot is 8 bytes for
        classic frames and 64 bytes for FD frames.

        :param hw_timestamp: Include timestamp field
        :raises InvalidFrame: if the frame violates a classic or FD constraint
        """
        self.validate()
        slot = CANFD_MAX_DLEN if self.is_fd else CAN_MAX_DLEN
        packed = pack(
            _HEADER_FORMAT,
            self.echo_id,
            self.can_id,
            self.can_dlc,
            self.channel,
            self.flags,
            0,
        ) + self.data.ljust(slot, b"\x00")
        if hw_timestamp:
            packed += pack(_TIMESTAMP_FORMAT, self.timestamp_us % GS_USB_TIMESTAMP_MODULUS)
        return packed

    @classmethod
    def from_bytes(cls, data: bytes, hw_timestamp=False) -> "GsUsbFrame":
        """
        Create a new frame from received bytes.

        The FD flag byte decides between the classic and FD data slot.

        :param data: Raw bytes received from device
        :param hw_timestamp: Data includes timestamp field
        :return: New GsUsbFrame object
        :raises InvalidFrame: if the packet is too short for its own header
        """
        data = bytes(data)
        if len(data) < GS_USB_FRAME_HEADER_SIZE:
            raise InvalidFrame("Packet of %u bytes is shorter than a frame header" % len(data))

        echo_id, can_id, can_dlc, channel, flags, _ = unpack_from(_HEADER_FORMAT, data)
        fd = bool(flags & GS_CAN_FLAG_FD)
        if fd and can_dlc > CANFD_MAX_DLC:
            raise InvalidFrame("Invalid CAN FD DLC %u" % can_dlc)

        length = dlc_to_len(can_dlc, fd)
        slot = CANFD_MAX_DLEN if fd else CAN_MAX_DLEN
        needed = GS_USB_FRAME_HEADER_SIZE + (slot if hw_timestamp else length)
        if hw_timestamp:
            needed += 4
        if len(data) < needed:
            raise InvalidFrame(
                "Packet of %u bytes too short, expected at least %u" % (len(data), needed)
            )

        timestamp_us = 0
        if hw_timestamp:
            (timestamp_us,) = unpack_from(
                _TIMESTAMP_FORMAT, data, GS_USB_FRAME_HEADER_SIZE + slot
            )

        start = GS_USB_FRAME_HEADER_SIZE
        return cls(
            can_id=can_id,
            data=data[start : start + length],
            channel=channel,
            echo_id=echo_id,
            timestamp_us=timestamp_us,
            flags=flags,
        )
