r"""
Bit timing calculation.

Turns a requested bitrate into the register set understood by BITTIMING and
DATA_BITTIMING. Only exact solutions are produced: the device clock divided by
``brp * bitrate`` must give a whole number of time quanta, within the usual
quanta per bit range, that the device can split into its TSEG1/TSEG2 ranges.
Among all exact solutions the one closest to the requested sample point wins;
ties go to the smallest prescaler, then to the sample point not past the
target.

The nominal phase uses 8 to 25 quanta per bit whatever the device allows, so
wide BT_CONST_EXT ranges still give the conventional register sets below. The
data phase goes down to 4 quanta and is capped per clock by
GS_CAN_FD_DATA_BITRATE_MAX, see compute_data.

Reference values (87.5% sample point):

    =========  ==========  ==========  ==========  ==========
    clock      125k        250k        500k        1M
    =========  ==========  ==========  ==========  ==========
    80 MHz     brp 40/16q  brp 20/16q  brp 10/16q  brp 5/16q
    40 MHz     brp 20/16q  brp 10/16q  brp 5/16q   brp 5/8q
    =========  ==========  ==========  ==========  ==========
"""

import logging
from fractions import Fraction
from typing import Optional, Tuple

from .constants import (
    GS_CAN_FD_DATA_BITRATE_MAX,
    SAMPLE_POINT_DATA,
    SAMPLE_POINT_NOMINAL,
)
from .errors import UnsupportedBitrate
from .gs_usb_structures import DeviceBitTiming, TimingLimits

logger = logging.getLogger(__name__)

# The gs_usb firmware adds prop_seg and phase_seg1 back together, so the split
# between them is arbitrary. Keep prop_seg at one quantum like the kernel tables.
PROP_SEG = 1

# Time quanta per bit, (min, max)
NOMINAL_QUANTA = (8, 25)
DATA_QUANTA = (4, 25)


def _best_split(quanta, target, limits):
    best = None
    tseg1_min = max(limits.tseg1_min, PROP_SEG + 1)
    for tseg2 in range(max(limits.tseg2_min, 1), limits.tseg2_max + 1):
        tseg1 = quanta - 1 - tseg2
        if tseg1 < tseg1_min:
            break
        if tseg1 > limits.tseg1_max:
            continue
        sample_point = Fraction(1 + tseg1, quanta)
        key = (abs(sample_point - target), sample_point > target)
        if best is None or key < best[0]:
            best = (key, tseg1, tseg2)
    return best


def compute(
    bitrate: int,
    clock_hz: int,
    sample_point: float = SAMPLE_POINT_NOMINAL,
    limits: Optional[TimingLimits] = None,
    sjw: Optional[int] = None,
    quanta_range: Tuple[int, int] = NOMINAL_QUANTA,
) -> DeviceBitTiming:
    r"""
    Compute bit timing registers for a bitrate.

    :param bitrate: bitrate in bit/s
    :param clock_hz: CAN core clock of the device (DeviceCapability.fclk_can)
    :param sample_point: requested sample point in percent
    :param limits: register ranges of the phase being configured
    :param sjw: fixed synchronization jump width, capped to what is legal.
                None selects the largest legal value.
    :param quanta_range: smallest and largest number of time quanta per bit
    :return: DeviceBitTiming
    :raises UnsupportedBitrate: if no exact solution fits the limits
    """
    if limits is None:
        raise ValueError("Timing limits are required")
    if bitrate <= 0 or clock_hz <= 0:
        raise UnsupportedBitrate(bitrate, clock_hz, "bitrate and clock must be positive")
    if not 0 < sample_point < 100:
        raise ValueError("Sample point must be between 0 and 100 percent")

    bitrate = int(bitrate)
    clock_hz = int(clock_hz)
    target = Fraction(str(sample_point)) / 100
    min_quanta = max(
        quanta_range[0], 1 + max(limits.tseg1_min, PROP_SEG + 1) + max(limits.tseg2_min, 1)
    )
    max_quanta = min(quanta_range[1], 1 + limits.tseg1_max + limits.tseg2_max)

    best = None
    for brp in range(max(limits.brp_min, 1), limits.brp_max + 1, max(limits.brp_inc, 1)):
        quanta, remainder = divmod(clock_hz, brp * bitrate)
        # quanta only shrinks as brp grows
        if quanta < min_quanta:
            break
        if remainder or quanta > max_quanta:
            continue
        split = _best_split(quanta, target, limits)
        if split is None:
            continue
        # brp ascends, so a strictly smaller error is required to replace
        error = split[0][0]
        if best is None or error < best[0]:
            best = (error, brp, split[1], split[2])

    if best is None:
        raise UnsupportedBitrate(
            bitrate, clock_hz, "no whole number of time quanta fits the device limits"
        )

    _, brp, tseg1, tseg2 = best
    phase_seg1 = tseg1 - PROP_SEG
    sjw_limit = max(1, min(phase_seg1, tseg2, limits.sjw_max))
    timing = DeviceBitTiming(
        prop_seg=PROP_SEG,
        phase_seg1=phase_seg1,
        phase_seg2=tseg2,
        sjw=sjw_limit if sjw is None else max(1, min(sjw, sjw_limit)),
        brp=brp,
    )
    logger.debug(
        "%u bit/s @ %u Hz: brp=%u quanta=%u sample point %.2f%%",
        bitrate,
        clock_hz,
        timing.brp,
        timing.total_quanta,
        timing.sample_point,
    )
    return timing


def compute_data(
    bitrate: int,
    clock_hz: int,
    sample_point: float = SAMPLE_POINT_DATA,
    limits: Optional[TimingLimits] = None,
    sjw: Optional[int] = None,
) -> DeviceBitTiming:
    r"""
    Compute CAN FD data phase registers.

    Same search as compute with the shorter data phase quanta range. Bitrates
    above GS_CAN_FD_DATA_BITRATE_MAX for the clock are refused even when the
    limits would allow an exact split.

    :raises UnsupportedBitrate: if the clock cannot carry the bitrate
    """
    bitrate_max = GS_CAN_FD_DATA_BITRATE_MAX.get(clock_hz)
    if bitrate_max is not None and bitrate > bitrate_max:
        raise UnsupportedBitrate(
            bitrate, clock_hz, "data phase is limited to %u bit/s on this clock" % bitrate_max
        )
    return compute(bitrate, clock_hz, sample_point, limits, sjw, DATA_QUANTA)
