r"""
Transmit echo correlation.

Every frame sent to the device carries an echo id. The device hands the frame
back on the bulk IN endpoint with the same echo id once it has been put on the
bus, interleaved with frames received from the bus (echo id 0xFFFFFFFF). The
correlator remembers which ids are outstanding so the read path can hand a
completion to the send call waiting for it.
"""

import logging
import threading
from typing import Dict, Optional

from .constants import GS_USB_RX_ECHO_ID

logger = logging.getLogger(__name__)


class PendingEcho:
    """Completion handle of one outstanding transmission."""

    __slots__ = ("echo_id", "outcome", "_event")

    def __init__(self, echo_id):
        self.echo_id = echo_id
        self.outcome = None
        self._event = threading.Event()

    @property
    def done(self) -> bool:
        return self._event.is_set()

    def wait(self, timeout: Optional[float] = None) -> bool:
        return self._event.wait(timeout)

    def _complete(self, outcome):
        self.outcome = outcome
        self._event.set()


class EchoCorrelator:
    def __init__(self, id_space: int = GS_USB_RX_ECHO_ID):
        r"""
        :param id_space: number of usable echo ids, allocated from 0 upward.
                         At most 0xFFFFFFFF so the RX echo id is never handed out.
        """
        if not 0 < id_space <= GS_USB_RX_ECHO_ID:
            raise ValueError(
                "Echo id space must be between 1 and 0x%08x" % GS_USB_RX_ECHO_ID
            )
        self._id_space = id_space
        self._next_id = 0
        self._pending: Dict[int, PendingEcho] = {}
        self._lock = threading.Lock()

    def __len__(self):
        with self._lock:
            return len(self._pending)

    def __contains__(self, echo_id):
        with self._lock:
            return echo_id in self._pending

    def allocate(self) -> int:
        r"""
        Reserve a fresh echo id
        :return: an id that is not outstanding, counting upward with wraparound
        :raises RuntimeError: if every id in the space is outstanding
        """
        with self._lock:
            if len(self._pending) >= self._id_space:
                raise RuntimeError("All %u echo ids are outstanding" % self._id_space)
            echo_id = self._next_id
            while echo_id in self._pending:
                echo_id = (echo_id + 1) % self._id_space
            self._next_id = (echo_id + 1) % self._id_space
            self._pending[echo_id] = PendingEcho(echo_id)
        logger.debug("Allocated echo id %u", echo_id)
        return echo_id

    def pending(self, echo_id: int) -> Optional[PendingEcho]:
        r"""
        Get the completion handle of an outstanding id
        :return: PendingEcho, or None if the id is not outstanding
        """
        with self._lock:
            return self._pending.get(echo_id)

    def resolve(self, echo_id: int, outcome) -> bool:
        r"""
        Deliver the outcome of a transmission to whoever waits for it
        :return: False if the id is not outstanding (stale or duplicate echo)
        """
        with self._lock:
            pending = self._pending.pop(echo_id, None)
        if pending is None:
            logger.debug("Dropping stale echo id %u", echo_id)
            return False
        pending._complete(outcome)
        return True

    def cancel(self, echo_id: int) -> bool:
        with self._lock:
            pending = self._pending.pop(echo_id, None)
        if pending is not None:
            logger.debug("Cancelled echo id %u", echo_id)
        return pending is not None

    def cancel_all(self):
        with self._lock:
            count = len(self._pending)
            self._pending.clear()
        if count:
            logger.debug("Cancelled %u outstanding echo ids", count)
