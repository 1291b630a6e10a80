"""Local observation log: in-memory index, disk segments, live subscriptions."""

from .observations import ObservationStore
from .segments import SegmentLog
from .subscription import Subscription
