"""Progress aggregation for concurrent part transfers.

This module provides:
- ProgressAggregator: Combines per-part byte deltas into file-level
  snapshots with sliding-window speed and ETA
- Subscription: Handle scoping a subscriber to the caller's observation

Reported bytes never move backward for a transfer: every snapshot is
clamped to the highest value previously reported, whatever order the part
workers deliver their events in.
"""

from __future__ import annotations

import logging
import threading
import time
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass, field

from bucketsync.core.types import TransferState
from bucketsync.sync.types import ProgressCallback, ProgressSnapshot

logger = logging.getLogger(__name__)


@dataclass
class _Track:
    """Live counters for one transfer."""

    total: int
    committed: int = 0
    inflight: int = 0
    reported: int = 0
    state: TransferState = TransferState.PENDING
    started_at: float | None = None
    samples: deque[tuple[float, int]] = field(default_factory=deque)
    last_emit: float | None = None


class Subscription:
    """Registration of one callback for one transfer.

    Usage:
        with aggregator.subscribe(transfer_id, print):
            engine.wait(transfer_id)
    """

    def __init__(
        self, aggregator: ProgressAggregator, transfer_id: str, callback: ProgressCallback
    ) -> None:
        self._aggregator = aggregator
        self.transfer_id = transfer_id
        self.callback = callback
        self._active = True

    @property
    def active(self) -> bool:
        """Check if the callback still receives snapshots."""
        return self._active

    def unsubscribe(self) -> None:
        """Stop receiving snapshots. Safe to call twice."""
        if self._active:
            self._active = False
            self._aggregator._remove(self)

    def __enter__(self) -> Subscription:
        return self

    def __exit__(self, *exc: object) -> None:
        self.unsubscribe()


class ProgressAggregator:
    """Turns part-level byte events into rate-limited transfer snapshots.

    Thread-safe: part workers of many transfers report concurrently.
    Subscriber callbacks run on the reporting worker thread, outside the
    aggregator lock.
    """

    def __init__(
        self,
        window: float = 5.0,
        min_interval: float = 0.25,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """Initialize the aggregator.

        Args:
            window: Seconds of byte deltas used for the speed estimate.
            min_interval: Minimum seconds between two emissions per transfer.
            clock: Monotonic time source, replaced in tests.
        """
        self._window = window
        self._min_interval = min_interval
        self._clock = clock
        self._lock = threading.Lock()
        self._tracks: dict[str, _Track] = {}
        self._subscribers: dict[str, list[Subscription]] = {}

    def track(
        self,
        transfer_id: str,
        total: int,
        committed: int = 0,
        state: TransferState = TransferState.PENDING,
    ) -> None:
        """Start (or refresh) tracking a transfer from its persisted values."""
        with self._lock:
            track = self._tracks.get(transfer_id)
            if track is None:
                track = _Track(total=total, committed=committed, reported=committed)
                self._tracks[transfer_id] = track
            else:
                track.total = total
                track.committed = committed
                track.inflight = 0
            track.state = state
        self._emit(transfer_id, force=True)

    def forget(self, transfer_id: str) -> None:
        """Drop live counters of a transfer (subscribers are kept)."""
        with self._lock:
            self._tracks.pop(transfer_id, None)

    def on_part_progress(self, transfer_id: str, delta: int) -> None:
        """Record bytes moved by an in-flight part.

        A negative delta discards bytes of an aborted part attempt.
        """
        with self._lock:
            track = self._tracks.get(transfer_id)
            if track is None:
                return
            track.inflight = max(0, track.inflight + delta)
            if delta > 0:
                now = self._clock()
                if track.started_at is None:
                    track.started_at = now
                track.samples.append((now, delta))
        self._emit(transfer_id)

    def on_part_committed(
        self, transfer_id: str, released: int, bytes_transferred: int
    ) -> None:
        """Move a finished part's bytes from in-flight to committed.

        Args:
            transfer_id: Transfer the part belongs to.
            released: In-flight bytes reported for the part.
            bytes_transferred: Persisted aggregate after the completion.
        """
        with self._lock:
            track = self._tracks.get(transfer_id)
            if track is None:
                return
            track.inflight = max(0, track.inflight - released)
            track.committed = max(track.committed, bytes_transferred)
        self._emit(transfer_id)

    def set_state(self, transfer_id: str, state: TransferState) -> None:
        """Record a state change. Always emits."""
        with self._lock:
            track = self._tracks.get(transfer_id)
            if track is None:
                return
            track.state = state
            if state != TransferState.ACTIVE:
                track.inflight = 0
                track.samples.clear()
                track.started_at = None
        self._emit(transfer_id, force=True)

    def snapshot(self, transfer_id: str) -> ProgressSnapshot | None:
        """Current progress of a transfer, or None if not tracked."""
        with self._lock:
            track = self._tracks.get(transfer_id)
            if track is None:
                return None
            return self._build(transfer_id, track, self._clock())

    def subscribe(self, transfer_id: str, callback: ProgressCallback) -> Subscription:
        """Register a callback for snapshots of one transfer."""
        subscription = Subscription(self, transfer_id, callback)
        with self._lock:
            self._subscribers.setdefault(transfer_id, []).append(subscription)
        return subscription

    def _remove(self, subscription: Subscription) -> None:
        with self._lock:
            subs = self._subscribers.get(subscription.transfer_id, [])
            if subscription in subs:
                subs.remove(subscription)
            if not subs:
                self._subscribers.pop(subscription.transfer_id, None)

    def _speed(self, track: _Track, now: float) -> float:
        """Bytes/sec over the sliding window."""
        cutoff = now - self._window
        while track.samples and track.samples[0][0] < cutoff:
            track.samples.popleft()
        if not track.samples or track.started_at is None:
            return 0.0
        span = min(self._window, max(now - track.started_at, 1.0))
        return sum(delta for _, delta in track.samples) / span

    def _build(self, transfer_id: str, track: _Track, now: float) -> ProgressSnapshot:
        current = min(track.total, track.committed + track.inflight)
        track.reported = max(track.reported, current)

        speed = self._speed(track, now) if track.state == TransferState.ACTIVE else 0.0
        remaining = track.total - track.reported
        eta: float | None
        if remaining <= 0 or track.state == TransferState.COMPLETED:
            eta = 0.0
        elif speed > 0:
            eta = remaining / speed
        else:
            eta = None

        return ProgressSnapshot(
            transfer_id=transfer_id,
            bytes_transferred=track.reported,
            total=track.total,
            speed=speed,
            eta=eta,
            state=track.state,
        )

    def _emit(self, transfer_id: str, force: bool = False) -> None:
        """Publish a snapshot unless one went out less than min_interval ago."""
        with self._lock:
            track = self._tracks.get(transfer_id)
            if track is None:
                return
            now = self._clock()
            if (
                not force
                and track.last_emit is not None
                and now - track.last_emit < self._min_interval
            ):
                return
            track.last_emit = now
            snapshot = self._build(transfer_id, track, now)
            subscribers = list(self._subscribers.get(transfer_id, []))

        for subscription in subscribers:
            try:
                subscription.callback(snapshot)
            except Exception:
                logger.exception(f"Progress subscriber failed for {transfer_id}")
