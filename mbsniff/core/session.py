"""Capture session controller.

Turns decoded write frames into published register values and decides when a
capture session is over:

    IDLE --start()--> CAPTURING --(all expected registers published)--> FINISHED
                                --(deadline elapsed)------------------> FINISHED
                                --(stop())----------------------------> FINISHED

A register only counts as observed once the publisher confirms delivery.
Publishing is fire-and-forget from the controller's side: `publish()` returns
a future and the controller reacts when it resolves.
"""
from __future__ import annotations

import asyncio
import functools
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, FrozenSet, Optional, Protocol, Set

from mbsniff.core.frames import DecodedFrame, decode_write_frame
from mbsniff.core.pcap import CaptureRecord
from mbsniff.core.register_map import Address, MappingEntry, RegisterMap, RegisterMapSnapshot
from mbsniff.core.transform import TransformEvaluator
from mbsniff.utils.values import decode_value, format_payload

logger = logging.getLogger(__name__)


class SessionState(str, Enum):
    IDLE = "idle"
    CAPTURING = "capturing"
    FINISHED = "finished"


class FinishReason(str, Enum):
    ALL_CAPTURED = "all-captured"
    TIMEOUT = "timeout"
    STOPPED = "stopped"


class Publisher(Protocol):
    def publish(self, topic: str, payload: str, qos: int = 0, retain: bool = False) -> "asyncio.Future[bool]":
        ...


@dataclass
class CaptureSession:
    """Expected and observed register addresses of one capture window."""

    expected: FrozenSet[Address]
    deadline: float
    observed: Set[Address] = field(default_factory=set)
    started_at: float = field(default_factory=time.time)

    @property
    def complete(self) -> bool:
        return bool(self.expected) and self.observed >= self.expected

    @property
    def missing(self) -> Set[Address]:
        return set(self.expected) - self.observed


class CaptureController:
    """Drives one capture session from decoded frames to published values."""

    def __init__(
        self,
        register_map: RegisterMap,
        publisher: Publisher,
        timeout: float = 60.0,
        evaluator: Optional[TransformEvaluator] = None,
        address_base: int = 0,
    ):
        """Initialize the controller.

        Args:
            register_map: Source of mapping entries
            publisher: Publish boundary returning futures that resolve to success
            timeout: Session deadline in seconds
            evaluator: Transform evaluator (a default one is created if omitted)
            address_base: Added to wire addresses before lookup (0 or 1)
        """
        self.register_map = register_map
        self.publisher = publisher
        self.timeout = timeout
        self.evaluator = evaluator or TransformEvaluator()
        self.address_base = address_base

        self.state = SessionState.IDLE
        self.reason: Optional[FinishReason] = None
        self.session: Optional[CaptureSession] = None
        self._snapshot: Optional[RegisterMapSnapshot] = None
        self._timer: Optional[asyncio.TimerHandle] = None
        self._finished: Optional[asyncio.Future] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None

        self._stats = {
            "frames": 0,
            "registers": 0,
            "published": 0,
            "unmapped": 0,
            "publish_failures": 0,
        }

    @property
    def finished(self) -> bool:
        return self.state is SessionState.FINISHED

    def start(self) -> CaptureSession:
        """Begin capturing; must be called from a running event loop."""
        if self.state is not SessionState.IDLE:
            raise RuntimeError(f"Cannot start a session in state {self.state.value}")

        self._loop = asyncio.get_running_loop()
        self._finished = self._loop.create_future()
        self._snapshot = self.register_map.snapshot
        self.session = CaptureSession(
            expected=frozenset(self._snapshot.addresses()),
            deadline=self._loop.time() + self.timeout,
        )
        self._timer = self._loop.call_later(self.timeout, self.finish, FinishReason.TIMEOUT)
        self.state = SessionState.CAPTURING
        logger.info("Capture started: expecting %d register(s), timeout %.1fs",
                    len(self.session.expected), self.timeout)
        return self.session

    def handle_record(self, record: CaptureRecord) -> None:
        if self.state is not SessionState.CAPTURING:
            return
        frame = decode_write_frame(record.payload)
        if frame is None:
            logger.debug("Skipping non-applicable frame: %s", record.payload.hex())
            return
        self.handle_frame(frame)

    def handle_frame(self, frame: DecodedFrame) -> None:
        """Publish every mapped register written by an FC16 request."""
        if self.state is not SessionState.CAPTURING:
            return

        self._stats["frames"] += 1
        logger.debug("Write frame: unit %d address %d quantity %d", frame.unit_id, frame.address, frame.count)

        # One generation per frame, even if a reload lands mid-frame
        snapshot = self.register_map.snapshot
        for address, index in frame.registers():
            self._stats["registers"] += 1
            address += self.address_base
            entry = snapshot.lookup(address)
            if entry is None:
                self._stats["unmapped"] += 1
                logger.debug("Unmapped register %d with value %s", address, frame.words[index].hex())
                continue
            self._publish_entry(entry, frame.span(index, entry.length))

        self._check_complete()

    def _publish_entry(self, entry: MappingEntry, raw: bytes) -> None:
        value = decode_value(entry.datatype, raw, entry.length, entry.scale)
        value = self.evaluator.apply(entry, value, raw)
        payload = format_payload(value)
        logger.debug("Publishing register %s to %s: %s", entry.address, entry.topic, payload)

        try:
            future = self.publisher.publish(entry.topic, payload, qos=entry.qos, retain=entry.retain)
        except Exception as e:
            self._stats["publish_failures"] += 1
            logger.warning("Publish of register %s to %s failed: %s", entry.address, entry.topic, e)
            return
        future.add_done_callback(functools.partial(self._on_published, entry))

    def _on_published(self, entry: MappingEntry, future: "asyncio.Future[bool]") -> None:
        if future.cancelled():
            ok, error = False, "cancelled"
        elif future.exception() is not None:
            ok, error = False, future.exception()
        else:
            ok, error = bool(future.result()), "not confirmed"

        if not ok:
            self._stats["publish_failures"] += 1
            logger.warning("Publish of register %s to %s failed: %s", entry.address, entry.topic, error)
            return

        self._stats["published"] += 1
        if self.state is not SessionState.CAPTURING or self.session is None:
            return
        if entry.address in self.session.expected and entry.address not in self.session.observed:
            self.session.observed.add(entry.address)
            logger.debug("Observed %d/%d registers", len(self.session.observed), len(self.session.expected))
        self._check_complete()

    def _check_complete(self) -> None:
        if self.state is SessionState.CAPTURING and self.session and self.session.complete:
            self.finish(FinishReason.ALL_CAPTURED)

    def finish(self, reason: FinishReason = FinishReason.TIMEOUT) -> None:
        """Move to FINISHED; later calls and frames are ignored."""
        if self.state is SessionState.FINISHED:
            return
        self.state = SessionState.FINISHED
        self.reason = reason
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        self._snapshot = None

        observed = len(self.session.observed) if self.session else 0
        expected = len(self.session.expected) if self.session else 0
        logger.info("Capture finished: %s (%d/%d registers observed)", reason.value, observed, expected)
        if self._finished is not None and not self._finished.done():
            self._finished.set_result(reason)

    def stop(self) -> None:
        self.finish(FinishReason.STOPPED)

    async def wait_finished(self) -> FinishReason:
        if self._finished is None:
            raise RuntimeError("Session has not been started")
        return await asyncio.shield(self._finished)

    def get_stats(self) -> Dict[str, Any]:
        return {
            **self._stats,
            "transform_failures": self.evaluator.failures,
            "state": self.state.value,
            "reason": self.reason.value if self.reason else None,
            "expected": len(self.session.expected) if self.session else 0,
            "observed": len(self.session.observed) if self.session else 0,
        }
