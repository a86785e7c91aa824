"""Capture bridge: wires the sniffer, register map, controller and MQTT.

    capture process -> CaptureSniffer -> CaptureController -> MqttPublisher

`run()` returns once the session finishes (all registers captured, timeout)
or `request_stop()` is called, after tearing everything down in order:
sniffer loop, capture process, MQTT connection, register map. Each teardown
step is attempted even if an earlier one fails.
"""
from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict

from mbsniff.config import BridgeConfig
from mbsniff.core.register_map import RegisterMap
from mbsniff.core.session import CaptureController, FinishReason, Publisher
from mbsniff.core.sniffer import CaptureSniffer
from mbsniff.transports.base import TransportInterface

logger = logging.getLogger(__name__)


class CaptureBridge:
    def __init__(
        self,
        config: BridgeConfig,
        register_map: RegisterMap,
        publisher: Publisher,
        transport: TransportInterface,
    ):
        self.config = config
        self.register_map = register_map
        self.publisher = publisher
        self.controller = CaptureController(
            register_map,
            publisher,
            timeout=config.timeout,
            address_base=config.address_base,
        )
        self.sniffer = CaptureSniffer(
            transport,
            on_record=self.controller.handle_record,
            save_path=config.capture.save_path,
        )
        self._stop = asyncio.Event()

    def request_stop(self) -> None:
        """Ask a running bridge to shut down (signal handlers call this)."""
        self._stop.set()

    async def run(self) -> FinishReason:
        self.controller.start()
        if self.config.watch and self.register_map.path is not None:
            self.register_map.watch()

        try:
            await self.sniffer.start()
        except OSError as e:
            # Capture never started; the session can only run into its deadline
            logger.error("Cannot start capture process: %s", e)

        finished = asyncio.ensure_future(self.controller.wait_finished())
        stopped = asyncio.ensure_future(self._stop.wait())
        try:
            await asyncio.wait({finished, stopped}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            stopped.cancel()
            if not self.controller.finished:
                self.controller.stop()
            await self.shutdown()
            finished.cancel()

        return self.controller.reason or FinishReason.STOPPED

    async def shutdown(self) -> None:
        steps = (
            ("stop sniffer", self.sniffer.stop),
            ("stop capture process", self.sniffer.close),
            ("close MQTT", self._close_publisher),
            ("release register map", self.register_map.close),
        )
        for name, step in steps:
            try:
                await step()
            except Exception:
                logger.exception("Shutdown step failed: %s", name)
        logger.info("Session stats: %s", self.get_stats())

    async def _close_publisher(self) -> None:
        close = getattr(self.publisher, "close", None)
        if close is not None:
            await close()

    def get_stats(self) -> Dict[str, Any]:
        return {
            **self.controller.get_stats(),
            "records": self.sniffer.demuxer.records_emitted,
            "framing_errors": self.sniffer.demuxer.errors,
        }
