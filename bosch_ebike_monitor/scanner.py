"""
Scan registry: peripherals seen during one scan window.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Callable

from .models import PeripheralRef

logger = logging.getLogger(__name__)


class ScanRegistry:
    """
    Tracks sightings during a scan, deduplicated by address.

    ``begin_scan`` clears old results and arms a timeout; ``end_scan`` (or
    the timeout) freezes the set. Listeners hear about each new address
    once, not about repeat sightings.
    """

    def __init__(self) -> None:
        self._devices: dict[str, PeripheralRef] = {}
        self._accepting = False
        self._timer: asyncio.TimerHandle | None = None
        self._generation = 0
        self._listeners: list[Callable[[list[PeripheralRef]], None]] = []

    # -- scan window ------------------------------------------------------

    def begin_scan(
        self,
        timeout: float | None = None,
        on_timeout: Callable[[int], None] | None = None,
    ) -> int:
        """
        Start a new scan window.

        Parameters
        ----------
        timeout : float | None
            Seconds until ``on_timeout`` fires. None disables the timer.
        on_timeout :
            Called with the scan generation when the timer fires. The
            receiver must check the generation is still current.

        Returns
        -------
        int
            The generation number of this scan.
        """
        self._cancel_timer()
        had_results = bool(self._devices)
        self._devices.clear()
        self._accepting = True
        self._generation += 1
        generation = self._generation
        if timeout is not None and on_timeout is not None:
            loop = asyncio.get_running_loop()
            self._timer = loop.call_later(timeout, on_timeout, generation)
        logger.debug("Scan %d started (timeout=%s)", generation, timeout)
        if had_results:
            self._notify()
        return generation

    def end_scan(self) -> None:
        """Stop accepting sightings. Safe to call repeatedly."""
        self._cancel_timer()
        if self._accepting:
            logger.debug(
                "Scan %d ended with %d device(s)", self._generation, len(self._devices)
            )
        self._accepting = False

    def clear(self) -> None:
        self.end_scan()
        if self._devices:
            self._devices.clear()
            self._notify()

    # -- sightings --------------------------------------------------------

    def on_sighting(self, ref: PeripheralRef) -> bool:
        """Record a sighting. Returns True if the address is new."""
        if not self._accepting:
            return False
        known = self._devices.get(ref.address)
        if known is not None:
            self._devices[ref.address] = known.merged(ref)
            return False
        self._devices[ref.address] = ref
        logger.info(
            "Found device: %s (%s) RSSI: %d", ref.display_name, ref.address, ref.rssi
        )
        self._notify()
        return True

    # -- queries ----------------------------------------------------------

    @property
    def is_scanning(self) -> bool:
        return self._accepting

    @property
    def generation(self) -> int:
        return self._generation

    @property
    def results(self) -> list[PeripheralRef]:
        """Discovered devices, strongest signal first."""
        return sorted(self._devices.values(), key=lambda d: d.rssi, reverse=True)

    def get(self, address: str) -> PeripheralRef | None:
        return self._devices.get(address)

    def __len__(self) -> int:
        return len(self._devices)

    def __contains__(self, address: object) -> bool:
        return address in self._devices

    # -- observers --------------------------------------------------------

    def add_listener(
        self, callback: Callable[[list[PeripheralRef]], None]
    ) -> Callable[[], None]:
        """Register a results-changed listener; returns a remover."""
        self._listeners.append(callback)

        def _remove() -> None:
            if callback in self._listeners:
                self._listeners.remove(callback)

        return _remove

    def _notify(self) -> None:
        results = self.results
        for cb in list(self._listeners):
            try:
                cb(results)
            except Exception:
                logger.warning("Scan listener raised", exc_info=True)

    def _cancel_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
