"""Sources of new chain heads for the tracker."""

from __future__ import annotations

import logging
import queue
import threading
from abc import ABC, abstractmethod
from typing import Any, Callable, Optional

from web3track.structs import LATEST, Block, DecodeError, block_from_json

DEFAULT_POLL_INTERVAL = 5.0

BlockHandler = Callable[[Block], None]

_log = logging.getLogger(__name__)


class BlockTracker(ABC):
    """Watches the chain and hands every new head block to a handler."""

    @abstractmethod
    def track(self, stop: threading.Event, handle: BlockHandler) -> None:
        """Start tracking in the background until ``stop`` is set.

        ``handle`` signals that it could not process a block by raising.
        """


class JSONBlockTracker(BlockTracker):
    """Polls the provider for the latest block.

    The provider must offer ``get_block_by_number(number, full)``.
    """

    def __init__(self, logger: Optional[logging.Logger], provider: Any) -> None:
        self.logger = logger or _log
        self.provider = provider
        self.poll_interval = DEFAULT_POLL_INTERVAL

    def track(self, stop: threading.Event, handle: BlockHandler) -> None:
        thread = threading.Thread(
            target=self._poll, args=(stop, handle), name="json-block-tracker", daemon=True
        )
        thread.start()

    def _poll(self, stop: threading.Event, handle: BlockHandler) -> None:
        last: Optional[Block] = None
        while not stop.wait(self.poll_interval):
            try:
                block = self.provider.get_block_by_number(LATEST, False)
            except Exception as exc:  # noqa: BLE001 - keep polling on any provider failure
                self.logger.error("[ERR]: Tracker failed to get last block: %s", exc)
                continue
            if last is not None and last.hash == block.hash:
                continue
            try:
                handle(block)
            except Exception as exc:  # noqa: BLE001 - retried on the next poll
                self.logger.error("[ERROR]: blocktracker: Failed to handle block: %s", exc)
            else:
                last = block


class SubscriptionBlockTracker(BlockTracker):
    """Receives new heads from the ``newHeads`` subscription.

    The client must offer ``subscription_enabled()`` and
    ``subscribe(method, callback)``, the latter returning a function that
    cancels the subscription.
    """

    def __init__(self, logger: Optional[logging.Logger], client: Any) -> None:
        if not client.subscription_enabled():
            raise RuntimeError("subscription is not enabled")
        self.logger = logger or _log
        self.client = client

    def track(self, stop: threading.Event, handle: BlockHandler) -> None:
        data: "queue.Queue[bytes]" = queue.Queue()
        cancel = self.client.subscribe("newHeads", data.put)
        thread = threading.Thread(
            target=self._consume,
            args=(stop, handle, data, cancel),
            name="subscription-block-tracker",
            daemon=True,
        )
        thread.start()

    def _consume(
        self,
        stop: threading.Event,
        handle: BlockHandler,
        data: "queue.Queue[bytes]",
        cancel: Callable[[], None],
    ) -> None:
        try:
            while not stop.is_set():
                try:
                    buf = data.get(timeout=0.05)
                except queue.Empty:
                    continue
                try:
                    block = block_from_json(buf)
                except DecodeError as exc:
                    self.logger.error("[ERR]: Tracker failed to parse block: %s", exc)
                    continue
                try:
                    handle(block)
                except Exception as exc:  # noqa: BLE001 - a failing handler must not stop tracking
                    self.logger.error("[ERROR]: blocktracker: Failed to handle block: %s", exc)
        finally:
            cancel()