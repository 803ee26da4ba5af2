"""Dispatcher set registry, dispatcher list export and the reconciliation loop."""

from __future__ import annotations

import logging
import queue
import threading
from pathlib import Path
from typing import Callable, Dict, List, Optional

from . import binrpc
from .errors import (
    NotifyError,
    SourceConstructionError,
    StreamClosed,
    WatchError,
    WriteError,
)
from .sets import DispatcherSet, SetDefinition

logger = logging.getLogger(__name__)

RELOAD_METHOD = "dispatcher.reload"

# Capacity of the change queue shared by all watchers.
CHANGE_QUEUE_SIZE = 10

# How long to wait for interrupted watchers when a loop ends.
WATCHER_JOIN_TIMEOUT = 5.0

SourceFactory = Callable[[SetDefinition], DispatcherSet]

# =============================================================================
# Notifier
# =============================================================================


class Notifier:
    """Asks kamailio to reload its dispatcher list over BINRPC.

    The transport is UDP and kamailio never answers, so a successful
    ``notify()`` only means the request was sent.
    """

    def __init__(
        self,
        host: str,
        port: str,
        *,
        invoke: Optional[Callable[[str, str, str], None]] = None,
    ):
        self.host = host
        self.port = port
        self._invoke = invoke

    def notify(self) -> None:
        try:
            invoke = self._invoke or binrpc.invoke_method
            invoke(RELOAD_METHOD, self.host, self.port)
        except (OSError, ValueError) as e:
            raise NotifyError(f"failed to notify kamailio at {self.host}:{self.port}: {e}") from e

    def schedule_followup(self, delay_seconds: float) -> threading.Timer:
        """Send one more notify after ``delay_seconds``.

        kamailio may not be listening yet when the first notify goes out and
        there is no reply to tell us so. This is a best-effort second attempt,
        not a delivery guarantee.
        """

        def _followup() -> None:
            try:
                self.notify()
                logger.info("Sent follow-up kamailio notification")
            except NotifyError as e:
                logger.warning(f"Follow-up kamailio notification failed: {e}")

        timer = threading.Timer(delay_seconds, _followup)
        timer.daemon = True
        timer.start()
        return timer


# =============================================================================
# Dispatcher Set Registry
# =============================================================================


class DispatcherSets:
    """Registry of dispatcher sets keyed by set index.

    The key set is fixed once watchers start; only each set's membership
    changes afterwards.
    """

    def __init__(
        self,
        *,
        output_filename: str,
        notifier: Notifier,
        source_factory: SourceFactory,
        poll_interval_seconds: float = 1.0,
    ):
        self.output_path = Path(output_filename)
        self.notifier = notifier
        self._source_factory = source_factory
        self._poll_interval = poll_interval_seconds
        self._sets: Dict[int, DispatcherSet] = {}
        self._sealed = False
        self._last_export: Optional[str] = None

    @property
    def sets(self) -> List[DispatcherSet]:
        return [self._sets[k] for k in sorted(self._sets)]

    def get(self, set_id: int) -> Optional[DispatcherSet]:
        return self._sets.get(set_id)

    def add(self, definition: SetDefinition) -> None:
        """Create the membership source for ``definition`` and register it."""
        if self._sealed:
            raise RuntimeError("dispatcher sets cannot be added once watching has started")
        try:
            source = self._source_factory(definition)
        except SourceConstructionError:
            raise
        except Exception as e:
            raise SourceConstructionError(
                f"failed to create Kubernetes-based dispatcher set {definition}: {e}"
            ) from e
        self._sets[definition.id] = source
        logger.info(f"Added dispatcher set {definition}")

    def update_all(self) -> None:
        """Refresh every set, stopping at the first failure."""
        for ds in self.sets:
            ds.update()

    def render(self) -> str:
        return "".join(ds.export() for ds in self.sets)

    def export_all(self) -> str:
        """Write the dispatcher list and return its content.

        The list is written to a temporary file next to the target and then
        moved into place, so readers only ever see a complete list.
        """
        content = self.render()
        tmp_path = self.output_path.with_name(self.output_path.name + ".tmp")
        try:
            self.output_path.parent.mkdir(parents=True, exist_ok=True)
            tmp_path.write_text(content, "utf-8")
            tmp_path.replace(self.output_path)
        except OSError as e:
            raise WriteError(f"failed to write dispatcher file {self.output_path}: {e}") from e

        self._last_export = content
        logger.info(f"Exported {len(self._sets)} dispatcher set(s) to {self.output_path}")
        return content

    def notify(self) -> None:
        self.notifier.notify()

    def validate_set_member(self, set_id: int, addr: str) -> bool:
        """Check whether ``addr`` is currently a member of set ``set_id``."""
        ds = self._sets.get(set_id)
        if ds is None:
            return False
        return addr in ds.hosts()

    # =========================================================================
    # Reconciliation Loop
    # =========================================================================

    def _watch_set(
        self,
        ds: DispatcherSet,
        changes: "queue.Queue[Optional[BaseException]]",
        stop: threading.Event,
        done: threading.Event,
    ) -> None:
        while not (stop.is_set() or done.is_set()):
            event: Optional[BaseException] = None
            try:
                # done is set before close(), so an interrupted watch ends as closed.
                ds.watch(done)
            except Exception as e:
                event = e

            while not (stop.is_set() or done.is_set()):
                try:
                    changes.put(event, timeout=self._poll_interval)
                    break
                except queue.Full:
                    continue

    def maintain(self, stop: threading.Event) -> None:
        """Watch every set and export + notify on each change.

        Returns ``None`` when ``stop`` is set or when a watch stream closes;
        in the latter case the caller is expected to call ``maintain`` again.
        Raises ``WatchError``, ``WriteError`` or ``NotifyError`` otherwise.
        """
        self._sealed = True
        changes: "queue.Queue[Optional[BaseException]]" = queue.Queue(maxsize=CHANGE_QUEUE_SIZE)
        done = threading.Event()

        watchers = []
        for ds in self.sets:
            watcher = threading.Thread(
                target=self._watch_set,
                args=(ds, changes, stop, done),
                name=f"watch-set-{ds.id}",
                daemon=True,
            )
            watcher.start()
            watchers.append(watcher)

        try:
            while not stop.is_set():
                try:
                    first = changes.get(timeout=self._poll_interval)
                except queue.Empty:
                    continue
                if stop.is_set():
                    break

                batch = [first]
                while True:
                    try:
                        batch.append(changes.get_nowait())
                    except queue.Empty:
                        break

                if self.process_events(batch):
                    return
        finally:
            done.set()
            for ds in self.sets:
                ds.close()
            # Let interrupted watches finish applying whatever they were reading.
            for watcher in watchers:
                watcher.join(WATCHER_JOIN_TIMEOUT)

    def process_events(self, batch: List[Optional[BaseException]]) -> bool:
        """Handle a batch of queued watch events.

        Changes in the batch are exported and notified once. Returns True
        when a watch stream closed and the loop should be re-established.
        """
        if any(event is None for event in batch):
            self._export_and_notify()

        failure = next((event for event in batch if event is not None), None)
        if isinstance(failure, StreamClosed):
            logger.info(f"Kubernetes API connection terminated: {failure}")
            return True
        if failure is not None:
            raise WatchError(f"error maintaining sets: {failure}") from failure
        return False

    def _export_and_notify(self) -> None:
        try:
            self.export_all()
        except WriteError as e:
            raise WriteError(f"failed to export dispatcher set: {e}") from e
        try:
            self.notify()
        except NotifyError as e:
            raise NotifyError(f"failed to notify kamailio of update: {e}") from e

    def reconcile(self, stop: threading.Event) -> None:
        """Run ``maintain`` until ``stop`` is set, re-establishing closed watches."""
        while not stop.is_set():
            self.maintain(stop)
            if stop.is_set():
                break
            # A watcher torn down with the previous loop may have applied a
            # change that never reached the queue.
            if self.render() != self._last_export:
                logger.info("Dispatcher sets changed while re-establishing watches")
                self._export_and_notify()
