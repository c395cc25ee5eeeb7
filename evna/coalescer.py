"""
Debounced sync trigger for the dispatch directory.

Writing a bridge or dispatch note should make it searchable in the
historical tier within seconds, but agents tend to write several files in
a burst. The coalescer watches the directory, collects changed filenames
and fires a single sync once the burst has been quiet for the debounce
interval.

States::

    idle --notify--> pending --notify--> pending (timer re-armed)
    pending --timer--> triggering --done/failed--> idle
"""

import asyncio
import logging
import os
from pathlib import Path
from typing import Optional, Union

from watchfiles import awatch

from .errors import SyncTriggerFailed
from .protocol import SyncTrigger

logger = logging.getLogger(__name__)

DEFAULT_DEBOUNCE_MS = 5000
DEFAULT_TRIGGER_TIMEOUT = 30.0

STATE_IDLE = "idle"
STATE_PENDING = "pending"
STATE_TRIGGERING = "triggering"


class FloatctlSyncTrigger:
    """Run ``floatctl sync trigger --daemon <type>`` as a subprocess."""

    def __init__(self, floatctl_bin: Optional[str] = None,
                 timeout: float = DEFAULT_TRIGGER_TIMEOUT):
        self._bin = floatctl_bin or os.environ.get("FLOATCTL_BIN") or "floatctl"
        self._timeout = timeout

    @property
    def command(self) -> str:
        return self._bin

    async def trigger(self, daemon_type: str, file_count: int) -> str:
        """
        Start the sync daemon run and return its stdout.

        Raises:
            SyncTriggerFailed: Binary missing, non-zero exit, or timeout
        """
        args = [self._bin, "sync", "trigger", "--daemon", daemon_type]
        logger.debug("Running %s for %d file(s)", " ".join(args), file_count)
        try:
            proc = await asyncio.create_subprocess_exec(
                *args,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            raise SyncTriggerFailed(f"Could not run {self._bin}: {e}") from e

        try:
            stdout, stderr = await asyncio.wait_for(proc.communicate(), self._timeout)
        except asyncio.TimeoutError as e:
            proc.kill()
            await proc.wait()
            raise SyncTriggerFailed(
                f"{self._bin} sync trigger timed out after {self._timeout:g}s"
            ) from e

        if proc.returncode != 0:
            detail = stderr.decode(errors="replace").strip()
            raise SyncTriggerFailed(
                f"{self._bin} sync trigger exited with {proc.returncode}: {detail}"
            )
        return stdout.decode(errors="replace")


class WriteCoalescer:
    """
    Watch a directory and batch file changes into one sync per burst.

    All state is touched only from the event loop thread, so no locking.
    The caller owns the instance: ``await start()`` to begin watching and
    ``await stop()`` on shutdown.
    """

    def __init__(
        self,
        watch_dir: Union[str, Path],
        trigger: SyncTrigger,
        *,
        enabled: bool = True,
        debounce_ms: int = DEFAULT_DEBOUNCE_MS,
        daemon_type: str = "dispatch",
        suffix: str = ".md",
    ):
        self._watch_dir = Path(watch_dir).expanduser()
        self._trigger = trigger
        self._enabled = enabled
        self._debounce = debounce_ms / 1000
        self._daemon_type = daemon_type
        self._suffix = suffix

        self._pending_writes: set[str] = set()
        self._timer: Optional[asyncio.TimerHandle] = None
        self._watch_task: Optional[asyncio.Task] = None
        self._sync_task: Optional[asyncio.Task] = None
        self._stop_event: Optional[asyncio.Event] = None

    @property
    def watch_dir(self) -> Path:
        return self._watch_dir

    @property
    def enabled(self) -> bool:
        return self._enabled

    @property
    def running(self) -> bool:
        return self._watch_task is not None and not self._watch_task.done()

    @property
    def pending_writes(self) -> frozenset[str]:
        return frozenset(self._pending_writes)

    @property
    def state(self) -> str:
        if self._sync_task is not None and not self._sync_task.done():
            return STATE_TRIGGERING
        if self._timer is not None:
            return STATE_PENDING
        return STATE_IDLE

    def notify(self, filename: str) -> None:
        """Record one changed file and (re)start the debounce timer."""
        if not filename or not filename.endswith(self._suffix):
            return

        logger.debug("File changed: %s", filename)
        self._pending_writes.add(filename)

        if self._timer is not None:
            self._timer.cancel()
        loop = asyncio.get_running_loop()
        self._timer = loop.call_later(self._debounce, self._on_timer)

    def _on_timer(self) -> None:
        loop = asyncio.get_running_loop()
        if self._sync_task is not None and not self._sync_task.done():
            # One sync at a time: the next burst waits for the running one
            self._timer = loop.call_later(self._debounce, self._on_timer)
            return
        self._timer = None
        self._sync_task = loop.create_task(self._run_sync())

    async def _run_sync(self) -> None:
        # Writes arriving during the sync start a new burst
        files = self._pending_writes
        self._pending_writes = set()
        logger.info("Triggering %s sync for %d changed file(s)",
                    self._daemon_type, len(files))
        try:
            output = await self._trigger.trigger(self._daemon_type, len(files))
        except asyncio.CancelledError:
            raise
        except SyncTriggerFailed as e:
            logger.error("Sync trigger failed: %s", e)
            return
        except Exception as e:
            logger.exception("Sync trigger raised unexpectedly: %s", e)
            return

        logger.info("Sync triggered")
        if output and output.strip():
            logger.info("%s", output.strip())

    async def start(self) -> None:
        """Begin watching. No-op when disabled or already running."""
        if not self._enabled:
            logger.info("Write coalescer disabled, not watching %s", self._watch_dir)
            return
        if self.running:
            logger.debug("Write coalescer already running")
            return
        if not self._watch_dir.is_dir():
            raise FileNotFoundError(f"Watch directory not found: {self._watch_dir}")

        self._stop_event = asyncio.Event()
        self._watch_task = asyncio.get_running_loop().create_task(self._watch())
        logger.info("Watching %s for %s changes (debounce %.1fs)",
                    self._watch_dir, self._suffix, self._debounce)

    async def _watch(self) -> None:
        root = self._watch_dir.resolve()
        async for changes in awatch(self._watch_dir, recursive=True,
                                    stop_event=self._stop_event):
            for _, path in changes:
                try:
                    relative = Path(path).resolve().relative_to(root)
                except ValueError:
                    relative = Path(path)
                self.notify(relative.as_posix())

    async def stop(self) -> None:
        """Stop watching and drop any scheduled or running sync."""
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        if self._stop_event is not None:
            self._stop_event.set()

        for task in (self._watch_task, self._sync_task):
            if task is not None and not task.done():
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    current = asyncio.current_task()
                    if current is not None and current.cancelling():
                        raise
        self._watch_task = None
        self._sync_task = None
        self._stop_event = None
