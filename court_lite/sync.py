"""
Case Sync Session
=================

One participant's live view of a case.

- Local patches are merged optimistically and then written to the store.
  Fields written but not yet confirmed are "pending" and survive polled reads.
- The store is polled on a fixed interval to observe the counterpart.
- A polled read that reports an earlier stage than the local view right after
  a local stage change is treated as a lagging snapshot and discarded.

Store calls are blocking (SQLAlchemy) and run in a worker thread.
"""

import asyncio
import inspect
import logging
import time
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

from .config import get_settings
from .errors import CaseNotFoundError, CourtError, InvalidTransitionError, SaveFailedError
from .schemas import Case, CasePatch, CaseStage
from .store import CaseStore
from .workflow import apply_patch, is_behind, stage_rank

logger = logging.getLogger(__name__)

Listener = Callable[[Optional[Case]], Any]
Action = Callable[[Case], Union[CasePatch, Awaitable[CasePatch]]]


class CaseSession:
    """
    Optimistic, polling view of one case for one user.

    Usage:
        session = CaseSession(store, case_id, user_id)
        await session.load()
        await session.submit(lambda case: workflow.submit_evidence(case, user_id))
        session.start()   # background polling
        ...
        await session.stop()
    """

    def __init__(
        self,
        store: CaseStore,
        case_id: str,
        user_id: Optional[str] = None,
        *,
        poll_interval: Optional[float] = None,
        stale_read_window: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        settings = get_settings()
        self.store = store
        self.case_id = case_id
        self.user_id = user_id
        self.poll_interval = poll_interval if poll_interval is not None else settings.poll_interval
        self.stale_read_window = (
            stale_read_window if stale_read_window is not None else settings.stale_read_window
        )
        self._clock = clock

        self.case: Optional[Case] = None
        self.closed = False

        # field -> sequence number of the latest unconfirmed write to it
        self._pending: Dict[str, int] = {}
        self._write_seq = 0
        self._write_lock = asyncio.Lock()

        self._stage_written_at: Optional[float] = None
        self._stage_confirmed_at: Optional[datetime] = None

        self._listeners: List[Listener] = []
        self._task: Optional[asyncio.Task] = None

    # -------------------------------------------------------------------------
    # Listeners
    # -------------------------------------------------------------------------

    def on_change(self, listener: Listener) -> Callable[[], None]:
        """Register a listener; returns a function that unregisters it"""
        self._listeners.append(listener)
        return lambda: self._listeners.remove(listener) if listener in self._listeners else None

    async def _notify(self) -> None:
        for listener in list(self._listeners):
            try:
                result = listener(self.case)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.warning(f"Case {self.case_id} listener failed: {e}")

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    @property
    def pending_fields(self) -> List[str]:
        return sorted(self._pending)

    async def load(self) -> Case:
        """
        Replace the local view with the authoritative stored case.

        Raises:
            CaseNotFoundError: the case does not exist (the session is closed)
        """
        case = await asyncio.to_thread(self.store.get, self.case_id)
        if case is None:
            self.closed = True
            self.case = None
            await self._notify()
            raise CaseNotFoundError(f"Case {self.case_id} not found")
        self.case = case
        self._pending.clear()
        await self._notify()
        return case

    def is_stale_read(self, remote: Case) -> bool:
        """True when a polled snapshot must not replace the local stage"""
        local = self.case
        if local is None or remote.stage == local.stage:
            return False

        # Known lagging snapshot right after entering DEBATE
        if remote.stage == CaseStage.CROSS_EXAMINATION and stage_rank(local.stage) is not None:
            if not is_behind(local.stage, CaseStage.DEBATE):
                return True

        if not is_behind(remote.stage, local.stage):
            return False
        if self._stage_written_at is None:
            return False
        if self._clock() - self._stage_written_at > self.stale_read_window:
            return False
        # A newer write than our stage change is a real counterpart move
        if self._stage_confirmed_at is not None and remote.updated_at > self._stage_confirmed_at:
            return False
        return True

    def _overlay(self, remote: Case) -> Case:
        """Remote snapshot with unconfirmed local fields laid over it"""
        if not self._pending or self.case is None:
            return remote
        return remote.model_copy(update={name: getattr(self.case, name) for name in self._pending})

    async def poll_once(self) -> bool:
        """
        Re-read the stored case and reconcile. Returns True when the view changed.
        """
        remote = await asyncio.to_thread(self.store.get, self.case_id)
        if remote is None:
            if not self.closed:
                logger.info(f"Case {self.case_id} no longer exists, closing session")
                self.closed = True
                self.case = None
                await self._notify()
                return True
            return False

        if self.case is not None and self.is_stale_read(remote):
            logger.debug(
                f"Case {self.case_id}: discarding stale read "
                f"(remote {remote.stage.value}, local {self.case.stage.value})"
            )
            return False

        merged = self._overlay(remote)
        if merged == self.case:
            return False
        self.case = merged
        await self._notify()
        return True

    # -------------------------------------------------------------------------
    # Writes
    # -------------------------------------------------------------------------

    def _confirm(self, seq: int) -> None:
        for name in [n for n, s in self._pending.items() if s == seq]:
            del self._pending[name]

    async def apply(self, patch: CasePatch, expected_stage: Optional[CaseStage] = None) -> Case:
        """
        Merge a patch locally, then persist it.

        `expected_stage` is the stage of the view the patch was built from
        (default: the current local stage). Stage changes and argument edits
        are only written while the stored case is still in that stage, so a
        late AI result cannot land on a case that was cancelled or stepped
        back in the meantime.

        Raises:
            CaseIntegrityError: the patch breaks a model invariant (nothing written)
            CaseNotFoundError: the case was deleted
            InvalidTransitionError: the case left `expected_stage`; the local
                view was reloaded
            SaveFailedError: the write failed; the local view was reloaded
        """
        if self.case is None:
            await self.load()
        if patch.is_empty():
            return self.case

        source_stage = expected_stage if expected_stage is not None else self.case.stage
        if self.case.stage != source_stage:
            raise InvalidTransitionError(
                f"Case {self.case_id} moved from '{source_stage.value}' to '{self.case.stage.value}'"
            )
        touched = patch.touched_fields()
        guarded = "stage" in touched or patch.argument is not None

        self.case = apply_patch(self.case, patch)
        self._write_seq += 1
        seq = self._write_seq
        for name in touched:
            self._pending[name] = seq
        if "stage" in touched:
            self._stage_written_at = self._clock()
            self._stage_confirmed_at = None
        await self._notify()

        async with self._write_lock:
            try:
                confirmed = await asyncio.to_thread(
                    self.store.update, self.case_id, patch, source_stage if guarded else None
                )
            except CaseNotFoundError:
                self._confirm(seq)
                self.closed = True
                self.case = None
                await self._notify()
                raise
            except InvalidTransitionError as e:
                logger.warning(f"Case {self.case_id}: write rejected, reloading: {e}")
                self._confirm(seq)
                await self.load()
                raise
            except Exception as e:
                logger.error(f"Case {self.case_id}: save failed, reloading: {e}")
                self._confirm(seq)
                try:
                    await self.load()
                except CourtError as reload_error:
                    logger.error(f"Case {self.case_id}: reload after failed save failed: {reload_error}")
                raise SaveFailedError(f"Could not save changes to case {self.case_id}") from e

            self._confirm(seq)
            if "stage" in touched:
                self._stage_confirmed_at = confirmed.updated_at
            self.case = self._overlay(confirmed)
            await self._notify()
        return self.case

    async def submit(self, action: Action) -> Case:
        """Run a workflow action against the current view and apply its patch"""
        if self.case is None:
            await self.load()
        base_stage = self.case.stage
        patch = action(self.case)
        if inspect.isawaitable(patch):
            patch = await patch
        return await self.apply(patch, expected_stage=base_stage)

    # -------------------------------------------------------------------------
    # Polling loop
    # -------------------------------------------------------------------------

    async def run_polling(self) -> None:
        """Poll until stopped or the case disappears"""
        while not self.closed:
            try:
                await self.poll_once()
            except Exception as e:
                # Transient read failures are retried on the next tick
                logger.warning(f"Case {self.case_id}: poll failed: {e}")
            if self.closed:
                break
            await asyncio.sleep(self.poll_interval)

    def start(self) -> asyncio.Task:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self.run_polling())
        return self._task

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
