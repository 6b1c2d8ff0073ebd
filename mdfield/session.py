"""Editing session for one cell: dirty tracking, saves, autosave, cell switches.

All transitions run synchronously on the event loop thread; the only
suspension points are the awaited store calls. Hosts drive the controller
with ``set_content``/``save``/``request_cell_switch`` and observe it through
``subscribe``.
"""

from __future__ import annotations

import asyncio
import enum
import logging
from dataclasses import dataclass
from typing import Callable

from .config import DEFAULT_AUTOSAVE_DELAY
from .errors import ExternalStoreFailure
from .store import CellRef, CellStore

logger = logging.getLogger(__name__)


class SaveState(enum.Enum):
    CLEAN = "clean"
    DIRTY = "dirty"
    SAVING = "saving"
    ERROR = "error"


class SwitchDecision(enum.Enum):
    DISCARD = "discard"
    SAVE_THEN_SWITCH = "save_then_switch"


@dataclass
class EditingSession:
    content: str = ""
    saved_content: str = ""
    save_state: SaveState = SaveState.CLEAN
    error: str | None = None
    active_cell: CellRef | None = None
    pending_cell: CellRef | None = None
    autosave_enabled: bool = True
    version: int = 0


@dataclass(frozen=True)
class SessionSnapshot:
    save_state: SaveState
    content: str
    prompt_pending: bool
    error: str | None
    active_cell: CellRef | None
    pending_cell: CellRef | None
    autosave_enabled: bool


Listener = Callable[[SessionSnapshot], None]


class SessionController:
    """Owns the live ``EditingSession`` and gates every store call."""

    def __init__(
        self,
        store: CellStore,
        *,
        autosave_delay: float = DEFAULT_AUTOSAVE_DELAY,
        autosave_enabled: bool = True,
        initial_content: str = "",
    ):
        self.store = store
        self.autosave_delay = autosave_delay
        self.session = EditingSession(
            content=initial_content,
            saved_content=initial_content,
            autosave_enabled=autosave_enabled,
        )
        self._listeners: list[Listener] = []
        self._last_snapshot: SessionSnapshot | None = None
        self._saving = False
        self._save_done: asyncio.Event | None = None
        self._autosave_handle: asyncio.TimerHandle | None = None
        self._autosave_task: asyncio.Task | None = None
        self._switch_target: CellRef | None = None
        self._loading: CellRef | None = None
        self._generation = 0
        self._closed = False

    # Observation

    def snapshot(self) -> SessionSnapshot:
        s = self.session
        return SessionSnapshot(
            save_state=s.save_state,
            content=s.content,
            prompt_pending=s.pending_cell is not None,
            error=s.error,
            active_cell=s.active_cell,
            pending_cell=s.pending_cell,
            autosave_enabled=s.autosave_enabled,
        )

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Register ``listener``; it is called with the current snapshot at once."""
        self._listeners.append(listener)
        listener(self.snapshot())

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _notify(self) -> None:
        snapshot = self.snapshot()
        if snapshot == self._last_snapshot:
            return
        self._last_snapshot = snapshot
        for listener in list(self._listeners):
            try:
                listener(snapshot)
            except Exception:
                logger.exception("session listener failed")

    @property
    def is_saving(self) -> bool:
        return self._saving

    # Autosave

    def _cancel_autosave(self) -> None:
        if self._autosave_handle is not None:
            self._autosave_handle.cancel()
            self._autosave_handle = None

    def _reschedule_autosave(self) -> None:
        self._cancel_autosave()
        s = self.session
        if (
            self._closed
            or self._saving
            or not s.autosave_enabled
            or s.save_state is not SaveState.DIRTY
            or s.pending_cell is not None
        ):
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.debug("no running event loop; autosave not scheduled")
            return
        self._autosave_handle = loop.call_later(self.autosave_delay, self._fire_autosave)

    def _fire_autosave(self) -> None:
        self._autosave_handle = None
        s = self.session
        if self._saving or s.save_state is not SaveState.DIRTY or s.pending_cell is not None:
            return
        logger.debug("autosave of %s", s.active_cell)
        self._autosave_task = asyncio.ensure_future(self.save())

    def set_autosave_enabled(self, enabled: bool) -> None:
        self.session.autosave_enabled = bool(enabled)
        self._reschedule_autosave()
        self._notify()

    # Editing and saving

    def set_content(self, text: str) -> None:
        s = self.session
        if self._closed or text == s.content:
            return
        s.content = text
        s.version += 1
        if s.save_state is not SaveState.SAVING:
            s.save_state = SaveState.DIRTY if text != s.saved_content else SaveState.CLEAN
            s.error = None
        self._reschedule_autosave()
        self._notify()

    async def save(self) -> bool:
        """Write the current content to the active cell.

        Returns True when the store holds the content afterwards. A save
        requested while one is in flight does nothing and returns False.
        """
        s = self.session
        if self._saving or self._closed:
            return False
        if s.save_state is SaveState.CLEAN:
            return True
        if s.active_cell is None:
            s.save_state = SaveState.ERROR
            s.error = "no cell bound"
            self._notify()
            return False

        self._cancel_autosave()
        self._saving = True
        self._save_done = asyncio.Event()
        ref = s.active_cell
        written = s.content
        s.save_state = SaveState.SAVING
        s.error = None
        self._notify()

        error: str | None = None
        try:
            await self.store.write_cell(ref, written)
        except ExternalStoreFailure as exc:
            error = str(exc) or "save failed"
        except Exception as exc:
            logger.exception("store raised an unexpected error while saving %s", ref)
            error = f"save failed: {exc}"
        finally:
            self._saving = False
            self._save_done.set()

        if error is None:
            s.saved_content = written
            s.save_state = SaveState.CLEAN if s.content == written else SaveState.DIRTY
            logger.info("saved %s", ref)
        else:
            s.save_state = SaveState.ERROR
            s.error = error
            logger.warning("saving %s failed: %s", ref, error)
        self._reschedule_autosave()
        self._notify()
        return error is None

    # Cell switching

    async def start(self, ref: CellRef | None = None) -> bool:
        """Bind the first cell, or keep the default content when ``ref`` is None."""
        if ref is None:
            self._notify()
            return True
        return await self._load(ref)

    async def request_cell_switch(self, ref: CellRef) -> None:
        s = self.session
        if self._closed:
            return
        if s.pending_cell is not None:
            # One prompt at a time: later requests only move its target.
            s.pending_cell = None if ref == s.active_cell else ref
            self._reschedule_autosave()
            self._notify()
            return
        if ref == s.active_cell:
            if self._loading is not None:
                self._generation += 1
                self._loading = None
            return
        if ref == self._loading:
            return

        self._switch_target = ref
        if self._saving and self._save_done is not None:
            await self._save_done.wait()
            if self._switch_target != ref or self._closed:
                return
            s = self.session

        if s.save_state in (SaveState.DIRTY, SaveState.ERROR):
            self._raise_prompt(ref)
            return
        await self._load(ref)

    def _raise_prompt(self, ref: CellRef) -> None:
        self.session.pending_cell = ref
        self._cancel_autosave()
        logger.debug("switch to %s waits for a decision", ref)
        self._notify()

    async def resolve_switch_prompt(self, decision: SwitchDecision) -> bool:
        """Act on the pending prompt. Returns True once the new cell is bound."""
        s = self.session
        if s.pending_cell is None or self._closed:
            return False

        if decision is SwitchDecision.SAVE_THEN_SWITCH:
            if not await self.save():
                # The prompt stays up so the user can retry or discard.
                return False
            if s.save_state is not SaveState.CLEAN or s.pending_cell is None:
                return False

        target = s.pending_cell
        s.pending_cell = None
        self._notify()
        return await self._load(target)

    async def _load(self, ref: CellRef) -> bool:
        self._generation += 1
        generation = self._generation
        version = self.session.version
        self._loading = ref
        self._switch_target = ref
        try:
            text = await self.store.read_cell(ref)
        except ExternalStoreFailure as exc:
            if generation != self._generation:
                return False
            self._loading = None
            self.session.pending_cell = None
            self.session.error = f"could not load {ref}: {exc}"
            logger.warning("%s", self.session.error)
            self._notify()
            return False

        if self._saving and self._save_done is not None:
            await self._save_done.wait()
        if generation != self._generation or self._closed:
            logger.debug("dropped stale read of %s", ref)
            return False
        self._loading = None

        s = self.session
        if s.version != version and s.save_state in (SaveState.DIRTY, SaveState.ERROR):
            # The user typed while the read was in flight.
            self._raise_prompt(ref)
            return False

        self._bind(ref, text)
        return True

    def _bind(self, ref: CellRef, text: str) -> None:
        self._cancel_autosave()
        self.session = EditingSession(
            content=text,
            saved_content=text,
            active_cell=ref,
            autosave_enabled=self.session.autosave_enabled,
        )
        logger.info("bound %s", ref)
        self._notify()

    async def close(self, *, save_pending: bool = False) -> bool:
        """Stop timers and drop in-flight reads; optionally flush unsaved edits.

        Returns False, leaving the session open, when the flush fails.
        """
        if self._closed:
            return True
        if self._saving and self._save_done is not None:
            await self._save_done.wait()
        if save_pending and self.session.save_state in (SaveState.DIRTY, SaveState.ERROR):
            if not await self.save():
                return False
        self._closed = True
        self._generation += 1
        self._cancel_autosave()
        self._listeners.clear()
        return True
