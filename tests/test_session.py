"""Tests for the editing-session state machine."""

import asyncio

import pytest

from mdfield.session import SaveState, SessionController, SwitchDecision
from mdfield.store import CellRef, MemoryCellStore

pytestmark = pytest.mark.asyncio

A = CellRef("rec1", "notes")
B = CellRef("rec2", "notes")
C = CellRef("rec3", "notes")


def make_store(delay=0.0):
    return MemoryCellStore({A: "alpha", B: "beta", C: "gamma"}, delay=delay)


async def started(store, **kwargs):
    kwargs.setdefault("autosave_enabled", False)
    controller = SessionController(store, **kwargs)
    await controller.start(A)
    return controller


class TestEditingAndSaving:
    async def test_edit_then_save_returns_to_clean(self):
        store = make_store()
        controller = await started(store)
        states = []
        controller.subscribe(lambda snap: states.append(snap.save_state))

        controller.set_content("alpha!")
        assert controller.session.save_state is SaveState.DIRTY
        assert await controller.save() is True

        assert controller.session.save_state is SaveState.CLEAN
        assert controller.session.saved_content == "alpha!"
        assert store.cells[A] == "alpha!"
        assert states == [SaveState.CLEAN, SaveState.DIRTY, SaveState.SAVING, SaveState.CLEAN]

    async def test_reverting_an_edit_is_clean(self):
        controller = await started(make_store())
        controller.set_content("alphaX")
        assert controller.session.save_state is SaveState.DIRTY
        controller.set_content("alpha")
        assert controller.session.save_state is SaveState.CLEAN

    async def test_save_while_clean_writes_nothing(self):
        store = make_store()
        controller = await started(store)
        assert await controller.save() is True
        assert store.writes == []

    async def test_second_save_during_flight_is_ignored(self):
        store = make_store(delay=0.01)
        controller = await started(store)
        controller.set_content("a")

        first = asyncio.ensure_future(controller.save())
        await asyncio.sleep(0)
        assert controller.session.save_state is SaveState.SAVING
        assert controller.is_saving

        assert await controller.save() is False
        assert await first is True
        assert store.writes == [(A, "a")]

    async def test_edit_during_save_leaves_session_dirty(self):
        store = make_store(delay=0.01)
        controller = await started(store)
        controller.set_content("a")

        first = asyncio.ensure_future(controller.save())
        await asyncio.sleep(0)
        controller.set_content("ab")
        assert controller.session.save_state is SaveState.SAVING

        await first
        assert controller.session.save_state is SaveState.DIRTY
        assert controller.session.saved_content == "a"
        assert controller.session.content == "ab"

    async def test_failed_save_sets_error_and_can_be_retried(self):
        store = make_store()
        store.fail_writes = 1
        controller = await started(store)
        controller.set_content("a")

        assert await controller.save() is False
        assert controller.session.save_state is SaveState.ERROR
        assert "rec1/notes" in controller.session.error

        assert await controller.save() is True
        assert controller.session.save_state is SaveState.CLEAN
        assert controller.session.error is None

    async def test_edit_after_error_returns_to_dirty(self):
        store = make_store()
        store.fail_writes = 1
        controller = await started(store)
        controller.set_content("a")
        await controller.save()

        controller.set_content("ab")
        assert controller.session.save_state is SaveState.DIRTY
        assert controller.session.error is None

    async def test_save_without_bound_cell_is_an_error(self):
        store = make_store()
        controller = SessionController(store, autosave_enabled=False)
        await controller.start()
        controller.set_content("x")

        assert await controller.save() is False
        assert controller.session.save_state is SaveState.ERROR
        assert controller.session.error == "no cell bound"
        assert store.writes == []


class TestCellSwitching:
    async def test_switch_from_clean_loads_immediately(self):
        store = make_store()
        controller = await started(store)

        await controller.request_cell_switch(B)

        assert controller.session.active_cell == B
        assert controller.session.content == "beta"
        assert controller.session.save_state is SaveState.CLEAN
        assert store.writes == []

    async def test_switch_to_active_cell_is_a_noop(self):
        store = make_store()
        controller = await started(store)
        await controller.request_cell_switch(A)
        assert store.reads == [A]

    async def test_switch_from_dirty_prompts_without_writing(self):
        store = make_store()
        controller = await started(store)
        controller.set_content("changed")

        await controller.request_cell_switch(B)

        snap = controller.snapshot()
        assert snap.prompt_pending
        assert snap.pending_cell == B
        assert snap.active_cell == A
        assert store.writes == []
        assert store.reads == [A]

    async def test_discard_binds_new_cell_and_keeps_store(self):
        store = make_store()
        controller = await started(store)
        controller.set_content("changed")
        await controller.request_cell_switch(B)

        assert await controller.resolve_switch_prompt(SwitchDecision.DISCARD) is True

        assert controller.session.active_cell == B
        assert controller.session.content == "beta"
        assert controller.session.save_state is SaveState.CLEAN
        assert store.cells[A] == "alpha"
        assert store.writes == []

    async def test_later_requests_retarget_the_single_prompt(self):
        store = make_store()
        controller = await started(store)
        prompts = []
        controller.subscribe(lambda snap: prompts.append(snap.prompt_pending))
        controller.set_content("changed")

        await controller.request_cell_switch(B)
        await controller.request_cell_switch(C)

        assert controller.session.pending_cell == C
        raised = sum(1 for before, after in zip(prompts, prompts[1:]) if after and not before)
        assert raised == 1

        assert await controller.resolve_switch_prompt(SwitchDecision.SAVE_THEN_SWITCH) is True
        assert store.writes == [(A, "changed")]
        assert controller.session.active_cell == C
        assert controller.session.content == "gamma"

    async def test_request_for_active_cell_cancels_prompt(self):
        controller = await started(make_store())
        controller.set_content("changed")
        await controller.request_cell_switch(B)

        await controller.request_cell_switch(A)

        snap = controller.snapshot()
        assert not snap.prompt_pending
        assert snap.active_cell == A
        assert snap.save_state is SaveState.DIRTY

    async def test_failed_save_then_switch_keeps_prompt(self):
        store = make_store()
        controller = await started(store)
        controller.set_content("changed")
        await controller.request_cell_switch(B)
        store.fail_writes = 1

        assert await controller.resolve_switch_prompt(SwitchDecision.SAVE_THEN_SWITCH) is False

        snap = controller.snapshot()
        assert snap.prompt_pending
        assert snap.save_state is SaveState.ERROR
        assert snap.active_cell == A

        assert await controller.resolve_switch_prompt(SwitchDecision.DISCARD) is True
        assert controller.session.active_cell == B

    async def test_resolve_without_prompt_does_nothing(self):
        store = make_store()
        controller = await started(store)
        assert await controller.resolve_switch_prompt(SwitchDecision.DISCARD) is False
        assert controller.session.active_cell == A

    async def test_switch_waits_for_inflight_save(self):
        store = make_store(delay=0.01)
        controller = await started(store)
        controller.set_content("x")

        save_task = asyncio.ensure_future(controller.save())
        await asyncio.sleep(0)
        switch_task = asyncio.ensure_future(controller.request_cell_switch(B))
        await asyncio.sleep(0)
        assert controller.session.active_cell == A

        assert await save_task is True
        await switch_task

        assert store.cells[A] == "x"
        assert controller.session.active_cell == B
        assert controller.session.save_state is SaveState.CLEAN

    async def test_stale_read_is_dropped(self):
        store = make_store(delay=0.01)
        controller = await started(store)

        first = asyncio.ensure_future(controller.request_cell_switch(B))
        await asyncio.sleep(0)
        second = asyncio.ensure_future(controller.request_cell_switch(C))
        await asyncio.gather(first, second)

        assert controller.session.active_cell == C
        assert controller.session.content == "gamma"
        assert store.reads == [A, B, C]

    async def test_typing_during_read_prompts_instead_of_overwriting(self):
        store = make_store(delay=0.01)
        controller = await started(store)

        switch_task = asyncio.ensure_future(controller.request_cell_switch(B))
        await asyncio.sleep(0)
        controller.set_content("typed")
        await switch_task

        snap = controller.snapshot()
        assert snap.content == "typed"
        assert snap.active_cell == A
        assert snap.pending_cell == B

    async def test_read_failure_keeps_current_session(self):
        store = make_store()
        controller = await started(store)
        store.fail_reads = 1

        await controller.request_cell_switch(B)

        snap = controller.snapshot()
        assert snap.active_cell == A
        assert snap.content == "alpha"
        assert snap.save_state is SaveState.CLEAN
        assert not snap.prompt_pending
        assert "could not load rec2/notes" in snap.error


class TestAutosave:
    async def test_autosave_writes_after_quiet_period(self):
        store = make_store()
        controller = await started(store, autosave_enabled=True, autosave_delay=0.01)

        controller.set_content("a")
        await asyncio.sleep(0.05)

        assert store.writes == [(A, "a")]
        assert controller.session.save_state is SaveState.CLEAN

    async def test_each_edit_restarts_the_timer(self):
        store = make_store()
        controller = await started(store, autosave_enabled=True, autosave_delay=0.1)

        controller.set_content("a")
        await asyncio.sleep(0.06)
        controller.set_content("ab")
        await asyncio.sleep(0.06)
        assert store.writes == []

        await asyncio.sleep(0.1)
        assert store.writes == [(A, "ab")]

    async def test_disabled_autosave_never_writes(self):
        store = make_store()
        controller = await started(store, autosave_enabled=True, autosave_delay=0.01)
        controller.set_autosave_enabled(False)

        controller.set_content("a")
        await asyncio.sleep(0.05)

        assert store.writes == []
        assert controller.snapshot().autosave_enabled is False

    async def test_no_autosave_while_prompt_is_pending(self):
        store = make_store()
        controller = await started(store, autosave_enabled=True, autosave_delay=0.01)
        controller.set_content("a")
        await controller.request_cell_switch(B)

        await asyncio.sleep(0.05)

        assert store.writes == []
        assert controller.snapshot().prompt_pending

    async def test_close_cancels_pending_autosave(self):
        store = make_store()
        controller = await started(store, autosave_enabled=True, autosave_delay=0.01)
        controller.set_content("a")

        await controller.close()
        await asyncio.sleep(0.05)

        assert store.writes == []

    async def test_close_can_flush_unsaved_edits(self):
        store = make_store()
        controller = await started(store)
        controller.set_content("a")

        await controller.close(save_pending=True)

        assert store.cells[A] == "a"

    async def test_close_stays_open_when_flush_fails(self):
        store = make_store()
        controller = await started(store)
        controller.set_content("a")
        store.fail_writes = 1

        assert await controller.close(save_pending=True) is False

        assert controller.session.save_state is SaveState.ERROR
        assert controller.snapshot().content == "a"
        controller.set_content("ab")
        assert await controller.close(save_pending=True) is True
        assert store.cells[A] == "ab"

    async def test_close_without_flush_drops_failed_edits(self):
        store = make_store()
        controller = await started(store)
        controller.set_content("a")
        store.fail_writes = 1
        await controller.close(save_pending=True)

        assert await controller.close() is True
        assert store.cells[A] == "alpha"


async def test_listener_errors_do_not_break_notifications(caplog):
    controller = await started(make_store())
    seen = []

    def broken(snapshot):
        if snapshot.save_state is SaveState.DIRTY:
            raise RuntimeError("listener bug")

    controller.subscribe(broken)
    controller.subscribe(seen.append)
    controller.set_content("a")

    assert seen[-1].save_state is SaveState.DIRTY
    assert "session listener failed" in caplog.text


async def test_unsubscribe_stops_updates():
    controller = await started(make_store())
    seen = []
    unsubscribe = controller.subscribe(seen.append)
    unsubscribe()
    controller.set_content("a")
    assert len(seen) == 1
