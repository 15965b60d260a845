"""Tests for view transitions."""

from __future__ import annotations

import asyncio

import pytest

from helpers import fast_config, until
from parley.core.events import BusEventType
from parley.core.models import ViewChangeReason, ViewState
from parley.errors import ViewTransitionInProgress


@pytest.fixture
def fresh(make_engine):
    """An engine that has not hydrated yet."""
    return make_engine(config=fast_config(skip_welcome=True))


def record(engine):
    seen = []
    for name in (BusEventType.VIEW_PRE_CHANGE, BusEventType.VIEW_CHANGE):
        engine.on(name, lambda event, instance: seen.append((event.type.value, event.reason.value)))
    return seen


class TestChangeView:
    @pytest.mark.asyncio
    async def test_opening_fires_both_events_and_hydrates(self, fresh):
        seen = record(fresh)

        final = await fresh.open()
        await fresh.wait_idle()

        assert final == ViewState.only("main_window")
        assert seen == [("view:pre:change", "launcher_clicked"), ("view:change", "launcher_clicked")]
        assert fresh.state.is_hydrated

    @pytest.mark.asyncio
    async def test_no_hydration_when_not_asked(self, fresh):
        await fresh.change_view("main_window", try_hydrate=False)
        await fresh.wait_idle()

        assert not fresh.state.is_hydrated

    @pytest.mark.asyncio
    async def test_same_view_is_a_no_op_unless_forced(self, fresh):
        seen = record(fresh)

        await fresh.change_view("launcher")
        assert seen == []

        await fresh.change_view("launcher", force=True)
        assert [s[0] for s in seen] == ["view:pre:change", "view:change"]

    @pytest.mark.asyncio
    async def test_mapping_is_merged_into_the_current_view(self, fresh):
        final = await fresh.change_view({"tour": True})

        assert final == ViewState(launcher=True, main_window=False, tour=True)

    @pytest.mark.asyncio
    async def test_unknown_view_name(self, fresh):
        with pytest.raises(ValueError):
            await fresh.change_view({"sidebar": True})


class TestListeners:
    @pytest.mark.asyncio
    async def test_pre_change_veto(self, fresh):
        changes = []

        def veto(event, instance):
            event.cancel_view_change = True

        fresh.on(BusEventType.VIEW_PRE_CHANGE, veto)
        fresh.on(BusEventType.VIEW_CHANGE, lambda event, instance: changes.append(event))

        final = await fresh.change_view("main_window")

        assert final == ViewState()
        assert changes == []
        assert not fresh.state.view_changing

    @pytest.mark.asyncio
    async def test_pre_change_rewrite(self, fresh):
        def redirect(event, instance):
            event.new_view_state = ViewState.only("tour")

        fresh.on(BusEventType.VIEW_PRE_CHANGE, redirect)

        assert await fresh.change_view("main_window") == ViewState.only("tour")

    @pytest.mark.asyncio
    async def test_change_veto_rolls_back(self, fresh):
        during = []

        def veto(event, instance):
            during.append(instance.state.persisted.view_state)
            event.cancel_view_change = True

        fresh.on(BusEventType.VIEW_CHANGE, veto)
        final = await fresh.change_view("main_window", try_hydrate=False)

        assert during == [ViewState.only("main_window")]
        assert final == ViewState()

    @pytest.mark.asyncio
    async def test_overlapping_change_is_rejected(self, fresh):
        gate = asyncio.Event()
        entered = []

        async def slow(event, instance):
            entered.append(event)
            await gate.wait()

        fresh.on(BusEventType.VIEW_PRE_CHANGE, slow)
        first = asyncio.ensure_future(
            fresh.change_view("main_window", ViewChangeReason.CALLED_CHANGE_VIEW, try_hydrate=False)
        )
        await until(lambda: entered)

        with pytest.raises(ViewTransitionInProgress):
            await fresh.change_view("tour")
        gate.set()

        assert await first == ViewState.only("main_window")
