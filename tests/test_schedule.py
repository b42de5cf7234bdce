#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Shift roster tests
"""

import asyncio

import pytest

from registry.errors import ItemNotFoundError, ValidationError
from registry.models import Collections, DailySchedule, Shift, Team
from services.schedule import ScheduleService, assign_to_shift, remove_from_shift

DATE = "2024-05-01"


class TestAssignToShift:

    def test_day_to_night_moves_person(self):
        schedule = DailySchedule(date=DATE, day_testers=["T1", "T2"])
        assign_to_shift(schedule, "T1", Team.TESTERS, Shift.NIGHT)
        assert schedule.day_testers == ["T2"]
        assert schedule.night_testers == ["T1"]

    def test_assistants_use_their_own_lists(self):
        schedule = DailySchedule(date=DATE, night_assistants=["A1"])
        assign_to_shift(schedule, "A1", Team.ASSISTANTS, Shift.DAY)
        assert schedule.day_assistants == ["A1"]
        assert schedule.night_assistants == []
        assert schedule.day_testers == []

    def test_repeat_is_noop(self):
        schedule = DailySchedule(date=DATE)
        assign_to_shift(schedule, "T1", Team.TESTERS, Shift.DAY)
        assign_to_shift(schedule, "T1", Team.TESTERS, Shift.DAY)
        assert schedule.day_testers == ["T1"]

    @pytest.mark.parametrize("team", [None, "", "cleaners"])
    def test_person_without_team(self, team):
        with pytest.raises(ValidationError):
            assign_to_shift(DailySchedule(date=DATE), "T1", team, Shift.DAY)

    def test_unknown_shift(self):
        with pytest.raises(ValidationError):
            assign_to_shift(DailySchedule(date=DATE), "T1", Team.TESTERS, "evening")

    def test_remove(self):
        schedule = DailySchedule(date=DATE, day_testers=["T1", "T2"])
        remove_from_shift(schedule, "T1", Team.TESTERS, Shift.DAY)
        remove_from_shift(schedule, "T9", Team.TESTERS, Shift.DAY)
        assert schedule.day_testers == ["T2"]


class TestScheduleService:

    def test_empty_date(self, store):
        schedule = asyncio.run(ScheduleService(store).get_schedule(DATE))
        assert schedule.members(Shift.DAY) == [] and schedule.members(Shift.NIGHT) == []

    def test_assign_persists(self, store, personnel):
        service = ScheduleService(store)
        asyncio.run(service.assign("t1", Shift.DAY, DATE))
        asyncio.run(service.assign("t1", Shift.NIGHT, DATE))
        asyncio.run(service.assign("a1", Shift.NIGHT, DATE))

        stored = asyncio.run(store.get(Collections.DAILY_SCHEDULES, DATE))
        assert stored == {
            "dayShiftTesters": [],
            "nightShiftTesters": ["t1"],
            "dayShiftAssistants": [],
            "nightShiftAssistants": ["a1"],
        }
        assert asyncio.run(service.scheduled_dates()) == [DATE]

    def test_remove(self, store, personnel):
        service = ScheduleService(store)
        asyncio.run(service.assign("t2", Shift.DAY, DATE))
        schedule = asyncio.run(service.remove("t2", Shift.DAY, DATE))
        assert schedule.day_testers == []

    def test_unknown_person(self, store):
        with pytest.raises(ItemNotFoundError):
            asyncio.run(ScheduleService(store).assign("ghost", Shift.DAY, DATE))

    def test_person_without_team_is_rejected(self, store):
        asyncio.run(store.set(Collections.TESTERS, "x1", {"name": "Dana", "team": None}))
        with pytest.raises(ValidationError):
            asyncio.run(ScheduleService(store).assign("x1", Shift.DAY, DATE))
        assert asyncio.run(store.get(Collections.DAILY_SCHEDULES, DATE)) is None

    def test_legacy_team_id(self, store):
        asyncio.run(store.set(Collections.TESTERS, "x1", {"name": "Eve", "team": "assistants_4_2"}))
        schedule = asyncio.run(ScheduleService(store).assign("x1", Shift.DAY, DATE))
        assert schedule.day_assistants == ["x1"]

    def test_on_shift_personnel(self, store, personnel):
        service = ScheduleService(store)
        schedule = DailySchedule(date=DATE, day_testers=["t2", "gone"], day_assistants=["a1"],
                                 night_testers=["t1"])
        asyncio.run(service.save_schedule(schedule))

        day = asyncio.run(service.on_shift_personnel(DATE, Shift.DAY))
        assert [p.name for p in day] == ["Bob", "Carol"]
        night = asyncio.run(service.on_shift_personnel(DATE, Shift.NIGHT))
        assert [p.id for p in night] == ["t1"]
