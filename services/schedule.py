"""
Schedule / roster model

Day and night shift membership per date. Putting a person on one shift takes
them off the other shift of the same team for that date.
"""
import logging
from typing import List, Optional

from registry.errors import ItemNotFoundError, ValidationError
from registry.models import Collections, DailySchedule, Shift, Team, Tester
from registry.store import DocumentStore

logger = logging.getLogger(__name__)


def _check(team: Optional[str], shift: str) -> None:
    if team not in Team.ALL:
        raise ValidationError(f"person has no shift team ({team!r})")
    if shift not in Shift.ALL:
        raise ValidationError(f"unknown shift: {shift}")


def assign_to_shift(schedule: DailySchedule, person_id: str, team: str, shift: str) -> DailySchedule:
    """
    Add a person to a shift list of their team

    The person is removed from the opposite shift of the same team.
    Adding someone already on the shift is a no-op.
    """
    _check(team, shift)
    target = schedule.shift_list(team, shift)
    if person_id not in target:
        target.append(person_id)
    other = schedule.shift_list(team, Shift.opposite(shift))
    while person_id in other:
        other.remove(person_id)
    return schedule


def remove_from_shift(schedule: DailySchedule, person_id: str, team: str, shift: str) -> DailySchedule:
    _check(team, shift)
    target = schedule.shift_list(team, shift)
    while person_id in target:
        target.remove(person_id)
    return schedule


class ScheduleService:
    """dailySchedules collection, one document per date"""

    def __init__(self, store: DocumentStore):
        self.store = store

    async def get_schedule(self, date: str) -> DailySchedule:
        """Schedule of a date, empty lists when nothing is stored yet"""
        data = await self.store.get(Collections.DAILY_SCHEDULES, date)
        return DailySchedule.from_dict(date, data)

    async def save_schedule(self, schedule: DailySchedule) -> None:
        """Full replacement of the four lists for the date (last write wins)"""
        await self.store.set(Collections.DAILY_SCHEDULES, schedule.date, schedule.to_dict())

    async def scheduled_dates(self) -> List[str]:
        docs = await self.store.get_all(Collections.DAILY_SCHEDULES)
        return sorted(docs.keys())

    async def _person(self, person_id: str) -> Tester:
        data = await self.store.get(Collections.TESTERS, person_id)
        if data is None:
            raise ItemNotFoundError(f"tester {person_id} does not exist")
        return Tester.from_dict(person_id, data)

    async def assign(self, person_id: str, shift: str, date: str) -> DailySchedule:
        person = await self._person(person_id)
        schedule = assign_to_shift(await self.get_schedule(date), person_id, person.team, shift)
        await self.save_schedule(schedule)
        logger.info("%s scheduled on %s shift %s", person.name, date, shift)
        return schedule

    async def remove(self, person_id: str, shift: str, date: str) -> DailySchedule:
        person = await self._person(person_id)
        schedule = remove_from_shift(await self.get_schedule(date), person_id, person.team, shift)
        await self.save_schedule(schedule)
        return schedule

    async def on_shift_personnel(self, date: str, shift: str) -> List[Tester]:
        """Scheduled people of a shift, testers first; unknown ids are skipped"""
        schedule = await self.get_schedule(date)
        docs = await self.store.get_all(Collections.TESTERS)
        people = []
        for person_id in schedule.members(shift):
            if person_id in docs:
                people.append(Tester.from_dict(person_id, docs[person_id]))
        return people
