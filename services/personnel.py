"""
Personnel roster

Tester / assistant records in the testers collection.
"""
import logging
from typing import Dict, List, Optional

from registry.errors import ValidationError
from registry.models import Collections, Team, Tester
from registry.store import DocumentStore

logger = logging.getLogger(__name__)

UNASSIGNED = "unassigned"


class PersonnelService:

    def __init__(self, store: DocumentStore):
        self.store = store

    async def list_testers(self) -> List[Tester]:
        """Roster sorted by team (testers first) then name"""
        docs = await self.store.get_all(Collections.TESTERS)
        people = [Tester.from_dict(doc_id, data) for doc_id, data in docs.items()]
        rank = {Team.TESTERS: 0, Team.ASSISTANTS: 1}
        return sorted(people, key=lambda t: (rank.get(t.team, 2), t.name.lower()))

    async def add_tester(self, name: str, team: Optional[str] = Team.TESTERS) -> Tester:
        name = (name or "").strip()
        if not name:
            raise ValidationError("name is required")
        team = Team.normalize(team)
        if team is not None and team not in Team.ALL:
            raise ValidationError(f"unknown team: {team}")
        tester = Tester(id="", name=name, team=team)
        tester.id = await self.store.add(Collections.TESTERS, tester.to_dict())
        logger.info("tester added: %s (%s)", name, team)
        return tester

    async def update_tester(self, tester: Tester) -> None:
        if not tester.name.strip():
            raise ValidationError("name is required")
        await self.store.update(Collections.TESTERS, tester.id, tester.to_dict())

    async def delete_tester(self, tester_id: str) -> None:
        await self.store.delete(Collections.TESTERS, tester_id)


def group_by_team(testers: List[Tester]) -> Dict[str, List[Tester]]:
    """{testers: [...], assistants: [...], unassigned: [...]}"""
    groups: Dict[str, List[Tester]] = {Team.TESTERS: [], Team.ASSISTANTS: [], UNASSIGNED: []}
    for tester in testers:
        groups[tester.team if tester.team in Team.ALL else UNASSIGNED].append(tester)
    return groups
