"""
Task classifier

Derives the badges shown next to a task (sprint, urgent, LSP, PoCat, manual)
from its free-text fields and its category. Import display, the assignment
grid and the shift dashboard all classify through classify_task.
"""
import re
from dataclasses import dataclass
from typing import Iterable, List, Optional

from registry.models import ItemField, RawTask, TaskCategory
from registry.util import get_task_value

# free-text fields scanned for keywords
BADGE_FIELDS = (
    "Purpose",
    "Priority",
    "Remark (Requester)",
    "Note to planer",
    "Additional Information",
    "Description",
)

# badge attribute -> keyword
BADGE_KEYWORDS = (
    ("is_sprint", "sprint"),
    ("is_urgent", "urgent"),
    ("is_lsp", "lsp"),
    ("is_pocat", "pocat"),
)


@dataclass(frozen=True)
class TaskBadges:
    is_sprint: bool = False
    is_urgent: bool = False
    is_lsp: bool = False
    is_pocat: bool = False
    is_manual: bool = False

    def merge(self, other: "TaskBadges") -> "TaskBadges":
        """OR of two badge sets"""
        return TaskBadges(
            is_sprint=self.is_sprint or other.is_sprint,
            is_urgent=self.is_urgent or other.is_urgent,
            is_lsp=self.is_lsp or other.is_lsp,
            is_pocat=self.is_pocat or other.is_pocat,
            is_manual=self.is_manual or other.is_manual,
        )

    @classmethod
    def combine(cls, badges: Iterable["TaskBadges"]) -> "TaskBadges":
        result = cls()
        for badge in badges:
            result = result.merge(badge)
        return result

    def labels(self) -> List[str]:
        """
        Display tags: Sprint takes the place of Urgent when both apply,
        then LSP and PoCat.
        """
        labels = []
        if self.is_sprint:
            labels.append("Sprint")
        elif self.is_urgent:
            labels.append("Urgent")
        if self.is_lsp:
            labels.append("LSP")
        if self.is_pocat:
            labels.append("PoCat")
        return labels


def _badge_text(item: RawTask) -> str:
    values = (str(get_task_value(item, name, "")) for name in BADGE_FIELDS)
    return " ".join(values).lower()


def classify_task(item: RawTask, category: Optional[str] = None) -> TaskBadges:
    """
    Classify one task item

    A keyword matches when it appears in the joined field text, either as is
    or with all whitespace removed ("Po Cat" matches "pocat").

    Args:
        item: task item
        category: category of the owning group, if any

    Returns:
        TaskBadges
    """
    text = _badge_text(item)
    compact = re.sub(r"\s+", "", text)
    found = {attr: (kw in text or kw in compact) for attr, kw in BADGE_KEYWORDS}

    return TaskBadges(
        is_sprint=found["is_sprint"],
        is_urgent=found["is_urgent"] or category == TaskCategory.URGENT,
        is_lsp=found["is_lsp"],
        is_pocat=found["is_pocat"] or category == TaskCategory.POCAT,
        is_manual=category == TaskCategory.MANUAL or bool(item.get(ItemField.IS_MANUAL_ENTRY)),
    )
