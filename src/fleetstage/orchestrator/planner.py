"""Dry-run plans: the actions an apply would take, without taking them."""

from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional


class ActionType(Enum):
    """Kind of pending action on one resource."""
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"
    START = "start"
    STOP = "stop"
    WAIT = "wait"
    NO_CHANGE = "no_change"


# Actions reported as "update" in the one-line summary
_UPDATE_LIKE = {ActionType.UPDATE, ActionType.START, ActionType.STOP, ActionType.WAIT}


@dataclass
class PlannedAction:
    """One pending action."""
    resource_key: str
    kind: str  # server, dns or containers
    action: ActionType
    description: str = ""
    current: Optional[str] = None
    desired: Optional[str] = None


@dataclass
class StagePlan:
    """Ordered pending actions for one stage operation."""

    stage: str
    operation: str
    actions: List[PlannedAction] = field(default_factory=list)

    def add(self, action: PlannedAction) -> PlannedAction:
        self.actions.append(action)
        return action

    @property
    def changes(self) -> List[PlannedAction]:
        return [a for a in self.actions if a.action != ActionType.NO_CHANGE]

    def has_changes(self) -> bool:
        """Check if the plan has any changes."""
        return bool(self.changes)

    def get_summary(self) -> Dict[str, int]:
        """Get a summary of changes by type."""
        summary = {'create': 0, 'update': 0, 'delete': 0, 'no_change': 0}
        for planned in self.actions:
            if planned.action == ActionType.CREATE:
                summary['create'] += 1
            elif planned.action == ActionType.DELETE:
                summary['delete'] += 1
            elif planned.action in _UPDATE_LIKE:
                summary['update'] += 1
            else:
                summary['no_change'] += 1
        return summary

    def summary(self) -> str:
        counts = self.get_summary()
        return (
            f"{counts['create']} to create, {counts['update']} to update, "
            f"{counts['delete']} to delete, {counts['no_change']} unchanged"
        )
