"""Deletion rule repository: CRUD plus cascade delete of dependent records."""

import logging
from typing import Optional

from sqlalchemy import delete, select

from db.models.deletions import DeletionHistory, PendingDeletion
from db.models.rules import DeletionRule
from db.repositories.base import BaseRepository

logger = logging.getLogger(__name__)

_RULE_FIELDS = {
    "name": "name",
    "description": "description",
    "media_types": "media_types_json",
    "filters": "filters_json",
    "deletion_strategy": "deletion_strategy_json",
    "schedule": "schedule",
    "enabled": "enabled",
}


class RuleRepository(BaseRepository):
    """Repository for deletion_rules table operations."""

    def _rule_to_dict(self, rule: Optional[DeletionRule]) -> Optional[dict]:
        data = self._to_dict(rule)
        if data is None:
            return None
        data["enabled"] = bool(data["enabled"])
        data["media_types"] = data.get("media_types") or []
        data["filters"] = data.get("filters") or []
        data["deletion_strategy"] = data.get("deletion_strategy") or {}
        return data

    def _apply(self, rule: DeletionRule, values: dict) -> None:
        for key, column in _RULE_FIELDS.items():
            if key not in values:
                continue
            value = values[key]
            if column.endswith("_json"):
                value = self._dumps(value)
            elif key == "enabled":
                value = int(bool(value))
            setattr(rule, column, value)

    def create_rule(self, values: dict) -> dict:
        now = self._now()
        rule = DeletionRule(created_at=now, updated_at=now)
        rule.enabled = 1
        self._apply(rule, values)
        self.session.add(rule)
        self._commit()
        logger.info("Created deletion rule %d (%s)", rule.id, rule.name)
        return self._rule_to_dict(rule)

    def get_rule(self, rule_id: int) -> Optional[dict]:
        return self._rule_to_dict(self.session.get(DeletionRule, rule_id))

    def list_rules(self, enabled_only: bool = False) -> list[dict]:
        stmt = select(DeletionRule).order_by(DeletionRule.id)
        if enabled_only:
            stmt = stmt.where(DeletionRule.enabled == 1)
        return [self._rule_to_dict(r) for r in self.session.execute(stmt).scalars().all()]

    def update_rule(self, rule_id: int, values: dict) -> Optional[dict]:
        rule = self.session.get(DeletionRule, rule_id)
        if rule is None:
            return None
        self._apply(rule, values)
        rule.updated_at = self._now()
        self._commit()
        return self._rule_to_dict(rule)

    def set_last_run(self, rule_id: int, timestamp: str) -> None:
        rule = self.session.get(DeletionRule, rule_id)
        if rule is not None:
            rule.last_run = timestamp
            self._commit()

    def delete_rule(self, rule_id: int) -> bool:
        """Delete a rule together with its pending deletions and history.

        Returns:
            True if the rule existed.
        """
        rule = self.session.get(DeletionRule, rule_id)
        if rule is None:
            return False
        pending = self.session.execute(
            delete(PendingDeletion).where(PendingDeletion.rule_id == rule_id)
        ).rowcount
        history = self.session.execute(
            delete(DeletionHistory).where(DeletionHistory.rule_id == rule_id)
        ).rowcount
        self.session.delete(rule)
        self._commit()
        logger.info("Deleted rule %d with %d pending deletions and %d history records",
                    rule_id, pending, history)
        return True
