"""
Duplicate/Upsert Engine

Decides, per canonical record, whether to create, skip or update:
- created: natural key unseen; record inserted, offender statistics bumped
- unchanged: every compared field equal; nothing is written
- updated: only the differing fields are written, updated_at is bumped

A missing value in a re-sighting never erases a known one, so a failed
detail fetch cannot wipe out fields gathered on an earlier run.
"""

import logging
from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Optional, Tuple
from uuid import UUID

from sqlalchemy.orm import Session

from database.models import Agency, EnforcementCase, EnforcementNotice, Offender
from database.repositories import (
    DuplicateEntityError,
    EnforcementRecordRepository,
    OffenderRepository,
)
from ingestion.adapters.base import NaturalKey
from ingestion.errors import ConflictError
from ingestion.transformer import CASE, CanonicalRecord

logger = logging.getLogger(__name__)


class UpsertOutcome(str, Enum):
    CREATED = "created"
    UNCHANGED = "unchanged"
    UPDATED = "updated"


@dataclass
class UpsertResult:
    """Outcome of one upsert with its field-level diff"""
    outcome: UpsertOutcome
    regulator_id: str
    record_id: Optional[UUID] = None
    changed_fields: Dict[str, Tuple[Any, Any]] = field(default_factory=dict)

    @property
    def is_new(self) -> bool:
        return self.outcome == UpsertOutcome.CREATED

    @property
    def is_existing(self) -> bool:
        """Unchanged and updated records both count as already known"""
        return not self.is_new


def model_for(record: CanonicalRecord):
    return EnforcementCase if record.kind == CASE else EnforcementNotice


def _values_equal(old: Any, new: Any) -> bool:
    if isinstance(old, Decimal) or isinstance(new, Decimal):
        if old is None or new is None:
            return old is new
        return Decimal(old) == Decimal(new)
    return old == new


class UpsertEngine:
    """Creates or field-wise updates enforcement records by natural key"""

    def __init__(self, session: Session):
        self.session = session
        self.offenders = OffenderRepository(session)

    def upsert(
        self,
        record: CanonicalRecord,
        offender: Offender,
        agency: Agency,
        key: Optional[NaturalKey] = None
    ) -> UpsertResult:
        """
        Persist a canonical record.

        Args:
            record: Transformed record
            offender: Matched offender
            agency: Owning agency
            key: Natural key the record is stored under (the record's own by default)

        Returns:
            UpsertResult

        Raises:
            ConflictError: Insert collided and the re-read found nothing
        """
        key = key or NaturalKey(record.regulator_id, record.agency_code)
        model = model_for(record)
        repo = EnforcementRecordRepository(self.session, model)
        fields = {k: v for k, v in record.fields.items() if k in model.COMPARED_FIELDS}

        existing = repo.get_by_natural_key(key.regulator_id, agency.id)
        if existing is None:
            data = dict(fields)
            data.update({
                'regulator_id': key.regulator_id,
                'agency_id': agency.id,
                'offender_id': offender.id,
            })
            try:
                created = repo.create(data)
            except DuplicateEntityError as e:
                existing = repo.get_by_natural_key(key.regulator_id, agency.id)
                if existing is None:
                    raise ConflictError(
                        f"Insert of {key.regulator_id} conflicted and re-read found nothing",
                        context={'regulator_id': key.regulator_id, 'agency': key.agency_code}
                    ) from e
            else:
                self._count_new(record, offender.id)
                return UpsertResult(
                    outcome=UpsertOutcome.CREATED,
                    regulator_id=key.regulator_id,
                    record_id=created.id,
                )

        changes = self.diff(existing, fields)
        if not changes:
            return UpsertResult(
                outcome=UpsertOutcome.UNCHANGED,
                regulator_id=key.regulator_id,
                record_id=existing.id,
            )

        repo.update_fields(existing, {name: new for name, (_, new) in changes.items()})

        if 'offence_fine' in changes:
            old_fine, new_fine = changes['offence_fine']
            delta = (new_fine or Decimal("0")) - (old_fine or Decimal("0"))
            self.offenders.apply_statistics(
                existing.offender_id,
                fines=delta,
                seen_on=existing.offence_action_date
            )

        logger.debug(f"Updated {key.regulator_id}: {sorted(changes)}")
        return UpsertResult(
            outcome=UpsertOutcome.UPDATED,
            regulator_id=key.regulator_id,
            record_id=existing.id,
            changed_fields=changes,
        )

    @staticmethod
    def diff(existing: Any, fields: Dict[str, Any]) -> Dict[str, Tuple[Any, Any]]:
        """
        Field-level differences between a stored record and new values.

        Returns:
            Field name to (old, new) for every field whose new value is known
            and differs from the stored one
        """
        changes = {}
        for name, new in fields.items():
            if new is None:
                continue
            old = getattr(existing, name)
            if not _values_equal(old, new):
                changes[name] = (old, new)
        return changes

    def _count_new(self, record: CanonicalRecord, offender_id: UUID) -> None:
        is_case = record.kind == CASE
        self.offenders.apply_statistics(
            offender_id,
            cases=1 if is_case else 0,
            notices=0 if is_case else 1,
            fines=record.fields.get('offence_fine') or Decimal("0"),
            seen_on=record.fields.get('offence_action_date'),
        )
