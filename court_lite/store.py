"""
Case Store
==========

Durable storage of cases on top of the SQLAlchemy session layer.

Column names differ from model attribute names in a few places (the table
predates the model); FIELD_COLUMNS is the single source of that mapping.
Updates are partial: only the columns named in a patch are written, so two
parties editing different fields never clobber each other.
"""

import logging
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel
from sqlalchemy import or_, select
from sqlalchemy.exc import IntegrityError

from .db.models import CaseRecord
from .db.session import get_db_session
from .errors import CaseIntegrityError, CaseNotFoundError, InvalidTransitionError
from .schemas import Case, CasePatch, CaseStage, DisputePoint, utc_now
from .workflow import generate_share_code

logger = logging.getLogger(__name__)

SHARE_CODE_ATTEMPTS = 5

# Case attribute -> cases column
FIELD_COLUMNS: Dict[str, str] = {
    "defendant_id": "defendant_id",
    "category": "category",
    "title": "title",
    "description": "description",
    "plaintiff_summary": "plaintiff_summary",
    "demands": "demands",
    "plaintiff_evidence": "evidence",
    "defense_statement": "defense_statement",
    "defense_summary": "defense_summary",
    "defendant_evidence": "defendant_evidence",
    "plaintiff_rebuttal": "plaintiff_rebuttal",
    "plaintiff_rebuttal_evidence": "plaintiff_rebuttal_evidence",
    "defendant_rebuttal": "defendant_rebuttal",
    "defendant_rebuttal_evidence": "defendant_rebuttal_evidence",
    "dispute_points": "dispute_points",
    "fingerprint": "last_analyzed_hash",
    "judge_persona": "judge_persona",
    "stage": "status",
    "verdict": "verdict",
}

# Text columns that are nullable in the table but plain strings on the model
_TEXT_FIELDS = {
    "category", "title", "description", "plaintiff_summary", "demands",
    "defense_statement", "plaintiff_rebuttal", "defendant_rebuttal",
}


def _to_column_value(value: Any) -> Any:
    if isinstance(value, BaseModel):
        return value.model_dump(mode="json")
    if isinstance(value, list):
        return [_to_column_value(v) for v in value]
    if isinstance(value, Enum):
        return value.value
    return value


def to_columns(patch: CasePatch) -> Dict[str, Any]:
    """Patch fields as {column: serialized value}"""
    return {
        FIELD_COLUMNS[name]: _to_column_value(value)
        for name, value in patch.changes().items()
    }


def record_to_case(record: CaseRecord) -> Case:
    data: Dict[str, Any] = {
        "id": record.id,
        "share_code": record.share_code,
        "plaintiff_id": record.plaintiff_id,
        "created_at": record.created_at,
        "updated_at": record.updated_at,
    }
    for name, column in FIELD_COLUMNS.items():
        value = getattr(record, column)
        if value is None:
            if name in _TEXT_FIELDS:
                value = ""
            elif name.endswith("evidence") or name == "dispute_points":
                value = []
            elif name in ("stage", "judge_persona"):
                continue
        data[name] = value
    return Case.model_validate(data)


class CaseStore:
    """
    CRUD over the cases table.

    Usage:
        store = CaseStore()
        case = store.insert(workflow.create_case("alice"))
        case = store.update(case.id, CasePatch(title="The Late Dinner Case"))
    """

    def insert(self, case: Case) -> Case:
        """
        Persist a new case; a colliding share code is replaced and retried.

        Raises:
            CaseIntegrityError: the row could not be inserted
        """
        for attempt in range(SHARE_CODE_ATTEMPTS):
            try:
                with get_db_session() as db:
                    record = CaseRecord(
                        id=case.id,
                        share_code=case.share_code,
                        plaintiff_id=case.plaintiff_id,
                        created_at=case.created_at,
                        updated_at=case.updated_at,
                    )
                    full_patch = CasePatch(**{name: getattr(case, name) for name in FIELD_COLUMNS})
                    for column, value in to_columns(full_patch).items():
                        setattr(record, column, value)
                    db.add(record)
                    db.flush()
                    return record_to_case(record)
            except IntegrityError as e:
                if not self._share_code_taken(case.share_code):
                    raise CaseIntegrityError(f"Could not insert case {case.id}: {e}") from e
                logger.warning(f"Share code collision on attempt {attempt + 1}, regenerating")
                case = case.model_copy(update={"share_code": generate_share_code(len(case.share_code))})
        raise CaseIntegrityError("Could not allocate a unique share code")

    def _share_code_taken(self, share_code: str) -> bool:
        with get_db_session() as db:
            stmt = select(CaseRecord.id).where(CaseRecord.share_code == share_code)
            return db.execute(stmt).first() is not None

    def get(self, case_id: str) -> Optional[Case]:
        with get_db_session() as db:
            record = db.get(CaseRecord, case_id)
            return record_to_case(record) if record else None

    def get_by_share_code(self, share_code: str) -> Optional[Case]:
        code = (share_code or "").strip().upper()
        if not code:
            return None
        with get_db_session() as db:
            record = db.execute(
                select(CaseRecord).where(CaseRecord.share_code == code)
            ).scalar_one_or_none()
            return record_to_case(record) if record else None

    def list_for_participant(self, user_id: str) -> List[Case]:
        """Cases where the user is plaintiff or defendant, most recently updated first"""
        with get_db_session() as db:
            records = db.execute(
                select(CaseRecord)
                .where(or_(CaseRecord.plaintiff_id == user_id, CaseRecord.defendant_id == user_id))
                .order_by(CaseRecord.updated_at.desc())
            ).scalars().all()
            return [record_to_case(r) for r in records]

    def update(self, case_id: str, patch: CasePatch, expected_stage: Optional[CaseStage] = None) -> Case:
        """
        Write only the patched columns and bump updated_at.

        The row is read and written in one transaction (locked FOR UPDATE where
        the database supports it). With `expected_stage` the write only goes
        through if the stored stage still matches. An argument edit is merged
        into the stored dispute points, not into the caller's copy.

        Raises:
            CaseNotFoundError: the case no longer exists
            InvalidTransitionError: the stored stage moved on, or the argued
                dispute point no longer exists
        """
        with get_db_session() as db:
            record = db.execute(
                select(CaseRecord).where(CaseRecord.id == case_id).with_for_update()
            ).scalar_one_or_none()
            if record is None:
                raise CaseNotFoundError(f"Case {case_id} not found")
            if expected_stage is not None and record.status != expected_stage.value:
                raise InvalidTransitionError(
                    f"Case {case_id} is now '{record.status}', expected '{expected_stage.value}'"
                )

            columns = to_columns(patch)
            if patch.argument is not None:
                stored = [DisputePoint.model_validate(p) for p in (record.dispute_points or [])]
                try:
                    columns["dispute_points"] = _to_column_value(patch.argument.apply_to(stored))
                except LookupError as e:
                    raise InvalidTransitionError(f"Case {case_id}: {e}") from e

            for column, value in columns.items():
                setattr(record, column, value)
            now = utc_now()
            record.updated_at = max(now, record.updated_at) if record.updated_at else now
            db.flush()
            return record_to_case(record)

    def delete(self, case_id: str) -> bool:
        with get_db_session() as db:
            record = db.get(CaseRecord, case_id)
            if record is None:
                return False
            db.delete(record)
        logger.info(f"Case {case_id} deleted")
        return True
