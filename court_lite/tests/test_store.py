"""
Case Store Tests
================

Tests for the SQLAlchemy-backed case store:
- Column mapping (attribute names differ from column names)
- Partial updates
- Participant listing and share code lookup
- Share code collision retry
"""

import os
from pathlib import Path

import pytest

# Add parent to path for imports
import sys
sys.path.insert(0, str(Path(__file__).parent.parent.parent))

from court_lite.db.models import CaseRecord
from court_lite.db.session import get_db_session
from court_lite.errors import CaseNotFoundError, InvalidTransitionError
from court_lite.schemas import (
    ArgumentEdit,
    CasePatch,
    CaseStage,
    DisputePoint,
    EvidenceItem,
    EvidenceKind,
    Side,
    utc_now,
)
from court_lite.store import FIELD_COLUMNS, CaseStore, to_columns
from court_lite.workflow import CaseWorkflow


@pytest.fixture
def sqlalchemy_db(tmp_path):
    """Configure a fresh SQLAlchemy SQLite DB for tests."""
    from court_lite.db.session import reset_engine, init_db

    old_db_url = os.environ.get("DATABASE_URL")
    db_path = tmp_path / "store.db"
    os.environ["DATABASE_URL"] = f"sqlite:///{db_path}"
    reset_engine()
    init_db()

    yield

    if old_db_url is not None:
        os.environ["DATABASE_URL"] = old_db_url
    else:
        os.environ.pop("DATABASE_URL", None)
    reset_engine()


@pytest.fixture
def store(sqlalchemy_db):
    return CaseStore()


def new_case(plaintiff_id="alice", share_code=None):
    case = CaseWorkflow().create_case(plaintiff_id)
    if share_code:
        case = case.model_copy(update={"share_code": share_code})
    return case


class TestColumnMapping:

    def test_renamed_columns(self):
        assert FIELD_COLUMNS["stage"] == "status"
        assert FIELD_COLUMNS["fingerprint"] == "last_analyzed_hash"
        assert FIELD_COLUMNS["plaintiff_evidence"] == "evidence"

    def test_every_column_exists(self):
        columns = set(CaseRecord.__table__.columns.keys())
        assert set(FIELD_COLUMNS.values()) <= columns

    def test_to_columns_serializes(self):
        item = EvidenceItem(id="e1", kind=EvidenceKind.TEXT, content="log", submitted_by=Side.PLAINTIFF)
        columns = to_columns(CasePatch(stage=CaseStage.DEBATE, plaintiff_evidence=[item]))
        assert columns["status"] == "debate"
        assert columns["evidence"][0]["submitted_by"] == "PLAINTIFF"
        assert set(columns) == {"status", "evidence"}


class TestCaseStore:

    def test_insert_and_get(self, store):
        case = store.insert(new_case())
        loaded = store.get(case.id)
        assert loaded.id == case.id
        assert loaded.stage == CaseStage.DRAFTING
        assert loaded.plaintiff_evidence == []
        assert loaded.verdict is None

    def test_get_missing(self, store):
        assert store.get("missing") is None

    def test_partial_update_keeps_other_fields(self, store):
        case = store.insert(new_case())
        store.update(case.id, CasePatch(plaintiff_rebuttal="mine"))
        updated = store.update(case.id, CasePatch(defendant_rebuttal="theirs"))
        assert updated.plaintiff_rebuttal == "mine"
        assert updated.defendant_rebuttal == "theirs"

    def test_update_round_trips_nested_models(self, store):
        case = store.insert(new_case())
        points = [DisputePoint(id="focus-0-abc", title="Late", description="Was it ok?")]
        updated = store.update(case.id, CasePatch(dispute_points=points, fingerprint="f" * 64))
        assert updated.dispute_points == points
        assert updated.fingerprint == "f" * 64

        with get_db_session() as db:
            record = db.get(CaseRecord, case.id)
            assert record.last_analyzed_hash == "f" * 64

    def test_update_bumps_updated_at(self, store):
        case = store.insert(new_case())
        updated = store.update(case.id, CasePatch(title="A"))
        assert updated.updated_at >= case.updated_at
        assert updated.updated_at.tzinfo is None
        assert updated.updated_at <= utc_now()

    def test_update_missing_raises(self, store):
        with pytest.raises(CaseNotFoundError):
            store.update("missing", CasePatch(title="x"))

    def test_expected_stage_guards_the_write(self, store):
        case = store.insert(new_case())
        store.update(case.id, CasePatch(stage=CaseStage.CANCELLED))

        with pytest.raises(InvalidTransitionError):
            store.update(case.id, CasePatch(stage=CaseStage.PLAINTIFF_EVIDENCE), expected_stage=CaseStage.DRAFTING)
        assert store.get(case.id).stage == CaseStage.CANCELLED

        updated = store.update(case.id, CasePatch(title="x"), expected_stage=CaseStage.CANCELLED)
        assert updated.title == "x"

    def test_argument_edit_merges_into_stored_points(self, store):
        case = store.insert(new_case())
        points = [
            DisputePoint(id="p0", title="Late", defendant_arg="Traffic"),
            DisputePoint(id="p1", title="Call"),
        ]
        store.update(case.id, CasePatch(dispute_points=points))

        edit = ArgumentEdit(point_id="p0", side=Side.PLAINTIFF, text="No excuse")
        updated = store.update(case.id, CasePatch(argument=edit))
        assert updated.dispute_points[0].plaintiff_arg == "No excuse"
        assert updated.dispute_points[0].defendant_arg == "Traffic"
        assert updated.dispute_points[1] == points[1]

    def test_argument_on_missing_point_is_rejected(self, store):
        case = store.insert(new_case())
        edit = ArgumentEdit(point_id="gone", side=Side.DEFENDANT, text="x")
        with pytest.raises(InvalidTransitionError):
            store.update(case.id, CasePatch(argument=edit))

    def test_list_for_participant(self, store):
        mine = store.insert(new_case("alice"))
        joined = store.insert(new_case("dave"))
        store.update(joined.id, CasePatch(defendant_id="alice"))
        store.insert(new_case("erin"))

        cases = store.list_for_participant("alice")
        assert {c.id for c in cases} == {mine.id, joined.id}
        # Most recently updated first
        assert cases[0].id == joined.id

    def test_get_by_share_code(self, store):
        case = store.insert(new_case(share_code="ABC123"))
        assert store.get_by_share_code(" abc123 ").id == case.id
        assert store.get_by_share_code("ZZZZZZ") is None
        assert store.get_by_share_code("") is None

    def test_share_code_collision_regenerates(self, store):
        first = store.insert(new_case(share_code="SAME01"))
        second = store.insert(new_case("bob", share_code="SAME01"))
        assert first.share_code == "SAME01"
        assert second.share_code != "SAME01"
        assert len(second.share_code) == 6

    def test_delete(self, store):
        case = store.insert(new_case())
        assert store.delete(case.id) is True
        assert store.get(case.id) is None
        assert store.delete(case.id) is False
