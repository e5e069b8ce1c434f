"""
Case Workflow Tests
===================

Tests for:
- Stage/actor gating (rejected actions leave the case untouched)
- Dispute point reuse via the content fingerprint
- Default judgment, step back, appeal, cancel
- Single-flight adjudication
- The full filing-to-verdict scenario
"""

import asyncio
import json
from pathlib import Path

import pytest

# Add parent to path for imports
import sys
sys.path.insert(0, str(Path(__file__).parent.parent.parent))

from court_lite.config import Settings
from court_lite.errors import (
    AdjudicationInProgressError,
    CaseIntegrityError,
    EvidenceNotFoundError,
    InvalidTransitionError,
    JoinError,
    PermissionDeniedError,
)
from court_lite.judge import AIJudge
from court_lite.llm.errors import GatewayError, InferenceError
from court_lite.llm.gateway import InferenceGateway
from court_lite.prompts import DEFAULT_JUDGMENT_INSTRUCTION
from court_lite.schemas import (
    NON_PARTICIPATION_STATEMENT,
    CasePatch,
    CaseStage,
    EvidenceKind,
    JudgePersona,
    LLMMode,
    Side,
    Verdict,
)
from court_lite.workflow import (
    CaseWorkflow,
    apply_patch,
    compute_fingerprint,
    is_behind,
)

PLAINTIFF = "alice"
DEFENDANT = "bob"
STRANGER = "carol"

DISPUTE_ANSWER = json.dumps({"points": [
    {"title": "Late dinner", "description": "He arrived two hours late. Was that reasonable?"},
    {"title": "No call", "description": "His phone was dead. Should he have found another way to call?"},
]})

VERDICT_ANSWER = """```json
{
  "summary": "A late dinner",
  "facts": ["He arrived two hours late", "He did not call"],
  "responsibilitySplit": {"plaintiff": "30%", "defendant": "70%"},
  "disputeAnalyses": [{"title": "Late dinner", "analysis": "Lateness without notice hurts trust."}],
  "reasoning": "Keeping people informed is part of the deal.",
  "finalJudgment": "Woof, the court rules:\\n1. [Granted] Regarding the demand for an apology ...",
  "penaltyTasks": ["do the dishes", {"assignee": "PLAINTIFF", "content": "Accept the apology with a smile"}],
  "tone": "firm"
}
```"""


# =============================================================================
# Fakes
# =============================================================================

class ScriptedBackend:
    """Answers by recognizing the system instruction of each AI operation"""

    def __init__(self):
        self.requests = []
        self.fail_with = None
        self.gate = None

    async def generate(self, request):
        self.requests.append(request)
        if self.gate is not None:
            await self.gate.wait()
        if self.fail_with is not None:
            raise self.fail_with
        system = request.system_instruction or ""
        if "points of dispute" in system:
            return DISPUTE_ANSWER
        if "final judgment" in system:
            return VERDICT_ANSWER
        if "toxicity" in system:
            return '{"isToxic": false, "score": 1, "reason": ""}'
        if "court clerk" in system:
            return '"The Late Dinner Case"'
        return "A short summary."

    def count(self, marker):
        return sum(1 for r in self.requests if marker in (r.system_instruction or ""))


def make_judge(backend):
    settings = Settings(
        llm_mode=LLMMode.GEMINI,
        gemini_api_key="test-key",
        llm_max_attempts=2,
        llm_backoff_base=0.0,
        llm_timeout=5.0,
    )

    async def no_sleep(_delay):
        return None

    gateway = InferenceGateway(
        settings=settings,
        backends={"flash": backend, "pro": backend, "fallback": backend},
        sleep=no_sleep,
    )
    return AIJudge(gateway)


@pytest.fixture
def backend():
    return ScriptedBackend()


@pytest.fixture
def workflow(backend):
    return CaseWorkflow(make_judge(backend))


async def build_case(workflow, stage):
    """Drive a fresh case through the real operations up to `stage`"""
    case = workflow.create_case(PLAINTIFF)
    if stage == CaseStage.DRAFTING:
        return case
    case = apply_patch(case, workflow.submit_filing(case, PLAINTIFF, "He was two hours late for dinner", "An apology"))
    case = apply_patch(case, workflow.add_evidence(case, PLAINTIFF, EvidenceKind.TEXT, "19:00 'on my way'", "Chat log"))
    if stage == CaseStage.PLAINTIFF_EVIDENCE:
        return case
    case = apply_patch(case, workflow.submit_evidence(case, PLAINTIFF))
    case = apply_patch(case, workflow.join(case, DEFENDANT))
    if stage == CaseStage.DEFENSE_PENDING:
        return case
    case = apply_patch(case, workflow.submit_defense(case, DEFENDANT, "Traffic was terrible and my phone died"))
    if stage == CaseStage.CROSS_EXAMINATION:
        return case
    case = apply_patch(case, workflow.update_rebuttal(case, PLAINTIFF, "He could have borrowed a phone"))
    case = apply_patch(case, workflow.update_rebuttal(case, DEFENDANT, "I was driving"))
    case = apply_patch(case, await workflow.finish_cross_examination(case, PLAINTIFF))
    if stage == CaseStage.DEBATE:
        return case
    case = apply_patch(case, workflow.request_adjudication(case, DEFENDANT))
    if stage == CaseStage.ADJUDICATING:
        return case
    return apply_patch(case, await workflow.adjudicate(case, PLAINTIFF))


# =============================================================================
# End to end
# =============================================================================

class TestEndToEnd:

    @pytest.mark.asyncio
    async def test_filing_to_verdict(self, workflow, backend):
        case = workflow.create_case(PLAINTIFF)
        assert case.stage == CaseStage.DRAFTING
        assert len(case.share_code) == 6

        case = apply_patch(case, workflow.submit_filing(case, PLAINTIFF, "He was late", "An apology"))
        assert case.stage == CaseStage.PLAINTIFF_EVIDENCE

        case = apply_patch(case, workflow.add_evidence(case, PLAINTIFF, EvidenceKind.TEXT, "Chat log"))
        case = apply_patch(case, workflow.add_evidence(case, PLAINTIFF, EvidenceKind.IMAGE, "data:image/png;base64,AAAA"))
        assert len(case.plaintiff_evidence) == 2

        case = apply_patch(case, workflow.submit_evidence(case, PLAINTIFF))
        assert case.stage == CaseStage.RESPONSE_PENDING

        case = apply_patch(case, workflow.join(case, DEFENDANT))
        case = apply_patch(case, workflow.submit_defense(case, DEFENDANT, "Traffic"))
        assert case.stage == CaseStage.CROSS_EXAMINATION

        case = apply_patch(case, workflow.update_rebuttal(case, PLAINTIFF, "Call next time"))
        case = apply_patch(case, workflow.update_rebuttal(case, DEFENDANT, "Phone died"))
        case = apply_patch(case, await workflow.finish_cross_examination(case, DEFENDANT))
        assert case.stage == CaseStage.DEBATE
        assert len(case.dispute_points) == 2

        for point in case.dispute_points:
            case = apply_patch(case, workflow.update_argument(case, PLAINTIFF, point.id, "Yes"))
            case = apply_patch(case, workflow.update_argument(case, DEFENDANT, point.id, "No"))
        assert all(p.plaintiff_arg == "Yes" and p.defendant_arg == "No" for p in case.dispute_points)

        case = apply_patch(case, workflow.request_adjudication(case, PLAINTIFF))
        case = apply_patch(case, await workflow.adjudicate(case, DEFENDANT, JudgePersona.CAT))

        assert case.stage == CaseStage.CLOSED
        assert isinstance(case.verdict, Verdict)
        split = case.verdict.responsibility_split
        assert split.plaintiff + split.defendant == 100
        assert case.judge_persona == JudgePersona.CAT
        # The image evidence is attached to the verdict request
        verdict_request = [r for r in backend.requests if "final judgment" in (r.system_instruction or "")][-1]
        assert len(verdict_request.images) == 1

    @pytest.mark.asyncio
    async def test_bare_task_goes_to_larger_share(self, workflow):
        case = await build_case(workflow, CaseStage.CLOSED)
        dishes = [t for t in case.verdict.penalty_tasks if t.content == "do the dishes"]
        assert dishes and dishes[0].assignee == Side.DEFENDANT


# =============================================================================
# Gating
# =============================================================================

class TestGating:

    @pytest.mark.asyncio
    @pytest.mark.parametrize("stage, user, action", [
        (CaseStage.DRAFTING, STRANGER, lambda w, c, u: w.submit_filing(c, u, "x", "y")),
        (CaseStage.PLAINTIFF_EVIDENCE, DEFENDANT, lambda w, c, u: w.submit_evidence(c, u)),
        (CaseStage.DEFENSE_PENDING, PLAINTIFF, lambda w, c, u: w.submit_defense(c, u, "I am innocent")),
        (CaseStage.DEFENSE_PENDING, DEFENDANT, lambda w, c, u: w.default_judgment(c, u)),
        (CaseStage.CROSS_EXAMINATION, STRANGER, lambda w, c, u: w.update_rebuttal(c, u, "x")),
        (CaseStage.DEBATE, STRANGER, lambda w, c, u: w.request_adjudication(c, u)),
        (CaseStage.CLOSED, STRANGER, lambda w, c, u: w.appeal(c, u)),
        (CaseStage.DEBATE, DEFENDANT, lambda w, c, u: w.cancel(c, u)),
    ])
    async def test_wrong_actor_rejected(self, workflow, stage, user, action):
        case = await build_case(workflow, stage)
        with pytest.raises(PermissionDeniedError):
            action(workflow, case, user)
        assert case.stage == stage

    @pytest.mark.asyncio
    async def test_wrong_actor_cannot_finish_cross_examination(self, workflow, backend):
        case = await build_case(workflow, CaseStage.CROSS_EXAMINATION)
        with pytest.raises(PermissionDeniedError):
            await workflow.finish_cross_examination(case, STRANGER)
        assert backend.count("points of dispute") == 0

    @pytest.mark.asyncio
    async def test_wrong_stage_rejected(self, workflow):
        case = await build_case(workflow, CaseStage.DRAFTING)
        with pytest.raises(InvalidTransitionError):
            workflow.submit_evidence(case, PLAINTIFF)
        with pytest.raises(InvalidTransitionError):
            workflow.request_adjudication(case, PLAINTIFF)

    @pytest.mark.asyncio
    async def test_empty_statement_rejected(self, workflow):
        case = await build_case(workflow, CaseStage.DRAFTING)
        with pytest.raises(InvalidTransitionError):
            workflow.submit_filing(case, PLAINTIFF, "   ", "")

    def test_is_behind(self):
        assert is_behind(CaseStage.CROSS_EXAMINATION, CaseStage.DEBATE)
        assert not is_behind(CaseStage.DEBATE, CaseStage.CROSS_EXAMINATION)
        assert not is_behind(CaseStage.CANCELLED, CaseStage.DEBATE)


# =============================================================================
# Joining
# =============================================================================

class TestJoin:

    @pytest.mark.asyncio
    async def test_plaintiff_cannot_join_own_case(self, workflow):
        case = await build_case(workflow, CaseStage.DRAFTING)
        with pytest.raises(JoinError):
            workflow.join(case, PLAINTIFF)

    @pytest.mark.asyncio
    async def test_seat_taken(self, workflow):
        case = await build_case(workflow, CaseStage.DEFENSE_PENDING)
        with pytest.raises(JoinError):
            workflow.join(case, STRANGER)

    @pytest.mark.asyncio
    async def test_rejoin_is_noop(self, workflow):
        case = await build_case(workflow, CaseStage.DEFENSE_PENDING)
        assert workflow.join(case, DEFENDANT).is_empty()

    @pytest.mark.asyncio
    async def test_cancelled_case_cannot_be_joined(self, workflow):
        case = await build_case(workflow, CaseStage.DRAFTING)
        case = apply_patch(case, workflow.cancel(case, PLAINTIFF))
        with pytest.raises(JoinError):
            workflow.join(case, DEFENDANT)


# =============================================================================
# Evidence
# =============================================================================

class TestEvidence:

    @pytest.mark.asyncio
    async def test_contest_only_other_sides_evidence(self, workflow):
        case = await build_case(workflow, CaseStage.CROSS_EXAMINATION)
        evidence_id = case.plaintiff_evidence[0].id

        with pytest.raises(PermissionDeniedError):
            workflow.toggle_contested(case, PLAINTIFF, evidence_id)

        case = apply_patch(case, workflow.toggle_contested(case, DEFENDANT, evidence_id))
        assert case.plaintiff_evidence[0].is_contested is True
        case = apply_patch(case, workflow.toggle_contested(case, DEFENDANT, evidence_id))
        assert case.plaintiff_evidence[0].is_contested is False

    @pytest.mark.asyncio
    async def test_rebuttal_evidence_goes_to_rebuttal_collection(self, workflow):
        case = await build_case(workflow, CaseStage.CROSS_EXAMINATION)
        case = apply_patch(case, workflow.add_evidence(case, DEFENDANT, EvidenceKind.TEXT, "Traffic report"))
        assert len(case.defendant_rebuttal_evidence) == 1
        assert case.defendant_rebuttal_evidence[0].submitted_by == Side.DEFENDANT
        assert case.defendant_evidence == []

    @pytest.mark.asyncio
    async def test_remove_evidence_window(self, workflow):
        case = await build_case(workflow, CaseStage.PLAINTIFF_EVIDENCE)
        evidence_id = case.plaintiff_evidence[0].id
        removed = apply_patch(case, workflow.remove_evidence(case, PLAINTIFF, evidence_id))
        assert removed.plaintiff_evidence == []

        case = await build_case(workflow, CaseStage.DEFENSE_PENDING)
        with pytest.raises(InvalidTransitionError):
            workflow.remove_evidence(case, PLAINTIFF, case.plaintiff_evidence[0].id)
        with pytest.raises(EvidenceNotFoundError):
            workflow.remove_evidence(case, PLAINTIFF, "missing")

    @pytest.mark.asyncio
    async def test_analyze_evidence_does_not_modify_case(self, workflow):
        case = await build_case(workflow, CaseStage.DEBATE)
        before = case.model_copy(deep=True)
        text = await workflow.analyze_evidence(case, DEFENDANT, case.plaintiff_evidence[0].id)
        assert text
        assert case == before


# =============================================================================
# Fingerprint
# =============================================================================

class TestFingerprint:

    @pytest.mark.asyncio
    async def test_unchanged_material_reuses_dispute_points(self, workflow, backend):
        case = await build_case(workflow, CaseStage.DEBATE)
        assert backend.count("points of dispute") == 1
        points = case.dispute_points

        case = apply_patch(case, workflow.step_back(case, DEFENDANT))
        assert case.stage == CaseStage.CROSS_EXAMINATION
        case = apply_patch(case, await workflow.finish_cross_examination(case, PLAINTIFF))

        assert case.stage == CaseStage.DEBATE
        assert backend.count("points of dispute") == 1
        assert case.dispute_points == points

    @pytest.mark.asyncio
    async def test_changed_material_regenerates(self, workflow, backend):
        case = await build_case(workflow, CaseStage.DEBATE)
        case = apply_patch(case, workflow.step_back(case, PLAINTIFF))
        case = apply_patch(case, workflow.update_rebuttal(case, PLAINTIFF, "New argument"))
        case = apply_patch(case, await workflow.finish_cross_examination(case, PLAINTIFF))
        assert backend.count("points of dispute") == 2

    @pytest.mark.asyncio
    async def test_contest_flag_changes_fingerprint(self, workflow):
        case = await build_case(workflow, CaseStage.CROSS_EXAMINATION)
        before = compute_fingerprint(case)
        case = apply_patch(case, workflow.toggle_contested(case, DEFENDANT, case.plaintiff_evidence[0].id))
        assert compute_fingerprint(case) != before

    @pytest.mark.asyncio
    async def test_fingerprint_ignores_arguments(self, workflow):
        case = await build_case(workflow, CaseStage.DEBATE)
        before = compute_fingerprint(case)
        case = apply_patch(case, workflow.update_argument(case, PLAINTIFF, case.dispute_points[0].id, "Yes"))
        assert compute_fingerprint(case) == before

    @pytest.mark.asyncio
    async def test_gateway_failure_keeps_stage(self, workflow, backend):
        case = await build_case(workflow, CaseStage.CROSS_EXAMINATION)
        backend.fail_with = InferenceError("HTTP 400", status=400, transient=False)
        with pytest.raises(GatewayError):
            await workflow.finish_cross_examination(case, PLAINTIFF)
        assert case.stage == CaseStage.CROSS_EXAMINATION
        assert case.dispute_points == []


# =============================================================================
# Default judgment / backward moves
# =============================================================================

class TestDefaultJudgment:

    async def _defaulted(self, workflow):
        case = workflow.create_case(PLAINTIFF)
        case = apply_patch(case, workflow.submit_filing(case, PLAINTIFF, "He never showed up", "An apology"))
        case = apply_patch(case, workflow.submit_evidence(case, PLAINTIFF))
        return apply_patch(case, workflow.default_judgment(case, PLAINTIFF))

    @pytest.mark.asyncio
    async def test_default_judgment_fields(self, workflow):
        case = await self._defaulted(workflow)
        assert case.stage == CaseStage.ADJUDICATING
        assert case.defense_statement == NON_PARTICIPATION_STATEMENT
        assert case.is_default_judgment
        assert case.dispute_points == []

    @pytest.mark.asyncio
    async def test_verdict_prompt_carries_non_participation(self, workflow, backend):
        case = await self._defaulted(workflow)
        case = apply_patch(case, await workflow.adjudicate(case, PLAINTIFF))

        assert case.stage == CaseStage.CLOSED
        request = [r for r in backend.requests if "final judgment" in (r.system_instruction or "")][-1]
        assert DEFAULT_JUDGMENT_INSTRUCTION in request.system_instruction
        assert NON_PARTICIPATION_STATEMENT in request.prompt

    @pytest.mark.asyncio
    async def test_not_available_after_defense(self, workflow):
        case = await build_case(workflow, CaseStage.CROSS_EXAMINATION)
        with pytest.raises(InvalidTransitionError):
            workflow.default_judgment(case, PLAINTIFF)

    @pytest.mark.asyncio
    async def test_step_back_resets_default(self, workflow):
        case = await self._defaulted(workflow)
        case = apply_patch(case, workflow.step_back(case, PLAINTIFF))
        assert case.stage == CaseStage.DEFENSE_PENDING
        assert case.defense_statement == ""
        assert case.defense_summary is None

        # A late defendant can now answer
        case = apply_patch(case, workflow.join(case, DEFENDANT))
        case = apply_patch(case, workflow.submit_defense(case, DEFENDANT, "I was abroad"))
        assert case.stage == CaseStage.CROSS_EXAMINATION

    @pytest.mark.asyncio
    async def test_appeal_of_default_reopens_defense(self, workflow):
        case = await self._defaulted(workflow)
        case = apply_patch(case, await workflow.adjudicate(case, PLAINTIFF))
        case = apply_patch(case, workflow.appeal(case, PLAINTIFF))
        assert case.stage == CaseStage.DEFENSE_PENDING
        assert case.verdict is None
        assert not case.is_default_judgment


class TestBackwardMoves:

    @pytest.mark.asyncio
    async def test_step_back_mapping(self, workflow):
        case = await build_case(workflow, CaseStage.ADJUDICATING)
        case = apply_patch(case, workflow.step_back(case, DEFENDANT))
        assert case.stage == CaseStage.DEBATE
        case = apply_patch(case, workflow.step_back(case, DEFENDANT))
        assert case.stage == CaseStage.CROSS_EXAMINATION
        case = apply_patch(case, workflow.step_back(case, PLAINTIFF))
        assert case.stage == CaseStage.DEFENSE_PENDING

        # Only the plaintiff edits the filing stages
        with pytest.raises(PermissionDeniedError):
            workflow.step_back(case, DEFENDANT)
        case = apply_patch(case, workflow.step_back(case, PLAINTIFF))
        assert case.stage == CaseStage.PLAINTIFF_EVIDENCE

    @pytest.mark.asyncio
    async def test_cannot_step_back_from_drafting_or_closed(self, workflow):
        for stage in (CaseStage.DRAFTING, CaseStage.CLOSED):
            case = await build_case(workflow, stage)
            with pytest.raises(InvalidTransitionError):
                workflow.step_back(case, PLAINTIFF)

    @pytest.mark.asyncio
    async def test_appeal_returns_to_debate(self, workflow):
        case = await build_case(workflow, CaseStage.CLOSED)
        case = apply_patch(case, workflow.appeal(case, DEFENDANT))
        assert case.stage == CaseStage.DEBATE
        assert case.verdict is None
        assert case.dispute_points

    @pytest.mark.asyncio
    async def test_cancel(self, workflow):
        case = await build_case(workflow, CaseStage.DEBATE)
        case = apply_patch(case, workflow.cancel(case, PLAINTIFF))
        assert case.stage == CaseStage.CANCELLED
        with pytest.raises(InvalidTransitionError):
            workflow.cancel(case, PLAINTIFF)

        closed = await build_case(workflow, CaseStage.CLOSED)
        with pytest.raises(InvalidTransitionError):
            workflow.cancel(closed, PLAINTIFF)


# =============================================================================
# Patch invariants
# =============================================================================

class TestApplyPatch:

    @pytest.mark.asyncio
    async def test_closed_requires_verdict(self, workflow):
        case = await build_case(workflow, CaseStage.ADJUDICATING)
        with pytest.raises(CaseIntegrityError):
            apply_patch(case, CasePatch(stage=CaseStage.CLOSED))

    @pytest.mark.asyncio
    async def test_verdict_requires_closed(self, workflow):
        case = await build_case(workflow, CaseStage.DEBATE)
        with pytest.raises(CaseIntegrityError):
            apply_patch(case, CasePatch(verdict=Verdict(final_judgment="x")))

    @pytest.mark.asyncio
    async def test_defendant_cannot_be_reassigned(self, workflow):
        case = await build_case(workflow, CaseStage.DEFENSE_PENDING)
        with pytest.raises(CaseIntegrityError):
            apply_patch(case, CasePatch(defendant_id=STRANGER))

    @pytest.mark.asyncio
    async def test_illegal_jump(self, workflow):
        case = await build_case(workflow, CaseStage.DRAFTING)
        with pytest.raises(CaseIntegrityError):
            apply_patch(case, CasePatch(stage=CaseStage.DEBATE))

    @pytest.mark.asyncio
    async def test_explicit_none_clears_field(self, workflow):
        case = await build_case(workflow, CaseStage.CROSS_EXAMINATION)
        case = apply_patch(case, CasePatch(defense_summary="summary"))
        case = apply_patch(case, CasePatch(defense_summary=None))
        assert case.defense_summary is None


# =============================================================================
# Adjudication
# =============================================================================

class TestAdjudication:

    @pytest.mark.asyncio
    async def test_single_flight(self, workflow, backend):
        case = await build_case(workflow, CaseStage.ADJUDICATING)
        backend.gate = asyncio.Event()

        first = asyncio.create_task(workflow.adjudicate(case, PLAINTIFF))
        await asyncio.sleep(0.01)
        with pytest.raises(AdjudicationInProgressError):
            await workflow.adjudicate(case, DEFENDANT)

        backend.gate.set()
        patch = await first
        assert patch.stage == CaseStage.CLOSED
        assert backend.count("final judgment") == 1

    @pytest.mark.asyncio
    async def test_failure_releases_guard(self, workflow, backend):
        case = await build_case(workflow, CaseStage.ADJUDICATING)
        backend.fail_with = InferenceError("HTTP 400", status=400, transient=False)
        with pytest.raises(GatewayError):
            await workflow.adjudicate(case, PLAINTIFF)

        backend.fail_with = None
        patch = await workflow.adjudicate(case, PLAINTIFF)
        assert patch.verdict is not None

    @pytest.mark.asyncio
    async def test_enrich_filing(self, workflow):
        case = await build_case(workflow, CaseStage.PLAINTIFF_EVIDENCE)
        patch = await workflow.enrich_filing(case)
        assert patch.title == "The Late Dinner Case"
        assert patch.plaintiff_summary == "A short summary."
