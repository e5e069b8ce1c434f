"""
Case State Machine
==================

Authoritative rules for how a case moves through its stages:

    DRAFTING -> PLAINTIFF_EVIDENCE -> DEFENSE_PENDING -> CROSS_EXAMINATION
             -> DEBATE -> ADJUDICATING -> CLOSED

CANCELLED is reachable from any stage before CLOSED and is terminal.

Every operation validates stage and actor first and only then builds a
CasePatch, so a rejected action never changes anything. Operations that need
the AI judge await it before building the patch; if the judge fails, no patch
is produced and the case stays where it was.
"""

import hashlib
import json
import logging
import secrets
import string
import uuid
from typing import Dict, Optional, Set, Tuple

from .config import get_settings
from .errors import (
    AdjudicationInProgressError,
    CaseIntegrityError,
    DisputePointNotFoundError,
    EvidenceNotFoundError,
    InvalidTransitionError,
    JoinError,
    PermissionDeniedError,
)
from .judge import AIJudge
from .schemas import (
    IMMUTABLE_FIELDS,
    NON_PARTICIPATION_STATEMENT,
    NON_PARTICIPATION_SUMMARY,
    ActorRule,
    ArgumentEdit,
    Case,
    CasePatch,
    CaseStage,
    EvidenceCollection,
    EvidenceItem,
    EvidenceKind,
    JudgePersona,
    Side,
    UserRole,
)

logger = logging.getLogger(__name__)


# =============================================================================
# Stage rules
# =============================================================================

STAGE_ORDER = [
    CaseStage.DRAFTING,
    CaseStage.PLAINTIFF_EVIDENCE,
    CaseStage.DEFENSE_PENDING,
    CaseStage.CROSS_EXAMINATION,
    CaseStage.DEBATE,
    CaseStage.ADJUDICATING,
    CaseStage.CLOSED,
]

_RANK = {stage: index for index, stage in enumerate(STAGE_ORDER)}

# Sole actor allowed to submit the advancing action of each stage
STAGE_ACTORS: Dict[CaseStage, ActorRule] = {
    CaseStage.DRAFTING: ActorRule.INITIATOR,
    CaseStage.PLAINTIFF_EVIDENCE: ActorRule.INITIATOR,
    CaseStage.DEFENSE_PENDING: ActorRule.RESPONDENT,
    CaseStage.CROSS_EXAMINATION: ActorRule.EITHER,
    CaseStage.DEBATE: ActorRule.EITHER,
    CaseStage.ADJUDICATING: ActorRule.EITHER,
    CaseStage.CLOSED: ActorRule.NEITHER,
    CaseStage.CANCELLED: ActorRule.NEITHER,
}

# stage -> (previous stage, who may step back)
STEP_BACK: Dict[CaseStage, Tuple[CaseStage, ActorRule]] = {
    CaseStage.PLAINTIFF_EVIDENCE: (CaseStage.DRAFTING, ActorRule.INITIATOR),
    CaseStage.DEFENSE_PENDING: (CaseStage.PLAINTIFF_EVIDENCE, ActorRule.INITIATOR),
    CaseStage.CROSS_EXAMINATION: (CaseStage.DEFENSE_PENDING, ActorRule.EITHER),
    CaseStage.DEBATE: (CaseStage.CROSS_EXAMINATION, ActorRule.EITHER),
    CaseStage.ADJUDICATING: (CaseStage.DEBATE, ActorRule.EITHER),
}


def _legal_transitions() -> Set[Tuple[CaseStage, CaseStage]]:
    legal = set(zip(STAGE_ORDER, STAGE_ORDER[1:]))
    legal |= {(stage, previous) for stage, (previous, _) in STEP_BACK.items()}
    # Default judgment, and stepping back out of one
    legal.add((CaseStage.DEFENSE_PENDING, CaseStage.ADJUDICATING))
    legal.add((CaseStage.ADJUDICATING, CaseStage.DEFENSE_PENDING))
    # Appeal
    legal.add((CaseStage.CLOSED, CaseStage.DEBATE))
    legal.add((CaseStage.CLOSED, CaseStage.DEFENSE_PENDING))
    legal |= {(stage, CaseStage.CANCELLED) for stage in STAGE_ORDER if stage != CaseStage.CLOSED}
    return legal


LEGAL_TRANSITIONS = _legal_transitions()

# collection -> (owning side, stages in which the owner may add/remove items)
EVIDENCE_WINDOWS: Dict[EvidenceCollection, Tuple[Side, Set[CaseStage]]] = {
    EvidenceCollection.PLAINTIFF_EVIDENCE: (
        Side.PLAINTIFF, {CaseStage.DRAFTING, CaseStage.PLAINTIFF_EVIDENCE}
    ),
    EvidenceCollection.DEFENDANT_EVIDENCE: (Side.DEFENDANT, {CaseStage.DEFENSE_PENDING}),
    EvidenceCollection.PLAINTIFF_REBUTTAL_EVIDENCE: (Side.PLAINTIFF, {CaseStage.CROSS_EXAMINATION}),
    EvidenceCollection.DEFENDANT_REBUTTAL_EVIDENCE: (Side.DEFENDANT, {CaseStage.CROSS_EXAMINATION}),
}

ANALYSIS_STAGES = {
    CaseStage.CROSS_EXAMINATION,
    CaseStage.DEBATE,
    CaseStage.ADJUDICATING,
    CaseStage.CLOSED,
}


def stage_rank(stage: CaseStage) -> Optional[int]:
    """Position in the forward order; None for CANCELLED"""
    return _RANK.get(stage)


def is_behind(stage: CaseStage, reference: CaseStage) -> bool:
    """True when `stage` comes strictly before `reference` in the forward order"""
    rank, reference_rank = stage_rank(stage), stage_rank(reference)
    if rank is None or reference_rank is None:
        return False
    return rank < reference_rank


def actor_allowed(rule: ActorRule, role: UserRole) -> bool:
    if rule == ActorRule.INITIATOR:
        return role == UserRole.PLAINTIFF
    if rule == ActorRule.RESPONDENT:
        return role == UserRole.DEFENDANT
    if rule == ActorRule.EITHER:
        return role in (UserRole.PLAINTIFF, UserRole.DEFENDANT)
    return False


def require_stage(case: Case, *stages: CaseStage) -> None:
    if case.stage not in stages:
        expected = ", ".join(s.value for s in stages)
        raise InvalidTransitionError(
            f"Case {case.id} is in stage '{case.stage.value}', expected one of: {expected}"
        )


def require_actor(case: Case, user_id: str, rule: Optional[ActorRule] = None) -> Side:
    """
    Check the user against an actor rule (default: the stage's rule).

    Raises:
        PermissionDeniedError: the user is not the designated actor
    """
    rule = rule or STAGE_ACTORS[case.stage]
    role = case.role_of(user_id)
    if not actor_allowed(rule, role):
        raise PermissionDeniedError(
            f"User with role {role.value} may not act in stage '{case.stage.value}' (requires {rule.value})"
        )
    return Side(role.value)


def require_participant(case: Case, user_id: str) -> Side:
    return require_actor(case, user_id, ActorRule.EITHER)


def require_plaintiff(case: Case, user_id: str) -> Side:
    return require_actor(case, user_id, ActorRule.INITIATOR)


def generate_share_code(length: Optional[int] = None) -> str:
    """Random uppercase alphanumeric join code"""
    length = length or get_settings().share_code_length
    alphabet = string.ascii_uppercase + string.digits
    return "".join(secrets.choice(alphabet) for _ in range(length))


# =============================================================================
# Fingerprint
# =============================================================================

def compute_fingerprint(case: Case) -> str:
    """
    Hash of every field dispute-point generation reads.

    Adding a field to the dispute prompt means adding it here as well,
    otherwise stale dispute points are silently reused.
    """
    material = {
        "category": case.category,
        "description": case.description,
        "demands": case.demands,
        "defense_statement": case.defense_statement,
        "plaintiff_rebuttal": case.plaintiff_rebuttal,
        "defendant_rebuttal": case.defendant_rebuttal,
        "evidence": {
            collection.value: [
                [item.id, item.kind.value, item.description or "", item.is_contested]
                for item in case.evidence_list(collection)
            ]
            for collection in EvidenceCollection
        },
    }
    canonical = json.dumps(material, sort_keys=True, ensure_ascii=False, separators=(",", ":"))
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


# =============================================================================
# Patch application
# =============================================================================

def apply_patch(case: Case, patch: CasePatch) -> Case:
    """
    Merge a patch into a case field by field, enforcing the model invariants.

    Raises:
        CaseIntegrityError: identity reassignment, illegal stage move, or a
            verdict/stage mismatch
    """
    changes = patch.changes()

    forbidden = IMMUTABLE_FIELDS & set(changes)
    if forbidden:
        raise CaseIntegrityError(f"Immutable fields in patch: {sorted(forbidden)}")

    new_defendant = changes.get("defendant_id", case.defendant_id)
    if case.defendant_id and new_defendant != case.defendant_id:
        raise CaseIntegrityError("Defendant identity cannot be reassigned")
    if new_defendant and new_defendant == case.plaintiff_id:
        raise CaseIntegrityError("Plaintiff cannot also be the defendant")

    new_stage = changes.get("stage", case.stage)
    if new_stage != case.stage and (case.stage, new_stage) not in LEGAL_TRANSITIONS:
        raise CaseIntegrityError(f"Illegal transition {case.stage.value} -> {new_stage.value}")

    new_verdict = changes.get("verdict", case.verdict)
    if (new_stage == CaseStage.CLOSED) != (new_verdict is not None):
        raise CaseIntegrityError("A verdict must exist exactly when the case is closed")

    if patch.argument is not None:
        try:
            changes["dispute_points"] = patch.argument.apply_to(changes.get("dispute_points", case.dispute_points))
        except LookupError as e:
            raise CaseIntegrityError(str(e)) from e

    return case.model_copy(update=changes)


# =============================================================================
# Workflow
# =============================================================================

class CaseWorkflow:
    """
    Case state machine.

    Usage:
        workflow = CaseWorkflow()
        case = workflow.create_case("alice")
        patch = workflow.submit_filing(case, "alice", "He forgot our anniversary", "An apology")
        case = apply_patch(case, patch)
    """

    def __init__(self, judge: Optional[AIJudge] = None):
        self.judge = judge or AIJudge()
        self._adjudicating: Set[str] = set()

    # -------------------------------------------------------------------------
    # Creation / joining
    # -------------------------------------------------------------------------

    def create_case(self, plaintiff_id: str, category: Optional[str] = None) -> Case:
        if not plaintiff_id:
            raise PermissionDeniedError("A case needs a plaintiff identity")
        settings = get_settings()
        case = Case(
            id=str(uuid.uuid4()),
            share_code=generate_share_code(settings.share_code_length),
            plaintiff_id=plaintiff_id,
            category=category or settings.default_category,
        )
        logger.info(f"Case {case.id} created by {plaintiff_id}")
        return case

    def join(self, case: Case, user_id: str) -> CasePatch:
        """Bind the defendant seat to a user"""
        if case.stage == CaseStage.CANCELLED:
            raise JoinError("This case has been withdrawn")
        if user_id == case.plaintiff_id:
            raise JoinError("You filed this case and cannot join it as defendant")
        if case.defendant_id and case.defendant_id != user_id:
            raise JoinError("This case already has a defendant")
        if case.defendant_id == user_id:
            return CasePatch()
        logger.info(f"User {user_id} joined case {case.id} as defendant")
        return CasePatch(defendant_id=user_id)

    # -------------------------------------------------------------------------
    # Filing
    # -------------------------------------------------------------------------

    def submit_filing(self, case: Case, user_id: str, description: str, demands: str) -> CasePatch:
        require_stage(case, CaseStage.DRAFTING)
        require_actor(case, user_id)
        if not (description or "").strip():
            raise InvalidTransitionError("The statement cannot be empty")
        return CasePatch(
            description=description.strip(),
            demands=(demands or "").strip(),
            stage=CaseStage.PLAINTIFF_EVIDENCE,
        )

    async def enrich_filing(self, case: Case) -> CasePatch:
        """Title and summary for the filed statement (degraded, never raises)"""
        sentiment = await self.judge.analyze_sentiment(case.description)
        if sentiment.is_toxic:
            logger.warning(f"Toxic content detected in case {case.id}: {sentiment.reason}")
        title = await self.judge.generate_case_title(case.description)
        summary = await self.judge.summarize_statement(case.description, "plaintiff")
        return CasePatch(title=title, plaintiff_summary=summary)

    # -------------------------------------------------------------------------
    # Evidence
    # -------------------------------------------------------------------------

    @staticmethod
    def collection_for(side: Side, stage: CaseStage) -> EvidenceCollection:
        if stage == CaseStage.CROSS_EXAMINATION:
            if side == Side.PLAINTIFF:
                return EvidenceCollection.PLAINTIFF_REBUTTAL_EVIDENCE
            return EvidenceCollection.DEFENDANT_REBUTTAL_EVIDENCE
        if side == Side.PLAINTIFF:
            return EvidenceCollection.PLAINTIFF_EVIDENCE
        return EvidenceCollection.DEFENDANT_EVIDENCE

    def add_evidence(
        self,
        case: Case,
        user_id: str,
        kind: EvidenceKind,
        content: str,
        description: Optional[str] = None,
    ) -> CasePatch:
        side = require_participant(case, user_id)
        collection = self.collection_for(side, case.stage)
        _, stages = EVIDENCE_WINDOWS[collection]
        if case.stage not in stages:
            raise InvalidTransitionError(f"{side.value} cannot add evidence in stage '{case.stage.value}'")
        if not (content or "").strip():
            raise InvalidTransitionError("Evidence content cannot be empty")

        item = EvidenceItem(
            id=str(uuid.uuid4()),
            kind=kind,
            content=content,
            description=description,
            is_contested=False,
            submitted_by=side,
        )
        return CasePatch(**{collection.value: case.evidence_list(collection) + [item]})

    def remove_evidence(self, case: Case, user_id: str, evidence_id: str) -> CasePatch:
        side = require_participant(case, user_id)
        found = case.find_evidence(evidence_id)
        if found is None:
            raise EvidenceNotFoundError(f"Evidence {evidence_id} not found")
        collection, item = found
        if item.submitted_by != side:
            raise PermissionDeniedError("Only the submitter may remove evidence")
        _, stages = EVIDENCE_WINDOWS[collection]
        if case.stage not in stages:
            raise InvalidTransitionError("Evidence can no longer be removed at this stage")
        remaining = [e for e in case.evidence_list(collection) if e.id != evidence_id]
        return CasePatch(**{collection.value: remaining})

    def submit_evidence(self, case: Case, user_id: str) -> CasePatch:
        require_stage(case, CaseStage.PLAINTIFF_EVIDENCE)
        require_actor(case, user_id)
        return CasePatch(stage=CaseStage.DEFENSE_PENDING)

    # -------------------------------------------------------------------------
    # Defense
    # -------------------------------------------------------------------------

    def submit_defense(self, case: Case, user_id: str, statement: str) -> CasePatch:
        require_stage(case, CaseStage.DEFENSE_PENDING)
        require_actor(case, user_id)
        if not (statement or "").strip():
            raise InvalidTransitionError("The defense statement cannot be empty")
        return CasePatch(defense_statement=statement.strip(), stage=CaseStage.CROSS_EXAMINATION)

    async def enrich_defense(self, case: Case) -> CasePatch:
        summary = await self.judge.summarize_statement(case.defense_statement, "defendant")
        return CasePatch(defense_summary=summary)

    def default_judgment(self, case: Case, user_id: str) -> CasePatch:
        """Adjudicate without the defendant, who never joined or never answered"""
        require_stage(case, CaseStage.DEFENSE_PENDING)
        require_plaintiff(case, user_id)
        if case.defendant_id and case.defense_statement.strip():
            raise InvalidTransitionError("The defendant has already answered")
        logger.info(f"Default judgment requested for case {case.id}")
        return CasePatch(
            defense_statement=NON_PARTICIPATION_STATEMENT,
            defense_summary=NON_PARTICIPATION_SUMMARY,
            dispute_points=[],
            fingerprint=None,
            stage=CaseStage.ADJUDICATING,
        )

    # -------------------------------------------------------------------------
    # Cross examination
    # -------------------------------------------------------------------------

    def toggle_contested(self, case: Case, user_id: str, evidence_id: str) -> CasePatch:
        """Only the side that did not submit an item may contest it"""
        require_stage(case, CaseStage.CROSS_EXAMINATION)
        side = require_participant(case, user_id)
        found = case.find_evidence(evidence_id)
        if found is None:
            raise EvidenceNotFoundError(f"Evidence {evidence_id} not found")
        collection, item = found
        if item.submitted_by == side:
            raise PermissionDeniedError("You cannot contest your own evidence")
        updated = [
            e.model_copy(update={"is_contested": not e.is_contested}) if e.id == evidence_id else e
            for e in case.evidence_list(collection)
        ]
        return CasePatch(**{collection.value: updated})

    def update_rebuttal(self, case: Case, user_id: str, text: str) -> CasePatch:
        require_stage(case, CaseStage.CROSS_EXAMINATION)
        side = require_participant(case, user_id)
        if side == Side.PLAINTIFF:
            return CasePatch(plaintiff_rebuttal=text or "")
        return CasePatch(defendant_rebuttal=text or "")

    async def finish_cross_examination(self, case: Case, user_id: str) -> CasePatch:
        """
        Enter DEBATE, generating dispute points unless the material is unchanged.

        Raises:
            GatewayError: dispute extraction failed; the case stays put
        """
        require_stage(case, CaseStage.CROSS_EXAMINATION)
        require_actor(case, user_id)

        fingerprint = compute_fingerprint(case)
        if case.dispute_points and case.fingerprint == fingerprint:
            logger.info(f"Case {case.id}: material unchanged, reusing {len(case.dispute_points)} dispute points")
            return CasePatch(stage=CaseStage.DEBATE)

        points = await self.judge.analyze_dispute_focus(case)
        logger.info(f"Case {case.id}: generated {len(points)} dispute points")
        return CasePatch(dispute_points=points, fingerprint=fingerprint, stage=CaseStage.DEBATE)

    # -------------------------------------------------------------------------
    # Debate / adjudication
    # -------------------------------------------------------------------------

    def update_argument(self, case: Case, user_id: str, point_id: str, text: str) -> CasePatch:
        require_stage(case, CaseStage.DEBATE)
        side = require_participant(case, user_id)
        if not any(p.id == point_id for p in case.dispute_points):
            raise DisputePointNotFoundError(f"Dispute point {point_id} not found")
        return CasePatch(argument=ArgumentEdit(point_id=point_id, side=side, text=text))

    def request_adjudication(self, case: Case, user_id: str) -> CasePatch:
        require_stage(case, CaseStage.DEBATE)
        require_actor(case, user_id)
        return CasePatch(stage=CaseStage.ADJUDICATING)

    async def adjudicate(
        self,
        case: Case,
        user_id: str,
        persona: JudgePersona = JudgePersona.BORDER_COLLIE,
    ) -> CasePatch:
        """
        Generate a fresh verdict and close the case.

        Raises:
            AdjudicationInProgressError: a verdict is already being generated
                for this case in this process
            GatewayError: verdict generation failed; the case stays ADJUDICATING
        """
        require_stage(case, CaseStage.ADJUDICATING)
        require_actor(case, user_id)

        if case.id in self._adjudicating:
            raise AdjudicationInProgressError(f"Case {case.id} is already being adjudicated")
        self._adjudicating.add(case.id)
        try:
            verdict = await self.judge.generate_verdict(case, persona)
        finally:
            self._adjudicating.discard(case.id)

        split = verdict.responsibility_split
        logger.info(f"Case {case.id} closed, split {split.plaintiff}/{split.defendant}")
        return CasePatch(verdict=verdict, judge_persona=persona, stage=CaseStage.CLOSED)

    # -------------------------------------------------------------------------
    # Backward moves / termination
    # -------------------------------------------------------------------------

    def step_back(self, case: Case, user_id: str) -> CasePatch:
        if case.stage not in STEP_BACK:
            raise InvalidTransitionError(f"Cannot step back from stage '{case.stage.value}'")
        previous, rule = STEP_BACK[case.stage]
        require_actor(case, user_id, rule)

        if case.stage == CaseStage.ADJUDICATING and case.is_default_judgment:
            return CasePatch(
                stage=CaseStage.DEFENSE_PENDING,
                defense_statement="",
                defense_summary=None,
            )
        return CasePatch(stage=previous)

    def appeal(self, case: Case, user_id: str) -> CasePatch:
        """Reopen a closed case, discarding the verdict"""
        require_stage(case, CaseStage.CLOSED)
        require_participant(case, user_id)
        logger.info(f"Appeal on case {case.id} by {user_id}")
        if case.is_default_judgment:
            return CasePatch(
                stage=CaseStage.DEFENSE_PENDING,
                defense_statement="",
                defense_summary=None,
                verdict=None,
            )
        return CasePatch(stage=CaseStage.DEBATE, verdict=None)

    def cancel(self, case: Case, user_id: str) -> CasePatch:
        require_plaintiff(case, user_id)
        if case.stage in (CaseStage.CLOSED, CaseStage.CANCELLED):
            raise InvalidTransitionError(f"Cannot cancel a case in stage '{case.stage.value}'")
        return CasePatch(stage=CaseStage.CANCELLED)

    def authorize_delete(self, case: Case, user_id: str) -> None:
        """Hard deletion is reserved to the plaintiff"""
        require_plaintiff(case, user_id)

    # -------------------------------------------------------------------------
    # Advisory
    # -------------------------------------------------------------------------

    async def analyze_evidence(self, case: Case, user_id: str, evidence_id: str) -> str:
        """Credibility analysis of one evidence item; does not modify the case"""
        require_participant(case, user_id)
        if case.stage not in ANALYSIS_STAGES:
            raise InvalidTransitionError("Evidence analysis is available from cross-examination on")
        found = case.find_evidence(evidence_id)
        if found is None:
            raise EvidenceNotFoundError(f"Evidence {evidence_id} not found")
        _, item = found
        return await self.judge.analyze_evidence_credibility(
            item, case.plaintiff_rebuttal, case.defendant_rebuttal
        )
