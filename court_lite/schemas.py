"""
Pydantic Schemas for the Case Court Service
===========================================

Domain model for a two-party dispute case:
- Case: the aggregate record, from filing to verdict
- EvidenceItem: an atomic unit of proof submitted by one side
- DisputePoint: a machine-identified point of contention
- Verdict: the terminal artifact produced by the AI judge

Also contains CasePatch (partial update) and the API request/response bodies.

Naming: the initiator of a case is the plaintiff, the respondent is the
defendant, the join code is the share code.
"""

from typing import List, Optional, Dict, Any
from pydantic import BaseModel, Field
from enum import Enum
from datetime import datetime, timezone


def utc_now() -> datetime:
    """Naive UTC timestamp, as stored in the cases table"""
    return datetime.now(timezone.utc).replace(tzinfo=None)


# =============================================================================
# ENUMS
# =============================================================================

class LLMMode(str, Enum):
    """LLM usage mode"""
    NONE = "none"       # All inference disabled (degraded operations only)
    GEMINI = "gemini"


class CaseStage(str, Enum):
    """
    Case workflow stage, in forward order.

    CANCELLED is outside the forward order and terminal.
    """
    DRAFTING = "drafting"                      # Plaintiff writes statement + demands
    PLAINTIFF_EVIDENCE = "plaintiff_evidence"  # Plaintiff adds evidence
    DEFENSE_PENDING = "defense_pending"        # Waiting for defendant to join/answer
    CROSS_EXAMINATION = "cross_examination"    # Both sides rebut / contest evidence
    DEBATE = "debate"                          # Arguments on dispute points
    ADJUDICATING = "adjudicating"              # AI judge deliberates
    CLOSED = "closed"                          # Verdict delivered
    CANCELLED = "cancelled"                    # Withdrawn by plaintiff

    # Aliases
    EVIDENCE_SUBMISSION = "plaintiff_evidence"
    RESPONSE_PENDING = "defense_pending"


class Side(str, Enum):
    """Party side in a case"""
    PLAINTIFF = "PLAINTIFF"
    DEFENDANT = "DEFENDANT"


class UserRole(str, Enum):
    """Role of a user relative to one case"""
    PLAINTIFF = "PLAINTIFF"
    DEFENDANT = "DEFENDANT"
    SPECTATOR = "SPECTATOR"


class ActorRule(str, Enum):
    """Who may submit the advancing action of a stage"""
    INITIATOR = "initiator"
    RESPONDENT = "respondent"
    EITHER = "either"
    NEITHER = "neither"


class JudgePersona(str, Enum):
    """Adjudicator persona"""
    BORDER_COLLIE = "BORDER_COLLIE"  # Rational, legalistic, strictly neutral
    CAT = "CAT"                      # Empathetic, soothing, mediating


class EvidenceKind(str, Enum):
    """Evidence payload kind"""
    TEXT = "TEXT"
    IMAGE = "IMAGE"    # content is a data: URL
    AUDIO = "AUDIO"    # content is a transcript


class EvidenceCollection(str, Enum):
    """The four evidence collections on a case (values are Case field names)"""
    PLAINTIFF_EVIDENCE = "plaintiff_evidence"
    DEFENDANT_EVIDENCE = "defendant_evidence"
    PLAINTIFF_REBUTTAL_EVIDENCE = "plaintiff_rebuttal_evidence"
    DEFENDANT_REBUTTAL_EVIDENCE = "defendant_rebuttal_evidence"


# Written into the defense fields on default judgment
NON_PARTICIPATION_STATEMENT = "(Defendant absent; defense waived)"
NON_PARTICIPATION_SUMMARY = "The defendant did not appear and is deemed to have waived the right to answer."


# =============================================================================
# DOMAIN MODELS
# =============================================================================

class EvidenceItem(BaseModel):
    """Single piece of evidence"""
    id: str
    kind: EvidenceKind = EvidenceKind.TEXT
    content: str = ""
    description: Optional[str] = None
    is_contested: bool = False
    submitted_by: Side


class DisputePoint(BaseModel):
    """Core point of contention extracted by the AI judge"""
    id: str
    title: str
    description: str = Field("", description="Background ending in a yes/no question")
    plaintiff_arg: Optional[str] = None
    defendant_arg: Optional[str] = None


class DisputeAnalysis(BaseModel):
    """Verdict analysis of one dispute point"""
    title: str
    analysis: str


class PenaltyTask(BaseModel):
    """Restorative task assigned to one side"""
    assignee: Side
    content: str


class ResponsibilitySplit(BaseModel):
    """Responsibility percentages, always summing to 100"""
    plaintiff: int = 50
    defendant: int = 50

    @property
    def larger_side(self) -> Side:
        # Ties go to the plaintiff
        return Side.DEFENDANT if self.defendant > self.plaintiff else Side.PLAINTIFF


class Verdict(BaseModel):
    """Final judgment"""
    summary: str = ""
    facts: List[str] = Field(default_factory=list)
    responsibility_split: ResponsibilitySplit = Field(default_factory=ResponsibilitySplit)
    reasoning: str = ""
    final_judgment: str = ""
    penalty_tasks: List[PenaltyTask] = Field(default_factory=list)
    tone: str = ""
    dispute_analyses: List[DisputeAnalysis] = Field(default_factory=list)


class SentimentResult(BaseModel):
    """Toxicity check result"""
    is_toxic: bool = False
    score: float = Field(0, ge=0, le=10)
    reason: str = ""


class Case(BaseModel):
    """A dispute case from filing to verdict"""
    id: str
    share_code: str
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

    # Identity
    plaintiff_id: str
    defendant_id: Optional[str] = None

    # Filing
    category: str = ""
    title: str = ""
    description: str = ""
    plaintiff_summary: str = ""
    demands: str = ""
    plaintiff_evidence: List[EvidenceItem] = Field(default_factory=list)

    # Defense
    defense_statement: str = ""
    defense_summary: Optional[str] = None
    defendant_evidence: List[EvidenceItem] = Field(default_factory=list)

    # Cross examination
    plaintiff_rebuttal: str = ""
    plaintiff_rebuttal_evidence: List[EvidenceItem] = Field(default_factory=list)
    defendant_rebuttal: str = ""
    defendant_rebuttal_evidence: List[EvidenceItem] = Field(default_factory=list)

    # Debate
    dispute_points: List[DisputePoint] = Field(default_factory=list)
    fingerprint: Optional[str] = None

    judge_persona: JudgePersona = JudgePersona.BORDER_COLLIE
    stage: CaseStage = CaseStage.DRAFTING
    verdict: Optional[Verdict] = None

    @property
    def is_default_judgment(self) -> bool:
        """True when the case proceeds without the defendant"""
        return self.defense_statement == NON_PARTICIPATION_STATEMENT

    def role_of(self, user_id: Optional[str]) -> UserRole:
        """Role of a user in this case"""
        if user_id and user_id == self.plaintiff_id:
            return UserRole.PLAINTIFF
        if user_id and user_id == self.defendant_id:
            return UserRole.DEFENDANT
        return UserRole.SPECTATOR

    def evidence_list(self, collection: EvidenceCollection) -> List[EvidenceItem]:
        return getattr(self, collection.value)

    def find_evidence(self, evidence_id: str) -> Optional[tuple]:
        """Return (collection, item) for an evidence id, or None"""
        for collection in EvidenceCollection:
            for item in self.evidence_list(collection):
                if item.id == evidence_id:
                    return collection, item
        return None

    def all_evidence(self) -> List[EvidenceItem]:
        items: List[EvidenceItem] = []
        for collection in EvidenceCollection:
            items.extend(self.evidence_list(collection))
        return items


# Fields a patch may never carry
IMMUTABLE_FIELDS = {"id", "plaintiff_id", "created_at", "share_code"}


class ArgumentEdit(BaseModel):
    """
    One side's argument on one dispute point.

    Sent instead of the whole dispute_points list so that the two sides can
    argue the same point concurrently without overwriting each other.
    """
    point_id: str
    side: Side
    text: str

    @property
    def field(self) -> str:
        return "plaintiff_arg" if self.side == Side.PLAINTIFF else "defendant_arg"

    def apply_to(self, points: List[DisputePoint]) -> List[DisputePoint]:
        """
        Raises:
            LookupError: no point with this id
        """
        if not any(p.id == self.point_id for p in points):
            raise LookupError(f"Dispute point {self.point_id} not found")
        return [
            p.model_copy(update={self.field: self.text}) if p.id == self.point_id else p
            for p in points
        ]


class CasePatch(BaseModel):
    """
    Partial update to a Case.

    Only fields that were explicitly set are part of the patch, so a patch can
    deliberately write None (e.g. clearing defense_summary).
    """
    defendant_id: Optional[str] = None
    category: Optional[str] = None
    title: Optional[str] = None
    description: Optional[str] = None
    plaintiff_summary: Optional[str] = None
    demands: Optional[str] = None
    plaintiff_evidence: Optional[List[EvidenceItem]] = None
    defense_statement: Optional[str] = None
    defense_summary: Optional[str] = None
    defendant_evidence: Optional[List[EvidenceItem]] = None
    plaintiff_rebuttal: Optional[str] = None
    plaintiff_rebuttal_evidence: Optional[List[EvidenceItem]] = None
    defendant_rebuttal: Optional[str] = None
    defendant_rebuttal_evidence: Optional[List[EvidenceItem]] = None
    dispute_points: Optional[List[DisputePoint]] = None
    fingerprint: Optional[str] = None
    judge_persona: Optional[JudgePersona] = None
    stage: Optional[CaseStage] = None
    verdict: Optional[Verdict] = None
    argument: Optional[ArgumentEdit] = None

    def changes(self) -> Dict[str, Any]:
        """Explicitly set Case fields and their values (an argument edit is not one)"""
        return {name: getattr(self, name) for name in self.model_fields_set if name != "argument"}

    def touched_fields(self) -> List[str]:
        """Case fields this patch writes, including the list an argument edit lands in"""
        names = set(self.changes())
        if self.argument is not None:
            names.add("dispute_points")
        return sorted(names)

    def is_empty(self) -> bool:
        return not self.model_fields_set


# =============================================================================
# API REQUEST / RESPONSE MODELS
# =============================================================================

class CreateCaseRequest(BaseModel):
    """New case"""
    category: Optional[str] = None


class JoinCaseRequest(BaseModel):
    """Join a case by its share code"""
    share_code: str = Field(..., min_length=1)


class FilingRequest(BaseModel):
    """Plaintiff statement and demands"""
    description: str
    demands: str = ""


class AddEvidenceRequest(BaseModel):
    """New evidence item"""
    kind: EvidenceKind = EvidenceKind.TEXT
    content: str
    description: Optional[str] = None


class DefenseRequest(BaseModel):
    """Defendant statement"""
    statement: str


class RebuttalRequest(BaseModel):
    """Cross-examination text for the caller's side"""
    text: str


class ArgumentRequest(BaseModel):
    """Final argument on one dispute point"""
    text: str


class AdjudicateRequest(BaseModel):
    """Adjudication options"""
    persona: JudgePersona = JudgePersona.BORDER_COLLIE


class TextRequest(BaseModel):
    """Free text for the text tools"""
    text: str


class TranscribeRequest(BaseModel):
    """Base64 audio payload"""
    audio_base64: str
    mime_type: str = "audio/webm"


class TextResponse(BaseModel):
    """Free text result"""
    text: str


class FactsResponse(BaseModel):
    """Objective facts extracted from a narrative"""
    facts: List[str] = Field(default_factory=list)


class HealthResponse(BaseModel):
    """Health check response"""
    status: str = Field(..., description="Service status")
    version: str = Field(..., description="Service version")
    llm_mode: LLMMode = Field(..., description="Current LLM mode")
    timestamp: datetime = Field(..., description="Current timestamp")


class ErrorDetail(BaseModel):
    """Structured error detail"""
    code: str = Field(..., description="Machine-readable error code")
    message: str = Field(..., description="Human-readable error message")


class ErrorResponse(BaseModel):
    """Structured error response"""
    error: ErrorDetail
