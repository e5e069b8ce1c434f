"""
AI Judge Operations
===================

Case-level AI operations built on the inference gateway.

Degraded operations (never raise, substitute a safe default):
- transcribe_audio, summarize_statement, generate_case_title,
  polish_text, fix_grammar, analyze_sentiment, extract_fact_points,
  analyze_evidence_credibility

Load-bearing operations (raise GatewayError, the caller keeps the stage):
- analyze_dispute_focus
- generate_verdict
"""

import logging
from typing import List, Optional

from .llm.backends import InlineData, parse_data_url
from .llm.errors import GatewayError
from .llm.gateway import MODEL_HINT_PRO, InferenceGateway, get_gateway
from .llm.validator import (
    coerce_dispute_points,
    coerce_facts,
    coerce_sentiment,
    coerce_verdict,
)
from .prompts import (
    DEFAULT_JUDGMENT_INSTRUCTION,
    DISPUTE_SYSTEM_PROMPT,
    EVIDENCE_SYSTEM_PROMPT,
    FACTS_SYSTEM_PROMPT,
    GRAMMAR_SYSTEM_PROMPT,
    JUDGE_PREFIXES,
    PERSONA_INSTRUCTIONS,
    POLISH_SYSTEM_PROMPT,
    SENTIMENT_SYSTEM_PROMPT,
    SUMMARIZE_SYSTEM_PROMPT,
    TITLE_SYSTEM_PROMPT,
    TRANSCRIBE_SYSTEM_PROMPT,
    VERDICT_SYSTEM_PROMPT,
)
from .schemas import (
    Case,
    DisputePoint,
    EvidenceItem,
    EvidenceKind,
    JudgePersona,
    SentimentResult,
    Verdict,
)

logger = logging.getLogger(__name__)

TRANSCRIPTION_FAILED = "(Audio transcription failed, please try again)"
EVIDENCE_ANALYSIS_FAILED = "The AI cannot analyze this evidence right now, please try again later."

SUMMARY_FALLBACK_CHARS = 150
TITLE_FALLBACK_CHARS = 20
EVIDENCE_CONTENT_CHARS = 300


def _truncate(text: str, limit: int) -> str:
    text = (text or "").strip()
    if len(text) <= limit:
        return text
    return text[:limit] + "..."


def format_evidence(items: List[EvidenceItem], empty: str = "(no evidence submitted)") -> str:
    """One line per evidence item for a prompt"""
    if not items:
        return empty
    lines = []
    for i, item in enumerate(items, 1):
        line = f"{i}. [{item.kind.value}] {item.description or 'no description'}"
        if item.kind in (EvidenceKind.TEXT, EvidenceKind.AUDIO) and item.content:
            line += f" | {_truncate(item.content, EVIDENCE_CONTENT_CHARS)}"
        if item.is_contested:
            line += " (contested by the other side)"
        lines.append(line)
    return "\n".join(lines)


def collect_images(items: List[EvidenceItem]) -> List[InlineData]:
    """Inline attachments for image evidence stored as data URLs"""
    images = []
    for item in items:
        if item.kind != EvidenceKind.IMAGE:
            continue
        inline = parse_data_url(item.content)
        if inline is not None:
            images.append(inline)
    return images


def format_dispute_points(points: List[DisputePoint]) -> str:
    if not points:
        return "(no dispute points)"
    return "\n".join(
        f"- Q: {p.title} ({p.description}) "
        f"P: {p.plaintiff_arg or '(no argument)'} vs D: {p.defendant_arg or '(no argument)'}"
        for p in points
    )


class AIJudge:
    """
    AI operations over a case.

    Usage:
        judge = AIJudge()
        points = await judge.analyze_dispute_focus(case)
        verdict = await judge.generate_verdict(case, JudgePersona.CAT)
    """

    def __init__(self, gateway: Optional[InferenceGateway] = None):
        self._gateway = gateway

    @property
    def gateway(self) -> InferenceGateway:
        if self._gateway is None:
            self._gateway = get_gateway()
        return self._gateway

    # -------------------------------------------------------------------------
    # Degraded operations
    # -------------------------------------------------------------------------

    async def transcribe_audio(self, audio_base64: str, mime_type: str) -> str:
        """Audio payload to plain text; placeholder on failure"""
        try:
            text = await self.gateway.infer(
                TRANSCRIBE_SYSTEM_PROMPT,
                "Transcribe this audio.",
                audio=[InlineData(mime_type=mime_type, data=audio_base64)],
            )
            return text.strip()
        except Exception as e:
            logger.warning(f"Transcription failed: {e}")
            return TRANSCRIPTION_FAILED

    async def summarize_statement(self, text: str, role: str) -> str:
        if not text:
            return ""
        try:
            summary = await self.gateway.infer(
                SUMMARIZE_SYSTEM_PROMPT.format(role=role),
                f'Statement: "{text}"',
            )
            return summary.strip() or _truncate(text, SUMMARY_FALLBACK_CHARS)
        except Exception as e:
            logger.warning(f"Summary failed, truncating: {e}")
            return _truncate(text, SUMMARY_FALLBACK_CHARS)

    async def generate_case_title(self, description: str) -> str:
        try:
            title = await self.gateway.infer(TITLE_SYSTEM_PROMPT, f'Case description: "{description}"')
            title = title.strip().replace('"', "").replace("'", "")
            return title or _truncate(description, TITLE_FALLBACK_CHARS)
        except Exception as e:
            logger.warning(f"Title generation failed, truncating: {e}")
            return _truncate(description, TITLE_FALLBACK_CHARS)

    async def polish_text(self, text: str) -> str:
        try:
            polished = await self.gateway.infer(POLISH_SYSTEM_PROMPT, f'Text: "{text}"')
            return polished.strip() or text
        except Exception as e:
            logger.warning(f"Polish failed: {e}")
            return text

    async def fix_grammar(self, text: str) -> str:
        try:
            fixed = await self.gateway.infer(GRAMMAR_SYSTEM_PROMPT, f'Text: "{text}"')
            return fixed.strip() or text
        except Exception as e:
            logger.warning(f"Grammar fix failed: {e}")
            return text

    async def analyze_sentiment(self, text: str) -> SentimentResult:
        """Toxicity check; fails open"""
        try:
            return await self.gateway.infer_json(
                SENTIMENT_SYSTEM_PROMPT, f'Text: "{text}"', coerce=coerce_sentiment
            )
        except Exception as e:
            logger.warning(f"Sentiment check failed, treating as not toxic: {e}")
            return SentimentResult(is_toxic=False, score=0, reason="")

    async def extract_fact_points(self, narrative: str) -> List[str]:
        try:
            return await self.gateway.infer_json(
                FACTS_SYSTEM_PROMPT, f'Narrative: "{narrative}"', coerce=coerce_facts
            )
        except Exception as e:
            logger.warning(f"Fact extraction failed: {e}")
            return []

    async def analyze_evidence_credibility(
        self,
        evidence: EvidenceItem,
        plaintiff_arg: str,
        defendant_arg: str,
    ) -> str:
        """Advisory analysis of one evidence item, using the pro model"""
        content = (
            evidence.content
            if evidence.kind in (EvidenceKind.TEXT, EvidenceKind.AUDIO)
            else "(see attached image)"
        )
        prompt = (
            "Evidence under review:\n"
            f"- Kind: {evidence.kind.value}\n"
            f"- Description: {evidence.description or 'none'}\n"
            f"- Content: {content}\n\n"
            f"Plaintiff position: {plaintiff_arg or '(not stated)'}\n\n"
            f"Defendant position: {defendant_arg or '(not stated)'}"
        )
        try:
            result = await self.gateway.infer(
                EVIDENCE_SYSTEM_PROMPT,
                prompt,
                images=collect_images([evidence]),
                model_hint=MODEL_HINT_PRO,
            )
            return result.strip() or EVIDENCE_ANALYSIS_FAILED
        except Exception as e:
            logger.warning(f"Evidence analysis failed: {e}")
            return EVIDENCE_ANALYSIS_FAILED

    # -------------------------------------------------------------------------
    # Load-bearing operations
    # -------------------------------------------------------------------------

    async def analyze_dispute_focus(self, case: Case) -> List[DisputePoint]:
        """
        Extract the core dispute points from the case material.

        Raises:
            GatewayError: transport or validation failure; nothing is degraded
        """
        evidence = case.plaintiff_evidence + case.defendant_evidence
        prompt = (
            "Identify the points of dispute in this case.\n\n"
            f"Case category: {case.category}\n\n"
            f"Plaintiff statement:\n{case.description or '(empty)'}\n\n"
            f"Plaintiff demands:\n{case.demands or '(none)'}\n\n"
            f"Evidence:\n{format_evidence(evidence)}\n\n"
            f"Defense:\n{case.defense_statement or '(defendant absent or gave no detailed defense)'}\n\n"
            f"Plaintiff cross-examination:\n{case.plaintiff_rebuttal or '(none)'}\n"
            f"{format_evidence(case.plaintiff_rebuttal_evidence, empty='')}\n\n"
            f"Defendant cross-examination:\n{case.defendant_rebuttal or '(none)'}\n"
            f"{format_evidence(case.defendant_rebuttal_evidence, empty='')}"
        )
        try:
            return await self.gateway.infer_json(
                DISPUTE_SYSTEM_PROMPT,
                prompt,
                coerce=coerce_dispute_points,
                temperature=0.4,
            )
        except GatewayError as e:
            logger.error(f"Dispute analysis failed for case {case.id}: {e}")
            raise

    def build_verdict_prompts(self, case: Case, persona: JudgePersona) -> tuple:
        """(system instruction, case file) for verdict generation"""
        system_prompt = VERDICT_SYSTEM_PROMPT.format(
            persona_instruction=PERSONA_INSTRUCTIONS[persona.value],
            judge_prefix=JUDGE_PREFIXES[persona.value],
            demands=case.demands or "(no explicit demands)",
        )
        if case.is_default_judgment:
            system_prompt += DEFAULT_JUDGMENT_INSTRUCTION

        case_file = (
            "CASE FILE:\n"
            f"Category: {case.category}\n"
            f"Plaintiff: {case.description}\n"
            f"Demands: {case.demands}\n"
            f"Defense: {case.defense_statement}\n\n"
            f"Evidence (P):\n{format_evidence(case.plaintiff_evidence)}\n"
            f"Evidence (D):\n{format_evidence(case.defendant_evidence)}\n\n"
            f"Cross-examination (P): {case.plaintiff_rebuttal or '(none)'}\n"
            f"{format_evidence(case.plaintiff_rebuttal_evidence, empty='')}\n"
            f"Cross-examination (D): {case.defendant_rebuttal or '(none)'}\n"
            f"{format_evidence(case.defendant_rebuttal_evidence, empty='')}\n\n"
            f"Debate points:\n{format_dispute_points(case.dispute_points)}"
        )
        return system_prompt, case_file

    async def generate_verdict(self, case: Case, persona: JudgePersona) -> Verdict:
        """
        Generate the final verdict, normalized by the validator.

        Raises:
            GatewayError: transport or validation failure
        """
        system_prompt, case_file = self.build_verdict_prompts(case, persona)
        try:
            return await self.gateway.infer_json(
                system_prompt,
                case_file,
                coerce=coerce_verdict,
                temperature=0.7,
                images=collect_images(case.all_evidence()),
            )
        except GatewayError as e:
            logger.error(f"Verdict generation failed for case {case.id}: {e}")
            raise
