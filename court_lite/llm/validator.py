"""
Response Validator
==================

Turns free-form model output into the canonical schemas.

Handles:
- Markdown code fences and prose around the JSON payload
- Numbers returned as strings ("60%"), negatives, missing fields
- Responsibility splits that do not sum to 100
- Penalty tasks returned as bare strings, loosely-keyed objects or
  correctly-keyed objects
- Dispute points without identifiers
"""

import hashlib
import json
import logging
import math
import re
from typing import Any, Dict, List, Optional, Tuple

from ..schemas import (
    DisputeAnalysis,
    DisputePoint,
    PenaltyTask,
    ResponsibilitySplit,
    SentimentResult,
    Side,
    Verdict,
)
from .errors import ResponseValidationError

logger = logging.getLogger(__name__)

# Maximum deviation from 100 accepted before renormalizing
SPLIT_TOLERANCE = 1.0

PLAINTIFF_CUES = ("plaintiff", "initiator", "原告")
DEFENDANT_CUES = ("defendant", "respondent", "被告")


# =============================================================================
# JSON extraction
# =============================================================================

def safe_log_content(content: str, max_chars: int = 120) -> str:
    """
    Create a safe log representation of content.

    Args:
        content: Content to log
        max_chars: Maximum characters to show

    Returns:
        Safe log string with length and hash
    """
    if not content:
        return "(empty)"

    content_hash = hashlib.sha256(content.encode()).hexdigest()[:12]
    preview = content[:max_chars].replace('\n', ' ')

    return f"len={len(content)} hash={content_hash} preview='{preview}...'"


def extract_json(content: str) -> Any:
    """
    Locate and parse the outermost JSON object/array in model output.

    Scans for the first opening brace/bracket and the last closing one, so
    markdown fences and prose wrapping are discarded.

    Raises:
        ResponseValidationError: when no JSON payload can be parsed
    """
    if not content or not content.strip():
        raise ResponseValidationError("Empty model response")

    text = re.sub(r"```(?:json)?", "", content).strip()

    first_brace = text.find("{")
    first_bracket = text.find("[")
    starts = [i for i in (first_brace, first_bracket) if i != -1]
    if not starts:
        raise ResponseValidationError(f"No JSON payload in response: {safe_log_content(content)}")
    start = min(starts)

    end = max(text.rfind("}"), text.rfind("]"))
    if end <= start:
        raise ResponseValidationError(f"Unterminated JSON payload: {safe_log_content(content)}")

    try:
        return json.loads(text[start:end + 1])
    except json.JSONDecodeError as e:
        logger.warning(f"JSON parse failed ({e}): {safe_log_content(content)}")
        raise ResponseValidationError(f"Malformed JSON: {e}") from e


def _expect_object(payload: Any, what: str) -> Dict[str, Any]:
    if not isinstance(payload, dict):
        raise ResponseValidationError(f"{what}: expected a JSON object, got {type(payload).__name__}")
    return payload


def _pick(data: Dict[str, Any], *keys: str, default: Any = None) -> Any:
    """First present key, accepting camelCase and snake_case spellings"""
    for key in keys:
        if key in data and data[key] is not None:
            return data[key]
    return default


def _as_text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, str):
        return value.strip()
    if isinstance(value, (list, tuple)):
        return "\n".join(_as_text(v) for v in value if v is not None)
    return str(value)


# =============================================================================
# Responsibility split
# =============================================================================

def coerce_number(value: Any) -> Optional[float]:
    """
    Coerce a loosely typed number. Returns None when unparseable.

    Negative values clamp to 0.
    """
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, (int, float)):
        number = float(value)
    elif isinstance(value, str):
        cleaned = re.sub(r"[^0-9.]", "", value)
        # "60.5.1" style garbage: keep the first decimal point only
        if cleaned.count(".") > 1:
            head, _, tail = cleaned.partition(".")
            cleaned = head + "." + tail.replace(".", "")
        if not cleaned or cleaned == ".":
            return None
        number = float(cleaned)
        if value.strip().startswith("-"):
            number = -number
    else:
        return None

    if math.isnan(number) or math.isinf(number):
        return None
    return max(number, 0.0)


def _split_values(raw: Any) -> Tuple[Any, Any]:
    if isinstance(raw, dict):
        lowered = {str(k).lower(): v for k, v in raw.items()}
        plaintiff = _pick(lowered, "plaintiff", "plaintiffshare", "plaintiff_share", "initiator")
        defendant = _pick(lowered, "defendant", "defendantshare", "defendant_share", "respondent")
        return plaintiff, defendant
    if isinstance(raw, (list, tuple)) and len(raw) == 2:
        return raw[0], raw[1]
    return None, None


def coerce_split(raw: Any) -> ResponsibilitySplit:
    """
    Coerce any responsibility split into two non-negative ints summing to 100.

    - both unparseable or both zero -> 50/50
    - one unparseable -> 100 minus the other
    - sum off by more than the tolerance -> proportional renormalization
    """
    plaintiff, defendant = (coerce_number(v) for v in _split_values(raw))

    if plaintiff is None and defendant is None:
        return ResponsibilitySplit(plaintiff=50, defendant=50)
    if plaintiff is None:
        defendant = min(defendant, 100.0)
        plaintiff = 100.0 - defendant
    elif defendant is None:
        plaintiff = min(plaintiff, 100.0)
        defendant = 100.0 - plaintiff

    total = plaintiff + defendant
    if total <= 0:
        return ResponsibilitySplit(plaintiff=50, defendant=50)

    if abs(total - 100.0) > SPLIT_TOLERANCE:
        logger.info(f"Renormalizing responsibility split {plaintiff}/{defendant}")

    plaintiff_share = int(round(plaintiff * 100.0 / total))
    plaintiff_share = min(max(plaintiff_share, 0), 100)
    return ResponsibilitySplit(plaintiff=plaintiff_share, defendant=100 - plaintiff_share)


# =============================================================================
# Penalty tasks
# =============================================================================

TASK_TEXT = "text"              # bare string
TASK_LOOSE = "loose"            # object with unexpected keys
TASK_STRUCTURED = "structured"  # {"assignee": ..., "content": ...}


def classify_task(entry: Any) -> str:
    """Tag a raw penalty task with its shape"""
    if isinstance(entry, dict):
        if entry.get("assignee") and entry.get("content"):
            return TASK_STRUCTURED
        return TASK_LOOSE
    return TASK_TEXT


def side_from_label(label: Any) -> Optional[Side]:
    """Read an explicit assignee label"""
    if not isinstance(label, str):
        return None
    lowered = label.lower()
    if any(cue in lowered for cue in PLAINTIFF_CUES):
        return Side.PLAINTIFF
    if any(cue in lowered for cue in DEFENDANT_CUES):
        return Side.DEFENDANT
    return None


def side_from_text(text: str) -> Optional[Side]:
    """Infer the assignee from textual cues; only one side may be mentioned"""
    lowered = (text or "").lower()
    mentions_plaintiff = any(cue in lowered for cue in PLAINTIFF_CUES)
    mentions_defendant = any(cue in lowered for cue in DEFENDANT_CUES)
    if mentions_plaintiff and not mentions_defendant:
        return Side.PLAINTIFF
    if mentions_defendant and not mentions_plaintiff:
        return Side.DEFENDANT
    return None


def _loose_task_content(entry: Dict[str, Any]) -> str:
    name = _pick(entry, "taskName", "task_name", "name", "title")
    body = _pick(entry, "content", "description", "task", "text", "detail")
    if name and body:
        return f"{_as_text(name)}: {_as_text(body)}"
    if body or name:
        return _as_text(body or name)
    return json.dumps(entry, ensure_ascii=False)


def coerce_task(entry: Any, split: ResponsibilitySplit) -> PenaltyTask:
    """Coerce one raw penalty task into {assignee, content}"""
    kind = classify_task(entry)

    if kind == TASK_STRUCTURED:
        content = _as_text(entry["content"])
        assignee = side_from_label(entry["assignee"]) or side_from_text(content)

    elif kind == TASK_LOOSE:
        content = _loose_task_content(entry)
        label = _pick(entry, "assignee", "who", "target", "role", "side", "assignedTo", "assigned_to")
        assignee = side_from_label(label) or side_from_text(content)

    else:
        content = _as_text(entry)
        assignee = side_from_text(content)

    return PenaltyTask(assignee=assignee or split.larger_side, content=content)


def coerce_tasks(raw: Any, split: ResponsibilitySplit) -> List[PenaltyTask]:
    if raw is None:
        return []
    if not isinstance(raw, list):
        raw = [raw]
    tasks = [coerce_task(entry, split) for entry in raw if entry not in (None, "", {})]
    return [t for t in tasks if t.content]


# =============================================================================
# Dispute points
# =============================================================================

def synthetic_point_id(index: int, title: str) -> str:
    digest = hashlib.sha1(f"{index}:{title}".encode("utf-8")).hexdigest()[:8]
    return f"focus-{index}-{digest}"


def coerce_dispute_points(payload: Any) -> List[DisputePoint]:
    """
    Coerce `{points: [{title, description}]}` into DisputePoint records.

    Raises:
        ResponseValidationError: when there is no usable points list
    """
    if isinstance(payload, list):
        raw_points = payload
    else:
        raw_points = _expect_object(payload, "dispute points").get("points")

    if not isinstance(raw_points, list) or not raw_points:
        raise ResponseValidationError("Dispute point response has no points list")

    points: List[DisputePoint] = []
    for index, raw in enumerate(raw_points):
        if isinstance(raw, str):
            raw = {"title": raw[:20], "description": raw}
        if not isinstance(raw, dict):
            continue
        title = _as_text(_pick(raw, "title", "name"))
        description = _as_text(_pick(raw, "description", "question"))
        if not title and not description:
            continue
        point_id = raw.get("id")
        points.append(DisputePoint(
            id=str(point_id) if point_id not in (None, "") else synthetic_point_id(index, title or description),
            title=title or description[:20],
            description=description,
        ))

    if not points:
        raise ResponseValidationError("Dispute point response contained no usable points")
    return points


# =============================================================================
# Verdict / sentiment
# =============================================================================

def coerce_verdict(payload: Any) -> Verdict:
    """
    Coerce a parsed verdict payload into the Verdict schema.

    The split is normalized first, since it drives the task assignee fallback.
    """
    data = _expect_object(payload, "verdict")

    split = coerce_split(_pick(data, "responsibilitySplit", "responsibility_split"))
    tasks = coerce_tasks(_pick(data, "penaltyTasks", "penalty_tasks"), split)

    facts_raw = _pick(data, "facts", default=[])
    if not isinstance(facts_raw, list):
        facts_raw = [facts_raw]

    analyses = []
    for item in _pick(data, "disputeAnalyses", "dispute_analyses", default=[]) or []:
        if isinstance(item, dict):
            analyses.append(DisputeAnalysis(
                title=_as_text(item.get("title")),
                analysis=_as_text(_pick(item, "analysis", "content", "description")),
            ))

    final_judgment = _as_text(_pick(data, "finalJudgment", "final_judgment"))
    if not final_judgment and not facts_raw:
        raise ResponseValidationError("Verdict response has neither facts nor a judgment")

    return Verdict(
        summary=_as_text(data.get("summary")),
        facts=[_as_text(f) for f in facts_raw if _as_text(f)],
        responsibility_split=split,
        reasoning=_as_text(data.get("reasoning")),
        final_judgment=final_judgment,
        penalty_tasks=tasks,
        tone=_as_text(data.get("tone")),
        dispute_analyses=analyses,
    )


def coerce_sentiment(payload: Any) -> SentimentResult:
    """Coerce `{isToxic, score, reason}`"""
    data = _expect_object(payload, "sentiment")
    is_toxic = _pick(data, "isToxic", "is_toxic", default=False)
    if isinstance(is_toxic, str):
        is_toxic = is_toxic.strip().lower() in ("true", "yes", "1")
    score = coerce_number(data.get("score"))
    return SentimentResult(
        is_toxic=bool(is_toxic),
        score=min(score, 10.0) if score is not None else 0,
        reason=_as_text(data.get("reason")),
    )


def coerce_facts(payload: Any) -> List[str]:
    """Coerce `{facts: [...]}`"""
    data = _expect_object(payload, "facts")
    facts = data.get("facts") or []
    if not isinstance(facts, list):
        raise ResponseValidationError("facts is not a list")
    return [_as_text(f) for f in facts if _as_text(f)]
