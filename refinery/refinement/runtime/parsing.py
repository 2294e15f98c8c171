"""
Parsers for persona output.

Model output is free-form text, so every parser is an ordered chain of
strategies. Each strategy returns a result or ``None``; the first result wins
and the chain always ends in a conservative default. Nothing here raises on
malformed input.
"""

from __future__ import annotations

import json
import logging
import re
from typing import Any, Callable, TypeVar

from ..types import (
    ISSUE_TYPES,
    QUESTION_CATEGORIES,
    SEVERITIES,
    Artifact,
    ClarifyingQuestion,
    CritiqueIssue,
    CritiqueResult,
    TechnicalPlan,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_PASS_THRESHOLD = 70

FENCED_JSON_RE = re.compile(r"```json\s*\n?(.*?)\n?```", re.DOTALL | re.IGNORECASE)
SCORE_PATTERNS = [
    re.compile(r"confidence(?:\s*score)?\s*(?:[:=]|of|is|at)?\s*(\d{1,3})\b", re.IGNORECASE),
    re.compile(r"\bscore\s*(?:[:=]|of|is)?\s*(\d{1,3})\b", re.IGNORECASE),
    re.compile(r"\b(\d{1,3})\s*(?:/\s*100|%)"),
]
NEGATED_RE = re.compile(
    r"\b(?:no|without|zero|not any)\s+(?:major|significant|critical|blocking)\s+(?:issues?|gaps?|problems?|concerns?)",
    re.IGNORECASE,
)
NEGATED_APPROVAL_RE = re.compile(
    r"\b(?:not|never|cannot|can't|can not|won't|wouldn't|shouldn't)\s+(?:yet\s+|be\s+|been\s+)*(?:approved?|ready)\b",
    re.IGNORECASE,
)
APPROVAL_CUES = (
    "approved",
    "approve",
    "ready for implementation",
    "looks good",
    "lgtm",
    "passes validation",
    "passed validation",
    "well-defined",
    "well defined",
)
REJECTION_CUES = (
    "major issue",
    "significant gap",
    "critical issue",
    "fails validation",
    "failed validation",
    "not ready",
    "needs revision",
    "needs significant",
    "rework",
    "insufficient",
)
BULLET_RE = re.compile(r"^\s*(?:[-*]|\d+[.)])\s+(.+)$")
ISSUE_TYPE_HINTS = (
    ("security", "security"),
    ("auth", "security"),
    ("perform", "performance"),
    ("scal", "performance"),
    ("contradict", "contradiction"),
    ("conflict", "contradiction"),
    ("architect", "architecture"),
    ("pattern", "architecture"),
    ("missing", "omission"),
    ("omit", "omission"),
)

QUESTIONS_TOOL_NAME = "ask_clarifying_questions"
BOLD_QUESTION_RE = re.compile(
    r"\*\*\s*(?:Q\s*\d*\s*[:\.]?\s*|Question\s+\d+\s*[:\.]?\s*|\d+\s*[:\.]?\s*)(.+?)\*\*",
    re.IGNORECASE,
)
OPTION_RE = re.compile(r"^([A-D])\)\s*(.+)", re.IGNORECASE)
NUMBERED_RE = re.compile(r"^\d+\.\s")

DRAFT_MARKERS = ("## Functional Requirements", "## Problem Statement")
TITLE_RE = re.compile(r"^#\s+(.+)$", re.MULTILINE)
TITLE_SUFFIX_RE = re.compile(r"\s*-\s*Product Requirement Document\s*$", re.IGNORECASE)
VERSION_RE = re.compile(r"\*\*Version\*\*\s*:\s*([\w.\-]+)", re.IGNORECASE)
GHERKIN_RE = re.compile(r"```gherkin\s*\n?(.*?)\n?```", re.DOTALL | re.IGNORECASE)
MERMAID_RE = re.compile(r"```mermaid\s*\n?(.*?)\n?```", re.DOTALL | re.IGNORECASE)
LIST_ITEM_RE = re.compile(r"^(?:[-*]|\d+[.)])\s+")


def first_success(strategies: list[tuple[str, Callable[[str], T | None]]], text: str) -> tuple[str, T] | None:
    for name, strategy in strategies:
        result = strategy(text)
        if result is not None:
            return name, result
    return None


def extract_first_json_object(raw: str) -> str | None:
    """Return the first balanced ``{...}`` span in ``raw``, honouring string escapes."""
    start = raw.find("{")
    while start >= 0:
        depth = 0
        in_string = False
        escaped = False
        for idx in range(start, len(raw)):
            ch = raw[idx]
            if in_string:
                if escaped:
                    escaped = False
                    continue
                if ch == "\\":
                    escaped = True
                    continue
                if ch == '"':
                    in_string = False
                continue
            if ch == '"':
                in_string = True
                continue
            if ch == "{":
                depth += 1
            elif ch == "}":
                depth -= 1
                if depth == 0:
                    candidate = raw[start: idx + 1]
                    try:
                        json.loads(candidate)
                        return candidate
                    except json.JSONDecodeError:
                        break
        start = raw.find("{", start + 1)
    return None


def _loads_dict(text: str) -> dict[str, Any] | None:
    try:
        data = json.loads(text)
    except (json.JSONDecodeError, TypeError):
        return None
    return data if isinstance(data, dict) else None


# ---------------------------------------------------------------------------
# Critique
# ---------------------------------------------------------------------------


def _coerce_score(raw: Any) -> int | None:
    if isinstance(raw, bool):
        return None
    if isinstance(raw, (int, float)):
        value = float(raw)
    elif isinstance(raw, str):
        try:
            value = float(raw.strip().rstrip("%"))
        except ValueError:
            return None
    else:
        return None
    return max(0, min(100, int(round(value))))


def clamp_score(value: int) -> int:
    return max(0, min(100, int(value)))


def normalize_critique(data: dict[str, Any], pass_threshold: int = DEFAULT_PASS_THRESHOLD) -> CritiqueResult | None:
    score = None
    for key in ("confidenceScore", "confidence_score", "confidence", "score"):
        if key in data:
            score = _coerce_score(data[key])
            break
    if score is None:
        return None

    issues: list[CritiqueIssue] = []
    raw_issues = data.get("issues")
    if isinstance(raw_issues, list):
        for raw in raw_issues:
            if not isinstance(raw, dict):
                continue
            description = str(raw.get("description", "") or "").strip()
            if not description:
                continue
            issue_type = str(raw.get("type", "") or "").strip().lower()
            severity = str(raw.get("severity", "") or "").strip().lower()
            suggestion = raw.get("suggestion")
            issues.append(
                CritiqueIssue(
                    type=issue_type if issue_type in ISSUE_TYPES else "ambiguity",
                    severity=severity if severity in SEVERITIES else "medium",
                    description=description,
                    suggestion=str(suggestion).strip() if suggestion else None,
                )
            )

    passed = data.get("passedValidation", data.get("passed_validation"))
    if not isinstance(passed, bool):
        passed = score >= pass_threshold
    return CritiqueResult(confidence_score=score, issues=issues, passed_validation=passed)


def _guess_issue_type(text: str) -> str:
    lower = text.lower()
    for hint, issue_type in ISSUE_TYPE_HINTS:
        if hint in lower:
            return issue_type
    return "ambiguity"


def _heuristic_critique(text: str, pass_threshold: int) -> CritiqueResult | None:
    score: int | None = None
    for pattern in SCORE_PATTERNS:
        match = pattern.search(text)
        if match:
            score = clamp_score(int(match.group(1)))
            break

    lowered = text.lower()
    stripped = NEGATED_RE.sub(" ", lowered)
    unapproved = NEGATED_APPROVAL_RE.sub(" ", lowered)
    rejected = any(cue in stripped for cue in REJECTION_CUES) or unapproved != lowered
    approved = any(cue in unapproved for cue in APPROVAL_CUES) or stripped != lowered

    if score is None and not (rejected or approved):
        return None
    if score is None:
        score = 50 if rejected else 80

    if rejected:
        passed = False
    elif approved:
        passed = True
    else:
        passed = score >= pass_threshold

    issues: list[CritiqueIssue] = []
    if not passed:
        for line in text.splitlines():
            match = BULLET_RE.match(line)
            if not match:
                continue
            description = match.group(1).strip()
            if len(description) < 10:
                continue
            issues.append(
                CritiqueIssue(type=_guess_issue_type(description), severity="medium", description=description)
            )
            if len(issues) >= 5:
                break
    return CritiqueResult(confidence_score=score, issues=issues, passed_validation=passed)


def fallback_critique() -> CritiqueResult:
    return CritiqueResult(
        confidence_score=75,
        passed_validation=True,
        issues=[
            CritiqueIssue(
                type="ambiguity",
                severity="low",
                description="Critique response was not in expected format",
            )
        ],
    )


def parse_critique(text: str, pass_threshold: int = DEFAULT_PASS_THRESHOLD) -> CritiqueResult:
    def fenced(raw: str) -> CritiqueResult | None:
        for block in FENCED_JSON_RE.findall(raw):
            data = _loads_dict(block)
            if data is not None:
                result = normalize_critique(data, pass_threshold)
                if result is not None:
                    return result
        return None

    def direct(raw: str) -> CritiqueResult | None:
        data = _loads_dict(raw.strip())
        return normalize_critique(data, pass_threshold) if data is not None else None

    def embedded(raw: str) -> CritiqueResult | None:
        candidate = extract_first_json_object(raw)
        if candidate is None:
            return None
        data = _loads_dict(candidate)
        return normalize_critique(data, pass_threshold) if data is not None else None

    strategies = [
        ("fenced", fenced),
        ("direct", direct),
        ("embedded", embedded),
        ("heuristic", lambda raw: _heuristic_critique(raw, pass_threshold)),
    ]
    outcome = first_success(strategies, text or "")
    if outcome is None:
        logger.warning("Critique response unparseable; using fallback critique")
        return fallback_critique()
    name, result = outcome
    if name != "fenced":
        logger.debug("Critique parsed with %s strategy", name)
    return result


# ---------------------------------------------------------------------------
# Analyst questions
# ---------------------------------------------------------------------------


def _question_from_payload(item: Any, index: int) -> ClarifyingQuestion | None:
    if isinstance(item, str):
        text = item.strip()
        return ClarifyingQuestion(id=f"q-{index}", question=text) if text else None
    if not isinstance(item, dict):
        return None
    text = str(item.get("question", "") or item.get("text", "") or "").strip()
    if not text:
        return None
    category = str(item.get("category", "requirement") or "requirement").lower()
    options = item.get("options") or []
    return ClarifyingQuestion(
        id=str(item.get("id") or f"q-{index}"),
        question=text,
        category=category if category in QUESTION_CATEGORIES else "requirement",
        options=[str(option) for option in options if str(option).strip()] if isinstance(options, list) else [],
        multi_select=bool(item.get("multiSelect", item.get("multi_select", False))),
    )


def _questions_from_list(items: Any) -> list[ClarifyingQuestion] | None:
    if not isinstance(items, list):
        return None
    questions: list[ClarifyingQuestion] = []
    for item in items:
        question = _question_from_payload(item, len(questions) + 1)
        if question is not None:
            questions.append(question)
    return questions or None


def _questions_from_calls(calls: list[dict[str, Any]]) -> list[ClarifyingQuestion] | None:
    collected: list[Any] = []
    for call in calls or []:
        if not isinstance(call, dict) or call.get("name") != QUESTIONS_TOOL_NAME:
            continue
        arguments = call.get("arguments")
        if isinstance(arguments, str):
            arguments = _loads_dict(arguments)
        if isinstance(arguments, dict) and isinstance(arguments.get("questions"), list):
            collected.extend(arguments["questions"])
    return _questions_from_list(collected)


def _questions_from_json(text: str) -> list[ClarifyingQuestion] | None:
    candidates = list(FENCED_JSON_RE.findall(text))
    embedded = extract_first_json_object(text)
    if embedded:
        candidates.append(embedded)
    for candidate in candidates:
        data = _loads_dict(candidate)
        if data is not None and "questions" in data:
            questions = _questions_from_list(data["questions"])
            if questions:
                return questions
    return None


def _questions_from_bold_blocks(text: str) -> list[ClarifyingQuestion] | None:
    """Parse ``**Q1: text**`` headers followed by ``A) option`` lines."""
    questions: list[ClarifyingQuestion] = []
    lines = text.splitlines()
    i = 0
    while i < len(lines):
        q_match = BOLD_QUESTION_RE.search(lines[i])
        if not q_match:
            i += 1
            continue
        q_text = q_match.group(1).strip().rstrip(":?").strip() + "?"
        options: list[str] = []
        i += 1
        while i < len(lines):
            stripped = lines[i].strip()
            opt_match = OPTION_RE.match(stripped)
            if opt_match:
                options.append(opt_match.group(2).strip())
                i += 1
            elif options:
                break
            else:
                i += 1
        if options:
            questions.append(
                ClarifyingQuestion(id=f"q-{len(questions) + 1}", question=q_text, options=options)
            )
    return questions or None


def _questions_from_lines(text: str) -> list[ClarifyingQuestion] | None:
    questions: list[ClarifyingQuestion] = []
    for line in text.splitlines():
        trimmed = line.strip()
        if NUMBERED_RE.match(trimmed) and "?" in trimmed:
            question = NUMBERED_RE.sub("", trimmed, count=1).strip()
        elif trimmed.endswith("?") and len(trimmed) > 10:
            question = trimmed
        else:
            continue
        question = question.strip("*").strip()
        questions.append(ClarifyingQuestion(id=f"q-{len(questions) + 1}", question=question))
    return questions or None


def parse_questions(text: str, structured_calls: list[dict[str, Any]] | None = None) -> list[ClarifyingQuestion]:
    strategies: list[tuple[str, Callable[[str], list[ClarifyingQuestion] | None]]] = [
        ("tool_call", lambda _raw: _questions_from_calls(structured_calls or [])),
        ("json", _questions_from_json),
        ("bold_blocks", _questions_from_bold_blocks),
        ("lines", _questions_from_lines),
    ]
    outcome = first_success(strategies, text or "")
    if outcome is None:
        return []
    name, questions = outcome
    logger.debug("Parsed %d analyst questions with %s strategy", len(questions), name)
    return questions


def looks_like_draft(text: str) -> bool:
    if any(marker in text for marker in DRAFT_MARKERS):
        return True
    return "# " in text and "Requirements" in text


# ---------------------------------------------------------------------------
# Artifact
# ---------------------------------------------------------------------------


def extract_section(text: str, heading: str) -> str:
    pattern = rf"^##\s+{re.escape(heading)}\b(.*?)(?=^##\s+|\Z)"
    match = re.search(pattern, text, flags=re.IGNORECASE | re.MULTILINE | re.DOTALL)
    if not match:
        return ""
    body = match.group(1)
    # Drop the remainder of the heading line, e.g. "(Gherkin)".
    _, _, body = body.partition("\n")
    return body.strip()


def extract_subsection(text: str, heading: str) -> str:
    pattern = rf"^###\s+{re.escape(heading)}\b[^\n]*\n(.*?)(?=^#{{2,3}}\s+|\Z)"
    match = re.search(pattern, text, flags=re.IGNORECASE | re.MULTILINE | re.DOTALL)
    return match.group(1).strip() if match else ""


def list_items(body: str) -> list[str]:
    items: list[str] = []
    in_fence = False
    for line in body.splitlines():
        trimmed = line.strip()
        if trimmed.startswith("```"):
            in_fence = not in_fence
            continue
        if in_fence:
            continue
        if LIST_ITEM_RE.match(trimmed):
            item = LIST_ITEM_RE.sub("", trimmed, count=1).strip()
            if item:
                items.append(item)
    return items


def parse_artifact(text: str) -> Artifact:
    text = text or ""
    title_match = TITLE_RE.search(text)
    title = TITLE_SUFFIX_RE.sub("", title_match.group(1)).strip() if title_match else ""
    version_match = VERSION_RE.search(text)

    plan_body = extract_section(text, "Technical Implementation Plan")
    plan = TechnicalPlan(
        files_to_create=list_items(extract_subsection(plan_body, "Files to Create")),
        files_to_modify=list_items(extract_subsection(plan_body, "Files to Modify")),
        api_changes=list_items(extract_subsection(plan_body, "API Changes")),
    )

    acceptance = [block.strip() for block in GHERKIN_RE.findall(text) if block.strip()]
    if not acceptance:
        acceptance = list_items(extract_section(text, "Acceptance Criteria"))
    diagram_match = MERMAID_RE.search(text)

    return Artifact(
        version=version_match.group(1) if version_match else "1.0",
        title=title or "Untitled",
        problem_statement=extract_section(text, "Problem Statement"),
        functional_requirements=list_items(extract_section(text, "Functional Requirements")),
        non_functional_requirements=list_items(extract_section(text, "Non-Functional Requirements")),
        technical_plan=plan,
        acceptance_criteria=acceptance,
        diagram=diagram_match.group(1).strip() if diagram_match else None,
        raw_markdown=text,
    )
