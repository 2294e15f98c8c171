"""
Clarification and critique compression helpers for the Refiner prompt.
"""

from __future__ import annotations

from dataclasses import dataclass

from ..types import CritiqueResult, UserClarification


@dataclass
class ClarificationCompressor:
    max_verbatim: int = 5
    keep_recent: int = 3
    max_snippet_chars: int = 160
    max_summary_chars: int = 1200

    def summarize(self, clarifications: list[UserClarification]) -> str:
        if not clarifications:
            return ""
        if len(clarifications) <= self.max_verbatim:
            return "\n".join(f"- {item.response}" for item in clarifications)

        older = clarifications[: -self.keep_recent]
        recent = clarifications[-self.keep_recent:]
        snippets: list[str] = []
        for index, item in enumerate(older, start=1):
            first_line = item.response.strip().splitlines()[0] if item.response.strip() else "no answer"
            snippets.append(f"Answer {index}: {first_line[: self.max_snippet_chars]}")
        summary = "\n".join(snippets)[: self.max_summary_chars]
        latest = "\n".join(f"- {item.response}" for item in recent)
        return f"Earlier answers (summary):\n{summary}\n\nRecent answers:\n{latest}"


@dataclass
class CritiqueCompressor:
    max_issues: int = 8

    def summarize(self, critique: CritiqueResult | None) -> str:
        if critique is None:
            return ""
        ranked = sorted(
            (issue for issue in critique.issues if issue.severity in {"high", "medium"}),
            key=lambda issue: 0 if issue.severity == "high" else 1,
        )
        lines = [
            f"Confidence: {critique.confidence_score}/100 "
            f"({'passed' if critique.passed_validation else 'failed'} validation)"
        ]
        for issue in ranked[: self.max_issues]:
            line = f"- [{issue.severity}/{issue.type}] {issue.description}"
            if issue.suggestion:
                line += f" Suggestion: {issue.suggestion}"
            lines.append(line)
        return "\n".join(lines)
