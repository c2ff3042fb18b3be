from __future__ import annotations

from dataclasses import dataclass, field
import logging
import re

from regenflow.observability import log_event
from regenflow.pr_reconciler import PRReconciler


LOGGER = logging.getLogger("regenflow.suggestions")

_FILE_NAME_RE = re.compile(r"^(.*?(\.yaml|\.yml|\.json))")
_OUTPUT_FILE_RE = re.compile(r"Suggestions applied and written to (.+)")
_VALIDATION_ERR_RE = re.compile(r"(validation (hint|warn|error):)\s+\[line (\d+)\]\s+(.*)$")


@dataclass
class SuggestionComments:
    suggestions: list[str] = field(default_factory=list)
    explanations: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)
    line_numbers: list[int] = field(default_factory=list)

    def entry(self, index: int) -> tuple[str, str, str]:
        def at(values: list[str]) -> str:
            return values[index] if index < len(values) else ""

        return at(self.errors), at(self.suggestions), at(self.explanations)


def parse_suggest_output(output: str) -> tuple[SuggestionComments, str]:
    """Split suggestion CLI output into per-error comments and the rewritten file name."""
    info = SuggestionComments()
    line_number = 0
    suggestion = explanation = validation_error = file_name = ""
    in_suggestion = in_explanation = False

    for line in output.split("\n"):
        match = _VALIDATION_ERR_RE.search(line)
        if match:
            line_number = int(match.group(3))
            validation_error = match.group(4)
            continue

        if "Suggestion:" in line:
            in_suggestion = True
            if suggestion.strip():
                info.suggestions.append(suggestion)
            if validation_error.strip():
                info.errors.append(validation_error)
            info.line_numbers.append(line_number)
            suggestion = validation_error = ""
            line_number = 0
            continue

        if "Explanation:" in line:
            in_suggestion = False
            in_explanation = True
            if explanation.strip():
                info.explanations.append(explanation)
            explanation = ""
            continue

        output_match = _OUTPUT_FILE_RE.search(line)
        if output_match:
            written = output_match.group(1).replace("./", "", 1)
            name_match = _FILE_NAME_RE.search(written)
            if name_match:
                file_name = name_match.group(0)
            continue

        if not line.strip():
            in_suggestion = in_explanation = False
        if in_suggestion:
            suggestion += line
        if in_explanation:
            explanation += line

    if suggestion.strip():
        info.suggestions.append(suggestion)
    if explanation.strip():
        info.explanations.append(explanation)
    return info, file_name


def format_comment(error: str, suggestion: str, explanation: str, line_number: int, index: int) -> str:
    suggestion_part = f"**Suggestion {index}**: {suggestion}"
    if line_number:
        suggestion_part = f"*Applied around line {line_number}*\n{suggestion_part}"
    return "\n\n".join(
        [f"**Error {index}**: {error}", suggestion_part, f"**Explanation {index}**: {explanation}"]
    )


def format_body(info: SuggestionComments) -> str:
    parts: list[str] = []
    for index, line_number in enumerate(info.line_numbers):
        if line_number == 0:
            parts.append(format_comment(*info.entry(index), line_number, index + 1))
    return "\n\n".join(parts)


def write_suggestions(reconciler: PRReconciler, pr_number: int, output: str) -> None:
    """Anchor line-specific suggestions as review comments; the rest go into the PR body."""
    info, file_name = parse_suggest_output(output)
    for index, line_number in enumerate(info.line_numbers):
        if line_number == 0:
            continue
        comment = format_comment(*info.entry(index), 0, index + 1)
        try:
            reconciler.write_review_comment(pr_number, file_name, comment, line_number)
        except Exception as exc:  # noqa: BLE001
            log_event(
                LOGGER,
                "review_comment_failed",
                pr_number=pr_number,
                line=line_number,
                error_type=type(exc).__name__,
            )
            info.line_numbers[index] = 0

    body = format_body(info)
    if body:
        reconciler.append_pr_body(pr_number, body)
