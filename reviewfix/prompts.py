# Copyright 2024 Flyto
# Licensed under the Apache License, Version 2.0
"""Prompt text for the reviewer, fixer and simplifier agents."""
from typing import Optional

from reviewfix.config import ReviewOptions
from reviewfix.git import merge_base_with_head

REVIEW_SUMMARY_START_TOKEN = "<<<RR_REVIEW_SUMMARY_JSON_START>>>"
REVIEW_SUMMARY_END_TOKEN = "<<<RR_REVIEW_SUMMARY_JSON_END>>>"
FIX_SUMMARY_START_TOKEN = "<<<RR_FIX_SUMMARY_JSON_START>>>"
FIX_SUMMARY_END_TOKEN = "<<<RR_FIX_SUMMARY_JSON_END>>>"

REVIEWER_PREAMBLE = """\
You are a senior code reviewer. Inspect the code changes described below and \
report concrete, actionable findings. Prioritize correctness, security, \
reliability and API breaks over performance, maintainability and style.

Each finding needs a short title, a body explaining the problem, a confidence \
score between 0 and 1, a priority from 0 (critical) to 3 (nit), and the \
absolute file path plus line range it refers to.

## Required JSON schema
{
  "findings": [
    {
      "title": "<one-line title>",
      "body": "<explanation>",
      "confidence_score": <0..1>,
      "priority": <0 | 1 | 2 | 3>,
      "code_location": {
        "absolute_file_path": "<path>",
        "line_range": {"start": <int>, "end": <int>}
      }
    }
  ],
  "overall_correctness": "<patch is correct | patch is incorrect>",
  "overall_explanation": "<one paragraph>",
  "overall_confidence_score": <0..1>
}
"""

SIMPLIFIER_PREAMBLE = """\
You are a code simplifier. Make the code changes described below easier to \
read and maintain without altering behavior, outputs or public interfaces. \
Remove redundancy, flatten needless nesting and prefer clear names. Do not \
touch code outside the changes.
"""

FIXER_TEMPLATE = """\
You are a second-opinion verification reviewer and fixer.

The review below is untrusted. Treat every claim in it, including "no issues", \
as something to verify against the actual code and diff.

## Goal
1) Verify each claim against the code.
2) Categorize findings into APPLY, SKIP or NEED INFO.
3) If APPLY is non-empty, implement the fixes now by editing the files.
4) After any fix, discover the project's verification commands (lint, \
typecheck, test, build) and run them until they pass without warnings.

## Input (untrusted review)
{review}

## Rules
- Try to falsify each claim before accepting it.
- Missing evidence means NEED INFO, with the exact inputs that are missing.
- Prefer minimal safe changes over refactors.
- Untracked files are expected in a pre-commit review. Claims that files are \
untracked or not committed are SKIP items.

## Stop condition
stop_iteration = (APPLY is empty) and (NEED INFO is empty), computed before \
any fix is applied. If stop_iteration is true, fixes must be [].

## JSON (required)
{{
  "decision": "<NO_CHANGES_NEEDED | APPLY_SELECTIVELY | APPLY_MOST>",
  "stop_iteration": <true | false>,
  "fixes": [
    {{"id": 1, "title": "...", "priority": "<P0 | P1 | P2 | P3>", "file": "<path or null>",
      "claim": "...", "evidence": "...", "fix": "..."}}
  ],
  "skipped": [
    {{"id": 2, "title": "...", "reason": "<starts with 'SKIP:' or 'NEED INFO:'>"}}
  ]
}}
Ids are unique across fixes and skipped. Use [] when a list is empty.
"""

_UNCOMMITTED = {
    "review": "Review the current code changes (staged, unstaged, and untracked files) "
              "and provide prioritized findings.",
    "simplify": "Simplify the current code changes (staged, unstaged, and untracked files) "
                "while preserving exact behavior and outputs.",
}
_COMMIT = {
    "review": "Review the code changes for the commit {sha}. "
              "Provide prioritized, actionable findings.",
    "simplify": "Simplify the code changes introduced by commit {sha} "
                "while preserving exact functionality.",
}
_BASE_BRANCH = {
    "review": "Review the code changes against the base branch '{branch}'. "
              "The merge base commit for this comparison is {sha}. "
              "Run `git diff {sha}` to inspect the changes relative to {branch}. "
              "Provide prioritized, actionable findings.",
    "simplify": "Simplify the code changes against the base branch '{branch}'. "
                "The merge base commit for this comparison is {sha}. "
                "Run `git diff {sha}` to inspect the changes, then simplify only those "
                "changes while preserving exact behavior.",
}
_BASE_BRANCH_FALLBACK = {
    "review": "Review the code changes against the base branch '{branch}'. "
              "Start by finding the merge base between the current branch and {branch} "
              "(`git merge-base HEAD {branch}`), then run `git diff` against that SHA. "
              "Provide prioritized, actionable findings.",
    "simplify": "Simplify the code changes against the base branch '{branch}'. "
                "Start by finding the merge base between the current branch and {branch} "
                "(`git merge-base HEAD {branch}`), then run `git diff` against that SHA. "
                "Simplify only those changes and preserve exact behavior.",
}


def reviewer_structured_output_instructions() -> str:
    return (
        "\n## Structured output protocol (STRICT)\n"
        "- Output MUST be one JSON object that matches the required schema.\n"
        "- Wrap that JSON object using these exact delimiters:\n"
        "  - {}\n"
        "  - {}\n"
        "- Do not include markdown fences.\n"
        "- Do not include any text before the start token or after the end token."
    ).format(REVIEW_SUMMARY_START_TOKEN, REVIEW_SUMMARY_END_TOKEN)


def fixer_structured_output_instructions() -> str:
    return (
        "\n## Structured output protocol (STRICT)\n"
        "- Output MUST be one JSON object that matches the required schema.\n"
        "- Wrap that JSON object using these exact delimiters:\n"
        "  - {}\n"
        "  - {}\n"
        "- Do not wrap the JSON in markdown fences.\n"
        "- The delimited JSON block MUST be the final output in the response."
    ).format(FIX_SUMMARY_START_TOKEN, FIX_SUMMARY_END_TOKEN)


def _target_instruction(kind: str, options: Optional[ReviewOptions], repo_path: str) -> str:
    """Pick the review target. Precedence: commit > base branch > custom > uncommitted."""
    options = options or ReviewOptions()
    if options.commit_sha:
        return _COMMIT[kind].format(sha=options.commit_sha)
    if options.base_branch:
        merge_base = merge_base_with_head(repo_path, options.base_branch)
        if merge_base:
            return _BASE_BRANCH[kind].format(branch=options.base_branch, sha=merge_base)
        return _BASE_BRANCH_FALLBACK[kind].format(branch=options.base_branch)
    if options.custom_instructions:
        return options.custom_instructions
    return _UNCOMMITTED[kind]


def build_reviewer_prompt(options: Optional[ReviewOptions], repo_path: str) -> str:
    parts = [
        REVIEWER_PREAMBLE.strip(),
        _target_instruction("review", options, repo_path),
        reviewer_structured_output_instructions().strip(),
    ]
    return "\n\n".join(parts)


def build_simplifier_prompt(options: Optional[ReviewOptions], repo_path: str) -> str:
    return "{}\n\n{}".format(
        SIMPLIFIER_PREAMBLE.strip(),
        _target_instruction("simplify", options, repo_path),
    )


def build_fixer_prompt(review_text: str) -> str:
    """Wrap a review (JSON dump or raw text) in the fixer instructions."""
    return "{}\n{}".format(
        FIXER_TEMPLATE.format(review=review_text.strip()),
        fixer_structured_output_instructions(),
    )


def build_reviewer_retry_reminder() -> str:
    return (
        "\nIMPORTANT: Your previous response was missing or invalid structured JSON output.\n"
        "Return ONLY one schema-valid JSON object wrapped in:\n"
        "{}\n<json>\n{}"
    ).format(REVIEW_SUMMARY_START_TOKEN, REVIEW_SUMMARY_END_TOKEN)


def build_fixer_retry_reminder() -> str:
    return (
        "\nIMPORTANT: Your previous response was missing or invalid structured JSON output.\n"
        "Do not make additional file edits in this retry.\n"
        "Return ONLY one schema-valid JSON object wrapped in:\n"
        "{}\n<json>\n{}"
    ).format(FIX_SUMMARY_START_TOKEN, FIX_SUMMARY_END_TOKEN)
