# Copyright 2024 Flyto
# Licensed under the Apache License, Version 2.0
"""Tests for reviewer, fixer and simplifier prompt construction."""
from reviewfix import prompts
from reviewfix.config import ReviewOptions
from reviewfix.prompts import (
    FIX_SUMMARY_END_TOKEN,
    FIX_SUMMARY_START_TOKEN,
    REVIEW_SUMMARY_END_TOKEN,
    REVIEW_SUMMARY_START_TOKEN,
    build_fixer_prompt,
    build_fixer_retry_reminder,
    build_reviewer_prompt,
    build_reviewer_retry_reminder,
    build_simplifier_prompt,
)


class TestReviewerPrompt:

    def test_uncommitted_default(self):
        prompt = build_reviewer_prompt(None, "/repo")
        assert "staged, unstaged, and untracked" in prompt
        assert REVIEW_SUMMARY_START_TOKEN in prompt
        assert REVIEW_SUMMARY_END_TOKEN in prompt

    def test_commit_wins(self, monkeypatch):
        monkeypatch.setattr(prompts, "merge_base_with_head", lambda path, branch: "abc123")
        options = ReviewOptions(base_branch="main", commit_sha="deadbeef", custom_instructions="x")
        prompt = build_reviewer_prompt(options, "/repo")
        assert "commit deadbeef" in prompt
        assert "'main'" not in prompt

    def test_base_branch_with_merge_base(self, monkeypatch):
        monkeypatch.setattr(prompts, "merge_base_with_head", lambda path, branch: "abc123")
        prompt = build_reviewer_prompt(ReviewOptions(base_branch="main"), "/repo")
        assert "git diff abc123" in prompt
        assert "'main'" in prompt

    def test_base_branch_without_merge_base(self, monkeypatch):
        monkeypatch.setattr(prompts, "merge_base_with_head", lambda path, branch: None)
        prompt = build_reviewer_prompt(ReviewOptions(base_branch="main"), "/repo")
        assert "git merge-base HEAD main" in prompt

    def test_custom_instructions(self):
        prompt = build_reviewer_prompt(ReviewOptions(custom_instructions="Focus on SQL injection"), "/repo")
        assert "Focus on SQL injection" in prompt
        assert "untracked" not in prompt.split("Focus on SQL injection")[1]


class TestOtherPrompts:

    def test_simplifier(self):
        prompt = build_simplifier_prompt(ReviewOptions(commit_sha="cafe"), "/repo")
        assert "commit cafe" in prompt
        assert REVIEW_SUMMARY_START_TOKEN not in prompt

    def test_fixer_embeds_review(self):
        review = '{"findings": [], "note": "{braces}"}'
        prompt = build_fixer_prompt(review)
        assert review in prompt
        assert prompt.rstrip().endswith("final output in the response.")
        assert FIX_SUMMARY_START_TOKEN in prompt
        assert FIX_SUMMARY_END_TOKEN in prompt

    def test_reminders(self):
        assert REVIEW_SUMMARY_START_TOKEN in build_reviewer_retry_reminder()
        fixer = build_fixer_retry_reminder()
        assert FIX_SUMMARY_END_TOKEN in fixer
        assert "Do not make additional file edits" in fixer
