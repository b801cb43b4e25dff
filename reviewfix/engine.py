# Copyright 2024 Flyto
# Licensed under the Apache License, Version 2.0
"""Iteration engine: drives the reviewer -> fixer loop.

Flow per iteration:
  1. Check for cancellation
  2. Reviewer (with retry), parse its summary (one reminder retry, then raw fallback)
  3. Check for cancellation
  4. Checkpoint the working tree
  5. Fixer (with retry), parse its summary (one reminder retry)
  6. Roll back on fixer failure, otherwise discard the checkpoint
  7. Stop on ``stop_iteration`` unless every iteration is forced
"""
import asyncio
import logging
import random
import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple

from reviewfix import agents, checkpoint, git, lockfile, prompts, session_log, structured_output
from reviewfix.audit import CycleAuditEntry
from reviewfix.checkpoint import GitCheckpoint
from reviewfix.config import CycleConfig, RetryPolicy, ReviewOptions
from reviewfix.errors import CheckpointError
from reviewfix.models import (
    AgentInvocationResult,
    FixSummary,
    IterationEntry,
    IterationError,
    ReviewSummary,
    RollbackOutcome,
    SessionEndEntry,
    SystemEntry,
)

logger = logging.getLogger(__name__)

EventCallback = Optional[Callable[[Dict[str, Any]], None]]


class CycleState(str, Enum):
    IDLE = "Idle"
    REVIEWING = "Reviewing"
    PARSING_REVIEW = "ParsingReview"
    FIXING = "Fixing"
    PARSING_FIX = "ParsingFix"
    DECIDING = "Deciding"
    TERMINATED = "Terminated"


class CancellationToken:
    """Cooperative cancellation flag, observed between phases."""

    def __init__(self) -> None:
        self._cancelled = False

    def cancel(self) -> None:
        self._cancelled = True

    @property
    def cancelled(self) -> bool:
        return self._cancelled


@dataclass
class CycleResult:
    success: bool
    final_status: str
    iterations: int
    reason: str
    session_path: str = ""


@dataclass
class RunOptions:
    project_path: str
    session_id: Optional[str] = None
    force_max_iterations: bool = False
    review_options: Optional[ReviewOptions] = None
    logs_dir: Optional[str] = None


@dataclass
class CycleDependencies:
    """Every external effect the engine performs, injectable for tests."""
    run_agent: Callable[..., Awaitable[AgentInvocationResult]]
    extract_result: Callable[[str, str], Optional[str]]
    has_reliable_structured_output: Callable[[str, str], bool]
    build_reviewer_prompt: Callable[[Optional[ReviewOptions], str], str]
    build_fixer_prompt: Callable[[str], str]
    build_simplifier_prompt: Callable[[Optional[ReviewOptions], str], str]
    build_reviewer_retry_reminder: Callable[[], str]
    build_fixer_retry_reminder: Callable[[], str]
    parse_review_summary: Callable[..., Any]
    parse_fix_summary: Callable[..., Any]
    create_checkpoint: Callable[[str, str], GitCheckpoint]
    discard_checkpoint: Callable[[str, GitCheckpoint], None]
    rollback_to_checkpoint: Callable[[str, GitCheckpoint], None]
    create_log_session: Callable[[Optional[str], str, Optional[str]], str]
    append_log: Callable[[str, Any], Awaitable[None]]
    update_lockfile: Callable[..., bool]
    get_git_branch: Callable[[str], Optional[str]]
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep
    rand: Callable[[], float] = random.random


def default_dependencies() -> CycleDependencies:
    return CycleDependencies(
        run_agent=agents.run_agent,
        extract_result=agents.extract_agent_result,
        has_reliable_structured_output=agents.has_reliable_structured_output,
        build_reviewer_prompt=prompts.build_reviewer_prompt,
        build_fixer_prompt=prompts.build_fixer_prompt,
        build_simplifier_prompt=prompts.build_simplifier_prompt,
        build_reviewer_retry_reminder=prompts.build_reviewer_retry_reminder,
        build_fixer_retry_reminder=prompts.build_fixer_retry_reminder,
        parse_review_summary=structured_output.parse_review_summary,
        parse_fix_summary=structured_output.parse_fix_summary,
        create_checkpoint=checkpoint.create_checkpoint,
        discard_checkpoint=checkpoint.discard_checkpoint,
        rollback_to_checkpoint=checkpoint.rollback_to_checkpoint,
        create_log_session=session_log.create_log_session,
        append_log=session_log.append_log,
        update_lockfile=lockfile.update_lockfile,
        get_git_branch=git.get_git_branch,
    )


# ── Retry ─────────────────────────────────────────────────────


def calculate_retry_delay(
    attempt: int,
    policy: RetryPolicy,
    rand: Callable[[], float] = random.random,
) -> float:
    """Delay in ms before retry *attempt* (0-based), exponential with jitter."""
    exponential = policy.base_delay_ms * (2 ** attempt)
    jitter = rand() * (exponential / 2)
    return min(float(policy.max_delay_ms), exponential + jitter)


async def run_with_retry(
    invoke: Callable[[], Awaitable[AgentInvocationResult]],
    policy: RetryPolicy,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    role: str = "agent",
    rand: Callable[[], float] = random.random,
) -> Tuple[AgentInvocationResult, int]:
    """Call *invoke* until it succeeds or retries run out.

    Returns the last result and the number of attempts made. An exception
    from *invoke* counts as a failed attempt with exit code 1.
    """
    attempts = 0

    async def attempt() -> AgentInvocationResult:
        nonlocal attempts
        attempts += 1
        try:
            return await invoke()
        except Exception as e:
            logger.warning("%s invocation raised: %s", role, e)
            return AgentInvocationResult(success=False, exit_code=1, raw_output="[Error: {}]".format(e))

    result = await attempt()
    for retry in range(policy.max_retries):
        if result.success:
            break
        logger.warning("%s failed (exit code %d)", role, result.exit_code)
        delay_ms = calculate_retry_delay(retry, policy, rand)
        logger.info("Retry %d/%d for %s in %.1fs", retry + 1, policy.max_retries, role, delay_ms / 1000)
        await sleep(delay_ms / 1000.0)
        result = await attempt()
    return result, attempts


def format_agent_failure_warning(role: str, exit_code: int, retries: int) -> str:
    """Bordered terminal warning for an agent that exhausted its retries."""
    border = "═" * 60
    lines = [
        "╔{}╗".format(border),
        "║  {} AGENT FAILED - EXIT CODE {}".format(role.upper(), exit_code),
        "║",
        "║  Retries exhausted: {}/{}".format(retries, retries),
        "║",
        "║  WARNING: Code may be in a BROKEN state!",
        "║  The {} may have been interrupted mid-execution.".format(role),
        "║",
        "║  Please verify your code still compiles and runs correctly.",
        "║  Check: git diff, run tests, verify build",
        "╚{}╝".format(border),
    ]
    return "\n".join(lines)


# ── Engine ────────────────────────────────────────────────────


class IterationEngine:
    """Runs one review/fix session against a project."""

    def __init__(
        self,
        config: CycleConfig,
        options: RunOptions,
        deps: Optional[CycleDependencies] = None,
        token: Optional[CancellationToken] = None,
        on_event: EventCallback = None,
    ):
        self._config = config
        self._options = options
        self._deps = deps or default_dependencies()
        self._token = token or CancellationToken()
        self._on_event = on_event
        self._logs_dir = options.logs_dir or config.logs_dir
        self._session_id = options.session_id or uuid.uuid4().hex[:12]
        self.state = CycleState.IDLE
        self.session_path = ""
        self._iterations = 0
        self._last_review: Optional[ReviewSummary] = None
        self._last_review_text: Optional[str] = None

    @property
    def session_id(self) -> str:
        return self._session_id

    async def run(self) -> CycleResult:
        """Run the whole cycle. Always ends the log with a ``SessionEndEntry``."""
        deps = self._deps
        project = self._options.project_path
        branch = deps.get_git_branch(project)
        self.session_path = deps.create_log_session(self._logs_dir, project, branch)
        started = time.monotonic()

        simplifier = self._config.settings_for("simplifier") if self._config.run_simplifier else None
        await deps.append_log(self.session_path, SystemEntry(
            session_id=self._session_id,
            project_path=project,
            git_branch=branch,
            reviewer=self._config.reviewer.to_record(),
            fixer=self._config.fixer.to_record(),
            simplifier=simplifier.to_record() if simplifier else None,
            max_iterations=self._config.max_iterations,
            review_options=self._options.review_options.to_record() if self._options.review_options else None,
        ))
        logger.info("Review cycle %s started for %s (log: %s)", self._session_id, project, self.session_path)

        end_status, end_reason, error = "failed", "Unexpected error", None
        result: Optional[CycleResult] = None
        try:
            result = await self._run_cycle()
            end_status, end_reason = result.final_status, result.reason
            return result
        except asyncio.CancelledError:
            end_status, end_reason = "interrupted", "Review cycle cancelled"
            raise
        except Exception as e:
            end_reason = error = "Unexpected error: {}".format(e)
            logger.exception("Review cycle crashed")
            raise
        finally:
            self.state = CycleState.TERMINATED
            iterations = result.iterations if result else self._iterations
            try:
                await deps.append_log(self.session_path, SessionEndEntry(
                    status=end_status, reason=end_reason, iterations=iterations,
                ))
            except Exception as e:
                logger.error("Failed to write session end entry: %s", e)
            self._update_lock({"status": "completed" if end_status == "completed" else "failed"})
            self._emit("cycle_end", {"status": end_status, "reason": end_reason, "iterations": iterations})
            CycleAuditEntry(
                session_id=self._session_id,
                project_path=project,
                reviewer=self._config.reviewer.agent,
                fixer=self._config.fixer.agent,
                status=end_status,
                success=bool(result and result.success),
                iterations=iterations,
                max_iterations=self._config.max_iterations,
                reason=end_reason,
                duration_ms=int((time.monotonic() - started) * 1000),
                log_path=self.session_path,
                error=error,
            ).emit()

    # ── Cycle ──

    async def _run_cycle(self) -> CycleResult:
        config = self._config
        if config.run_simplifier:
            failure = await self._run_simplifier()
            if failure is not None:
                return failure

        last_stop = False
        for iteration in range(1, config.max_iterations + 1):
            self.state = CycleState.IDLE
            iteration_start = time.monotonic()

            if self._token.cancelled:
                reason = "Review cycle interrupted before iteration start"
                await self._log_iteration(
                    iteration, iteration_start, review=self._last_review, review_text=self._last_review_text,
                    error=IterationError(phase="reviewer", message=reason),
                )
                return self._result(False, "interrupted", iteration - 1, reason)

            self._iterations = iteration
            logger.info("Iteration %d/%d", iteration, config.max_iterations)
            self._emit("iteration", {"iteration": iteration, "max_iterations": config.max_iterations})

            # Reviewer
            self.state = CycleState.REVIEWING
            self._update_lock({"status": "running", "current_agent": "reviewer", "iteration": iteration})
            reviewer_prompt = self._deps.build_reviewer_prompt(
                self._options.review_options, self._options.project_path,
            )
            review_result, _ = await self._invoke("reviewer", reviewer_prompt, iteration)
            if not review_result.success:
                return await self._agent_failed("reviewer", review_result, iteration, iteration_start)

            self.state = CycleState.PARSING_REVIEW
            review, review_text = await self._parse_review(review_result, reviewer_prompt)
            self._last_review, self._last_review_text = review, review_text

            if self._token.cancelled:
                reason = "Review cycle interrupted before fixer"
                await self._log_iteration(
                    iteration, iteration_start, review=review, review_text=review_text,
                    error=IterationError(phase="fixer", message=reason),
                )
                return self._result(False, "interrupted", iteration, reason)

            # Checkpoint
            try:
                cp = self._deps.create_checkpoint(
                    self._options.project_path, "reviewfix {} iteration {}".format(self._session_id, iteration),
                )
            except CheckpointError as e:
                reason = "Failed to create pre-fixer checkpoint: {}".format(e)
                logger.error(reason)
                await self._log_iteration(
                    iteration, iteration_start, review=review, review_text=review_text,
                    error=IterationError(phase="checkpoint", message=reason),
                )
                return self._result(False, "failed", iteration, reason)

            # Fixer
            self.state = CycleState.FIXING
            self._update_lock({"status": "running", "current_agent": "fixer", "iteration": iteration})
            payload = review.model_dump_json(indent=2) if review is not None else (review_text or "")
            fixer_prompt = self._deps.build_fixer_prompt(payload)
            fix_result, _ = await self._invoke("fixer", fixer_prompt, iteration)
            if not fix_result.success:
                rollback = self._rollback(cp)
                retries = config.retry.max_retries
                logger.error("%s", format_agent_failure_warning("fixer", fix_result.exit_code, retries))
                logger.error("The working tree may be inconsistent after the failed fixer run.")
                reason = "Fixer failed with exit code {} after {} retries. Code may be in a broken state! {}".format(
                    fix_result.exit_code, retries, _describe_rollback(rollback, cp),
                )
                await self._log_iteration(
                    iteration, iteration_start, review=review, review_text=review_text,
                    error=IterationError(phase="fixer", message=reason, exit_code=fix_result.exit_code),
                    rollback=rollback,
                )
                return self._result(False, "failed", iteration, reason)

            self.state = CycleState.PARSING_FIX
            fixes = await self._parse_fix(fix_result, fixer_prompt)
            if fixes is None:
                rollback = self._rollback(cp)
                if rollback.success:
                    reason = ("Fixer output incomplete: no valid fix summary after retry. "
                              "Changes were rolled back to the pre-fixer checkpoint.")
                else:
                    reason = ("Fixer output incomplete: no valid fix summary after retry. "
                              + _describe_rollback(rollback, cp))
                logger.error(reason)
                await self._log_iteration(
                    iteration, iteration_start, review=review, review_text=review_text,
                    error=IterationError(phase="fixer", message=reason),
                    rollback=rollback,
                )
                return self._result(False, "failed", iteration, reason)

            # Decide
            self.state = CycleState.DECIDING
            self._discard(cp)
            await self._log_iteration(
                iteration, iteration_start, review=review, review_text=review_text, fixes=fixes,
            )
            last_stop = fixes.stop_iteration
            logger.info(
                "Iteration %d: %d fixed, %d skipped, stop_iteration=%s",
                iteration, len(fixes.fixes), len(fixes.skipped), fixes.stop_iteration,
            )
            if fixes.stop_iteration and not self._options.force_max_iterations:
                return self._result(True, "completed", iteration, "No issues found")

        if last_stop:
            return self._result(True, "completed", config.max_iterations, "No issues found")
        return self._result(
            False, "completed", config.max_iterations,
            "Max iterations ({}) reached - some issues may remain".format(config.max_iterations),
        )

    async def _run_simplifier(self) -> Optional[CycleResult]:
        start = time.monotonic()
        self._update_lock({"status": "running", "current_agent": "simplifier", "iteration": 0})
        prompt = self._deps.build_simplifier_prompt(self._options.review_options, self._options.project_path)
        result, _ = await self._invoke("simplifier", prompt, 0)
        if result.success:
            return None
        retries = self._config.retry.max_retries
        logger.error("%s", format_agent_failure_warning("simplifier", result.exit_code, retries))
        reason = "Code simplifier failed with exit code {} after {} retries".format(result.exit_code, retries)
        await self._log_iteration(0, start, error=IterationError(
            phase="simplifier", message=reason, exit_code=result.exit_code,
        ))
        return self._result(False, "failed", 0, reason)

    async def _agent_failed(
        self,
        role: str,
        result: AgentInvocationResult,
        iteration: int,
        iteration_start: float,
    ) -> CycleResult:
        retries = self._config.retry.max_retries
        logger.error("%s", format_agent_failure_warning(role, result.exit_code, retries))
        reason = "{} failed with exit code {} after {} retries".format(
            role.capitalize(), result.exit_code, retries,
        )
        await self._log_iteration(iteration, iteration_start, error=IterationError(
            phase=role, message=reason, exit_code=result.exit_code,
        ))
        return self._result(False, "failed", iteration, reason)

    # ── Agents ──

    async def _call_agent(self, role: str, prompt: str) -> AgentInvocationResult:
        return await self._deps.run_agent(
            role=role,
            config=self._config,
            prompt=prompt,
            review_options=self._options.review_options,
            cwd=self._options.project_path,
        )

    async def _invoke(self, role: str, prompt: str, iteration: int) -> Tuple[AgentInvocationResult, int]:
        self._emit("phase_start", {"phase": role, "iteration": iteration})
        result, attempts = await run_with_retry(
            lambda: self._call_agent(role, prompt),
            self._config.retry,
            sleep=self._deps.sleep,
            role=role,
            rand=self._deps.rand,
        )
        self._emit("phase_end", {
            "phase": role,
            "iteration": iteration,
            "success": result.success,
            "exit_code": result.exit_code,
            "attempts": attempts,
            "duration_ms": result.duration_ms,
        })
        return result, attempts

    async def _call_once(self, role: str, prompt: str) -> Optional[AgentInvocationResult]:
        """Single reminder re-run. Returns None if it raised or failed."""
        try:
            result = await self._call_agent(role, prompt)
        except Exception as e:
            logger.warning("%s reminder run raised: %s", role, e)
            return None
        return result if result.success else None

    def _extract(self, role: str, output: str) -> Optional[str]:
        return self._deps.extract_result(self._config.settings_for(role).agent, output)

    async def _parse_review(
        self,
        result: AgentInvocationResult,
        prompt: str,
    ) -> Tuple[Optional[ReviewSummary], Optional[str]]:
        """Parsed review, or (None, raw text) when no valid summary was found."""
        extracted = self._extract("reviewer", result.raw_output)
        parsed = self._deps.parse_review_summary(extracted, result.raw_output)
        if parsed.ok:
            return parsed.value, None
        logger.warning("Review summary not parsed: %s", parsed.failure_reason)

        agent = self._config.settings_for("reviewer").agent
        if not self._deps.has_reliable_structured_output(agent, "reviewer"):
            retry = await self._call_once("reviewer", prompt + "\n" + self._deps.build_reviewer_retry_reminder())
            if retry is not None:
                retry_extracted = self._extract("reviewer", retry.raw_output)
                parsed = self._deps.parse_review_summary(retry_extracted, retry.raw_output)
                if parsed.ok:
                    return parsed.value, None
                logger.warning("Review summary still invalid after reminder: %s", parsed.failure_reason)

        logger.info("Falling back to raw review text")
        return None, extracted or result.raw_output

    async def _parse_fix(self, result: AgentInvocationResult, prompt: str) -> Optional[FixSummary]:
        extracted = self._extract("fixer", result.raw_output)
        parsed = self._deps.parse_fix_summary(extracted, result.raw_output)
        if parsed.ok:
            return parsed.value
        logger.warning("Fix summary not parsed: %s", parsed.failure_reason)

        retry = await self._call_once("fixer", prompt + "\n" + self._deps.build_fixer_retry_reminder())
        if retry is None:
            return None
        parsed = self._deps.parse_fix_summary(self._extract("fixer", retry.raw_output), retry.raw_output)
        if not parsed.ok:
            logger.error("Fix summary still invalid after reminder: %s", parsed.failure_reason)
            return None
        return parsed.value

    # ── Checkpoints ──

    def _rollback(self, cp: GitCheckpoint) -> RollbackOutcome:
        self._emit("rollback", {"checkpoint": cp.id, "kind": cp.kind})
        try:
            self._deps.rollback_to_checkpoint(self._options.project_path, cp)
        except CheckpointError as e:
            logger.error("Rollback failed: %s. Restore the working tree manually %s.", e, _restore_hint(cp))
            return RollbackOutcome(success=False, error=str(e))
        logger.info("Rolled back to pre-fixer checkpoint %s", cp.id)
        return RollbackOutcome(success=True)

    def _discard(self, cp: GitCheckpoint) -> None:
        try:
            self._deps.discard_checkpoint(self._options.project_path, cp)
        except CheckpointError as e:
            logger.warning("Could not discard checkpoint %s: %s", cp.id, e)

    # ── Side effects ──

    async def _log_iteration(self, iteration: int, started: float, **fields: Any) -> None:
        entry = IterationEntry(
            iteration=iteration,
            duration_ms=int((time.monotonic() - started) * 1000),
            **fields,
        )
        await self._deps.append_log(self.session_path, entry)

    def _update_lock(self, updates: Dict[str, Any]) -> None:
        try:
            self._deps.update_lockfile(
                self._logs_dir, self._options.project_path, updates,
                expected_session_id=self._session_id,
            )
        except OSError as e:
            logger.warning("Lock update failed: %s", e)

    def _result(self, success: bool, status: str, iterations: int, reason: str) -> CycleResult:
        return CycleResult(
            success=success,
            final_status=status,
            iterations=iterations,
            reason=reason,
            session_path=self.session_path,
        )

    def _emit(self, event_type: str, data: Dict[str, Any]) -> None:
        """Fire a progress event if a callback is set."""
        if self._on_event is None:
            return
        try:
            self._on_event({"type": event_type, **data})
        except Exception as e:
            logger.debug("Event callback failed for %s: %s", event_type, e)


def _restore_hint(cp: GitCheckpoint) -> str:
    if cp.kind == "snapshot":
        return "from the snapshot archive in {}".format(cp.snapshot_dir)
    return "from git history (see `git reflog` and refs/reviewfix/checkpoints/)"


def _describe_rollback(outcome: RollbackOutcome, cp: GitCheckpoint) -> str:
    if outcome.success:
        return "Changes were rolled back to the pre-fixer checkpoint."
    return "Rollback failed: {}. Restore the working tree manually {}.".format(outcome.error, _restore_hint(cp))
