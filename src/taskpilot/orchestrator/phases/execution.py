"""The iteration state machine driving the agent until it completes, blocks or runs out."""

from __future__ import annotations

import asyncio
import inspect

from taskpilot.orchestrator.errors import (
    FailureAction,
    GitError,
    IterationTimeoutError,
    ProviderError,
    TaskPilotError,
    failure_policy,
)
from taskpilot.orchestrator.git import GitCommandError
from taskpilot.orchestrator.models import (
    ErrorCategory,
    ExecutionResult,
    FileChange,
    PhaseEvent,
    RunStatus,
    ScopeAction,
    TerminationReason,
)
from taskpilot.orchestrator.phases.types import (
    ExecutionOutcome,
    IterationState,
    PreFlightResult,
    RunContext,
)
from taskpilot.orchestrator.prompts import build_continuation_prompt, build_iteration_prompt
from taskpilot.orchestrator.providers.base import ConversationLimits, ProviderOptions

BLOCKED_ERROR_MARKER = "BLOCKED"
COMMIT_GOAL_LENGTH = 50
CONVERSATION_WARN_RATIO = 0.8


class ExecutionPhase:
    """Run passes until completion, an explicit block, a fatal error or a spent budget.

    Every failure inside a pass is absorbed by the category policy; the loop
    always returns an outcome instead of raising.
    """

    def __init__(self, run: RunContext, preflight: PreFlightResult) -> None:
        self.run = run
        self.preflight = preflight
        self.settings = preflight.settings
        self.log = run.log

    async def execute(self) -> ExecutionOutcome:
        state = self.run.state
        max_failures = self.settings.execution.max_consecutive_failures
        loop = IterationState(blocked_status=self.preflight.blocked_status)

        while (
            state.iteration < self.run.max_iterations
            and loop.consecutive_failures < max_failures
            and state.status is RunStatus.RUNNING
        ):
            state.iteration += 1
            self.run.bind_iteration(state.iteration)
            self.log.info("=== Iteration %s ===", state.iteration)
            self._emit("starting")

            outcome = await self._run_pass(loop)
            if outcome is not None:
                return outcome

        if state.status is RunStatus.PAUSED:
            return ExecutionOutcome(TerminationReason.PAUSED, error="Paused between iterations")
        if state.iteration >= self.run.max_iterations:
            return ExecutionOutcome(
                TerminationReason.MAX_ITERATIONS,
                error=f"Max iterations ({self.run.max_iterations}) reached",
            )
        return ExecutionOutcome(
            TerminationReason.MAX_FAILURES,
            error=f"Max consecutive failures ({max_failures}) reached",
        )

    async def _run_pass(  # noqa: C901, PLR0911, PLR0912
        self,
        loop: IterationState,
    ) -> ExecutionOutcome | None:
        state = self.run.state
        use_continuation = (
            state.iteration > 1
            and self.settings.execution.session_continuation
            and loop.conversation_state is not None
        )
        prompt = self._prompt(loop, continuation=use_continuation)

        if self.run.options.dry_run:
            self.log.info("[DRY RUN] Would execute a %s character prompt", len(prompt))
            state.status = RunStatus.IDLE
            return ExecutionOutcome(TerminationReason.DRY_RUN)

        self._emit("executing")
        if use_continuation and state.context_tokens:
            self.log.info("Session continuation: ~%s static tokens saved", state.context_tokens)
        result = await self._invoke(prompt, loop, continuation=use_continuation)
        if use_continuation and not result.success and not result.iteration_complete:
            self.log.info("Session continuation failed, retrying with full prompt")
            loop.conversation_state = None
            result = await self._invoke(
                self._prompt(loop, continuation=False),
                loop,
                continuation=False,
            )

        loop.previous_output = result.output
        if result.conversation_state is not None:
            loop.conversation_state = result.conversation_state
        elif not use_continuation:
            loop.conversation_state = True
        self._track_usage(result)

        if (
            not result.success
            and not result.iteration_complete
            and not result.files_changed
            and result.error
        ):
            return await self._handle_provider_failure(result, loop)

        completion_signaled = result.iteration_complete
        changed = list(result.files_changed)

        if changed:
            self._emit("checking scope")
            decision = self.preflight.guard.validate(FileChange(path) for path in changed)
            if decision.action is ScopeAction.BLOCK:
                self.log.warning("Scope violation: %s", decision.reason)
                if (outcome := await self._revert(decision.files)) is not None:
                    return outcome
                changed = [path for path in changed if path not in decision.files]
                if completion_signaled:
                    self.log.info(
                        "Completion signaled alongside scope violations; "
                        "violations reverted, accepting completion",
                    )
                    commit_error = await self._commit(changed)
                    if commit_error is not None:
                        self._apply_policy(
                            loop,
                            str(commit_error),
                            commit_error.category,
                            commit_error.code,
                        )
                        return self._abort_outcome()
                    state.add_modified_files(changed)
                    state.status = RunStatus.COMPLETED
                    return ExecutionOutcome(TerminationReason.COMPLETED)
                self._count_failure(loop, decision.reason)
                self._emit("scope violation")
                return None

            if decision.action is ScopeAction.ASK_USER:
                if self.run.options.on_ask_user is None:
                    self.log.warning(
                        "%s with no approval handler; continuing: %s",
                        decision.reason,
                        ", ".join(decision.files),
                    )
                else:
                    approved = self.run.options.on_ask_user(decision.reason, list(decision.files))
                    if inspect.isawaitable(approved):
                        approved = await approved
                    if not approved:
                        self.log.info("Scope change denied: %s", ", ".join(decision.files))
                        if (outcome := await self._revert(decision.files)) is not None:
                            return outcome
                        self._count_failure(loop, f"User denied: {decision.reason}")
                        return None
                    self.preflight.guard.approve(decision.files)

        self._emit("validating")
        validation = await self.preflight.validator.pre_commit()
        state.validation_results.append(validation)
        if not validation.passed:
            report = self.preflight.validator.format_report(validation)
            self.log.warning("Validation failed:\n%s", report)
            if completion_signaled:
                self.log.info("Completion signaled but validation failed; retrying with feedback")
                loop.validation_feedback = report
            self._count_failure(loop, "Validation failed")
            self._emit("validation failed")
            return None
        loop.validation_feedback = None
        state.add_modified_files(changed)

        if self.settings.permissions.auto_commit and changed:
            self._emit("committing")
            commit_error = await self._commit(changed)
            if commit_error is not None:
                self._apply_policy(
                    loop,
                    str(commit_error),
                    commit_error.category,
                    commit_error.code,
                )
                return self._abort_outcome()

        loop.consecutive_failures = 0
        if self.run.options.on_iteration is not None:
            self.run.options.on_iteration(state.snapshot())

        if completion_signaled:
            self.log.info("Task complete: %s", result.completion_signal)
            state.status = RunStatus.COMPLETED
            return ExecutionOutcome(TerminationReason.COMPLETED)
        return None

    def _prompt(self, loop: IterationState, *, continuation: bool) -> str:
        if continuation:
            return build_continuation_prompt(
                iteration=self.run.state.iteration,
                previous_output=loop.previous_output,
                validation_feedback=loop.validation_feedback,
            )
        return build_iteration_prompt(
            self.preflight.context,
            iteration=self.run.state.iteration,
            validation_feedback=loop.validation_feedback,
            blocked_status=loop.blocked_status,
        )

    async def _invoke(
        self,
        prompt: str,
        loop: IterationState,
        *,
        continuation: bool,
    ) -> ExecutionResult:
        execution = self.settings.execution
        timeout = execution.timeout_per_iteration
        options = ProviderOptions(
            timeout_seconds=timeout,
            skip_permissions=self.preflight.skip_permissions,
            session_continuation=continuation,
            conversation_state=loop.conversation_state if continuation else None,
            on_output=self.run.options.on_output,
            model=self.settings.provider.model,
            conversation=ConversationLimits(
                max_messages=execution.conversation.max_messages,
                preserve_first_n=execution.conversation.preserve_first_n,
                preserve_last_n=execution.conversation.preserve_last_n,
            ),
        )
        call = self.preflight.provider.execute(prompt, options)
        try:
            if timeout > 0:
                return await asyncio.wait_for(call, timeout=timeout)
            return await call
        except TimeoutError:
            error: TaskPilotError = IterationTimeoutError.iteration(
                timeout,
                self.run.state.iteration,
            )
            self.log.warning("Iteration %s timed out after %ss", self.run.state.iteration, timeout)
        except TaskPilotError as raised:
            error = raised
        except Exception as raised:  # noqa: BLE001
            self.log.exception("Provider %s raised unexpectedly", self.preflight.provider.name)
            error = ProviderError.crash(self.preflight.provider.name, str(raised))
        return ExecutionResult(
            success=False,
            output="",
            error=str(error),
            error_category=error.category,
            error_code=error.code,
        )

    def _track_usage(self, result: ExecutionResult) -> None:
        state = self.run.state
        if result.token_usage is not None:
            state.add_token_usage(result.token_usage)
            self.log.info(
                "Iteration %s tokens: input=%s, output=%s",
                state.iteration,
                result.token_usage.input_tokens,
                result.token_usage.output_tokens,
            )

        metrics = result.conversation_metrics
        if metrics is None:
            return
        state.conversation_message_count = metrics.total_messages
        self.log.info(
            "Conversation: %s messages (~%s tokens)",
            metrics.preserved_messages,
            metrics.estimated_tokens,
        )
        if metrics.evicted_messages > 0:
            self.log.info("Trimmed conversation: %s messages removed", metrics.evicted_messages)
        max_messages = self.settings.execution.conversation.max_messages
        if max_messages > 0 and metrics.total_messages >= max_messages * CONVERSATION_WARN_RATIO:
            self.log.warning(
                "Conversation approaching limit (%s/%s messages)",
                metrics.total_messages,
                max_messages,
            )

    async def _handle_provider_failure(
        self,
        result: ExecutionResult,
        loop: IterationState,
    ) -> ExecutionOutcome | None:
        state = self.run.state
        error = result.error or ""
        if BLOCKED_ERROR_MARKER in error:
            self.log.info("Agent reported a blocker: %s", error)
            state.status = RunStatus.BLOCKED
            state.last_error = error
            return ExecutionOutcome(TerminationReason.BLOCKED, error=error)

        action = self._apply_policy(loop, error, result.error_category, result.error_code)
        if action is FailureAction.RETRY_UNCOUNTED:
            backoff = self.settings.execution.rate_limit_backoff_seconds
            self.log.info("Rate limited, waiting %ss before retry", backoff)
            await self.run.dependencies.sleep(backoff)
        if self.run.options.on_iteration is not None:
            self.run.options.on_iteration(state.snapshot())
        return self._abort_outcome()

    def _apply_policy(
        self,
        loop: IterationState,
        message: str,
        category: ErrorCategory | None,
        code: str | None,
    ) -> FailureAction:
        """Record the failure according to its category and return the chosen action."""

        state = self.run.state
        action = failure_policy(category, code)
        state.error_category = category
        state.error_code = code
        match action:
            case FailureAction.ABORT:
                self.log.error(
                    "Fatal error [%s/%s]: %s",
                    category.value if category else "-",
                    code or "-",
                    message,
                )
                state.status = RunStatus.FAILED
                state.last_error = message
            case FailureAction.RETRY_UNCOUNTED:
                pass
            case FailureAction.RETRY_COUNTED:
                self._count_failure(loop, message)
        return action

    def _abort_outcome(self) -> ExecutionOutcome | None:
        state = self.run.state
        if state.status is not RunStatus.FAILED:
            return None
        return ExecutionOutcome(
            TerminationReason.FATAL_ERROR,
            error=state.last_error,
            error_category=state.error_category,
            error_code=state.error_code,
        )

    def _count_failure(self, loop: IterationState, reason: str) -> None:
        loop.consecutive_failures += 1
        self.run.state.last_error = reason
        self.log.info(
            "Pass failed (%s/%s consecutive): %s",
            loop.consecutive_failures,
            self.settings.execution.max_consecutive_failures,
            reason,
        )

    async def _revert(self, files: tuple[str, ...]) -> ExecutionOutcome | None:
        self.log.info("Reverting changes to: %s", ", ".join(files))
        try:
            await self.preflight.vcs.revert_files(list(files))
        except (GitCommandError, OSError) as error:
            failure = GitError.revert_failed(list(files), str(error))
            self.log.error("Git revert failed; working tree may be inconsistent: %s", error)
            state = self.run.state
            state.status = RunStatus.FAILED
            state.last_error = str(failure)
            state.error_category = failure.category
            state.error_code = failure.code
            return ExecutionOutcome(
                TerminationReason.FATAL_ERROR,
                error=str(failure),
                error_category=failure.category,
                error_code=failure.code,
            )
        return None

    async def _commit(self, files: list[str]) -> GitError | None:
        if not files or not self.settings.permissions.auto_commit:
            return None
        goal = self.preflight.context.task.goal
        suffix = "..." if len(goal) > COMMIT_GOAL_LENGTH else ""
        message = f"{self.settings.git.commit_prefix} {goal[:COMMIT_GOAL_LENGTH]}{suffix}"
        try:
            await self.preflight.vcs.add(files)
            await self.preflight.vcs.commit(message)
        except (GitCommandError, OSError) as error:
            self.log.warning("Commit failed: %s", error)
            return GitError.commit_failed(str(error))
        self.run.state.add_modified_files(files)
        self.log.info("Committed: %s", message)
        return None

    def _emit(self, phase: str) -> None:
        if self.run.options.on_phase is None:
            return
        self.run.options.on_phase(
            PhaseEvent(
                phase=phase,
                iteration=self.run.state.iteration,
                total_iterations=self.run.max_iterations,
                files_modified=len(self.run.state.files_modified),
            ),
        )
