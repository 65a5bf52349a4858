"""End-to-end runs against the file-based tracker.

Tests the full flow:
1. selection (manual tasks, then next_task) and the skip bound
2. solve once, review until closed/blocked or the loop limit
3. outcome hooks and the TRUDGER_COMPLETED / TRUDGER_NEEDS_HUMAN lists
4. fatal paths, reset_task and interrupts
"""

import pytest

from trudger.run_loop import InterruptFlag


class TestOutcomes:
    """Tasks that run to a terminal outcome."""

    def test_closed_after_first_review(self, tracker, run_trudger, log_lines) -> None:
        tracker.add("tr-1", reviews=["closed"])

        assert run_trudger(tracker.config()) == 0

        assert tracker.lines("agent.log") == ["solve tr-1", "review tr-1"]
        assert tracker.lines("updates") == ["tr-1 in_progress"]
        assert tracker.lines("completed") == ["tr-1"]
        assert tracker.lines("needs_human") == []
        lines = log_lines()
        assert "review_state task=tr-1 status=closed" in lines
        assert "task_lists completed=tr-1 needs_human=" in lines
        assert "quit reason=no_next_task" in lines
        assert lines[-1] == "run_end exit_code=0"

    def test_retry_reruns_review_not_solve(self, tracker, run_trudger, log_lines) -> None:
        tracker.add("tr-1", reviews=["in_progress", "closed"])

        assert run_trudger(tracker.config()) == 0

        assert tracker.lines("agent.log") == ["solve tr-1", "review tr-1", "review tr-1"]
        assert tracker.lines("completed") == ["tr-1"]
        assert "review_loop_retry task=tr-1 loop=1 limit=2" in log_lines()

    def test_blocked_after_review(self, tracker, run_trudger) -> None:
        tracker.add("tr-1", reviews=["blocked"])

        assert run_trudger(tracker.config()) == 0

        assert tracker.lines("needs_human") == ["tr-1"]
        assert tracker.lines("updates") == ["tr-1 in_progress"]
        assert tracker.lines("completed") == []

    def test_exhausted_review_loop_blocks_the_task(self, tracker, run_trudger, log_lines) -> None:
        tracker.add("tr-1", reviews=["open", "in_progress"])
        hook = f'echo "$TRUDGER_TASK_ID $TRUDGER_TASK_STATUS" >> {tracker.dir}/needs_human'
        config = tracker.config(review_loop_limit=2, hooks={"on_requires_human": hook})

        assert run_trudger(config) == 0

        assert tracker.lines("agent.log") == ["solve tr-1", "review tr-1", "review tr-1"]
        assert tracker.lines("updates") == ["tr-1 in_progress", "tr-1 blocked"]
        assert tracker.lines("needs_human") == ["tr-1 blocked"]
        assert tracker.status("tr-1") == "blocked"
        assert "review_loop_exhausted task=tr-1 loops=2 limit=2" in log_lines()

    def test_several_tasks_and_task_lists(self, tracker, run_trudger) -> None:
        tracker.add("tr-1", reviews=["closed"])
        tracker.add("tr-2", reviews=["blocked"])
        tracker.add("tr-3", reviews=["closed"])
        d = tracker.dir
        config = tracker.config(
            hooks={
                "on_completed": f'echo "$TRUDGER_TASK_ID:$TRUDGER_COMPLETED:$TRUDGER_NEEDS_HUMAN" >> {d}/completed',
            }
        )

        assert run_trudger(config) == 0

        assert tracker.lines("completed") == ["tr-1:tr-1:", "tr-3:tr-1,tr-3:tr-2"]
        assert tracker.lines("needs_human") == ["tr-2"]

    def test_agents_see_their_own_prompt_only(self, tracker, run_trudger) -> None:
        tracker.add("tr-1", reviews=["closed"])
        d = tracker.dir
        config = tracker.config(
            agent_command=f'echo "${{TRUDGER_PROMPT-unset}}|${{TRUDGER_REVIEW_PROMPT-unset}}" >> {d}/prompts',
            agent_review_command=(
                f'echo "${{TRUDGER_PROMPT-unset}}|${{TRUDGER_REVIEW_PROMPT-unset}}" >> {d}/prompts; '
                f'echo closed > {d}/"$TRUDGER_TASK_ID".status'
            ),
        )

        assert run_trudger(config) == 0

        assert tracker.lines("prompts") == ["solve prompt|unset", "unset|review prompt"]

    def test_agent_sees_task_show_output(self, tracker, run_trudger) -> None:
        tracker.add("tr-1", reviews=["closed"])
        config = tracker.config(agent_command=f'printf "%s" "$TRUDGER_TASK_SHOW" > {tracker.dir}/seen')

        assert run_trudger(config) == 0

        assert tracker.lines("seen") == ["Task tr-1", "in_progress"]

    def test_large_task_show_is_truncated(self, tracker, run_trudger, log_lines) -> None:
        tracker.add("tr-1", reviews=["closed"])
        config = tracker.config(commands={"task_show": "head -c 70000 /dev/zero | tr '\\0' x"})

        assert run_trudger(config) == 0

        truncations = [line for line in log_lines() if line.startswith("env_truncate ")]
        assert truncations
        assert "key=TRUDGER_TASK_SHOW original_bytes=70000 truncated_bytes=65536" in truncations[0]


class TestSelection:
    """Manual tasks, next_task and the skip bound."""

    def test_manual_tasks_run_first(self, tracker, run_trudger) -> None:
        tracker.add("tr-1", reviews=["closed"])
        tracker.add("tr-2", reviews=["closed"])

        assert run_trudger(tracker.config(), manual_tasks=["tr-2"]) == 0

        assert tracker.lines("completed") == ["tr-2", "tr-1"]

    def test_manual_task_not_ready(self, tracker, run_trudger, log_lines) -> None:
        tracker.add("tr-1", status="in_progress")

        assert run_trudger(tracker.config(), manual_tasks=["tr-1"]) == 1

        assert tracker.lines("agent.log") == []
        assert "quit reason=task_not_ready:tr-1" in log_lines()

    def test_manual_tasks_without_next_task(self, tracker, run_trudger, log_lines) -> None:
        tracker.add("tr-1", reviews=["closed"])
        config = tracker.config(commands={"next_task": None})

        assert run_trudger(config, manual_tasks=["tr-1"]) == 0

        assert tracker.lines("completed") == ["tr-1"]
        assert "idle missing_next_task_command" in log_lines()

    def test_skip_bound_ends_idle(self, tracker, run_trudger, log_lines) -> None:
        tracker.add("tr-1", status="in_progress")
        config = tracker.config(commands={"next_task": "echo tr-1"})

        exit_code = run_trudger(config, environ={"TRUDGER_SKIP_NOT_READY_LIMIT": "1"})

        assert exit_code == 0
        lines = log_lines()
        assert lines.count("skip_not_ready task=tr-1 status=in_progress") == 1
        assert "quit reason=no_ready_task" in lines
        assert tracker.lines("agent.log") == []

    def test_next_task_failure_exit_code_is_used(self, tracker, run_trudger, log_lines) -> None:
        config = tracker.config(commands={"next_task": "exit 3"})

        assert run_trudger(config) == 3
        assert "quit reason=next_task_failed:3" in log_lines()

    def test_invalid_task_id_from_next_task(self, tracker, run_trudger, log_lines) -> None:
        config = tracker.config(commands={"next_task": "echo 'bad/id'"})

        assert run_trudger(config) == 1
        assert "quit reason=next_task_invalid_task_id:invalid_char" in log_lines()

    def test_empty_next_task_output_is_idle(self, tracker, run_trudger, log_lines) -> None:
        config = tracker.config(commands={"next_task": "echo"})

        assert run_trudger(config) == 0
        assert "quit reason=no_task" in log_lines()


class TestFailures:
    """Fatal paths end the run with exit code 1 and no outcome hook."""

    def test_empty_status_after_review(self, tracker, run_trudger, log_lines) -> None:
        tracker.add("tr-1")
        config = tracker.config(agent_review_command=f': > {tracker.dir}/"$TRUDGER_TASK_ID".status')

        assert run_trudger(config) == 1

        assert tracker.lines("completed") == []
        assert tracker.lines("needs_human") == []
        lines = log_lines()
        assert "review_state_missing task=tr-1" in lines
        assert "quit reason=task_missing_status_after_review:tr-1" in lines
        assert "task_end task=tr-1" in lines

    def test_unknown_status_after_review(self, tracker, run_trudger, log_lines) -> None:
        tracker.add("tr-1", reviews=["weird"])

        assert run_trudger(tracker.config()) == 1

        assert tracker.lines("completed") == []
        assert "unknown_task_status task=tr-1 status=weird" in log_lines()

    def test_failing_hook_is_fatal(self, tracker, run_trudger, log_lines) -> None:
        tracker.add("tr-1", reviews=["closed"])
        config = tracker.config(hooks={"on_completed": "exit 2"})

        assert run_trudger(config) == 1
        assert "quit reason=error:hook on_completed failed with exit code 2" in log_lines()

    def test_failing_agent_resets_task(self, tracker, run_trudger, log_lines) -> None:
        tracker.add("tr-1")
        d = tracker.dir
        config = tracker.config(
            agent_command="exit 4",
            commands={"reset_task": f'echo open > {d}/"$TRUDGER_TASK_ID".status'},
        )

        assert run_trudger(config) == 1

        assert tracker.status("tr-1") == "open"
        lines = log_lines()
        assert "solve_failed task=tr-1" in lines
        assert "reset_task task=tr-1" in lines

    def test_reset_skipped_when_not_in_progress(self, tracker, run_trudger, log_lines) -> None:
        tracker.add("tr-1", reviews=["weird"])
        config = tracker.config(commands={"reset_task": f"touch {tracker.dir}/reset"})

        assert run_trudger(config) == 1

        assert not (tracker.root / "reset").exists()
        assert "reset_task_skip task=tr-1 status=weird" in log_lines()

    def test_failing_update_status(self, tracker, run_trudger, log_lines) -> None:
        tracker.add("tr-1")
        config = tracker.config(commands={"task_update_status": "exit 9"})

        assert run_trudger(config) == 1
        assert tracker.lines("agent.log") == []
        assert any(line.startswith("quit reason=error:task_update_status") for line in log_lines())


class TestInterrupts:
    """SIGINT ends the run with exit code 130."""

    def test_interrupt_before_selection(self, tracker, run_trudger, log_lines) -> None:
        tracker.add("tr-1", reviews=["closed"])
        flag = InterruptFlag()
        flag.set()

        assert run_trudger(tracker.config(), interrupt=flag) == 130

        assert tracker.lines("agent.log") == []
        lines = log_lines()
        assert "quit reason=interrupted" in lines
        assert lines[-1] == "run_end exit_code=130"

    def test_sigint_during_agent(self, tracker, run_trudger, log_lines) -> None:
        tracker.add("tr-1", reviews=["closed"])
        d = tracker.dir
        config = tracker.config(
            agent_command="kill -INT $PPID",
            commands={"reset_task": f'echo open > {d}/"$TRUDGER_TASK_ID".status'},
        )
        flag = InterruptFlag()

        with flag.installed():
            exit_code = run_trudger(config, interrupt=flag)

        assert exit_code == 130
        assert tracker.lines("completed") == []
        assert tracker.status("tr-1") == "open"
        assert "reset_task task=tr-1" in log_lines()


@pytest.mark.parametrize("limit", [1, 3])
def test_review_count_never_exceeds_limit(tracker, run_trudger, limit: int) -> None:
    tracker.add("tr-1", reviews=["in_progress"] * 5)

    assert run_trudger(tracker.config(review_loop_limit=limit)) == 0

    assert tracker.lines("agent.log").count("review tr-1") == limit
    assert tracker.lines("needs_human") == ["tr-1"]
