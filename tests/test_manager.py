"""Tests for MotorCortex: run lifecycle, retries, pauses, cancellation and restart recovery."""

import asyncio
from collections import Counter
from datetime import timedelta
from pathlib import Path

import pytest

from motor_cortex.llm.protocol import ModelBackendError
from motor_cortex.loop import XML_FAILURE_HINT
from motor_cortex.manager import (
    ActiveRunExists,
    InvalidRunState,
    MaxAttemptsReached,
    MotorCortex,
    MotorCortexError,
    RunNotFound,
    auto_retry_guidance,
    extract_domains,
    merge_domains,
)
from motor_cortex.models import FailureSummary, PendingApproval, utc_now
from motor_cortex.secrets import MemoryCredentialStore
from motor_cortex.signals import MotorTopics
from motor_cortex.skills import SkillPolicy, save_policy
from motor_cortex.tools.context import FetchResponse

from fakes import (
    FakeContainerFactory,
    ScriptedBackend,
    call,
    final,
    make_run,
    tool_messages,
    tool_payload,
    tool_turn,
)

BACKEND_DOWN = [ModelBackendError("503 Service Unavailable")] * 3


class GatedBackend(ScriptedBackend):
    """Holds every request until gate is set."""

    def __init__(self, *script) -> None:
        super().__init__(*script)
        self.entered = asyncio.Event()
        self.gate = asyncio.Event()

    async def complete(self, request):
        self.entered.set()
        await self.gate.wait()
        return await super().complete(request)


@pytest.fixture
def make_cortex(store, sink, tmp_path: Path, fast_settings: dict):
    def _make(backend, motor: dict | None = None, **kwargs) -> MotorCortex:
        settings = {"motor": {**fast_settings["motor"], **(motor or {})}}
        return MotorCortex(
            backend, store, tmp_path / "workspaces", sink=sink, settings=settings, **kwargs
        )

    return _make


def _topics(sink) -> list[str]:
    return [s.topic for s in sink.drain()]


class TestStart:
    @pytest.mark.asyncio
    async def test_start_and_complete(self, make_cortex, store, sink, tmp_path: Path) -> None:
        backend = ScriptedBackend(
            tool_turn(call("write", {"path": "hello.txt", "content": "hi"})),
            final("Wrote hello.txt."),
        )
        cortex = make_cortex(backend)

        run = await cortex.start_run("Write hello.txt", ["write", "write"])
        assert run.tools == ("write",)
        done = await cortex.wait(run.id)

        assert done.status == "completed"
        assert done.result.summary == "Wrote hello.txt."
        workspace = tmp_path / "workspaces" / run.id
        assert done.workspace_path == str(workspace.resolve())
        assert (workspace / "hello.txt").read_text(encoding="utf-8") == "hi"
        assert (await store.get_run(run.id)).status == "completed"
        assert _topics(sink) == [MotorTopics.COMPLETED]
        system = backend.requests[0].messages[0]["content"]
        assert "Write hello.txt" in backend.requests[0].messages[1]["content"]
        assert "write" in system

    @pytest.mark.asyncio
    async def test_validation(self, make_cortex) -> None:
        cortex = make_cortex(ScriptedBackend())
        with pytest.raises(MotorCortexError, match="empty"):
            await cortex.start_run("   ", ["read"])
        with pytest.raises(MotorCortexError, match="Unknown tools: teleport"):
            await cortex.start_run("Do it", ["read", "teleport"])
        with pytest.raises(MotorCortexError, match="Skills directory"):
            await cortex.start_run("Do it", ["read"], skill="weather-report")

    @pytest.mark.asyncio
    async def test_one_active_run(self, make_cortex) -> None:
        cortex = make_cortex(ScriptedBackend(tool_turn(call("ask_user", {"question": "Which file?"}))))
        first = await cortex.start_run("Read a file", ["read"])
        assert (await cortex.wait(first.id)).status == "awaiting_input"
        with pytest.raises(ActiveRunExists, match=first.id):
            await cortex.start_run("Another task", ["read"])

    @pytest.mark.asyncio
    async def test_unknown_run(self, make_cortex) -> None:
        cortex = make_cortex(ScriptedBackend())
        with pytest.raises(RunNotFound):
            await cortex.wait("nope")
        with pytest.raises(RunNotFound):
            await cortex.cancel_run("nope")

    @pytest.mark.asyncio
    async def test_list_runs(self, make_cortex) -> None:
        cortex = make_cortex(ScriptedBackend(final("done")))
        run = await cortex.start_run("Say done", ["read"])
        await cortex.wait(run.id)
        assert [r.id for r in await cortex.list_runs(status="completed")] == [run.id]


class TestRetry:
    @pytest.mark.asyncio
    async def test_failure_settles_without_auto_retry(self, make_cortex, sink) -> None:
        cortex = make_cortex(ScriptedBackend(*BACKEND_DOWN))
        run = await cortex.start_run("Summarize", ["read"])
        done = await cortex.wait(run.id)
        assert done.status == "failed"
        assert len(done.attempts) == 1
        signals = sink.drain()
        assert [s.topic for s in signals] == [MotorTopics.FAILED]
        assert signals[0].payload["failure"]["category"] == "model_failure"

    @pytest.mark.asyncio
    async def test_retry_run_with_guidance(self, make_cortex, sink) -> None:
        backend = ScriptedBackend(*BACKEND_DOWN)
        cortex = make_cortex(backend)
        run = await cortex.start_run("Summarize", ["read"])
        await cortex.wait(run.id)
        sink.drain()

        backend.push(final("Summary done."))
        await cortex.retry_run(run.id, "Read notes.txt first.", constraints=["No network"])
        done = await cortex.wait(run.id)

        assert done.status == "completed"
        assert len(done.attempts) == 2
        assert done.current_attempt_index == 1
        retry = done.attempts[1]
        assert retry.max_iterations == 4
        assert retry.recovery_context.source == "supervisor"
        assert retry.recovery_context.previous_attempt_id == done.attempts[0].id
        system = retry.messages[0]["content"]
        assert "Guidance: Read notes.txt first." in system
        assert "- No network" in system
        assert _topics(sink) == [MotorTopics.COMPLETED]

        with pytest.raises(InvalidRunState, match="not failed"):
            await cortex.retry_run(run.id, "again")

    @pytest.mark.asyncio
    async def test_max_attempts(self, make_cortex) -> None:
        cortex = make_cortex(ScriptedBackend(*BACKEND_DOWN), motor={"max_attempts": 1})
        run = await cortex.start_run("Summarize", ["read"])
        await cortex.wait(run.id)
        with pytest.raises(MaxAttemptsReached):
            await cortex.retry_run(run.id, "try again")

    @pytest.mark.asyncio
    async def test_auto_retry_after_tool_failure(self, make_cortex, sink) -> None:
        backend = ScriptedBackend(
            *[tool_turn(call("read", {"path": "missing.txt"}, f"c{n}")) for n in range(3)],
            final("The file is missing; list the workspace first."),
            final("Listed the workspace instead."),
        )
        cortex = make_cortex(backend, motor={"auto_retry": True})

        run = await cortex.start_run("Summarize", ["read", "list"])
        done = await cortex.wait(run.id)

        assert done.status == "completed"
        assert [a.status for a in done.attempts] == ["failed", "completed"]
        assert done.attempts[0].failure.category == "tool_failure"
        recovery = done.attempts[1].recovery_context
        assert recovery.source == "auto_retry"
        assert recovery.guidance.startswith('Previous attempt failed: tool error "not_found".')
        assert "list the workspace first" in recovery.guidance
        assert _topics(sink) == [MotorTopics.COMPLETED]

    @pytest.mark.asyncio
    async def test_auto_retry_stops_at_max_attempts(self, make_cortex, sink) -> None:
        backend = ScriptedBackend(*BACKEND_DOWN, *BACKEND_DOWN)
        cortex = make_cortex(backend, motor={"auto_retry": True, "max_attempts": 2})
        run = await cortex.start_run("Summarize", ["read"])
        done = await cortex.wait(run.id)
        assert done.status == "failed"
        assert len(done.attempts) == 2
        assert _topics(sink) == [MotorTopics.FAILED]

    @pytest.mark.asyncio
    async def test_budget_exhausted_is_not_retried(self, make_cortex, sink) -> None:
        backend = ScriptedBackend(tool_turn(call("list", {})))
        cortex = make_cortex(backend, motor={"auto_retry": True})
        run = await cortex.start_run("List", ["list"], max_iterations=1)
        done = await cortex.wait(run.id)
        assert done.status == "failed"
        assert len(done.attempts) == 1
        assert done.attempts[0].failure.category == "budget_exhausted"
        assert _topics(sink) == [MotorTopics.FAILED]


class TestRespond:
    @pytest.mark.asyncio
    async def test_blocked_domain_answer_grants_access(self, make_cortex, sink) -> None:
        async def fetch(url: str, **kwargs) -> FetchResponse:
            return FetchResponse(url=url, status=200, text="[]")

        url = "https://api.github.com/repos/acme/tool/issues"
        backend = ScriptedBackend(
            tool_turn(call("fetch", {"url": url}, "c1")),
            tool_turn(call("fetch", {"url": url}, "c2")),
            final("No open issues."),
        )
        cortex = make_cortex(backend, fetch_fn=fetch)
        run = await cortex.start_run("Count open issues", ["fetch"])
        paused = await cortex.wait(run.id)
        assert paused.status == "awaiting_input"
        assert "api.github.com" in paused.current_attempt.pending_question

        await cortex.respond_to_run(run.id, "yes")
        done = await cortex.wait(run.id)

        assert done.status == "completed"
        assert done.domains == ["api.github.com"]
        answer = tool_payload(tool_messages(done.attempts[0])[0])
        assert answer["output"] == "User answered: yes Network access granted for: api.github.com."
        assert done.result.evidence.fetched_domains == ["api.github.com"]
        assert _topics(sink) == [MotorTopics.AWAITING_INPUT, MotorTopics.COMPLETED]

    @pytest.mark.asyncio
    async def test_explicit_domains_win_over_extraction(self, make_cortex) -> None:
        backend = ScriptedBackend(
            tool_turn(call("ask_user", {"question": "May I use github.com?"})),
            final("ok"),
        )
        cortex = make_cortex(backend)
        run = await cortex.start_run("Check docs", ["fetch"])
        await cortex.wait(run.id)
        await cortex.respond_to_run(run.id, "use the docs", domains=["Docs.Python.org"])
        done = await cortex.wait(run.id)
        assert done.domains == ["docs.python.org"]

    @pytest.mark.asyncio
    async def test_respond_requires_pause(self, make_cortex) -> None:
        cortex = make_cortex(ScriptedBackend(final("done")))
        run = await cortex.start_run("Say done", ["read"])
        await cortex.wait(run.id)
        with pytest.raises(InvalidRunState, match="not awaiting input"):
            await cortex.respond_to_run(run.id, "hello")
        with pytest.raises(InvalidRunState, match="not awaiting approval"):
            await cortex.respond_to_approval(run.id, True)


class TestApproval:
    async def _paused(self, cortex) -> str:
        run = await cortex.start_run("Clean up", ["bash"])
        paused = await cortex.wait(run.id)
        assert paused.status == "awaiting_approval"
        return run.id

    def _backend(self) -> ScriptedBackend:
        return ScriptedBackend(
            tool_turn(call("request_approval", {"action": "Delete 40 files"}, "c_ok")),
            final("Deleted."),
        )

    @pytest.mark.asyncio
    async def test_approved_resumes(self, make_cortex, sink) -> None:
        cortex = make_cortex(self._backend())
        run_id = await self._paused(cortex)
        await cortex.respond_to_approval(run_id, True)
        done = await cortex.wait(run_id)
        assert done.status == "completed"
        assert tool_payload(tool_messages(done.attempts[0])[0]) == {
            "ok": True,
            "output": "Approved. Proceed.",
        }
        assert _topics(sink) == [MotorTopics.AWAITING_APPROVAL, MotorTopics.COMPLETED]

    @pytest.mark.asyncio
    async def test_denied_fails_run(self, make_cortex, sink) -> None:
        cortex = make_cortex(self._backend())
        run_id = await self._paused(cortex)
        run = await cortex.respond_to_approval(run_id, False)
        assert run.status == "failed"
        assert run.current_attempt.pending_approval is None
        signals = sink.drain()
        assert signals[-1].topic == MotorTopics.FAILED
        assert signals[-1].payload["error"] == "Approval denied by user"

    @pytest.mark.asyncio
    async def test_expired_approval(self, make_cortex, store, sink) -> None:
        cortex = make_cortex(self._backend())
        run_id = await self._paused(cortex)
        stored = await store.get_run(run_id)
        stored.attempts[0].pending_approval.expires_at = utc_now() - timedelta(seconds=1)
        await store.update_run(stored)

        with pytest.raises(InvalidRunState, match="expired"):
            await cortex.respond_to_approval(run_id, True)
        assert (await store.get_run(run_id)).status == "failed"
        assert sink.drain()[-1].payload["error"] == "Approval timed out"


class TestCancel:
    @pytest.mark.asyncio
    async def test_cancel_paused_run(self, make_cortex, store, sink) -> None:
        cortex = make_cortex(ScriptedBackend(tool_turn(call("ask_user", {"question": "Which?"}))))
        run = await cortex.start_run("Pick", ["read"])
        await cortex.wait(run.id)
        sink.drain()

        cancelled = await cortex.cancel_run(run.id)

        assert cancelled.status == "failed"
        assert cancelled.current_attempt.pending_question is None
        assert (await store.get_run(run.id)).status == "failed"
        assert sink.drain() == []
        with pytest.raises(InvalidRunState, match="not active"):
            await cortex.cancel_run(run.id)

    @pytest.mark.asyncio
    async def test_cancel_during_execution(self, make_cortex, sink, tmp_path: Path) -> None:
        backend = GatedBackend(
            tool_turn(call("write", {"path": "partial.txt", "content": "x"})),
            final("never reached"),
        )
        cortex = make_cortex(backend)
        run = await cortex.start_run("Write", ["write"])
        await backend.entered.wait()

        await cortex.cancel_run(run.id)
        backend.gate.set()
        done = await cortex.wait(run.id)

        assert done.status == "failed"
        assert done.current_attempt.status == "failed"
        # The in-flight turn still ran its tool call.
        assert (tmp_path / "workspaces" / run.id / "partial.txt").exists()
        assert len(backend.requests) == 1
        assert sink.drain() == []


    @pytest.mark.asyncio
    async def test_cancel_during_final_turn_stays_failed(self, make_cortex, store, sink) -> None:
        backend = GatedBackend(final("All done."))
        cortex = make_cortex(backend)
        run = await cortex.start_run("Finish up", ["read"])
        await backend.entered.wait()

        cancelled = await cortex.cancel_run(run.id)
        assert cancelled.status == "failed"
        backend.gate.set()
        done = await cortex.wait(run.id)

        assert done.status == "failed"
        assert done.result is None
        assert (await store.get_run(run.id)).status == "failed"
        assert sink.drain() == []

    @pytest.mark.asyncio
    async def test_cancel_during_pausing_turn_emits_nothing(self, make_cortex, store, sink) -> None:
        backend = GatedBackend(tool_turn(call("ask_user", {"question": "Which city?"})))
        cortex = make_cortex(backend)
        run = await cortex.start_run("Ask", ["read"])
        await backend.entered.wait()

        await cortex.cancel_run(run.id)
        backend.gate.set()
        done = await cortex.wait(run.id)

        assert done.status == "failed"
        assert done.current_attempt.pending_question is None
        assert (await store.get_run(run.id)).status == "failed"
        assert sink.drain() == []


class TestRecovery:
    @pytest.mark.asyncio
    async def test_recover_on_restart(self, make_cortex, store, sink) -> None:
        stale = make_run(run_id="stale")
        stale.status = "running"
        stale.started_at = utc_now() - timedelta(hours=1)

        resumable = make_run(run_id="resumable")
        resumable.status = "running"
        resumable.attempts[0].step_cursor = 1

        waiting = make_run(run_id="waiting")
        waiting.status = "awaiting_input"
        waiting.attempts[0].status = "awaiting_input"
        waiting.attempts[0].pending_question = "Which city?"

        approval = make_run(run_id="approval")
        approval.status = "awaiting_approval"
        approval.attempts[0].pending_approval = PendingApproval(
            action="Send email", step_cursor=1, expires_at=utc_now() + timedelta(minutes=10)
        )

        expired = make_run(run_id="expired")
        expired.status = "awaiting_approval"
        expired.attempts[0].pending_approval = PendingApproval(
            action="Send email", step_cursor=1, expires_at=utc_now() - timedelta(minutes=1)
        )

        finished = make_run(run_id="finished")
        finished.status = "completed"

        for run in (stale, resumable, waiting, approval, expired, finished):
            await store.create_run(run)

        cortex = make_cortex(ScriptedBackend(final("Resumed and finished.")))
        counts = await cortex.recover_on_restart()

        assert counts == {"resumed": 1, "re_emitted": 2, "failed": 2}
        done = await cortex.wait("resumable")
        assert done.status == "completed"
        assert [s.iteration for s in done.attempts[0].trace.steps] == [1]
        assert (await store.get_run("stale")).status == "failed"
        assert (await store.get_run("expired")).status == "failed"
        assert (await store.get_run("waiting")).status == "awaiting_input"
        topics = Counter(_topics(sink))
        assert topics == Counter(
            {
                MotorTopics.FAILED: 2,
                MotorTopics.AWAITING_INPUT: 1,
                MotorTopics.AWAITING_APPROVAL: 1,
                MotorTopics.COMPLETED: 1,
            }
        )

    @pytest.mark.asyncio
    async def test_shutdown_then_recover(self, make_cortex, store) -> None:
        backend = GatedBackend(final("never"))
        cortex = make_cortex(backend)
        run = await cortex.start_run("Slow task", ["read"])
        await backend.entered.wait()

        await cortex.shutdown()
        assert (await store.get_run(run.id)).status == "running"

        restarted = make_cortex(ScriptedBackend(final("Finished after restart.")))
        assert (await restarted.recover_on_restart())["resumed"] == 1
        done = await restarted.wait(run.id)
        assert done.status == "completed"
        assert done.result.summary == "Finished after restart."


class TestContainers:
    @pytest.mark.asyncio
    async def test_container_lifecycle_and_routing(self, make_cortex) -> None:
        factory = FakeContainerFactory()
        credentials = MemoryCredentialStore({"api_token": "tok_1234567890abcdef"})
        backend = ScriptedBackend(tool_turn(call("bash", {"command": "ls"})), final("Listed."))
        cortex = make_cortex(backend, container_factory=factory, credentials=credentials)

        run = await cortex.start_run("List files", ["bash"])
        done = await cortex.wait(run.id)

        assert done.status == "completed"
        assert factory.created == [run.id]
        assert factory.destroyed == [run.id]
        assert done.container_id == f"ctr-{run.id}"
        container = factory.containers[run.id]
        assert container.delivered == [("API_TOKEN", "tok_1234567890abcdef")]
        assert [tool for tool, _ in container.executed] == ["bash"]
        assert tool_payload(tool_messages(done.attempts[0])[0])["output"] == "container ran bash"

    @pytest.mark.asyncio
    async def test_paused_run_keeps_container(self, make_cortex) -> None:
        factory = FakeContainerFactory()
        backend = ScriptedBackend(tool_turn(call("ask_user", {"question": "Go?"})), final("Done."))
        cortex = make_cortex(backend, container_factory=factory)

        run = await cortex.start_run("Ask first", ["bash"])
        await cortex.wait(run.id)
        assert factory.destroyed == []

        await cortex.respond_to_run(run.id, "go")
        await cortex.wait(run.id)
        assert factory.created == [run.id]
        assert factory.destroyed == [run.id]

    @pytest.mark.asyncio
    async def test_delivery_markers_dropped_when_run_settles(self, make_cortex) -> None:
        factory = FakeContainerFactory()
        credentials = MemoryCredentialStore({"api_token": "tok_1234567890abcdef"})
        backend = ScriptedBackend(tool_turn(call("ask_user", {"question": "Go?"})), final("Done."))
        cortex = make_cortex(backend, container_factory=factory, credentials=credentials)

        run = await cortex.start_run("Ask first", ["bash"])
        await cortex.wait(run.id)
        assert {key[0] for key in cortex.loop._delivered} == {run.id}

        await cortex.respond_to_run(run.id, "go")
        await cortex.wait(run.id)
        # Delivered once for the attempt, not again on resume.
        assert len(factory.containers[run.id].delivered) == 1
        assert cortex.loop._delivered == set()

    @pytest.mark.asyncio
    async def test_cancel_paused_run_releases_container(self, make_cortex) -> None:
        factory = FakeContainerFactory()
        cortex = make_cortex(
            ScriptedBackend(tool_turn(call("ask_user", {"question": "Go?"}))), container_factory=factory
        )
        run = await cortex.start_run("Ask first", ["bash"])
        await cortex.wait(run.id)
        await cortex.cancel_run(run.id)
        assert factory.destroyed == [run.id]


SKILL_MD = """---
name: weather-report
description: Fetch the forecast and write a short report.
---

# Weather report
"""


class TestSkills:
    @pytest.mark.asyncio
    async def test_skill_run(self, make_cortex, tmp_path: Path) -> None:
        skills_dir = tmp_path / "skills"
        skill_dir = skills_dir / "weather-report"
        skill_dir.mkdir(parents=True)
        (skill_dir / "SKILL.md").write_text(SKILL_MD, encoding="utf-8")
        save_policy(skill_dir, SkillPolicy(status="approved", domains=["api.weather.gov"]))
        backend = ScriptedBackend(
            tool_turn(call("read", {"path": "SKILL.md"})),
            final("Report ready."),
        )
        cortex = make_cortex(backend, skills_dir=skills_dir)

        run = await cortex.start_run("Weather for Paris", ["read"], domains=["wttr.in"], skill="weather-report")
        done = await cortex.wait(run.id)

        assert done.status == "completed"
        assert done.skill == "weather-report"
        assert done.domains == ["api.weather.gov", "wttr.in"]
        assert (Path(done.workspace_path) / "SKILL.md").is_file()
        assert "weather-report" in backend.requests[0].messages[0]["content"]
        read_output = tool_payload(tool_messages(done.attempts[0])[0])["output"]
        assert "Weather report" in read_output
        assert done.result.installed_skills is None

    @pytest.mark.asyncio
    async def test_unknown_skill(self, make_cortex, tmp_path: Path) -> None:
        cortex = make_cortex(ScriptedBackend(), skills_dir=tmp_path / "skills")
        with pytest.raises(MotorCortexError, match="not found"):
            await cortex.start_run("Do it", ["read"], skill="missing")


class TestDomainHelpers:
    def test_extract_domains(self) -> None:
        text = 'Needs "docs.python.org" and pypi.org, e.g. example.com style hosts.'
        assert extract_domains(text) == ["docs.python.org", "pypi.org"]

    def test_github_expansion(self) -> None:
        assert extract_domains("Can I use github.com?") == [
            "github.com",
            "raw.githubusercontent.com",
            "api.github.com",
            "codeload.github.com",
        ]

    def test_no_domains(self) -> None:
        assert extract_domains("Which city do you mean?") == []
        assert extract_domains("") == []

    def test_merge_domains(self) -> None:
        assert merge_domains(["A.com", " b.org "], None, ["a.com", ""]) == ["a.com", "b.org"]


class TestAutoRetryGuidance:
    def _attempt(self, **failure):
        attempt = make_run().attempts[0]
        if failure:
            attempt.failure = FailureSummary(retryable=True, suggested_action="retry_with_guidance", **failure)
        return attempt

    def test_xml_failure(self) -> None:
        attempt = self._attempt(category="model_failure", hint=XML_FAILURE_HINT)
        assert "XML text instead of tool calls" in auto_retry_guidance(attempt)

    def test_tool_failure_carries_hint(self) -> None:
        attempt = self._attempt(category="tool_failure", last_error_code="timeout", hint="Use a smaller file.")
        assert auto_retry_guidance(attempt) == (
            'Previous attempt failed: tool error "timeout". Try a different approach. Use a smaller file.'
        )

    def test_generic(self) -> None:
        expected = "Previous attempt failed. Try again with a different approach."
        assert auto_retry_guidance(self._attempt()) == expected
        assert auto_retry_guidance(self._attempt(category="unknown")) == expected


