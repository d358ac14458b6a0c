"""Tests for the concrete collaborators (LLM, Biome, git, knowledge).

Network and subprocess boundaries are mocked; nothing here needs an API key,
Node or a git checkout.
"""

import json
import subprocess
from datetime import datetime
from types import SimpleNamespace
from unittest.mock import MagicMock, patch

import pytest

from warden_kernel import Approved, Message, Rejected, Role
from warden_collaborators import (
    BiomeLinter,
    GitVersionControl,
    JsonKnowledgeBase,
    LLMAuditor,
    LLMConfig,
    OpenAIModelClient,
    VersionControlError,
    parse_biome_report,
    parse_verdict,
    remediation_branch_name,
)


def chat_response(content=None, tool_calls=None):
    message = SimpleNamespace(content=content, tool_calls=tool_calls)
    return SimpleNamespace(choices=[SimpleNamespace(message=message)])


class TestParseVerdict:
    """Only an unambiguous RESULT line approves."""

    def test_approved(self):
        verdict = parse_verdict("RESULT: APPROVED\nREASON: secret now read from env")
        assert verdict == Approved("secret now read from env")

    def test_rejected(self):
        verdict = parse_verdict("RESULT: REJECTED\nREASON: fallback secret remains")
        assert verdict == Rejected("fallback secret remains")

    def test_markdown_decorations(self):
        assert isinstance(parse_verdict("**RESULT:** APPROVED\n**REASON:** fine"), Approved)

    @pytest.mark.parametrize("text", [
        "",
        "Looks APPROVED to me",
        "I would say the change is approved.",
    ])
    def test_missing_result_line_rejects(self, text):
        verdict = parse_verdict(text)
        assert isinstance(verdict, Rejected)
        assert "no RESULT line" in verdict.rationale

    def test_contradictory_rejects(self):
        verdict = parse_verdict("RESULT: APPROVED\nRESULT: REJECTED\nREASON: unsure")
        assert isinstance(verdict, Rejected)
        assert "contradictory" in verdict.rationale


class TestLLMAuditor:

    def test_openai_compatible_review(self):
        client = MagicMock()
        client.chat.completions.create.return_value = chat_response("RESULT: APPROVED\nREASON: ok")
        auditor = LLMAuditor(LLMConfig(provider="openai", model="gpt-4o-mini"), client=client)

        verdict = auditor.review("src/a.ts", "new code", "old code", "CWE-798")

        assert verdict.approved
        assert auditor.review_count == 1
        kwargs = client.chat.completions.create.call_args.kwargs
        assert kwargs["model"] == "gpt-4o-mini"
        user = kwargs["messages"][1]["content"]
        assert "EVIDENCE:\nCWE-798" in user
        assert "ORIGINAL CODE:\nold code" in user
        assert "PROPOSED CODE:\nnew code" in user

    def test_new_file_marker(self):
        client = MagicMock()
        client.chat.completions.create.return_value = chat_response("RESULT: REJECTED\nREASON: no")
        LLMAuditor(LLMConfig(provider="openai"), client=client).review("src/a.ts", "x", "", "")

        user = client.chat.completions.create.call_args.kwargs["messages"][1]["content"]
        assert "(new file)" in user

    def test_anthropic_review(self):
        client = MagicMock()
        client.messages.create.return_value = SimpleNamespace(content=[
            SimpleNamespace(type="text", text="RESULT: REJECTED\n"),
            SimpleNamespace(type="tool_use", text="ignored"),
            SimpleNamespace(type="text", text="REASON: still hardcoded"),
        ])
        auditor = LLMAuditor(LLMConfig(provider="anthropic", model="claude-3-5-haiku-latest"), client=client)

        verdict = auditor.review("src/a.ts", "x", "y", "z")

        assert verdict == Rejected("still hardcoded")
        assert "system" in client.messages.create.call_args.kwargs

    def test_empty_reply_rejects(self):
        client = MagicMock()
        client.chat.completions.create.return_value = chat_response(None)
        verdict = LLMAuditor(LLMConfig(provider="lmstudio"), client=client).review("a.ts", "x", "y", "z")
        assert isinstance(verdict, Rejected)


class TestOpenAIModelClient:

    def test_turn_with_tool_calls(self):
        tool_call = SimpleNamespace(
            id="call_1",
            function=SimpleNamespace(name="read_file", arguments='{"path": "src/a.ts"}'),
        )
        client = MagicMock()
        client.chat.completions.create.return_value = chat_response(None, [tool_call])
        model = OpenAIModelClient(LLMConfig(provider="lmstudio", model="local"), client=client)

        transcript = [Message(Role.SYSTEM, "sys"), Message(Role.USER, "fix it")]
        schemas = [{"type": "function", "function": {"name": "read_file"}}]
        turn = model.complete(transcript, schemas)

        assert turn.content == ""
        assert turn.tool_calls[0].name == "read_file"
        assert turn.tool_calls[0].raw_arguments == '{"path": "src/a.ts"}'
        kwargs = client.chat.completions.create.call_args.kwargs
        assert kwargs["messages"] == [{"role": "system", "content": "sys"}, {"role": "user", "content": "fix it"}]
        assert kwargs["tools"] == schemas
        assert kwargs["tool_choice"] == "auto"
        assert model.call_count == 1

    def test_text_only_turn(self):
        client = MagicMock()
        client.chat.completions.create.return_value = chat_response("REMEDIATION_COMPLETE")
        turn = OpenAIModelClient(LLMConfig(provider="openai"), client=client).complete([], [])

        assert turn.content == "REMEDIATION_COMPLETE"
        assert turn.tool_calls == ()

    def test_rejects_non_openai_provider(self):
        with pytest.raises(ValueError):
            OpenAIModelClient(LLMConfig(provider="anthropic"))

    def test_name_includes_model(self):
        model = OpenAIModelClient(LLMConfig(provider="deepseek", model="deepseek-chat"), client=MagicMock())
        assert model.get_name() == "OpenAIModelClient(deepseek/deepseek-chat)"


BIOME_REPORT = {
    "summary": {"errors": 1, "warnings": 1},
    "diagnostics": [
        {
            "category": "lint/suspicious/noExplicitAny",
            "severity": "error",
            "description": "Unexpected any. Specify a different type.",
            "location": {"path": {"file": "src/a.ts"}, "span": [10, 13]},
        },
        {
            "category": "lint/style/useConst",
            "severity": "warning",
            "description": "This let declares a variable that is only assigned once.",
        },
        {
            "category": "parse",
            "severity": "fatal",
            "message": [{"content": "Expected "}, {"content": "a semicolon"}],
        },
    ],
}


class TestBiome:

    def test_parse_report_keeps_errors_only(self):
        diagnostics = parse_biome_report(json.dumps(BIOME_REPORT))

        assert [d.code for d in diagnostics] == ["lint/suspicious/noExplicitAny", "parse"]
        assert (diagnostics[0].start, diagnostics[0].end) == (10, 13)
        assert diagnostics[1].message == "Expected a semicolon"

    @pytest.mark.parametrize("raw", ["", "not json", "[1, 2]"])
    def test_parse_non_report(self, raw):
        assert parse_biome_report(raw) is None

    def test_supports(self, tmp_path):
        linter = BiomeLinter(tmp_path)
        assert linter.supports(tmp_path / "a.ts")
        assert linter.supports(tmp_path / "b.JSON")
        assert not linter.supports(tmp_path / "README.md")

    def test_lint_invokes_biome(self, tmp_path):
        completed = subprocess.CompletedProcess([], 1, stdout=json.dumps(BIOME_REPORT), stderr="")
        with patch("warden_collaborators.linter.subprocess.run", return_value=completed) as mock_run:
            diagnostics = BiomeLinter(tmp_path).lint(tmp_path / "a.ts")

        argv = mock_run.call_args.args[0]
        assert argv[:4] == ["npx", "@biomejs/biome", "check", "--reporter=json"]
        assert mock_run.call_args.kwargs["cwd"] == tmp_path
        assert len(diagnostics) == 2

    def test_clean_file(self, tmp_path):
        completed = subprocess.CompletedProcess([], 0, stdout=json.dumps({"diagnostics": []}), stderr="")
        with patch("warden_collaborators.linter.subprocess.run", return_value=completed):
            assert BiomeLinter(tmp_path).lint(tmp_path / "a.ts") == []

    def test_unparseable_failure(self, tmp_path):
        completed = subprocess.CompletedProcess([], 1, stdout="", stderr="npx: command failed")
        with patch("warden_collaborators.linter.subprocess.run", return_value=completed):
            diagnostics = BiomeLinter(tmp_path).lint(tmp_path / "a.ts")

        assert [d.code for d in diagnostics] == ["biome"]
        assert "npx: command failed" in diagnostics[0].message

    def test_timeout(self, tmp_path):
        with patch(
            "warden_collaborators.linter.subprocess.run",
            side_effect=subprocess.TimeoutExpired(["npx"], 60.0),
        ):
            diagnostics = BiomeLinter(tmp_path).lint(tmp_path / "a.ts")
        assert diagnostics[0].code == "biome/timeout"


class TestGitVersionControl:

    def test_rollback_resets_cleans_and_empties_memory(self, tmp_path):
        memory = tmp_path / "memory"
        (memory / "notes").mkdir(parents=True)
        (memory / "notes" / "plan.md").write_text("plan")
        (memory / "scratch.txt").write_text("x")

        ok = subprocess.CompletedProcess([], 0, stdout="", stderr="")
        with patch("warden_collaborators.vcs.subprocess.run", return_value=ok) as mock_run:
            GitVersionControl(memory_root=memory).rollback(tmp_path)

        argvs = [c.args[0] for c in mock_run.call_args_list]
        assert argvs == [["git", "reset", "--hard", "HEAD"], ["git", "clean", "-fd"]]
        assert memory.is_dir()
        assert list(memory.iterdir()) == []

    def test_failed_git_raises(self, tmp_path):
        failed = subprocess.CompletedProcess([], 128, stdout="", stderr="fatal: not a git repository")
        with patch("warden_collaborators.vcs.subprocess.run", return_value=failed):
            with pytest.raises(VersionControlError) as exc:
                GitVersionControl().rollback(tmp_path)
        assert "not a git repository" in str(exc.value)

    def test_timeout_raises(self, tmp_path):
        with patch("warden_collaborators.vcs.subprocess.run", side_effect=subprocess.TimeoutExpired(["git"], 1)):
            with pytest.raises(VersionControlError):
                GitVersionControl().push(tmp_path, "fix/x")

    def test_commit_returns_sha(self, tmp_path):
        outputs = iter(["", "", "abc123def456\n"])

        def fake_run(argv, **kwargs):
            return subprocess.CompletedProcess(argv, 0, stdout=next(outputs), stderr="")

        with patch("warden_collaborators.vcs.subprocess.run", side_effect=fake_run) as mock_run:
            sha = GitVersionControl().commit(tmp_path, "fix: read JWT secret from env", ["src/a.ts"])

        assert sha == "abc123def456"
        argvs = [c.args[0] for c in mock_run.call_args_list]
        assert argvs[0] == ["git", "add", "--", "src/a.ts"]
        assert argvs[1] == ["git", "commit", "-m", "fix: read JWT secret from env"]

    def test_pull_request(self, tmp_path):
        ok = subprocess.CompletedProcess([], 0, stdout="https://github.com/o/r/pull/7\n", stderr="")
        with patch("warden_collaborators.vcs.subprocess.run", return_value=ok) as mock_run:
            url = GitVersionControl().create_pull_request(tmp_path, "fix/x", "Fix", "Body")

        assert url == "https://github.com/o/r/pull/7"
        assert mock_run.call_args.args[0][:3] == ["gh", "pr", "create"]

    def test_branch_name(self):
        assert remediation_branch_name(datetime(2024, 5, 1, 9, 30, 0)) == "fix/security-remediation-20240501093000"


class TestKnowledgeBase:

    def test_builtin_library(self):
        kb = JsonKnowledgeBase()
        assert set(kb.keys) == {"jwt", "zod", "env"}
        assert kb.lookup("How do I fix a JWT secret?").startswith("[REFERENCE: JWT Security]")

    def test_short_query_matches_longer_key(self):
        kb = JsonKnowledgeBase()
        assert "Environment Variables" in kb.lookup("en")

    def test_no_match(self):
        kb = JsonKnowledgeBase()
        assert kb.lookup("xml external entities").startswith("No specific match")
        assert kb.lookup("   ").startswith("No specific match")

    def test_file_backed(self, tmp_path):
        path = tmp_path / "kb.json"
        path.write_text(json.dumps({"sql": {"title": "SQL", "description": "bind parameters", "code": "db.query(sql, [id])"}}))
        kb = JsonKnowledgeBase(path)

        assert kb.keys == ["sql"]
        assert kb.lookup("sql injection") == "[REFERENCE: SQL]\nbind parameters\n\nCODE:\ndb.query(sql, [id])"

    def test_missing_file_falls_back(self, tmp_path):
        assert "jwt" in JsonKnowledgeBase(tmp_path / "absent.json").keys

    def test_invalid_file(self, tmp_path):
        path = tmp_path / "kb.json"
        path.write_text("[1, 2]")
        with pytest.raises(ValueError):
            JsonKnowledgeBase(path)
