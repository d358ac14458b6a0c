#!/usr/bin/env python3
"""Patch Warden Runner - Single entrypoint for one remediation session.

Every edit the model makes goes through propose -> audit -> write, inside the
sandbox roots, with an audit trail and rollback on failure.

Usage:
    python run_agent.py --task-id VULN_001 --project-root ./api \
        --target src/services/authService.ts \
        --vulnerability "Hardcoded JWT secret in authService"

    # Start from an empty audit log and checkpoint store
    python run_agent.py ... --fresh

    # Commit, push and open a pull request on success
    python run_agent.py ... --commit --open-pr
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
from datetime import datetime, timezone
from pathlib import Path

from warden_collaborators import (
    BiomeLinter,
    GitVersionControl,
    JsonKnowledgeBase,
    LLMAuditor,
    LLMConfig,
    OpenAIModelClient,
    VersionControlError,
    remediation_branch_name,
)
from warden_kernel import (
    CommandConfig,
    KernelConfig,
    NullLinter,
    NullVersionControl,
    SandboxConfig,
    WriteConfig,
    run_session,
)
from warden_kernel.kernel import DEFAULT_STATE_DIR

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)
logger = logging.getLogger("run_agent")

PROVIDERS = ["lmstudio", "openai", "deepseek", "anthropic"]

MODEL_DEFAULTS = {
    "lmstudio": "google/gemma-3-4b",
    "openai": "gpt-4o-mini",
    "deepseek": "deepseek-chat",
    "anthropic": "claude-3-5-haiku-latest",
}

KEY_ENV_DEFAULTS = {
    "lmstudio": "LMSTUDIO_API_KEY",
    "openai": "OPENAI_API_KEY",
    "deepseek": "DEEPSEEK_API_KEY",
    "anthropic": "ANTHROPIC_API_KEY",
}


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(
        description="Patch Warden - supervised, auditable vulnerability remediation",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
    # Local model through LM Studio, Anthropic auditor
    python run_agent.py --task-id VULN_001 --project-root ./api \\
        --target src/services/authService.ts --vulnerability "Hardcoded JWT secret" \\
        --provider lmstudio --auditor-provider anthropic

    # Verify every write with the test suite
    python run_agent.py ... --verify-command "npm test"
        """,
    )

    # Required arguments
    parser.add_argument("--task-id", required=True, help="Unique identifier for this session")
    parser.add_argument("--project-root", required=True, type=Path, help="Repository to remediate")
    parser.add_argument("--target", required=True, help="Vulnerable file, relative to the project root")
    parser.add_argument("--vulnerability", required=True, help="Description of the finding")

    # Sandbox
    parser.add_argument(
        "--memory-root",
        type=Path,
        default=None,
        help="Agent scratch directory exposed as .agent_memory/ (optional)",
    )
    parser.add_argument(
        "--state-dir",
        type=Path,
        default=Path(DEFAULT_STATE_DIR),
        help=f"Audit database and ledgers (default: ./{DEFAULT_STATE_DIR}, keep it outside the project)",
    )
    parser.add_argument("--fresh", action="store_true", help="Clear the audit log and checkpoints first")

    # LLM configuration
    parser.add_argument("--provider", default="lmstudio", choices=PROVIDERS[:3], help="Model provider (default: lmstudio)")
    parser.add_argument("--model", default=None, help="Model name (default: provider default)")
    parser.add_argument("--base-url", default=None, help="Override the provider API base URL")
    parser.add_argument("--temperature", type=float, default=0.2, help="Model temperature (default: 0.2)")
    parser.add_argument("--auditor-provider", default=None, choices=PROVIDERS, help="Auditor provider (default: --provider)")
    parser.add_argument("--auditor-model", default=None, help="Auditor model (default: provider default)")

    # Kernel configuration
    parser.add_argument("--max-steps", type=int, default=30, help="Maximum model turns (default: 30)")
    parser.add_argument("--command-timeout", type=float, default=120.0, help="Seconds per command (default: 120)")
    parser.add_argument("--verify-command", default=None, help="Allowlisted command run after every clean write")
    parser.add_argument(
        "--revert-on-validation-failure",
        action="store_true",
        help="Restore the previous content when lint or verification fails",
    )
    parser.add_argument("--knowledge-file", type=Path, default=None, help="JSON remediation examples")
    parser.add_argument("--no-lint", action="store_true", help="Skip Biome after writes")
    parser.add_argument("--no-rollback", action="store_true", help="Do not git reset/clean on failure")

    # Success flow
    parser.add_argument("--commit", action="store_true", help="Commit the fix on a new branch on success")
    parser.add_argument("--open-pr", action="store_true", help="Push and open a pull request (implies --commit)")

    # Output
    parser.add_argument("--output", type=Path, default=None, help="Path to write outcome JSON (default: stdout)")
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable verbose logging")

    return parser.parse_args(argv)


def llm_config(provider: str, model: str | None, temperature: float, base_url: str | None = None) -> LLMConfig:
    return LLMConfig(
        provider=provider,
        model=model or MODEL_DEFAULTS[provider],
        temperature=temperature,
        api_key_env=KEY_ENV_DEFAULTS[provider],
        base_url=base_url,
    )


def commit_flow(vcs: GitVersionControl, project_root: Path, args: argparse.Namespace, reason: str) -> dict[str, str]:
    """Branch, commit and optionally push + open a PR. Only called after SUCCESS."""
    branch = vcs.create_branch(project_root, remediation_branch_name())
    message = f"fix(security): remediate {args.target}\n\n{args.vulnerability}"
    sha = vcs.commit(project_root, message)
    info = {"branch": branch, "commit": sha}

    if args.open_pr:
        vcs.push(project_root, branch)
        body = (
            f"Automated remediation for `{args.target}`.\n\n"
            f"**Finding:** {args.vulnerability}\n\n"
            f"Every change was reviewed by the auditor before it was written. "
            f"Session: `{args.task_id}` ({reason})."
        )
        info["pull_request"] = vcs.create_pull_request(project_root, branch, f"fix(security): {args.target}", body)
    return info


def main(argv: list[str] | None = None) -> int:
    """Main entry point."""
    args = parse_args(argv)

    if args.verbose:
        logging.getLogger().setLevel(logging.DEBUG)

    project_root = args.project_root.resolve()
    if not project_root.is_dir():
        logger.error(f"Project root not found: {project_root}")
        return 1

    logger.info(f"Starting Patch Warden session: {args.task_id}")
    logger.info(f"Project root: {project_root}")
    logger.info(f"Target: {args.target}")

    memory_root = args.memory_root.resolve() if args.memory_root else None
    if memory_root is not None:
        memory_root.mkdir(parents=True, exist_ok=True)

    sandbox = SandboxConfig(
        project_root=str(project_root),
        memory_root=str(memory_root) if memory_root else None,
    )

    model_config = llm_config(args.provider, args.model, args.temperature, args.base_url)
    auditor_provider = args.auditor_provider or args.provider
    auditor_config = llm_config(
        auditor_provider,
        args.auditor_model,
        0.0,
        args.base_url if auditor_provider == args.provider else None,
    )

    if args.no_lint:
        linter = NullLinter()
    elif BiomeLinter.available():
        linter = BiomeLinter(project_root)
    else:
        logger.warning("npx not found on PATH; writes will not be linted")
        linter = NullLinter()

    vcs = NullVersionControl() if args.no_rollback else GitVersionControl(memory_root=memory_root)

    kernel_config = KernelConfig(
        model_name=model_config.model,
        max_steps=args.max_steps,
        fresh_start=args.fresh,
        command_config=CommandConfig(timeout_seconds=args.command_timeout),
        write_config=WriteConfig(
            verify_command=args.verify_command,
            revert_on_validation_failure=args.revert_on_validation_failure,
        ),
    )

    try:
        result = run_session(
            task_id=args.task_id,
            target_path=args.target,
            vulnerability=args.vulnerability,
            sandbox=sandbox,
            model=OpenAIModelClient(model_config),
            auditor=LLMAuditor(auditor_config),
            linter=linter,
            vcs=vcs,
            knowledge=JsonKnowledgeBase(args.knowledge_file),
            config=kernel_config,
            state_dir=args.state_dir,
        )
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
        return 130

    outcome = result.to_dict()
    outcome.update({
        "project_root": str(project_root),
        "target": args.target,
        "provider": args.provider,
        "model": model_config.model,
        "auditor": f"{auditor_config.provider}/{auditor_config.model}",
        "timestamp": datetime.now(timezone.utc).isoformat(),
    })

    if result.success and (args.commit or args.open_pr):
        if isinstance(vcs, GitVersionControl):
            try:
                outcome["vcs"] = commit_flow(vcs, project_root, args, result.completion_reason)
            except VersionControlError as e:
                logger.error(f"Commit flow failed: {e}")
                outcome["vcs_error"] = str(e)
        else:
            logger.warning("--commit ignored with --no-rollback")

    outcome_json = json.dumps(outcome, indent=2)
    if args.output:
        args.output.write_text(outcome_json)
        logger.info(f"Wrote outcome to {args.output}")
    else:
        print(outcome_json)

    return 0 if result.success else 1


if __name__ == "__main__":
    sys.exit(main())
