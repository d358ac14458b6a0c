"""Shared fixtures: a small JS project inside a temporary sandbox."""

from pathlib import Path

import pytest

from warden_kernel import KernelConfig, SandboxConfig, StaticAuditor, build_components

AUTH_SERVICE = """import jwt from 'jsonwebtoken';

const SECRET = 'super-secret-key';

export function signToken(userId) {
  return jwt.sign({ id: userId }, SECRET, { algorithm: 'HS256' });
}

export function verifyToken(token) {
  return jwt.verify(token, SECRET);
}
"""

FIXED_AUTH_SERVICE = """import jwt from 'jsonwebtoken';

const SECRET = process.env.JWT_SECRET;
if (!SECRET) {
  throw new Error('JWT_SECRET is not set');
}

export function signToken(userId) {
  return jwt.sign({ id: userId }, SECRET, { algorithm: 'HS256' });
}

export function verifyToken(token) {
  return jwt.verify(token, SECRET, { algorithms: ['HS256'] });
}
"""


@pytest.fixture
def project(tmp_path) -> Path:
    """Project root with a vulnerable source file, a test, and ignorable noise."""
    root = tmp_path / "project"
    (root / "src" / "services").mkdir(parents=True)
    (root / "tests").mkdir()
    (root / "node_modules" / "jsonwebtoken").mkdir(parents=True)
    (root / ".git").mkdir()

    (root / "src" / "services" / "authService.ts").write_text(AUTH_SERVICE)
    (root / "tests" / "auth.test.ts").write_text("import { signToken } from '../src/services/authService';\n")
    (root / "node_modules" / "jsonwebtoken" / "index.js").write_text("module.exports = {};\n")
    (root / ".git" / "HEAD").write_text("ref: refs/heads/main\n")
    (root / ".env").write_text("JWT_SECRET=abc\n")
    (root / "package.json").write_text('{"name": "victim-app"}\n')
    return root


@pytest.fixture
def memory_root(tmp_path) -> Path:
    root = tmp_path / "memory"
    root.mkdir()
    return root


@pytest.fixture
def sandbox(project, memory_root) -> SandboxConfig:
    return SandboxConfig(project_root=str(project), memory_root=str(memory_root))


@pytest.fixture
def state_dir(tmp_path) -> Path:
    return tmp_path / "state"


@pytest.fixture
def make_components(sandbox, state_dir):
    """Factory for a wired component set with overridable collaborators."""

    def factory(auditor=None, linter=None, knowledge=None, config=None, default_evidence="hardcoded JWT secret"):
        return build_components(
            sandbox,
            state_dir,
            auditor or StaticAuditor(),
            linter=linter,
            knowledge=knowledge,
            config=config or KernelConfig(),
            default_evidence=default_evidence,
        )

    return factory
