"""Test framework discovery for a cloned workspace.

Looks at config files, dependency manifests and test-file naming to decide
which command runs the repository's tests.

Supported: pytest, unittest, jest, vitest, and a generic ``npm test``
script when package.json defines one that is not the npm placeholder.
"""

from __future__ import annotations

import json
import logging
import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable

logger = logging.getLogger(__name__)

_SKIP_DIRS = {
    "node_modules", "__pycache__", ".git", ".venv", "venv", "env",
    ".tox", ".mypy_cache", ".pytest_cache", "dist", "build", ".next",
    "coverage", "vendor", "target",
}

_CONFIG_NAMES = {
    "package.json", "pyproject.toml", "requirements.txt", "setup.cfg",
    "pytest.ini", "tox.ini", "conftest.py",
    "jest.config.js", "jest.config.ts", "jest.config.mjs", "jest.config.cjs",
    "vitest.config.js", "vitest.config.ts", "vitest.config.mts",
    "vite.config.ts", "vite.config.js",
}

_JS_SUFFIXES = {".js", ".jsx", ".ts", ".tsx", ".mjs", ".cjs"}

# npm init writes this when no test script is configured
_NPM_PLACEHOLDER = "no test specified"

_MIN_CONFIDENCE = 0.3


@dataclass
class FrameworkMatch:
    framework: str
    command: str
    confidence: float
    evidence: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "framework": self.framework,
            "command": self.command,
            "confidence": round(self.confidence, 2),
            "evidence": self.evidence,
        }


@dataclass
class DiscoveryResult:
    frameworks: list[FrameworkMatch]
    python_files: list[Path] = field(default_factory=list)

    @property
    def commands(self) -> list[str]:
        return [f.command for f in self.frameworks]

    @property
    def primary(self) -> FrameworkMatch | None:
        return self.frameworks[0] if self.frameworks else None

    def to_dict(self) -> dict[str, Any]:
        return {
            "commands": self.commands,
            "frameworks": [f.to_dict() for f in self.frameworks],
        }


@dataclass
class _RepoFacts:
    """Everything the detectors need, collected in one walk."""

    root: Path
    py_files: list[Path]
    js_files: list[Path]
    configs: dict[str, Path]
    package_json: dict[str, Any]
    pyproject: str
    requirements: str

    @property
    def js_deps(self) -> dict[str, Any]:
        return {
            **(self.package_json.get("dependencies") or {}),
            **(self.package_json.get("devDependencies") or {}),
        }

    @property
    def test_script(self) -> str:
        return str((self.package_json.get("scripts") or {}).get("test") or "")


def _read_text(path: Path | None) -> str:
    if path is None or not path.is_file():
        return ""
    try:
        return path.read_text(encoding="utf-8", errors="replace")
    except OSError:
        return ""


def _collect_facts(root: Path) -> _RepoFacts:
    py_files: list[Path] = []
    js_files: list[Path] = []
    configs: dict[str, Path] = {}

    for dirpath, dirnames, filenames in os.walk(root):
        dirnames[:] = sorted(
            d for d in dirnames if d not in _SKIP_DIRS and not d.startswith(".")
        )
        for name in sorted(filenames):
            path = Path(dirpath) / name
            if path.suffix == ".py":
                py_files.append(path)
            elif path.suffix in _JS_SUFFIXES:
                js_files.append(path)
            if name in _CONFIG_NAMES:
                # shallowest wins: os.walk is top-down
                configs.setdefault(name, path)

    package_json: dict[str, Any] = {}
    raw_pkg = _read_text(root / "package.json")
    if raw_pkg:
        try:
            loaded = json.loads(raw_pkg)
            if isinstance(loaded, dict):
                package_json = loaded
        except json.JSONDecodeError:
            logger.warning("[Discovery] package.json is not valid JSON")

    return _RepoFacts(
        root=root,
        py_files=py_files,
        js_files=js_files,
        configs=configs,
        package_json=package_json,
        pyproject=_read_text(configs.get("pyproject.toml")),
        requirements=_read_text(configs.get("requirements.txt")),
    )


def _is_py_test_file(path: Path) -> bool:
    return path.name.startswith("test_") or path.name.endswith("_test.py")


def _is_js_test_file(path: Path) -> bool:
    return ".test." in path.name or ".spec." in path.name


# ── Detectors ────────────────────────────────────────────────────────

def _detect_pytest(facts: _RepoFacts) -> FrameworkMatch | None:
    evidence: list[str] = []
    score = 0.0

    if "conftest.py" in facts.configs:
        evidence.append("conftest.py")
        score += 0.4
    if "pytest.ini" in facts.configs:
        evidence.append("pytest.ini")
        score += 0.3
    if "[tool.pytest" in facts.pyproject:
        evidence.append("[tool.pytest] in pyproject.toml")
        score += 0.3
    elif "pytest" in facts.pyproject:
        evidence.append("pytest referenced in pyproject.toml")
        score += 0.2
    if "[tool:pytest]" in _read_text(facts.configs.get("setup.cfg")):
        evidence.append("[tool:pytest] in setup.cfg")
        score += 0.3
    if re.search(r"(?mi)^pytest\b", facts.requirements):
        evidence.append("pytest in requirements.txt")
        score += 0.3

    test_files = [p for p in facts.py_files if _is_py_test_file(p)]
    if test_files:
        evidence.append(f"{len(test_files)} python test file(s)")
        score += 0.3
    if (facts.root / "tests").is_dir() or (facts.root / "test").is_dir():
        evidence.append("tests/ directory")
        score += 0.1

    if score < _MIN_CONFIDENCE:
        return None
    return FrameworkMatch("pytest", "python -m pytest -q --tb=short", min(score, 1.0), evidence)


def _detect_unittest(facts: _RepoFacts) -> FrameworkMatch | None:
    users = []
    for path in facts.py_files:
        if not _is_py_test_file(path):
            continue
        if re.search(r"(?m)^\s*(import unittest|from unittest)", _read_text(path)):
            users.append(path)
    if not users:
        return None

    evidence = [f"{len(users)} file(s) import unittest"]
    score = 0.3 + min(len(users) * 0.1, 0.3)
    if not ({"conftest.py", "pytest.ini"} & facts.configs.keys()) and "[tool.pytest" not in facts.pyproject:
        evidence.append("no pytest configuration")
        score += 0.2

    start_dir = "tests" if (facts.root / "tests").is_dir() else "."
    return FrameworkMatch(
        "unittest",
        f"python -m unittest discover -s {start_dir} -v",
        min(score, 1.0),
        evidence,
    )


def _detect_jest(facts: _RepoFacts) -> FrameworkMatch | None:
    evidence: list[str] = []
    score = 0.0

    configs = sorted(k for k in facts.configs if k.startswith("jest.config"))
    if configs:
        evidence.append(configs[0])
        score += 0.5
    deps = facts.js_deps
    if "jest" in deps:
        evidence.append("jest dependency")
        score += 0.4
    if "ts-jest" in deps or "@jest/core" in deps:
        evidence.append("ts-jest/@jest/core dependency")
        score += 0.2
    uses_script = "jest" in facts.test_script.lower()
    if uses_script:
        evidence.append(f"scripts.test = {facts.test_script!r}")
        score += 0.3
    if "jest" in facts.package_json:
        evidence.append("inline jest config")
        score += 0.3
    if any(_is_js_test_file(p) for p in facts.js_files):
        evidence.append("*.test/*.spec files")
        score += 0.15
    if (facts.root / "__tests__").is_dir():
        evidence.append("__tests__/ directory")
        score += 0.1

    if score < _MIN_CONFIDENCE:
        return None
    command = "npm test" if uses_script else "npx jest --ci"
    return FrameworkMatch("jest", command, min(score, 1.0), evidence)


def _detect_vitest(facts: _RepoFacts) -> FrameworkMatch | None:
    evidence: list[str] = []
    score = 0.0

    configs = sorted(k for k in facts.configs if k.startswith("vitest.config"))
    if configs:
        evidence.append(configs[0])
        score += 0.5
    for name in ("vite.config.ts", "vite.config.js"):
        if "vitest" in _read_text(facts.configs.get(name)).lower():
            evidence.append(f"vitest referenced in {name}")
            score += 0.4
    if "vitest" in facts.js_deps:
        evidence.append("vitest dependency")
        score += 0.5
    uses_script = "vitest" in facts.test_script.lower()
    if uses_script:
        evidence.append(f"scripts.test = {facts.test_script!r}")
        score += 0.3

    if score < _MIN_CONFIDENCE:
        return None
    command = "npm test" if uses_script else "npx vitest run"
    return FrameworkMatch("vitest", command, min(score, 1.0), evidence)


def _detect_npm_script(facts: _RepoFacts) -> FrameworkMatch | None:
    script = facts.test_script
    if not script or _NPM_PLACEHOLDER in script:
        return None
    # low confidence: only wins when no specific runner was recognised
    return FrameworkMatch("npm", "npm test", 0.3, [f"scripts.test = {script!r}"])


_DETECTORS: list[Callable[[_RepoFacts], FrameworkMatch | None]] = [
    _detect_pytest,
    _detect_unittest,
    _detect_jest,
    _detect_vitest,
    _detect_npm_script,
]


def discover_test_commands(workspace: str | Path) -> DiscoveryResult:
    """Return detected frameworks, most confident first, one per command."""
    root = Path(workspace).resolve()
    if not root.is_dir():
        logger.warning("[Discovery] Workspace does not exist: %s", root)
        return DiscoveryResult(frameworks=[])

    facts = _collect_facts(root)
    matches = [m for m in (detect(facts) for detect in _DETECTORS) if m is not None]
    matches.sort(key=lambda m: -m.confidence)

    seen: set[str] = set()
    unique: list[FrameworkMatch] = []
    for match in matches:
        if match.command in seen:
            continue
        seen.add(match.command)
        unique.append(match)

    logger.info(
        "[Discovery] %d framework(s) in %s: %s",
        len(unique), root, [m.framework for m in unique],
    )
    return DiscoveryResult(frameworks=unique, python_files=facts.py_files)
