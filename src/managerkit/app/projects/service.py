"""Project type detection and configuration suggestions."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List

from managerkit.resources import load_project_types

UNKNOWN = "unknown"
FALLBACK_TYPE = "web"

_PYTHON_MARKERS = ("pyproject.toml", "setup.py", "setup.cfg", "requirements.txt")
_CI_MARKERS = (".github/workflows", ".gitlab-ci.yml", "Jenkinsfile", ".circleci")


class ProjectScanError(RuntimeError):
    """Raised when a project directory cannot be scanned."""


@dataclass
class ScanResult:
    path: Path
    project_type: str
    language: str
    config: Dict[str, Any]
    markers: List[str] = field(default_factory=list)
    suggestions: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "path": str(self.path),
            "type": self.project_type,
            "language": self.language,
            "config": {
                "name": self.config.get("name"),
                "features": sorted(key for key, value in self.config.get("features", {}).items() if value),
                "tools": self.config.get("tools", {}),
            },
            "markers": list(self.markers),
            "suggestions": list(self.suggestions),
        }


def _read_package_json(root: Path) -> Dict[str, Any] | None:
    path = root / "package.json"
    if not path.is_file():
        return None
    try:
        payload = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError):
        return None
    return payload if isinstance(payload, dict) else None


def detect_project_type(path: Path) -> str:
    """Guess the project type from marker files in ``path``."""

    package = _read_package_json(path)
    if package is not None:
        dependencies = package.get("dependencies") or {}
        if "react-native" in dependencies:
            return "mobile"
        if "electron" in dependencies:
            return "desktop"
        if "express" in dependencies:
            return "api"
        if "react" in dependencies:
            return "web"
        if package.get("main") and not package.get("dependencies"):
            return "library"
    if (path / "requirements.txt").is_file():
        return "ai-ml"
    if (path / "Assets").is_dir():
        return "game"
    if (path / "contracts").is_dir():
        return "blockchain"
    if (path / "pyproject.toml").is_file():
        return "library"
    return UNKNOWN


def detect_language(path: Path) -> str:
    if any((path / marker).exists() for marker in _PYTHON_MARKERS):
        return "python"
    if (path / "package.json").is_file():
        return "javascript"
    if (path / "Assets").is_dir():
        return "csharp"
    if (path / "contracts").is_dir():
        return "solidity"
    return UNKNOWN


def default_config(project_type: str) -> Dict[str, Any]:
    """Default tool configuration for ``project_type``; unknown types fall back to web."""

    types = load_project_types()
    config = types.get(project_type) or types[FALLBACK_TYPE]
    config["type"] = project_type if project_type in types else FALLBACK_TYPE
    return config


def _suggestions(root: Path, project_type: str, language: str) -> List[str]:
    notes: List[str] = []
    if not any(root.glob("README*")):
        notes.append("Add a README describing how to build and run the project")
    if not (root / ".gitignore").is_file():
        notes.append("Add a .gitignore to keep build artefacts out of version control")
    if not (root / ".git").exists():
        notes.append("Initialise a git repository")
    if not any((root / name).is_dir() for name in ("tests", "test", "__tests__", "spec")):
        notes.append("Create a tests directory and add automated tests")
    if not any((root / marker).exists() for marker in _CI_MARKERS):
        notes.append("Configure continuous integration")
    if not any(root.glob("LICENSE*")):
        notes.append("Add a LICENSE file")
    if language == "javascript" and not any(
        (root / lock).is_file() for lock in ("package-lock.json", "yarn.lock", "pnpm-lock.yaml")
    ):
        notes.append("Commit a lockfile for reproducible installs")
    if language == "python" and project_type == "ai-ml" and not (root / "pyproject.toml").is_file():
        notes.append("Describe the project in pyproject.toml instead of requirements.txt alone")
    if project_type == UNKNOWN:
        notes.append("Project type could not be detected; web defaults were applied")
    return notes


def scan(path: Path) -> ScanResult:
    root = path.expanduser()
    if not root.exists():
        raise ProjectScanError(f"project path not found: {root}")
    if not root.is_dir():
        raise ProjectScanError(f"project path is not a directory: {root}")
    project_type = detect_project_type(root)
    language = detect_language(root)
    markers = sorted(
        name
        for name in ("package.json", "requirements.txt", "pyproject.toml", "setup.py", "Assets", "contracts", ".git")
        if (root / name).exists()
    )
    return ScanResult(
        path=root.resolve(),
        project_type=project_type,
        language=language,
        config=default_config(project_type),
        markers=markers,
        suggestions=_suggestions(root, project_type, language),
    )


__all__ = [
    "ProjectScanError",
    "ScanResult",
    "default_config",
    "detect_language",
    "detect_project_type",
    "scan",
]
