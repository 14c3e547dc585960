# Copyright 2025 Vijaykumar Singh <singhvjd@gmail.com>
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

"""Shared ignore patterns and path filtering logic for the workspace watcher.

This module centralizes the logic for determining which files are relevant to
the knowledge graph, so that raw filesystem events and reconciliation listings
apply exactly the same rules.

Design Principles:
- Hidden directories (starting with '.') are excluded by convention
- Non-hidden skip directories are explicitly listed
- Custom exclude globs (gitignore syntax) can be added per-workspace
- Only files matching the include patterns are considered at all
"""

import fnmatch
import os
from pathlib import Path, PurePosixPath
from typing import Iterable, Iterator, List, Optional, Set

import pathspec

# Default directories to skip (non-hidden only)
# Hidden directories (starting with '.') are excluded automatically by should_ignore_path()
DEFAULT_SKIP_DIRS: Set[str] = {
    # Python
    "__pycache__",
    "venv",
    "env",
    # Node.js
    "node_modules",
    # Build outputs
    "build",
    "dist",
    "target",
    "out",
    "egg-info",
    # Coverage
    "coverage",
    "htmlcov",
    # Third party / vendor
    "vendor",
    "third_party",
}

# Internal state directories that must never feed back into the watcher
DEFAULT_EXCLUDES: List[str] = [
    ".librarian/",
    ".git/",
    "node_modules/",
    "*.tmp",
    "*.swp",
    "*~",
]

# All source file patterns the knowledge graph understands
DEFAULT_INCLUDE_PATTERNS: List[str] = [
    "*.py",
    "*.pyw",  # Python
    "*.js",
    "*.jsx",
    "*.mjs",
    "*.cjs",  # JavaScript
    "*.ts",
    "*.tsx",  # TypeScript
    "*.go",  # Go
    "*.rs",  # Rust
    "*.java",
    "*.kt",
    "*.scala",  # JVM
    "*.rb",  # Ruby
    "*.php",  # PHP
    "*.cs",  # C#
    "*.cpp",
    "*.cc",
    "*.c",
    "*.h",
    "*.hpp",  # C/C++
    "*.swift",  # Swift
    "*.dart",  # Dart
    "*.json",
    "*.yaml",
    "*.yml",
    "*.toml",
]


def is_hidden_path(path: Path) -> bool:
    """Check if any directory component of the path is hidden.

    Hidden directories follow Unix convention: they start with '.'
    Excludes '.' and '..' which are special directory entries.

    Args:
        path: Path to check (relative to the workspace root)

    Returns:
        True if path contains any hidden directory components
    """
    for part in path.parts[:-1]:
        if part.startswith(".") and part not in (".", ".."):
            return True
    return False


def should_ignore_path(
    path: Path,
    skip_dirs: Optional[Set[str]] = None,
    extra_skip_dirs: Optional[Iterable[str]] = None,
) -> bool:
    """Check if a path lives under an ignored directory.

    Args:
        path: Path to check (relative to the workspace root)
        skip_dirs: Set of directory names to skip. Defaults to DEFAULT_SKIP_DIRS.
        extra_skip_dirs: Additional directory names to skip (merged with skip_dirs).

    Returns:
        True if the path should be ignored

    Example:
        >>> from pathlib import Path
        >>> should_ignore_path(Path("src/main.py"))
        False
        >>> should_ignore_path(Path(".git/config"))
        True
        >>> should_ignore_path(Path("node_modules/lodash/index.js"))
        True
    """
    if is_hidden_path(path):
        return True

    effective_skip_dirs = skip_dirs if skip_dirs is not None else DEFAULT_SKIP_DIRS
    if extra_skip_dirs:
        effective_skip_dirs = effective_skip_dirs | set(extra_skip_dirs)

    return any(part in effective_skip_dirs for part in path.parts[:-1])


def build_exclude_spec(patterns: Iterable[str]) -> pathspec.PathSpec:
    """Compile exclude globs using gitignore semantics."""
    return pathspec.GitIgnoreSpec.from_lines(list(patterns))


def to_relative_posix(root: Path, path: str) -> Optional[str]:
    """Normalize a path to a POSIX path relative to ``root``.

    Returns None when the path escapes the root.
    """
    candidate = Path(path)
    if candidate.is_absolute():
        try:
            candidate = candidate.relative_to(root)
        except ValueError:
            return None
    normalized = PurePosixPath(os.path.normpath(candidate.as_posix()).replace("\\", "/"))
    if normalized.parts and normalized.parts[0] == "..":
        return None
    return normalized.as_posix()


class PathFilter:
    """Decides whether a workspace-relative path is relevant to the index."""

    def __init__(
        self,
        excludes: Optional[Iterable[str]] = None,
        include_patterns: Optional[Iterable[str]] = None,
        extra_skip_dirs: Optional[Iterable[str]] = None,
    ):
        self.excludes = list(excludes) if excludes is not None else list(DEFAULT_EXCLUDES)
        self.include_patterns = (
            list(include_patterns) if include_patterns is not None else list(DEFAULT_INCLUDE_PATTERNS)
        )
        self._skip_dirs = DEFAULT_SKIP_DIRS | set(extra_skip_dirs or ())
        self._exclude_spec = build_exclude_spec(self.excludes)

    def is_excluded(self, rel_path: str) -> bool:
        """True if an exclude glob or skip-dir rule matches the path."""
        if self._exclude_spec.match_file(rel_path):
            return True
        return should_ignore_path(Path(rel_path), skip_dirs=self._skip_dirs)

    def is_included(self, rel_path: str) -> bool:
        if not self.include_patterns:
            return True
        name = PurePosixPath(rel_path).name
        return any(fnmatch.fnmatch(name, pattern) for pattern in self.include_patterns)

    def accepts(self, rel_path: str) -> bool:
        """True if the path should be watched and indexed."""
        if not rel_path or rel_path == ".":
            return False
        return self.is_included(rel_path) and not self.is_excluded(rel_path)

    def walk(self, root: Path) -> Iterator[str]:
        """Yield every accepted file under ``root`` as a relative POSIX path."""
        for dirpath, dirnames, filenames in os.walk(root):
            rel_dir = Path(dirpath).relative_to(root)
            # Prune ignored directories in place so os.walk skips them
            dirnames[:] = sorted(
                d
                for d in dirnames
                if not d.startswith(".")
                and d not in self._skip_dirs
                and not self._exclude_spec.match_file((rel_dir / d).as_posix() + "/")
            )
            for filename in sorted(filenames):
                rel_path = (rel_dir / filename).as_posix()
                if self.accepts(rel_path):
                    yield rel_path
