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

"""Git helpers used by reconciliation.

All helpers return ``None`` when git is unavailable, the directory is not a
repository, or the command fails; callers fall back to a filesystem listing.
Paths are returned as POSIX paths relative to the repository root.
"""

import asyncio
import logging
import subprocess
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional, Tuple

logger = logging.getLogger(__name__)

_GIT_TIMEOUT_SECONDS = 30


@dataclass
class GitChanges:
    """Name-level changes reported by git."""

    added: List[str] = field(default_factory=list)
    modified: List[str] = field(default_factory=list)
    deleted: List[str] = field(default_factory=list)
    renamed: List[Tuple[str, str]] = field(default_factory=list)  # (old, new)

    def all_paths(self) -> List[str]:
        """Every path touched, renames contributing both sides."""
        paths = list(self.added) + list(self.modified) + list(self.deleted)
        for old, new in self.renamed:
            paths.extend([old, new])
        return paths

    def is_empty(self) -> bool:
        return not (self.added or self.modified or self.deleted or self.renamed)


def _run_git(repo_root: Path, args: List[str]) -> Optional[str]:
    try:
        result = subprocess.run(
            ["git", *args],
            cwd=repo_root,
            capture_output=True,
            text=True,
            timeout=_GIT_TIMEOUT_SECONDS,
            check=False,
        )
    except (FileNotFoundError, NotADirectoryError, subprocess.TimeoutExpired) as e:
        logger.debug(f"git {' '.join(args)} unavailable: {e}")
        return None
    if result.returncode != 0:
        logger.debug(f"git {' '.join(args)} failed (rc={result.returncode}): {result.stderr.strip()}")
        return None
    return result.stdout


_C_ESCAPES = {
    "a": 0x07,
    "b": 0x08,
    "t": 0x09,
    "n": 0x0A,
    "v": 0x0B,
    "f": 0x0C,
    "r": 0x0D,
    '"': 0x22,
    "\\": 0x5C,
}


def _unquote(body: str) -> str:
    """Decode a C-style quoted path as emitted by git (``core.quotePath``)."""
    out = bytearray()
    i = 0
    while i < len(body):
        ch = body[i]
        if ch != "\\" or i + 1 >= len(body):
            out.extend(ch.encode("utf-8", "surrogateescape"))
            i += 1
            continue
        nxt = body[i + 1]
        octal = body[i + 1 : i + 4]
        if len(octal) == 3 and all(c in "01234567" for c in octal):
            out.append(int(octal, 8) & 0xFF)
            i += 4
        elif nxt in _C_ESCAPES:
            out.append(_C_ESCAPES[nxt])
            i += 2
        else:
            out.extend(nxt.encode("utf-8", "surrogateescape"))
            i += 2
    return out.decode("utf-8", "surrogateescape")


def _normalize(path: str) -> str:
    path = path.strip()
    # git quotes paths with unusual characters
    if len(path) >= 2 and path.startswith('"') and path.endswith('"'):
        return _unquote(path[1:-1])
    return path.replace("\\", "/")


def parse_name_status(output: str) -> GitChanges:
    """Parse ``git diff --name-status`` output."""
    changes = GitChanges()
    for line in output.splitlines():
        parts = line.split("\t")
        if len(parts) < 2:
            continue
        status = parts[0].strip()
        code = status[:1]
        if code in ("R", "C") and len(parts) >= 3:
            old, new = _normalize(parts[1]), _normalize(parts[2])
            if code == "R":
                changes.renamed.append((old, new))
            else:
                changes.added.append(new)
        elif code == "A":
            changes.added.append(_normalize(parts[1]))
        elif code == "D":
            changes.deleted.append(_normalize(parts[1]))
        else:
            changes.modified.append(_normalize(parts[1]))
    return changes


def parse_porcelain_status(output: str) -> GitChanges:
    """Parse ``git status --porcelain`` (v1) output."""
    changes = GitChanges()
    for line in output.splitlines():
        if len(line) < 4:
            continue
        index_status, worktree_status = line[0], line[1]
        body = line[3:]
        codes = {index_status, worktree_status}
        if "R" in codes and " -> " in body:
            old, new = body.split(" -> ", 1)
            changes.renamed.append((_normalize(old), _normalize(new)))
        elif "?" in codes or "A" in codes:
            changes.added.append(_normalize(body))
        elif "D" in codes:
            changes.deleted.append(_normalize(body))
        else:
            changes.modified.append(_normalize(body))
    return changes


def _strip_prefix(changes: GitChanges, prefix: str) -> GitChanges:
    """Make repository-root relative paths relative to a subdirectory."""
    if not prefix:
        return changes

    def strip(path: str) -> str:
        return path[len(prefix) :] if path.startswith(prefix) else path

    return GitChanges(
        added=[strip(p) for p in changes.added],
        modified=[strip(p) for p in changes.modified],
        deleted=[strip(p) for p in changes.deleted],
        renamed=[(strip(old), strip(new)) for old, new in changes.renamed],
    )


class GitClient:
    """Async facade over the git CLI; each call runs in a worker thread."""

    async def get_current_sha(self, repo_root: Path) -> Optional[str]:
        output = await asyncio.to_thread(_run_git, repo_root, ["rev-parse", "HEAD"])
        if output is None:
            return None
        sha = output.strip()
        return sha or None

    async def get_diff_names(self, repo_root: Path, since_sha: str) -> Optional[GitChanges]:
        """Committed changes between ``since_sha`` and HEAD."""
        output = await asyncio.to_thread(
            _run_git, repo_root, ["diff", "--relative", "--name-status", "-M", since_sha, "HEAD", "--"]
        )
        if output is None:
            return None
        return parse_name_status(output)

    async def get_status_changes(self, repo_root: Path) -> Optional[GitChanges]:
        """Uncommitted working-tree and index changes under ``repo_root``."""
        prefix = await asyncio.to_thread(_run_git, repo_root, ["rev-parse", "--show-prefix"])
        if prefix is None:
            return None
        output = await asyncio.to_thread(
            _run_git, repo_root, ["status", "--porcelain", "--untracked-files=all", "--", "."]
        )
        if output is None:
            return None
        return _strip_prefix(parse_porcelain_status(output), prefix.strip())
