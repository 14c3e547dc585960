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

"""Watcher configuration.

All timing values are milliseconds. Option names are accepted either in
snake_case or in the camelCase spelling used by the Librarian CLI and its
config files (``debounceMs``, ``batchWindowMs``, ...).
"""

import logging
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Union

import yaml
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from librarian_watch.ignore_patterns import DEFAULT_EXCLUDES, DEFAULT_INCLUDE_PATTERNS

logger = logging.getLogger(__name__)

DEPENDENCY_EDGE_TYPE = "imports"


class WatchConfig(BaseModel):
    """Configuration for a workspace watcher."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")

    # Event coalescing
    debounce_ms: int = Field(
        default=200, ge=0, description="Quiet time a path needs before it is batched"
    )
    batch_window_ms: int = Field(
        default=1000,
        ge=0,
        description="Upper bound on how long a batch stays open (not an idle timeout)",
    )
    storm_threshold: int = Field(
        default=200,
        gt=0,
        description="Raw events per batch epoch above which the batch is discarded",
    )

    # Dependency cascade
    cascade_reindex: bool = Field(
        default=False, description="Reindex dependents of changed files in secondary waves"
    )
    cascade_delay_ms: int = Field(
        default=2000, ge=0, description="Delay before each cascade wave is reindexed"
    )
    cascade_batch_size: int = Field(
        default=50, gt=0, description="Maximum number of paths per cascade wave"
    )
    dependency_edge_type: str = Field(
        default=DEPENDENCY_EDGE_TYPE, description="Graph edge type followed by the cascade"
    )

    # Path selection
    excludes: List[str] = Field(
        default_factory=lambda: list(DEFAULT_EXCLUDES),
        description="Gitignore-style globs excluded from watching",
    )
    include_patterns: List[str] = Field(
        default_factory=lambda: list(DEFAULT_INCLUDE_PATTERNS),
        description="Filename globs of files the index understands",
    )
    recursive: bool = Field(default=True, description="Watch subdirectories")

    # Health
    heartbeat_interval_ms: int = Field(
        default=30_000, gt=0, description="Interval between watch state heartbeats"
    )

    @classmethod
    def from_mapping(cls, data: Optional[Mapping[str, Any]] = None, **overrides: Any) -> "WatchConfig":
        """Build a config from a mapping, with keyword overrides applied last."""
        aliases = {f.alias: name for name, f in cls.model_fields.items() if f.alias}
        merged: Dict[str, Any] = {aliases.get(k, k): v for k, v in (data or {}).items()}
        merged.update({k: v for k, v in overrides.items() if v is not None})
        return cls.model_validate(merged)

    @classmethod
    def from_yaml(cls, path: Union[str, Path], **overrides: Any) -> "WatchConfig":
        """Load a config from a YAML file.

        The options may sit at the top level or under a ``watch:`` key:

        ```yaml
        watch:
          debounceMs: 250
          cascadeReindex: true
          excludes:
            - "generated/**"
        ```

        A missing file yields the defaults.
        """
        path = Path(path)
        if not path.exists():
            logger.debug(f"No watch config at {path}, using defaults")
            return cls.from_mapping(None, **overrides)

        with open(path, encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
        if not isinstance(data, dict):
            raise ValueError(f"Watch config {path} must contain a mapping")
        section = data.get("watch", data)
        if not isinstance(section, dict):
            raise ValueError(f"'watch' section in {path} must be a mapping")
        return cls.from_mapping(section, **overrides)

    def effective_config(self) -> Dict[str, Any]:
        """JSON snapshot persisted in the watch state document."""
        return self.model_dump(mode="json", by_alias=True)
