"""Coding engine contract shared by every variant."""

from __future__ import annotations

from collections.abc import Sequence
from pathlib import Path
from typing import Protocol

from coding_engines.cancellation import CancellationToken
from coding_engines.errors import EngineError
from coding_engines.models import ChangesSummary
from coding_engines.result import Result


class CodingEngine(Protocol):
    """Turn a natural-language instruction plus a checkout into file changes."""

    def get_name(self) -> str:
        """Human-readable engine name."""

    def get_supported_models(self) -> list[str]:
        """Models the engine can run; may query the backend."""

    def apply_changes(
        self,
        instruction: str,
        repo_path: Path,
        context_files: Sequence[Path] | None = None,
        cancellation_token: CancellationToken | None = None,
    ) -> Result[ChangesSummary, EngineError]:
        """Run one instruction; failures come back as ``Result.failure``."""
