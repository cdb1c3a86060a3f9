"""Warning registry: dismissable, non-fatal notices attached to runs."""

from __future__ import annotations

from typing import Any, Dict, Iterable, List, Optional

from pydantic import ConfigDict, Field

from ..core.models.base import BaseSchema
from ..core.models.domain import RunWarning


class WarningRegistry(BaseSchema):
    model_config = ConfigDict(populate_by_name=True, extra="forbid", frozen=True)

    warnings: List[RunWarning] = Field(default_factory=list)

    def __len__(self) -> int:
        return len(self.warnings)

    def add(
        self, type: str, message: str, *, run_id: Optional[str] = None, data: Optional[Dict[str, Any]] = None
    ) -> "WarningRegistry":
        warning = RunWarning(run_id=run_id, type=type, message=message, data=data)
        return WarningRegistry(warnings=[*self.warnings, warning])

    def dismiss(self, warning_id: str) -> "WarningRegistry":
        return WarningRegistry(warnings=[w for w in self.warnings if w.id != warning_id])

    def for_run(self, run_id: str) -> List[RunWarning]:
        return [w for w in self.warnings if w.run_id == run_id]

    def drop_runs(self, run_ids: Iterable[str]) -> "WarningRegistry":
        dropped = set(run_ids)
        return WarningRegistry(warnings=[w for w in self.warnings if w.run_id not in dropped])

    def clear(self) -> "WarningRegistry":
        return WarningRegistry()
