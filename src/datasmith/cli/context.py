from __future__ import annotations

from dataclasses import dataclass

from rich.console import Console

from datasmith.application.services.project_service import ProjectService
from datasmith.application.services.runtime import Runtime, build_runtime
from datasmith.core.config import AppPaths


@dataclass(slots=True)
class CLIContext:
    paths: AppPaths
    console: Console

    def runtime(self) -> Runtime:
        """Build the job runtime for an initialized project."""
        ProjectService(self.paths).require_initialized()
        return build_runtime(self.paths)
