"""
Project name handling.

Project names drift over time (``floatctl`` vs ``floatctl-rs`` vs
``float/floatctl``). Matching is generous and normalization gentle:
unknown names pass through untouched.
"""

from typing import Iterable, Optional

from .config import ProjectConfig


class ProjectRegistry:
    """Known projects and their aliases."""

    def __init__(self, projects: Optional[Iterable[ProjectConfig]] = None):
        self._projects = list(projects or [])

    def _variants(self, config: ProjectConfig) -> list[str]:
        return [v.lower() for v in [config.canonical, *config.aliases]]

    def get(self, project: str) -> Optional[ProjectConfig]:
        """Get project config by canonical name or exact alias."""
        wanted = project.lower().strip()
        for config in self._projects:
            if wanted in self._variants(config):
                return config
        return None

    def is_known(self, project: str) -> bool:
        return self.get(project) is not None

    def normalize(self, raw: str) -> str:
        """Canonical form of ``raw``, or ``raw`` itself when unknown."""
        config = self.get(raw)
        return config.canonical if config else raw

    def expand(self, project: str) -> list[str]:
        """
        Expand a project name to all known aliases for fuzzy queries.

        A config matches when any variant contains the name or the name
        contains the variant. Example: "floatctl" -> ["floatctl-rs",
        "floatctl", "float/floatctl"].
        """
        wanted = project.lower()
        for config in self._projects:
            if any(v in wanted or wanted in v for v in self._variants(config)):
                return [config.canonical, *config.aliases]
        return [project]
