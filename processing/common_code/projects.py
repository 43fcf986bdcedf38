"""
Project-Set Resolver
====================

Expands include/exclude project identifier lists into the closed set of
project ids to export, following the projects.parent_id hierarchy.
"""

import logging
import re
from dataclasses import dataclass
from typing import Any, Dict, FrozenSet, Iterable, List, Optional, Set, Union

import pandas as pd

from .utils import parse_int

logger = logging.getLogger(__name__)

# Sentinel id meaning "no project filter"
ALL_PROJECTS = 0

DESCENDANTS = "descendants"
BOTH = "both"


@dataclass(frozen=True)
class ProjectSet:
    """Effective project selection for a run."""
    ids: FrozenSet[int]
    excluded: FrozenSet[int] = frozenset()

    @property
    def all_projects(self) -> bool:
        return ALL_PROJECTS in self.ids

    @property
    def project_ids(self) -> List[int]:
        return sorted(i for i in self.ids if i != ALL_PROJECTS)

    @property
    def is_empty(self) -> bool:
        return not self.all_projects and not self.project_ids

    def contains(self, project_id: int) -> bool:
        if self.all_projects:
            return project_id not in self.excluded
        return project_id in self.ids


def parse_names(names: Union[None, str, Iterable[str]]) -> List[str]:
    """Split a comma/space separated identifier list."""
    if names is None:
        return []
    if isinstance(names, str):
        names = re.split(r"[,\s]+", names)
    return [n.strip() for n in names if n and n.strip()]


class ProjectSetResolver:
    """
    Resolves identifier lists against the project directory.

    The closure repeatedly adds the children of every id already in the set
    until nothing new is added, so the default follows sub-project recursion
    only. With direction="both" parents are added too, which closes over the
    whole connected project tree.
    """

    def __init__(self, projects: Union[pd.DataFrame, List[Dict[str, Any]]], direction: str = DESCENDANTS):
        if direction not in (DESCENDANTS, BOTH):
            raise ValueError(f"Unknown closure direction: {direction}")
        self.direction = direction

        records = projects.to_dict("records") if isinstance(projects, pd.DataFrame) else list(projects)

        self.by_identifier: Dict[str, int] = {}
        self.parent_of: Dict[int, Optional[int]] = {}
        self.children_of: Dict[int, Set[int]] = {}

        for row in records:
            pid = int(row["id"])
            parent = parse_int(row.get("parent_id"))
            self.by_identifier[str(row["identifier"])] = pid
            self.parent_of[pid] = parent
            if parent is not None:
                self.children_of.setdefault(parent, set()).add(pid)

    def match(self, names: Union[None, str, Iterable[str]]) -> Set[int]:
        """Ids of projects whose identifier is in `names`. Unknown names are ignored."""
        ids = set()
        for name in parse_names(names):
            pid = self.by_identifier.get(name)
            if pid is None:
                logger.warning(f"Project identifier not found: {name}")
                continue
            ids.add(pid)
        return ids

    def expand(self, ids: Iterable[int]) -> FrozenSet[int]:
        """Close `ids` over the hierarchy until a fixed point is reached."""
        result = set(ids)
        while True:
            added = set()
            for pid in result:
                added |= self.children_of.get(pid, set())
                if self.direction == BOTH:
                    parent = self.parent_of.get(pid)
                    if parent is not None:
                        added.add(parent)
            added -= result
            if not added:
                return frozenset(result)
            result |= added

    def closure(self, names: Union[None, str, Iterable[str]]) -> FrozenSet[int]:
        return self.expand(self.match(names))

    def resolve(
        self,
        include: Union[None, str, Iterable[str]] = None,
        exclude: Union[None, str, Iterable[str]] = None
    ) -> ProjectSet:
        """
        Compute the effective project set.

        Args:
            include: Identifiers to include; empty means all projects
            exclude: Identifiers to exclude (with their sub-projects)

        Returns:
            ProjectSet = include closure minus exclude closure
        """
        excludes = self.closure(exclude)

        if not parse_names(include):
            includes = frozenset({ALL_PROJECTS})
            project_set = ProjectSet(ids=includes, excluded=excludes)
        else:
            includes = self.closure(include)
            project_set = ProjectSet(ids=frozenset(includes - excludes), excluded=excludes)

        logger.info(f"INCLUDES => [{len(includes)}] {sorted(includes)}")
        logger.info(f"EXCLUDES => [{len(excludes)}] {sorted(excludes)}")
        logger.info(f"PROJECTS => {sorted(project_set.ids)}")
        return project_set
