# runtime/results.py
"""Hierarchical result document: ``solutions -> solution-group{label, solution*}``."""

from __future__ import annotations

import json
import logging
import os

import yaml

logger = logging.getLogger("device_solver")


class SolutionGroup:
    """Ordered snapshots recorded by one solve."""

    def __init__(self, label: str, solution_type: str = "") -> None:
        self.label = label
        self.solution_type = solution_type
        self.solutions: list[dict] = []

    def add(self, snapshot: dict) -> None:
        self.solutions.append(snapshot)

    def __len__(self) -> int:
        return len(self.solutions)

    def to_dict(self) -> dict:
        return {"label": self.label, "type": self.solution_type, "solution": list(self.solutions)}


class ResultDocument:
    """Append-only tree of solution groups; empty groups are pruned."""

    def __init__(self) -> None:
        self.groups: list[SolutionGroup] = []

    def new_group(self, label: str, solution_type: str = "") -> SolutionGroup:
        group = SolutionGroup(label, solution_type)
        self.groups.append(group)
        return group

    def prune(self, group: SolutionGroup) -> bool:
        """Remove ``group`` if it recorded nothing; return whether it was removed."""
        if len(group) == 0 and group in self.groups:
            self.groups.remove(group)
            return True
        return False

    def find(self, label: str) -> list[SolutionGroup]:
        return [g for g in self.groups if g.label == label]

    def to_dict(self) -> dict:
        return {"solutions": [g.to_dict() for g in self.groups]}

    def save(self, path: str) -> None:
        """Write the whole document fresh, as YAML or JSON by suffix."""
        data = self.to_dict()
        tmp = f"{path}.tmp"
        with open(tmp, "w") as f:
            if str(path).endswith((".yaml", ".yml")):
                yaml.safe_dump(data, f, sort_keys=False)
            else:
                json.dump(data, f, indent=2)
        os.replace(tmp, path)
        logger.debug("Result document written to %s (%d groups)", path, len(self.groups))
