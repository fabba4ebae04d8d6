"""
Vote counting helpers for the consensus engine.

Whole-value voting groups results by canonical JSON (sorted keys), so
`{"a": 1, "b": 2}` and `{"b": 2, "a": 1}` land in the same group.

Field-level voting flattens each result to dot paths
(`{"total": {"amount": 10}}` -> `{"total.amount": 10}`), takes the most
common value per path and rebuilds one object from the winners.  Lists
and scalars are leaves; an empty dict is a leaf too.
"""

from __future__ import annotations

import dataclasses
import json
import random
from dataclasses import dataclass, field
from typing import Any, Iterable

from pydantic import BaseModel

from docflow.core.constants import ConsensusStrategy

ROOT_PATH = ""


def _json_default(value: Any) -> Any:
    if isinstance(value, BaseModel):
        return value.model_dump(mode="json")
    if dataclasses.is_dataclass(value) and not isinstance(value, type):
        return dataclasses.asdict(value)
    if isinstance(value, (set, frozenset)):
        return sorted(value, key=repr)
    return repr(value)


def canonical_key(value: Any) -> str:
    """Stable string used to compare two results for equality."""
    return json.dumps(value, sort_keys=True, separators=(",", ":"), default=_json_default)


@dataclass
class VoteGroup:
    key: str
    value: Any
    run_indices: list[int] = field(default_factory=list)

    @property
    def votes(self) -> int:
        return len(self.run_indices)


def group_values(votes: Iterable[tuple[int, Any]]) -> list[VoteGroup]:
    """Group (run_index, value) pairs by canonical equality, in first-seen order."""
    groups: dict[str, VoteGroup] = {}
    for run_index, value in votes:
        key = canonical_key(value)
        group = groups.get(key)
        if group is None:
            group = groups[key] = VoteGroup(key=key, value=value)
        group.run_indices.append(run_index)
    return list(groups.values())


def leading_groups(groups: list[VoteGroup]) -> list[VoteGroup]:
    if not groups:
        return []
    top = max(group.votes for group in groups)
    return [group for group in groups if group.votes == top]


def select_winner(
    groups: list[VoteGroup],
    successful_runs: int,
    strategy: ConsensusStrategy,
) -> VoteGroup | None:
    """
    The group that satisfies `strategy`, or None for a tie.

    majority:  a group holding strictly more than half of the successful runs.
    unanimous: every successful run in one group.
    """
    if not groups or successful_runs == 0:
        return None

    leaders = leading_groups(groups)
    if len(leaders) != 1:
        return None
    leader = leaders[0]

    if strategy == ConsensusStrategy.UNANIMOUS:
        return leader if leader.votes == successful_runs else None
    return leader if leader.votes * 2 > successful_runs else None


# ─── Field level ──────────────────────────────────────────


def flatten(value: Any) -> dict[str, Any]:
    """Nested dicts to `{dot.path: leaf}`.  A non-dict value maps to the root path."""
    flat: dict[str, Any] = {}

    def walk(current: Any, path: str) -> None:
        if isinstance(current, dict) and current:
            for key, child in current.items():
                walk(child, f"{path}.{key}" if path else str(key))
        else:
            flat[path] = current

    walk(value, ROOT_PATH)
    return flat


def unflatten(flat: dict[str, Any]) -> Any:
    if ROOT_PATH in flat:
        return flat[ROOT_PATH]

    result: dict[str, Any] = {}
    for path in sorted(flat, key=lambda p: p.count(".")):
        keys = path.split(".")
        current = result
        for key in keys[:-1]:
            child = current.setdefault(key, {})
            if not isinstance(child, dict):
                break
            current = child
        else:
            current[keys[-1]] = flat[path]
    return result


@dataclass
class FieldVote:
    value: Any
    votes: int
    agreement: float
    tied: bool = False


@dataclass
class FieldComposition:
    value: Any
    fields: dict[str, FieldVote]
    is_synthetic: bool

    @property
    def tied_paths(self) -> list[str]:
        return [path for path, vote in self.fields.items() if vote.tied]

    @property
    def field_agreement(self) -> dict[str, float]:
        return {path: vote.agreement for path, vote in self.fields.items()}

    @property
    def mean_agreement(self) -> float:
        if not self.fields:
            return 1.0
        return sum(v.agreement for v in self.fields.values()) / len(self.fields)


def compose_field_level_winner(
    values: list[Any],
    rng: random.Random | None = None,
) -> FieldComposition:
    """
    Per-field majority vote over `values`.

    A path is decided only when one value holds strictly more than half
    of `values`.  Any other path is marked `tied`; its value is the
    plurality leader, picked with `rng` among equal leaders when given,
    else the leader seen first.
    """
    if not values:
        raise ValueError("No values to compose a field-level winner from")

    per_path: dict[str, list[VoteGroup]] = {}
    path_order: list[str] = []
    for index, value in enumerate(values):
        for path, leaf in flatten(value).items():
            if path not in per_path:
                per_path[path] = []
                path_order.append(path)
            groups = per_path[path]
            key = canonical_key(leaf)
            for group in groups:
                if group.key == key:
                    group.run_indices.append(index)
                    break
            else:
                groups.append(VoteGroup(key=key, value=leaf, run_indices=[index]))

    total = len(values)
    winners: dict[str, Any] = {}
    fields: dict[str, FieldVote] = {}
    for path in path_order:
        leaders = leading_groups(per_path[path])
        shared = len(leaders) > 1
        chosen = rng.choice(leaders) if (shared and rng is not None) else leaders[0]
        tied = shared or chosen.votes * 2 <= total
        winners[path] = chosen.value
        fields[path] = FieldVote(
            value=chosen.value,
            votes=chosen.votes,
            agreement=chosen.votes / total,
            tied=tied,
        )

    composed = unflatten(winners)
    composed_key = canonical_key(composed)
    is_synthetic = not any(canonical_key(v) == composed_key for v in values)
    return FieldComposition(value=composed, fields=fields, is_synthetic=is_synthetic)
