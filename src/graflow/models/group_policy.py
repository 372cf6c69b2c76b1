"""Group policies deciding whether a parallel group succeeded.

The policies form a small closed set of tagged variants evaluated by a
single dispatch function, ``evaluate_policy``, over the succeeded and
failed branch sets collected at the barrier.

Example:
    ```python
    graph.add_group("fetch_all", ["a", "b", "c", "d"], policy=AtLeastN(2))
    ```
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field


@dataclass(frozen=True)
class Strict:
    """Every branch must succeed (default)."""

    def describe(self) -> str:
        return "strict"


@dataclass(frozen=True)
class BestEffort:
    """The group succeeds regardless of branch outcomes; failures are recorded."""

    def describe(self) -> str:
        return "best_effort"


@dataclass(frozen=True)
class AtLeastN:
    """The group succeeds if at least ``min_success`` branches succeeded."""

    min_success: int

    def __post_init__(self) -> None:
        if self.min_success < 0:
            raise ValueError(f"min_success must be >= 0, got {self.min_success}")

    def describe(self) -> str:
        return f"at_least_{self.min_success}"


@dataclass(frozen=True)
class Critical:
    """The group succeeds iff every branch in ``critical_ids`` succeeded."""

    critical_ids: frozenset[str]

    def __init__(self, critical_ids: Iterable[str]):
        object.__setattr__(self, "critical_ids", frozenset(critical_ids))

    def describe(self) -> str:
        return f"critical[{','.join(sorted(self.critical_ids))}]"


GroupPolicy = Strict | BestEffort | AtLeastN | Critical


def evaluate_policy(
    policy: GroupPolicy,
    branch_ids: Iterable[str],
    succeeded: Iterable[str],
    failed: Iterable[str] = (),
) -> bool:
    """Decide whether a group passed.

    Branches absent from both ``succeeded`` and ``failed`` (they never
    reached the barrier before the timeout) count as failed.

    Args:
        policy: One of Strict, BestEffort, AtLeastN, Critical
        branch_ids: All branch ids of the group
        succeeded: Branch ids that reported success
        failed: Branch ids that reported failure

    Returns:
        True if the group outcome satisfies the policy
    """
    branches = set(branch_ids)
    ok = set(succeeded) & branches
    bad = (set(failed) & branches) | (branches - ok - set(failed))

    match policy:
        case Strict():
            return not bad and ok == branches
        case BestEffort():
            return True
        case AtLeastN(min_success=minimum):
            return len(ok) >= minimum
        case Critical(critical_ids=critical):
            return critical <= ok
    raise TypeError(f"Unknown group policy: {policy!r}")


def policy_from_dict(data: Mapping | str | None) -> GroupPolicy:
    """Build a policy from a definition-file value.

    Accepts ``"strict"``, ``"best_effort"``, ``{"type": "at_least",
    "min_success": 2}`` or ``{"type": "critical", "critical": [...]}``.
    """
    if data is None:
        return Strict()
    if isinstance(data, str):
        data = {"type": data}

    kind = str(data.get("type", "strict")).lower()
    if kind == "strict":
        return Strict()
    if kind in ("best_effort", "best-effort"):
        return BestEffort()
    if kind in ("at_least", "at_least_n", "at-least-n"):
        return AtLeastN(int(data["min_success"]))
    if kind == "critical":
        return Critical(data.get("critical", data.get("critical_ids", ())))
    raise ValueError(f"Unknown group policy type: {kind!r}")


@dataclass
class GroupOutcome:
    """Barrier-phase result of a parallel group."""

    group_id: str
    policy: str
    succeeded: list[str] = field(default_factory=list)
    failed: dict[str, str] = field(default_factory=dict)
    """Failed branch id → error text."""

    timed_out: bool = False
    passed: bool = False

    @property
    def success_count(self) -> int:
        return len(self.succeeded)

    @property
    def failure_count(self) -> int:
        return len(self.failed)

    def __repr__(self) -> str:
        return (
            f"GroupOutcome(group_id={self.group_id!r}, policy={self.policy}, "
            f"succeeded={self.succeeded}, failed={list(self.failed)}, "
            f"timed_out={self.timed_out}, passed={self.passed})"
        )
