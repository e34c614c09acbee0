from __future__ import annotations

from dataclasses import dataclass

from .types import UNUSUAL_PATTERN, Automation, AuditWarning, Step


@dataclass(frozen=True)
class Topology:
    """Step order reconstructed from parent pointers.

    ``order`` is a pre-order walk from the primary root (children visited in
    declaration order). ``chains`` lists every root-to-terminal path from the
    primary root. Extra roots and unreachable steps are kept for reporting but
    never ordered into the primary walk.
    """

    zap_id: str
    order: tuple[Step, ...]
    chains: tuple[tuple[Step, ...], ...]
    roots: tuple[str, ...]
    unreachable: tuple[str, ...]
    fan_out_steps: int
    warnings: tuple[AuditWarning, ...]

    @property
    def trigger(self) -> Step | None:
        return self.order[0] if self.order else None

    @property
    def primary_chain(self) -> tuple[Step, ...]:
        return self.chains[0] if self.chains else ()


def build_topology(zap: Automation) -> Topology:
    steps = zap.steps
    arena: dict[str, Step] = {}
    duplicates: list[str] = []
    for step in steps:
        if step.step_id in arena:
            duplicates.append(step.step_id)
            continue
        arena[step.step_id] = step

    children: dict[str, list[str]] = {}
    null_roots: list[str] = []
    dangling: list[str] = []
    for step in arena.values():
        if step.parent_id is None:
            null_roots.append(step.step_id)
        elif step.parent_id not in arena or step.parent_id == step.step_id:
            dangling.append(step.step_id)
        else:
            children.setdefault(step.parent_id, []).append(step.step_id)

    warnings: list[AuditWarning] = []
    if duplicates:
        warnings.append(
            AuditWarning(
                UNUSUAL_PATTERN,
                f"Duplicate step ids ignored: {', '.join(sorted(set(duplicates)))}",
            )
        )
    if len(null_roots) > 1:
        warnings.append(
            AuditWarning(
                UNUSUAL_PATTERN,
                f"Multiple trigger steps without a parent: {', '.join(null_roots)}; "
                f"using {null_roots[0]}",
            )
        )
    for step_id in dangling:
        warnings.append(
            AuditWarning(
                UNUSUAL_PATTERN,
                f"Step {step_id} references unknown parent "
                f"{arena[step_id].parent_id}; treated as a separate root",
            )
        )

    roots = null_roots + dangling
    if steps and not roots:
        warnings.append(
            AuditWarning(UNUSUAL_PATTERN, "No root step found; step graph is cyclic")
        )

    visited: set[str] = set()
    order: list[Step] = []
    chains: list[tuple[Step, ...]] = []
    if roots:
        primary = roots[0]
        stack: list[tuple[str, tuple[Step, ...]]] = [(primary, ())]
        while stack:
            step_id, path = stack.pop()
            if step_id in visited:
                continue
            visited.add(step_id)
            step = arena[step_id]
            order.append(step)
            path = path + (step,)
            kids = [kid for kid in children.get(step_id, []) if kid not in visited]
            if not kids:
                chains.append(path)
                continue
            for kid in reversed(kids):
                stack.append((kid, path))
        for other in roots[1:]:
            _mark_reachable(other, children, visited)

    unreachable = tuple(step_id for step_id in arena if step_id not in visited)
    if unreachable:
        warnings.append(
            AuditWarning(
                UNUSUAL_PATTERN,
                f"Steps unreachable from any root (cycle): {', '.join(unreachable)}",
            )
        )

    fan_out = sum(1 for kids in children.values() if len(kids) > 1)
    return Topology(
        zap_id=zap.zap_id,
        order=tuple(order),
        chains=tuple(chains),
        roots=tuple(roots),
        unreachable=unreachable,
        fan_out_steps=fan_out,
        warnings=tuple(warnings),
    )


def _mark_reachable(root: str, children: dict[str, list[str]], visited: set[str]) -> None:
    stack = [root]
    while stack:
        step_id = stack.pop()
        if step_id in visited:
            continue
        visited.add(step_id)
        stack.extend(children.get(step_id, []))
