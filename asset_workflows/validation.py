"""
Template Graph Validation

Structural checks run before a template is published. Steps and their
conditions form a directed graph: the default "next step_order" edge, skip
targets and auto-approve jumps are forward edges; reject targets are back
edges and are allowed to loop.
"""

from dataclasses import dataclass, field
from typing import Dict, List, Optional, Any, Set

from .conditions import StepCondition, ConditionAction, ConditionType, order_conditions


@dataclass
class ValidationReport:
    """Outcome of validating one template"""
    template_id: str
    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    unreachable_steps: List[str] = field(default_factory=list)
    cycles: List[List[str]] = field(default_factory=list)

    @property
    def valid(self) -> bool:
        return not self.errors

    def to_dict(self) -> Dict[str, Any]:
        return {
            'template_id': self.template_id,
            'valid': self.valid,
            'errors': list(self.errors),
            'warnings': list(self.warnings),
            'unreachable_steps': list(self.unreachable_steps),
            'cycles': [list(c) for c in self.cycles]
        }


def _forward_edges(steps, conditions_by_step: Dict[str, List[StepCondition]]) -> Dict[str, List[str]]:
    order = [s.id for s in steps]
    following = {sid: order[i + 1] if i + 1 < len(order) else None for i, sid in enumerate(order)}
    edges: Dict[str, List[str]] = {}

    for step in steps:
        targets: List[str] = []
        default_taken = True
        for condition in order_conditions(conditions_by_step.get(step.id, [])):
            if condition.action == ConditionAction.SKIP_TO_STEP:
                targets.append(condition.target_step_id)
            elif condition.action == ConditionAction.AUTO_APPROVE:
                nxt = following.get(step.id)
                if nxt and following.get(nxt):
                    targets.append(following[nxt])
            elif condition.action == ConditionAction.REQUIRE_ADDITIONAL_APPROVAL:
                if following.get(step.id):
                    targets.append(following[step.id])
            # An unconditional rule shadows everything evaluated after it
            if condition.condition_type == ConditionType.ALWAYS:
                default_taken = False
                break
        if default_taken and following.get(step.id):
            targets.append(following[step.id])
        edges[step.id] = [t for t in targets if t in following]

    return edges


def _find_cycles(edges: Dict[str, List[str]], order: List[str]) -> List[List[str]]:
    cycles: List[List[str]] = []
    state: Dict[str, int] = {}  # 1 = on stack, 2 = done
    stack: List[str] = []

    def visit(node: str) -> None:
        state[node] = 1
        stack.append(node)
        for target in edges.get(node, []):
            if state.get(target) == 1:
                cycles.append(stack[stack.index(target):] + [target])
            elif target not in state:
                visit(target)
        stack.pop()
        state[node] = 2

    for node in order:
        if node not in state:
            visit(node)
    return cycles


def validate_template(template, steps: List, conditions: List[StepCondition],
                      role_assignments: Optional[Dict[str, List]] = None) -> ValidationReport:
    """
    Validate the step graph of a template.

    Errors block publishing: no steps, duplicate step orders, reject or skip
    targets outside the template, steps unreachable from the first step and
    cycles through forward edges. Missing approvers are reported as warnings.
    """
    report = ValidationReport(template_id=template.id)
    steps = sorted(steps, key=lambda s: s.step_order)

    if not steps:
        report.errors.append("Template has no steps")
        return report

    step_ids: Set[str] = {s.id for s in steps}
    names = {s.id: s.name for s in steps}

    seen_orders: Dict[int, str] = {}
    for step in steps:
        if step.step_order in seen_orders:
            report.errors.append(
                f"Steps '{seen_orders[step.step_order]}' and '{step.name}' share step_order {step.step_order}"
            )
        else:
            seen_orders[step.step_order] = step.name

        if step.reject_target_step_id and step.reject_target_step_id not in step_ids:
            report.errors.append(f"Step '{step.name}' rejects to a step outside the template")

    conditions_by_step: Dict[str, List[StepCondition]] = {}
    for condition in conditions:
        if condition.step_id not in step_ids:
            report.errors.append(f"Condition {condition.id} is attached to a step outside the template")
            continue
        if condition.action == ConditionAction.SKIP_TO_STEP and condition.target_step_id not in step_ids:
            report.errors.append(
                f"Condition {condition.id} on '{names[condition.step_id]}' skips to a step outside the template"
            )
        conditions_by_step.setdefault(condition.step_id, []).append(condition)

    edges = _forward_edges(steps, conditions_by_step)

    reachable: Set[str] = set()
    frontier = [steps[0].id]
    while frontier:
        node = frontier.pop()
        if node in reachable:
            continue
        reachable.add(node)
        frontier.extend(edges.get(node, []))
    for step in steps:
        if step.id not in reachable:
            report.unreachable_steps.append(step.id)
            report.errors.append(f"Step '{step.name}' is unreachable from the first step")

    report.cycles = _find_cycles(edges, [s.id for s in steps])
    for cycle in report.cycles:
        path = " -> ".join(names[sid] for sid in cycle)
        report.errors.append(f"Forward transitions form a loop: {path}")

    if role_assignments is not None:
        for step in steps:
            if step.approval_type.value == "none":
                continue
            roles = role_assignments.get(step.id, [])
            if not any(r.can_approve for r in roles):
                report.warnings.append(f"Step '{step.name}' has no role that can approve it")

    return report
