"""
Step Condition Module

Conditional branching rules attached to workflow steps. A condition compares
one field of the business entity (work order, incident) against a typed value
and, when it matches, overrides the default "next step" transition.

Condition values are a small tagged union instead of a free-form blob, and
every condition is validated when it is written, so an unknown operator or a
mis-shaped value can never turn into a condition that silently never fires.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple, Union

from .errors import InvalidCondition
from .storage import StorageRecord


class ConditionType(Enum):
    """What a condition inspects"""
    FIELD_VALUE = "field_value"
    ALWAYS = "always"


class ConditionOperator(Enum):
    """Supported comparison operators"""
    EQUALS = "equals"
    NOT_EQUALS = "not_equals"
    GREATER_THAN = "greater_than"
    GREATER_THAN_OR_EQUAL = "greater_than_or_equal"
    LESS_THAN = "less_than"
    LESS_THAN_OR_EQUAL = "less_than_or_equal"
    IN = "in"
    NOT_IN = "not_in"
    CONTAINS = "contains"
    IS_SET = "is_set"


class ConditionAction(Enum):
    """What happens when a condition matches"""
    SKIP_TO_STEP = "skip_to_step"
    AUTO_APPROVE = "auto_approve"
    REQUIRE_ADDITIONAL_APPROVAL = "require_additional_approval"
    COMPLETE_WORKFLOW = "complete_workflow"


ORDERED_OPERATORS = {
    ConditionOperator.GREATER_THAN,
    ConditionOperator.GREATER_THAN_OR_EQUAL,
    ConditionOperator.LESS_THAN,
    ConditionOperator.LESS_THAN_OR_EQUAL,
}
LIST_OPERATORS = {ConditionOperator.IN, ConditionOperator.NOT_IN}

Scalar = Union[str, int, float, bool]


@dataclass(frozen=True)
class NoValue:
    """Operator takes no operand (is_set, or an ALWAYS condition)"""
    kind: str = "none"


@dataclass(frozen=True)
class ScalarValue:
    value: Scalar
    kind: str = "scalar"


@dataclass(frozen=True)
class ListValue:
    values: Tuple[Scalar, ...]
    kind: str = "list"


ConditionValue = Union[NoValue, ScalarValue, ListValue]


def value_to_dict(value: ConditionValue) -> Dict[str, Any]:
    if isinstance(value, ScalarValue):
        return {'kind': value.kind, 'value': value.value}
    if isinstance(value, ListValue):
        return {'kind': value.kind, 'values': list(value.values)}
    return {'kind': 'none'}


def value_from_dict(data: Optional[Dict[str, Any]]) -> ConditionValue:
    if not data or data.get('kind') == 'none':
        return NoValue()
    if data['kind'] == 'scalar':
        return ScalarValue(data['value'])
    if data['kind'] == 'list':
        return ListValue(tuple(data['values']))
    raise InvalidCondition(f"Unknown condition value kind: {data['kind']}")


def _is_scalar(raw: Any) -> bool:
    return isinstance(raw, (str, int, float, bool))


def _is_number(raw: Any) -> bool:
    return isinstance(raw, (int, float)) and not isinstance(raw, bool)


def coerce_condition_value(condition_type: ConditionType,
                           operator: Optional[ConditionOperator],
                           raw: Any) -> ConditionValue:
    """Turn a raw operand into the tagged value its operator requires"""
    if condition_type == ConditionType.ALWAYS or operator == ConditionOperator.IS_SET:
        if raw is not None:
            raise InvalidCondition("This condition does not take a value")
        return NoValue()

    if operator in LIST_OPERATORS:
        if not isinstance(raw, (list, tuple)) or not raw:
            raise InvalidCondition(f"Operator '{operator.value}' requires a non-empty list value")
        if not all(_is_scalar(item) for item in raw):
            raise InvalidCondition(f"Operator '{operator.value}' accepts only scalar list items")
        return ListValue(tuple(raw))

    if raw is None or not _is_scalar(raw):
        raise InvalidCondition(f"Operator '{operator.value}' requires a scalar value")

    if operator in ORDERED_OPERATORS and not (_is_number(raw) or isinstance(raw, str)):
        raise InvalidCondition(f"Operator '{operator.value}' requires a number or ISO date string")

    return ScalarValue(raw)


def validate_condition(condition_type: str, action: str, operator: Optional[str] = None,
                       field_name: Optional[str] = None, value: Any = None,
                       target_step_id: Optional[str] = None,
                       required_role: Optional[str] = None
                       ) -> Tuple[ConditionType, ConditionAction, Optional[ConditionOperator], ConditionValue]:
    """
    Validate a condition definition at write time.

    Returns the parsed (type, action, operator, value) tuple or raises
    InvalidCondition. Checks that depend on the template (target step
    membership) are done by the template manager.
    """
    try:
        ctype = ConditionType(condition_type)
    except ValueError:
        raise InvalidCondition(f"Unknown condition type: {condition_type}")
    try:
        caction = ConditionAction(action)
    except ValueError:
        raise InvalidCondition(f"Unknown condition action: {action}")

    coperator = None
    if ctype == ConditionType.FIELD_VALUE:
        if not field_name:
            raise InvalidCondition("field_value conditions require a field_name")
        if operator is None:
            raise InvalidCondition("field_value conditions require an operator")
        try:
            coperator = ConditionOperator(operator)
        except ValueError:
            allowed = ", ".join(op.value for op in ConditionOperator)
            raise InvalidCondition(f"Unknown operator '{operator}'; expected one of: {allowed}")
    elif field_name or operator:
        raise InvalidCondition("always conditions take no field_name or operator")

    cvalue = coerce_condition_value(ctype, coperator, value)

    if caction == ConditionAction.SKIP_TO_STEP and not target_step_id:
        raise InvalidCondition("skip_to_step requires a target_step_id")
    if caction != ConditionAction.SKIP_TO_STEP and target_step_id:
        raise InvalidCondition(f"Action '{caction.value}' does not use a target_step_id")
    if caction == ConditionAction.REQUIRE_ADDITIONAL_APPROVAL and not required_role:
        raise InvalidCondition("require_additional_approval requires a required_role")

    return ctype, caction, coperator, cvalue


@dataclass
class StepCondition(StorageRecord):
    """Branching rule evaluated before the default next-step transition"""
    step_id: str
    template_id: str
    condition_type: ConditionType
    action: ConditionAction
    priority: int = 0
    field_name: Optional[str] = None
    operator: Optional[ConditionOperator] = None
    value: ConditionValue = field(default_factory=NoValue)
    target_step_id: Optional[str] = None
    required_role: Optional[str] = None
    organization_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'created_at': self.created_at.isoformat(),
            'updated_at': self.updated_at.isoformat(),
            'step_id': self.step_id,
            'template_id': self.template_id,
            'condition_type': self.condition_type.value,
            'action': self.action.value,
            'priority': self.priority,
            'field_name': self.field_name,
            'operator': self.operator.value if self.operator else None,
            'value': value_to_dict(self.value),
            'target_step_id': self.target_step_id,
            'required_role': self.required_role,
            'organization_id': self.organization_id
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'StepCondition':
        data = dict(data)
        data['condition_type'] = ConditionType(data['condition_type'])
        data['action'] = ConditionAction(data['action'])
        data['operator'] = ConditionOperator(data['operator']) if data.get('operator') else None
        data['value'] = value_from_dict(data.get('value'))
        data['created_at'] = datetime.fromisoformat(data['created_at'])
        data['updated_at'] = datetime.fromisoformat(data['updated_at'])
        return cls(**data)


def _ordered_compare(operator: ConditionOperator, actual: Any, expected: Scalar) -> bool:
    comparable = (_is_number(actual) and _is_number(expected)) or \
                 (isinstance(actual, str) and isinstance(expected, str))
    if not comparable:
        return False
    if operator == ConditionOperator.GREATER_THAN:
        return actual > expected
    if operator == ConditionOperator.GREATER_THAN_OR_EQUAL:
        return actual >= expected
    if operator == ConditionOperator.LESS_THAN:
        return actual < expected
    return actual <= expected


def condition_matches(condition: StepCondition, fields: Dict[str, Any]) -> bool:
    """Evaluate one condition against the entity's current field values"""
    if condition.condition_type == ConditionType.ALWAYS:
        return True

    operator = condition.operator
    present = condition.field_name in fields
    actual = fields.get(condition.field_name)

    if operator == ConditionOperator.IS_SET:
        return present and actual is not None and actual != ""

    # An absent field matches nothing, including the negative operators
    if not present or actual is None:
        return False

    value = condition.value
    if operator in LIST_OPERATORS:
        found = actual in value.values
        return found if operator == ConditionOperator.IN else not found

    expected = value.value
    if operator == ConditionOperator.EQUALS:
        return actual == expected
    if operator == ConditionOperator.NOT_EQUALS:
        return actual != expected
    if operator == ConditionOperator.CONTAINS:
        if isinstance(actual, (list, tuple)):
            return expected in actual
        return str(expected) in str(actual)
    return _ordered_compare(operator, actual, expected)


def order_conditions(conditions: List[StepCondition]) -> List[StepCondition]:
    """Evaluation order: ascending priority, ties broken by lowest id"""
    return sorted(conditions, key=lambda c: (c.priority, c.id))


def select_condition(conditions: List[StepCondition],
                     fields: Dict[str, Any]) -> Optional[StepCondition]:
    """Return the first matching condition in evaluation order"""
    for condition in order_conditions(conditions):
        if condition_matches(condition, fields):
            return condition
    return None
