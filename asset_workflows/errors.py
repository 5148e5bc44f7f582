"""
Workflow Error Types

Every rule violation raised by the engine carries a stable ``code`` so callers
(the HTTP layer, UI toasts, batch jobs) can react without parsing messages.
All kinds derive from ValueError, so code that already guards engine calls
with ``except ValueError`` keeps working.
"""

from typing import Any, Dict, Optional


class WorkflowError(ValueError):
    """Base class for workflow rule violations"""

    code = "workflow_error"

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        return {'error': self.code, 'message': self.message, 'details': self.details}


class NotFound(WorkflowError):
    """Template, step, condition or workflow state does not exist"""
    code = "not_found"


class Unauthorized(WorkflowError):
    """Actor's roles lack the capability required on the current step"""
    code = "unauthorized"


class NoRejectTarget(WorkflowError):
    """Reject requested on a step without a reject target"""
    code = "no_reject_target"


class NoDefaultTemplate(WorkflowError):
    """No default, active template exists for the module"""
    code = "no_default_template"


class NoStepsInTemplate(WorkflowError):
    """The default template has no steps to start from"""
    code = "no_steps_in_template"


class TemplateStepMismatch(WorkflowError):
    """A step id does not belong to the template it is used with"""
    code = "template_step_mismatch"


class ConcurrentModification(WorkflowError):
    """The workflow state changed since the caller last read it"""
    code = "concurrent_modification"


class InvalidCondition(WorkflowError):
    """Condition rejected at write time (operator, value shape, target)"""
    code = "invalid_condition"


class InvalidTemplate(WorkflowError):
    """Template or step definition violates a structural rule"""
    code = "invalid_template"


class WorkflowCompleted(WorkflowError):
    """Transition requested on a workflow that already finished"""
    code = "workflow_completed"


class DuplicateRecord(WorkflowError):
    """Insert collided with an existing record id"""
    code = "duplicate_record"
