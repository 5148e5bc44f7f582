"""
FastAPI REST API Module

HTTP surface of the workflow engine: template and step administration,
workflow initialization, transitions, progress and bulk backfill.

Callers authenticate with a bearer JWT whose ``sub`` claim is the actor id
and whose ``roles`` claim lists the actor's roles. With authentication
disabled (tests, local development) the actor is taken from the
``X-Actor-Id`` and ``X-Actor-Roles`` headers.

Every request carries a correlation id, read from ``X-Correlation-Id`` or
generated, which is echoed on the response and passed to log lines and the
execution log.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, List, Optional, Any, Callable
import uuid

import jwt
from fastapi import FastAPI, HTTPException, Depends, Header, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from pydantic import BaseModel, Field
import uvicorn

from . import __version__
from .config import WorkflowConfig, get_config
from .storage import StorageInterface, create_storage
from .audit import AuditTrail
from .events import EventDispatcher
from .errors import WorkflowError
from .templates import TemplateManager, WorkflowModule, ApprovalType, StepType
from .state import WorkflowStateStore, EntityWorkflowState, EntityType
from .engine import WorkflowEngine, AssigneeResolver, TransitionAction
from .bulk import BulkInitializer, EntitySource, InMemoryEntitySource
from .progress import ProgressPresenter
from .executions import ExecutionLogger
from .sla import calculate_sla_status
from .logging_config import setup_logging, log_action


ERROR_STATUS = {
    'not_found': status.HTTP_404_NOT_FOUND,
    'unauthorized': status.HTTP_403_FORBIDDEN,
    'concurrent_modification': status.HTTP_409_CONFLICT,
    'duplicate_record': status.HTTP_409_CONFLICT,
    'workflow_completed': status.HTTP_409_CONFLICT,
}


# Pydantic models for API requests
class CreateTemplateRequest(BaseModel):
    name: str
    module: WorkflowModule
    description: str = ""
    is_default: bool = False
    is_active: bool = True


class UpdateTemplateRequest(BaseModel):
    name: Optional[str] = None
    description: Optional[str] = None
    is_active: Optional[bool] = None


class SetDefaultRequest(BaseModel):
    module: WorkflowModule


class CreateStepRequest(BaseModel):
    name: str
    step_order: int = Field(..., description="Position in the template, unique and positive")
    sla_hours: Optional[float] = None
    approval_type: ApprovalType = ApprovalType.SINGLE
    step_type: StepType = StepType.STANDARD
    description: str = ""
    required_approvals: int = 1
    is_required: bool = True
    auto_assign_enabled: bool = False
    auto_assign_rule: Optional[Dict[str, Any]] = None
    reject_target_step_id: Optional[str] = None
    work_order_status: Optional[str] = None
    incident_status: Optional[str] = None


class UpdateStepRequest(BaseModel):
    name: Optional[str] = None
    step_order: Optional[int] = None
    sla_hours: Optional[float] = None
    approval_type: Optional[ApprovalType] = None
    step_type: Optional[StepType] = None
    description: Optional[str] = None
    required_approvals: Optional[int] = None
    is_required: Optional[bool] = None
    auto_assign_enabled: Optional[bool] = None
    auto_assign_rule: Optional[Dict[str, Any]] = None
    reject_target_step_id: Optional[str] = None
    work_order_status: Optional[str] = None
    incident_status: Optional[str] = None


class AssignRoleRequest(BaseModel):
    role_name: str
    can_approve: bool = False
    can_reject: bool = False
    can_assign: bool = False
    can_view: bool = True
    can_edit: bool = False
    is_primary_assignee: bool = False
    is_backup_assignee: bool = False


class AddConditionRequest(BaseModel):
    condition_type: str = "field_value"
    action: str
    field_name: Optional[str] = None
    operator: Optional[str] = None
    value: Optional[Any] = None
    target_step_id: Optional[str] = None
    required_role: Optional[str] = None
    priority: int = 0


class InitializeRequest(BaseModel):
    entity_type: EntityType
    entity_id: str
    organization_id: Optional[str] = None


class TransitionRequest(BaseModel):
    action: TransitionAction
    target_step_id: Optional[str] = None
    comments: Optional[str] = None
    entity_fields: Dict[str, Any] = Field(default_factory=dict)
    expected_revision: Optional[int] = None
    assignee_id: Optional[str] = None


class BulkInitializeRequest(BaseModel):
    module: WorkflowModule
    organization_id: Optional[str] = None


@dataclass
class Actor:
    user_id: str
    roles: List[str] = field(default_factory=list)
    organization_id: Optional[str] = None
    correlation_id: Optional[str] = None


class WorkflowSystem:
    """Workflow engine with all components wired to one storage backend"""

    def __init__(self, config: Optional[WorkflowConfig] = None,
                 storage: Optional[StorageInterface] = None,
                 entity_source: Optional[EntitySource] = None,
                 assignee_resolver: Optional[AssigneeResolver] = None,
                 clock: Optional[Callable[[], datetime]] = None):
        self.config = config or get_config()
        self.storage = storage or create_storage(self.config.database_url)

        self.audit_trail = AuditTrail(self.storage, enabled=self.config.enable_audit_logging)
        self.event_dispatcher = EventDispatcher()
        self.template_manager = TemplateManager(
            self.storage, self.audit_trail,
            default_template_repair=self.config.default_template_repair
        )
        self.state_store = WorkflowStateStore(self.storage)
        self.execution_logger = ExecutionLogger(self.storage, clock=clock)
        self.workflow_engine = WorkflowEngine(
            self.storage, self.template_manager, self.state_store, self.audit_trail,
            assignee_resolver=assignee_resolver, clock=clock,
            executions=self.execution_logger
        )
        self.entity_source = entity_source or InMemoryEntitySource()
        self.bulk_initializer = BulkInitializer(
            self.workflow_engine, self.entity_source,
            batch_size=self.config.bulk_insert_batch_size
        )
        self.progress_presenter = ProgressPresenter(
            self.template_manager, self.state_store,
            at_risk_hours=self.config.sla_at_risk_hours
        )

        for component in (self.template_manager, self.workflow_engine, self.bulk_initializer):
            component.set_event_dispatcher(self.event_dispatcher)


def _state_dict(state: EntityWorkflowState, at_risk_hours: float) -> Dict[str, Any]:
    data = state.to_dict()
    sla = calculate_sla_status(state.sla_due_at, datetime.now(timezone.utc), at_risk_hours)
    data['entity_id'] = state.entity_id
    data['sla'] = {'status': sla.status.value, 'label': sla.label}
    return data


def create_app(system: Optional[WorkflowSystem] = None,
               auth_enabled: Optional[bool] = None) -> FastAPI:
    """Create and configure the FastAPI application"""
    system = system or WorkflowSystem()
    config = system.config
    if auth_enabled is None:
        auth_enabled = config.auth_enabled
    logger = setup_logging(config.log_level, log_format=config.log_format, log_file=config.log_file)

    app = FastAPI(
        title="AssetFlow Workflow API",
        description="Configurable approval workflows for work orders and safety incidents",
        version=__version__,
        docs_url="/docs",
        redoc_url="/redoc"
    )
    app.state.system = system

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def correlation_id_middleware(request: Request, call_next):
        correlation_id = request.headers.get("X-Correlation-Id") or str(uuid.uuid4())
        request.state.correlation_id = correlation_id
        response = await call_next(request)
        response.headers["X-Correlation-Id"] = correlation_id
        return response

    security = HTTPBearer(auto_error=False)

    def get_system() -> WorkflowSystem:
        return system

    def get_actor(request: Request,
                  credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
                  x_actor_id: Optional[str] = Header(None),
                  x_actor_roles: Optional[str] = Header(None)) -> Actor:
        """Dependency that validates the JWT and returns the acting user"""
        correlation_id = getattr(request.state, "correlation_id", None) or str(uuid.uuid4())
        if not auth_enabled:
            roles = [r.strip() for r in (x_actor_roles or "").split(",") if r.strip()]
            return Actor(user_id=x_actor_id or "test_user", roles=roles,
                         correlation_id=correlation_id)

        if not credentials:
            raise HTTPException(status_code=401, detail="Not authenticated")
        try:
            payload = jwt.decode(credentials.credentials, config.jwt_secret,
                                 algorithms=[config.jwt_algorithm])
        except jwt.ExpiredSignatureError:
            raise HTTPException(status_code=401, detail="Token expired")
        except jwt.InvalidTokenError:
            raise HTTPException(status_code=401, detail="Invalid token")

        user_id = payload.get("sub")
        if not user_id:
            raise HTTPException(status_code=401, detail="Invalid token")
        roles = payload.get("roles") or []
        if isinstance(roles, str):
            roles = [roles]
        return Actor(user_id=user_id, roles=list(roles), organization_id=payload.get("org"),
                     correlation_id=correlation_id)

    @app.exception_handler(WorkflowError)
    async def workflow_error_handler(request: Request, exc: WorkflowError):
        code = ERROR_STATUS.get(exc.code, status.HTTP_422_UNPROCESSABLE_ENTITY)
        log_action(logger, "warning", f"{request.method} {request.url.path} rejected: {exc.message}",
                   action=exc.code, correlation_id=getattr(request.state, "correlation_id", None),
                   extra=exc.details or None)
        return JSONResponse(status_code=code, content=exc.to_dict())

    # Templates

    @app.get("/templates")
    async def list_templates(module: Optional[WorkflowModule] = None,
                             organization_id: Optional[str] = None,
                             include_inactive: bool = True,
                             system: WorkflowSystem = Depends(get_system),
                             actor: Actor = Depends(get_actor)):
        templates = system.template_manager.list_templates(module, organization_id, include_inactive)
        return {"templates": [t.to_dict() for t in templates]}

    @app.post("/templates", status_code=status.HTTP_201_CREATED)
    async def create_template(request: CreateTemplateRequest,
                              system: WorkflowSystem = Depends(get_system),
                              actor: Actor = Depends(get_actor)):
        template = system.template_manager.create_template(
            module=request.module,
            name=request.name,
            organization_id=actor.organization_id,
            description=request.description,
            is_default=request.is_default,
            is_active=request.is_active,
            created_by=actor.user_id
        )
        return template.to_dict()

    @app.get("/templates/{template_id}")
    async def get_template(template_id: str, system: WorkflowSystem = Depends(get_system),
                           actor: Actor = Depends(get_actor)):
        template = system.template_manager.require_template(template_id)
        data = template.to_dict()
        data['steps'] = [s.to_dict() for s in system.template_manager.get_steps(template_id)]
        return data

    @app.patch("/templates/{template_id}")
    async def update_template(template_id: str, request: UpdateTemplateRequest,
                              system: WorkflowSystem = Depends(get_system),
                              actor: Actor = Depends(get_actor)):
        template = system.template_manager.update_template(
            template_id, updated_by=actor.user_id, **request.model_dump(exclude_unset=True)
        )
        return template.to_dict()

    @app.delete("/templates/{template_id}")
    async def delete_template(template_id: str, cascade: bool = False,
                              system: WorkflowSystem = Depends(get_system),
                              actor: Actor = Depends(get_actor)):
        system.template_manager.delete_template(template_id, cascade=cascade, deleted_by=actor.user_id)
        return {"deleted": template_id}

    @app.post("/templates/{template_id}/set-default")
    async def set_default_template(template_id: str, request: SetDefaultRequest,
                                   system: WorkflowSystem = Depends(get_system),
                                   actor: Actor = Depends(get_actor)):
        template = system.template_manager.set_default_template(
            template_id, request.module, changed_by=actor.user_id
        )
        return template.to_dict()

    @app.post("/templates/{template_id}/publish")
    async def publish_template(template_id: str, system: WorkflowSystem = Depends(get_system),
                               actor: Actor = Depends(get_actor)):
        report = system.template_manager.publish_template(template_id, published_by=actor.user_id)
        return report.to_dict()

    # Steps

    @app.get("/templates/{template_id}/steps")
    async def list_steps(template_id: str, system: WorkflowSystem = Depends(get_system),
                         actor: Actor = Depends(get_actor)):
        system.template_manager.require_template(template_id)
        return {"steps": [s.to_dict() for s in system.template_manager.get_steps(template_id)]}

    @app.post("/templates/{template_id}/steps", status_code=status.HTTP_201_CREATED)
    async def add_step(template_id: str, request: CreateStepRequest,
                       system: WorkflowSystem = Depends(get_system),
                       actor: Actor = Depends(get_actor)):
        step = system.template_manager.add_step(template_id, created_by=actor.user_id,
                                                **request.model_dump())
        return step.to_dict()

    @app.patch("/steps/{step_id}")
    async def update_step(step_id: str, request: UpdateStepRequest,
                          system: WorkflowSystem = Depends(get_system),
                          actor: Actor = Depends(get_actor)):
        step = system.template_manager.update_step(step_id, updated_by=actor.user_id,
                                                   **request.model_dump(exclude_unset=True))
        return step.to_dict()

    @app.delete("/steps/{step_id}")
    async def delete_step(step_id: str, system: WorkflowSystem = Depends(get_system),
                          actor: Actor = Depends(get_actor)):
        system.template_manager.delete_step(step_id, deleted_by=actor.user_id)
        return {"deleted": step_id}

    @app.get("/steps/{step_id}/roles")
    async def list_roles(step_id: str, system: WorkflowSystem = Depends(get_system),
                         actor: Actor = Depends(get_actor)):
        system.template_manager.require_step(step_id)
        return {"roles": [r.to_dict() for r in system.template_manager.get_role_assignments(step_id)]}

    @app.post("/steps/{step_id}/roles")
    async def assign_role(step_id: str, request: AssignRoleRequest,
                          system: WorkflowSystem = Depends(get_system),
                          actor: Actor = Depends(get_actor)):
        assignment = system.template_manager.assign_role(step_id, assigned_by=actor.user_id,
                                                         **request.model_dump())
        return assignment.to_dict()

    @app.get("/steps/{step_id}/conditions")
    async def list_conditions(step_id: str, system: WorkflowSystem = Depends(get_system),
                              actor: Actor = Depends(get_actor)):
        system.template_manager.require_step(step_id)
        return {"conditions": [c.to_dict() for c in system.template_manager.get_conditions(step_id)]}

    @app.post("/steps/{step_id}/conditions", status_code=status.HTTP_201_CREATED)
    async def add_condition(step_id: str, request: AddConditionRequest,
                            system: WorkflowSystem = Depends(get_system),
                            actor: Actor = Depends(get_actor)):
        condition = system.template_manager.add_condition(step_id, created_by=actor.user_id,
                                                          **request.model_dump())
        return condition.to_dict()

    @app.delete("/conditions/{condition_id}")
    async def remove_condition(condition_id: str, system: WorkflowSystem = Depends(get_system),
                               actor: Actor = Depends(get_actor)):
        system.template_manager.remove_condition(condition_id, removed_by=actor.user_id)
        return {"deleted": condition_id}

    # Workflow state

    @app.post("/initialize", status_code=status.HTTP_201_CREATED)
    async def initialize_workflow(request: InitializeRequest,
                                  system: WorkflowSystem = Depends(get_system),
                                  actor: Actor = Depends(get_actor)):
        state = system.workflow_engine.initialize_workflow(
            request.entity_id, request.entity_type,
            organization_id=request.organization_id or actor.organization_id,
            actor_id=actor.user_id,
            correlation_id=actor.correlation_id
        )
        return _state_dict(state, config.sla_at_risk_hours)

    @app.post("/state/{state_id}/transition")
    async def transition(state_id: str, request: TransitionRequest,
                         system: WorkflowSystem = Depends(get_system),
                         actor: Actor = Depends(get_actor)):
        state = system.workflow_engine.transition(
            state_id, actor.roles, request.action,
            actor_id=actor.user_id,
            target_step_id=request.target_step_id,
            comments=request.comments,
            entity_fields=request.entity_fields,
            expected_revision=request.expected_revision,
            assignee_id=request.assignee_id,
            correlation_id=actor.correlation_id
        )
        return _state_dict(state, config.sla_at_risk_hours)

    @app.get("/state/{state_id}/progress")
    async def get_progress(state_id: str, system: WorkflowSystem = Depends(get_system),
                           actor: Actor = Depends(get_actor)):
        return system.progress_presenter.get_progress(state_id).to_dict()

    @app.get("/state/{state_id}/history")
    async def get_history(state_id: str, system: WorkflowSystem = Depends(get_system),
                          actor: Actor = Depends(get_actor)):
        return {"history": [h.to_dict() for h in system.workflow_engine.get_history(state_id)]}

    @app.get("/entities/{entity_type}/{entity_id}/state")
    async def get_entity_state(entity_type: str, entity_id: str,
                               system: WorkflowSystem = Depends(get_system),
                               actor: Actor = Depends(get_actor)):
        try:
            state = system.workflow_engine.get_state_for_entity(entity_type, entity_id)
        except ValueError:
            raise HTTPException(status_code=400, detail=f"Unknown entity type: {entity_type}")
        if state is None:
            raise HTTPException(status_code=404, detail=f"No workflow for {entity_type} {entity_id}")
        return _state_dict(state, config.sla_at_risk_hours)

    # Bulk operations

    @app.post("/bulk-initialize")
    async def bulk_initialize(request: BulkInitializeRequest,
                              system: WorkflowSystem = Depends(get_system),
                              actor: Actor = Depends(get_actor)):
        result = system.bulk_initializer.bulk_initialize(
            request.module, organization_id=request.organization_id or actor.organization_id,
            actor_id=actor.user_id, correlation_id=actor.correlation_id
        )
        return result.to_dict()

    @app.get("/status/{module}")
    async def workflow_status(module: WorkflowModule, organization_id: Optional[str] = None,
                              system: WorkflowSystem = Depends(get_system),
                              actor: Actor = Depends(get_actor)):
        return system.bulk_initializer.get_workflow_status(module, organization_id)

    # Analytics

    @app.get("/analytics/{organization_id}")
    async def workflow_analytics(organization_id: str, recent: int = 10,
                                 system: WorkflowSystem = Depends(get_system),
                                 actor: Actor = Depends(get_actor)):
        return system.execution_logger.get_analytics(organization_id, recent=recent)

    @app.get("/health")
    async def health_check():
        """Health check endpoint"""
        return {
            "status": "healthy",
            "service": "assetflow_workflows",
            "version": __version__
        }

    return app


def run_server(host: Optional[str] = None, port: Optional[int] = None, debug: bool = False):
    """Run the FastAPI server"""
    config = get_config()
    uvicorn.run(
        "asset_workflows.api:create_app",
        factory=True,
        host=host or config.api_host,
        port=port or config.api_port,
        reload=debug,
        log_level=config.log_level.lower()
    )
