"""dealflow: rule-based automation and workflow engine for a real-estate CRM."""

from .collaborators import Collaborators
from .conditions import ConditionEvaluator
from .config import DealflowConfig, load_config
from .contracts import DomainEvent, EntityRef, EventReport, ExecutionContext, TestReport
from .dispatch import ActionDispatcher
from .enums import EnrollmentStatus, TriggerType
from .execute import AutomationEngine, AutomationWorker
from .matching import TriggerMatcher
from .models import Automation, Condition, SequenceEnrollment, Workflow, WorkflowStep
from .persistence import InMemoryRepository, get_repository
from .runner import WorkflowStepRunner
from .scheduler import SequenceScheduler
from .transports import get_transport

__version__ = "0.1.0"
__all__ = [
    "ActionDispatcher",
    "Automation",
    "AutomationEngine",
    "AutomationWorker",
    "Collaborators",
    "Condition",
    "ConditionEvaluator",
    "DealflowConfig",
    "DomainEvent",
    "EnrollmentStatus",
    "EntityRef",
    "EventReport",
    "ExecutionContext",
    "InMemoryRepository",
    "SequenceEnrollment",
    "SequenceScheduler",
    "TestReport",
    "TriggerMatcher",
    "TriggerType",
    "Workflow",
    "WorkflowStep",
    "WorkflowStepRunner",
    "get_repository",
    "get_transport",
    "load_config",
]
