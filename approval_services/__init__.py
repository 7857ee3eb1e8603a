"""Outer services: directory adapters, sinks, the Decision API and its HTTP router."""

from approval_services.authority import DirectoryOverridePolicy
from approval_services.decision_api import DecisionService, SubmitResult, build_decision_service
from approval_services.directory import Employee, RetryingDirectory, StaticOrgDirectory
from approval_services.rule_admin import RuleAdminService
from approval_services.sinks import (
    CompositeEventSink,
    InMemoryAuditSink,
    InMemoryEventSink,
    LoggingAuditSink,
    LoggingEventSink,
)

__all__ = [
    "CompositeEventSink",
    "DecisionService",
    "DirectoryOverridePolicy",
    "Employee",
    "InMemoryAuditSink",
    "InMemoryEventSink",
    "LoggingAuditSink",
    "LoggingEventSink",
    "RetryingDirectory",
    "RuleAdminService",
    "StaticOrgDirectory",
    "SubmitResult",
    "build_decision_service",
]
