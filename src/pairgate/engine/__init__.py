"""PairGate engine - pairing codes, relationships and admin sessions."""

from pairgate.engine.audit import AuditAccumulator
from pairgate.engine.codes import CodeService, generate_code_string
from pairgate.engine.core import PairGateEngine
from pairgate.engine.gate import GateDecision, PermissionGate, authorize
from pairgate.engine.relationships import RelationshipService
from pairgate.engine.sessions import AdminSessionManager

__all__ = [
    "AdminSessionManager",
    "AuditAccumulator",
    "CodeService",
    "GateDecision",
    "PairGateEngine",
    "PermissionGate",
    "RelationshipService",
    "authorize",
    "generate_code_string",
]
