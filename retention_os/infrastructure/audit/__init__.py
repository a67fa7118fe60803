"""
Audit logging for operator actions on the retention engine.
"""

from retention_os.infrastructure.audit.audit_logger import AuditLogger, audit_logger

__all__ = ["AuditLogger", "audit_logger"]
