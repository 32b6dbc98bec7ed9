from clubhub.audit.sink import AuditSink, DatabaseAuditSink, LoggingAuditSink, SafeAudit

__all__ = ["AuditSink", "DatabaseAuditSink", "LoggingAuditSink", "SafeAudit"]
