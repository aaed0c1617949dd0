"""Retention engine service layer.

- RetentionPolicyEvaluator: due-date computation and method selection
- LegalHoldGuard: authoritative hold checks before disposal
- ArchivalService: pre-disposal archives in S3-compatible storage
- DisposalExecutor: per-job state machine with durable retries
- CertificateService: sealed (optionally signed) disposal certificates
- AuditTrail: per-tenant hash-chained audit entries
- ComplianceViolationDetector: statutory minimum checks after disposal
- RetentionRunner: scan, queue, dispose and report in one run
"""

from retention_engine.services.archival import ArchivalService
from retention_engine.services.audit_trail import AuditTrail
from retention_engine.services.certificates import CertificateService, DisposalCertificate
from retention_engine.services.compliance import ComplianceViolation, ComplianceViolationDetector
from retention_engine.services.disposal import DisposalExecutor, ExecutionResult, RunOutcome
from retention_engine.services.legal_hold import LegalHoldGuard
from retention_engine.services.policy import (
    PolicyRegistry,
    RetentionPolicy,
    RetentionPolicyEvaluator,
)
from retention_engine.services.runner import RetentionRunner

__all__ = [
    "ArchivalService",
    "AuditTrail",
    "CertificateService",
    "ComplianceViolation",
    "ComplianceViolationDetector",
    "DisposalCertificate",
    "DisposalExecutor",
    "ExecutionResult",
    "LegalHoldGuard",
    "PolicyRegistry",
    "RetentionPolicy",
    "RetentionPolicyEvaluator",
    "RetentionRunner",
    "RunOutcome",
]
