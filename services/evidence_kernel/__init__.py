from services.evidence_kernel.audit_log import AuditLog, get_audit_log
from services.evidence_kernel.drafts import EvidenceDraftService, get_draft_service
from services.evidence_kernel.errors import EvidenceKernelError
from services.evidence_kernel.records import EvidenceRecordService, get_record_service
from services.evidence_kernel.sealing import SealingEngine, get_sealing_engine
from services.evidence_kernel.validation import validate_declaration
from services.evidence_kernel.work_items import WorkItemService, get_work_item_service

__all__ = [
    "AuditLog",
    "EvidenceDraftService",
    "EvidenceKernelError",
    "EvidenceRecordService",
    "SealingEngine",
    "WorkItemService",
    "get_audit_log",
    "get_draft_service",
    "get_record_service",
    "get_sealing_engine",
    "get_work_item_service",
    "validate_declaration",
]
