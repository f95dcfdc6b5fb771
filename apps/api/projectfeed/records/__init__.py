from projectfeed.records.api import router
from projectfeed.records.models import Appointment, Document, Note, Opportunity, Payment, Project, Quote, StatusEntry, Task
from projectfeed.records.schemas import ProjectCreate, ProjectRead, RecordWriteResult, StoreKind
from projectfeed.records.service import ProjectRecordService, project_record_service
from projectfeed.records.store import FetchResult, RecordStore, ServiceRecordStore

__all__ = [
    "router",
    "Appointment",
    "Document",
    "Note",
    "Opportunity",
    "Payment",
    "Project",
    "Quote",
    "StatusEntry",
    "Task",
    "ProjectCreate",
    "ProjectRead",
    "RecordWriteResult",
    "StoreKind",
    "ProjectRecordService",
    "project_record_service",
    "FetchResult",
    "RecordStore",
    "ServiceRecordStore",
]
