"""
Record Store

Patient-owned encrypted record references with consent-based access.
"""

from chaincare.records.models import AccessGrant, AccessLogEntry, MedicalRecord, PatientProfile
from chaincare.records.store import RecordStore

__all__ = [
    "RecordStore",
    "AccessGrant",
    "AccessLogEntry",
    "MedicalRecord",
    "PatientProfile",
]
