"""Enumerations shared across the job ledger modules.

Centralises domain constants so that the record store, the pricing engine,
the repositories and the command-line front end agree on the exact text that
ends up in stored documents.
"""

from __future__ import annotations

from enum import Enum


# Central schema version expected by all layers when validating workbooks.
EXPECTED_SCHEMA_VERSION = "1.0.0"

# Well-known id of the per-tenant company profile document.
PROFILE_DOCUMENT_ID = "companyData"

# Maximum drift, in currency units, tolerated between a stored total and a
# freshly computed one before the stored value is replaced.
OVERRIDE_TOLERANCE = 0.01


class DiscountType(str, Enum):
    """Enumerate the per-line discount policies."""

    NONE = "None"
    PERCENTAGE = "Percentage"
    FLAT_RATE = "FlatRate"


class JobStatus(str, Enum):
    """Enumerate the lifecycle states of a job."""

    ACTIVE = "active"
    COMPLETED = "completed"
    ARCHIVED = "archived"


class Collection(str, Enum):
    """Enumerate the tenant-scoped collections held by the record store."""

    CUSTOMERS = "customers"
    JOBS = "jobs"
    PROFILE = "profile"


class SheetName(str, Enum):
    """Enumerate the workbook sheet names backing each collection."""

    CUSTOMERS = "Customers"
    JOBS = "Jobs"
    PROFILE = "Profile"


class WorkflowList(str, Enum):
    """Enumerate the workflow option lists stored on the company profile."""

    GLASS_TYPES = "glassTypes"
    DAMAGE_TYPES = "damageTypes"
    REPAIR_REPLACEMENT = "repairReplacementOptions"


COLLECTION_SHEETS = {
    Collection.CUSTOMERS: SheetName.CUSTOMERS,
    Collection.JOBS: SheetName.JOBS,
    Collection.PROFILE: SheetName.PROFILE,
}


__all__ = [
    "EXPECTED_SCHEMA_VERSION",
    "PROFILE_DOCUMENT_ID",
    "OVERRIDE_TOLERANCE",
    "DiscountType",
    "JobStatus",
    "Collection",
    "SheetName",
    "WorkflowList",
    "COLLECTION_SHEETS",
]
