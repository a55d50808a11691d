"""Read-only query selectors."""

from aid_kernel.selectors.audit_selector import AuditFilter, AuditSelector
from aid_kernel.selectors.base import BaseSelector
from aid_kernel.selectors.regional_selector import RegionalNeedSelector
from aid_kernel.selectors.request_selector import RequestSelector

__all__ = [
    "AuditFilter",
    "AuditSelector",
    "BaseSelector",
    "RegionalNeedSelector",
    "RequestSelector",
]
