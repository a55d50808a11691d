"""
aid_services -- Imperative shell over aid_kernel.

Responsibility:
    Owns transaction boundaries for marketplace operations and maps
    kernel exceptions to caller-visible reports.

Architecture position:
    Dependency direction (enforced by tests/architecture/test_kernel_boundary.py):
        aid_services/ -> aid_kernel/   (allowed)
        aid_services/ -> aid_config/   (allowed)
        aid_kernel/   -> aid_services/ (FORBIDDEN)
"""

from aid_services.coordinator import MarketplaceCoordinator
from aid_services.error_mapping import ErrorReport, describe_error

__all__ = [
    "ErrorReport",
    "MarketplaceCoordinator",
    "describe_error",
]
