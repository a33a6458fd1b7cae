from consult_dispatch.core.balancer.logic import Allocatable, Allocation, allocate
from consult_dispatch.core.balancer.tenancy import TenantPolicy

__all__ = [
    "Allocatable",
    "Allocation",
    "TenantPolicy",
    "allocate",
]
