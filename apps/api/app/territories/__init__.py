from app.territories.errors import EntityNotFoundError, InvalidRuleError, TerritoryError, TerritoryNotFoundError
from app.territories.models import CRMTerritory, CRMTerritoryAssignment
from app.territories.schemas import (
    AutoAssignResult,
    RegionStats,
    TerritoryAssignmentRead,
    TerritoryCreate,
    TerritoryDetail,
    TerritoryListItem,
    TerritoryRead,
    TerritoryRule,
    TerritoryUpdate,
)

__all__ = [
    "CRMTerritory",
    "CRMTerritoryAssignment",
    "TerritoryRule",
    "TerritoryCreate",
    "TerritoryUpdate",
    "TerritoryRead",
    "TerritoryListItem",
    "TerritoryDetail",
    "TerritoryAssignmentRead",
    "AutoAssignResult",
    "RegionStats",
    "TerritoryError",
    "TerritoryNotFoundError",
    "EntityNotFoundError",
    "InvalidRuleError",
]
