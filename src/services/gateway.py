"""Mutation gateway contract - every read and state change the engine issues."""

from abc import ABC, abstractmethod
from typing import Any, Optional, Union
from pydantic import BaseModel, Field

from src.models.visit import FarmType, Visit
from src.models.visit_actions import ApprovalRequest, CompleteRequest
from src.models.visit_detail import FilledForm, VisitDetail


class Pagination(BaseModel):
    current_page: int = 1
    page_size: int = 0
    total_count: int = 0
    total_pages: int = 1


class VisitPage(BaseModel):
    """One page of the authoritative visit list."""
    items: list[Visit] = Field(default_factory=list)
    pagination: Pagination = Field(default_factory=Pagination)


class VisitFilters(BaseModel):
    """Server-side list parameters."""
    include_deleted: bool = False
    page: int = Field(default=1, ge=1)
    page_size: Optional[int] = Field(None, ge=1)
    advisor_id: Optional[str] = None
    farm_id: Optional[str] = None


class MutationGateway(ABC):
    """Abstract persistence/service layer for farm visits.

    Implementations own idempotence: calling ``complete`` twice with the same
    payload must not double-apply side effects.
    """

    @abstractmethod
    async def list_visits(self, filters: Optional[VisitFilters] = None) -> VisitPage:
        ...

    @abstractmethod
    async def get(self, schedule_id: str) -> Visit:
        ...

    @abstractmethod
    async def create(self, visit: Visit) -> Visit:
        ...

    @abstractmethod
    async def update(self, schedule_id: str, patch: dict[str, Any]) -> Visit:
        ...

    @abstractmethod
    async def submit(self, schedule_id: str, approver_id: str) -> Visit:
        ...

    @abstractmethod
    async def process_approval(self, schedule_id: str, request: ApprovalRequest) -> Visit:
        ...

    @abstractmethod
    async def start(self, schedule_id: str, started_by: Optional[str], location: Optional[str] = None) -> Visit:
        ...

    @abstractmethod
    async def fill(self, farm_type: Union[FarmType, str, None], detail: Union[VisitDetail, dict]) -> VisitDetail:
        ...

    @abstractmethod
    async def complete(self, schedule_id: str, request: CompleteRequest) -> Visit:
        ...

    @abstractmethod
    async def delete(self, schedule_id: str) -> None:
        ...

    @abstractmethod
    async def get_filled_form(self, schedule_id: str) -> FilledForm:
        ...

    async def close(self) -> None:
        """Release connections held by the gateway."""
        return None
