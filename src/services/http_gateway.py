"""REST mutation gateway for the farm visit service."""

import re
from typing import Any, Optional, Union

import httpx
from pydantic import ValidationError as PydanticValidationError

from src.models.visit import FarmType, Visit, normalize_key
from src.models.visit_actions import ApprovalRequest, CompleteRequest
from src.models.visit_detail import FilledForm, LayerVisitDetail, VisitDetail, build_detail
from src.services.gateway import MutationGateway, Pagination, VisitFilters, VisitPage
from src.utils.config import GatewaySettings
from src.utils.envelope import (
    error_message,
    normalize_field_errors,
    unwrap_items,
    unwrap_pagination,
    unwrap_payload,
    unwrap_record,
)
from src.utils.errors import (
    GatewayError,
    InvalidTransitionError,
    MissingFieldError,
    NetworkError,
    NotFoundError,
    ResponseFormatError,
    ValidationError,
)
from src.utils.logging import get_structured_logger, log_timing, mask_employee_id, mask_location, mask_sensitive_data

logger = get_structured_logger(__name__)

SCHEDULE_PATH = "/farm-visit-schedule"

_MISSING_LOCATION = re.compile(r'missing required field\s*"?location"?', re.IGNORECASE)


class HttpVisitGateway(MutationGateway):
    """Talks to the farm visit REST API through a shared httpx.AsyncClient."""

    def __init__(self, settings: Optional[GatewaySettings] = None, client: Optional[httpx.AsyncClient] = None):
        self.settings = settings or GatewaySettings.from_env()
        self._owns_client = client is None
        if client is None:
            headers = {"Accept": "application/json"}
            if self.settings.token:
                headers["Authorization"] = f"Bearer {self.settings.token}"
            client = httpx.AsyncClient(
                base_url=self.settings.api_root(),
                timeout=self.settings.timeout_seconds,
                headers=headers,
            )
        self._client = client

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def _request(self, method: str, path: str, schedule_id: Optional[str] = None, **kwargs: Any) -> Any:
        """Send a request and return the decoded body, mapping failures to gateway errors."""
        try:
            with log_timing("farm_visit_api_call", logger=logger, method=method, path=path):
                response = await self._client.request(method, path, **kwargs)
        except httpx.TransportError as e:
            logger.error("Farm visit service unreachable", method=method, path=path, error=str(e))
            raise NetworkError(f"Unable to reach the farm visit service: {e}") from e

        body = self._decode(response)
        if response.is_success:
            return body

        error = self._map_error(response.status_code, body, schedule_id)
        logger.warning(
            "Farm visit service rejected request",
            method=method,
            path=path,
            status_code=response.status_code,
            error_type=type(error).__name__,
            error=mask_sensitive_data(str(error)),
        )
        raise error

    @staticmethod
    def _decode(response: httpx.Response) -> Any:
        if not response.content:
            return None
        try:
            return response.json()
        except ValueError:
            return response.text

    @staticmethod
    def _map_error(status_code: int, body: Any, schedule_id: Optional[str]) -> Exception:
        message = error_message(body, f"Request failed with status {status_code}")
        if _MISSING_LOCATION.search(message):
            return MissingFieldError("Location", message)
        if status_code in (400, 422):
            return ValidationError(message, normalize_field_errors(body))
        if status_code == 404:
            return NotFoundError(message, schedule_id)
        if status_code == 409:
            return InvalidTransitionError(message)
        return GatewayError(message, status_code=status_code, body=body)

    @staticmethod
    def _parse_visit(record: dict) -> Visit:
        try:
            return Visit.model_validate(record)
        except PydanticValidationError as e:
            raise ResponseFormatError(f"Visit record does not match the schema: {e}", body=record) from e

    async def _visit_from(self, body: Any, schedule_id: Optional[str]) -> Visit:
        """Parse the visit out of a mutation response, re-reading it when absent."""
        record = unwrap_record(body)
        if record is not None and _has_id(record):
            return self._parse_visit(record)
        if schedule_id is None:
            raise ResponseFormatError("Response carried no visit record", body=body)
        logger.debug("Mutation response carried no record; re-reading visit", schedule_id=schedule_id)
        return await self.get(schedule_id)

    async def list_visits(self, filters: Optional[VisitFilters] = None) -> VisitPage:
        filters = filters or VisitFilters()
        params: dict[str, Any] = {"IncludeDeleted": 1 if filters.include_deleted else 0, "PageNumber": filters.page}
        if filters.page_size:
            params["PageSize"] = filters.page_size
        if filters.advisor_id:
            params["AdvisorID"] = filters.advisor_id
        if filters.farm_id:
            params["FarmID"] = filters.farm_id

        body = await self._request("GET", f"{SCHEDULE_PATH}/list", params=params)
        visits = []
        for record in unwrap_items(body):
            try:
                visits.append(Visit.model_validate(record))
            except PydanticValidationError as e:
                logger.warning("Skipping malformed visit record", error=str(e))

        pagination = unwrap_pagination(body, len(visits), page=filters.page, page_size=filters.page_size)
        logger.info("Visit list fetched", item_count=len(visits), page=pagination["current_page"])
        return VisitPage(items=visits, pagination=Pagination(**pagination))

    async def get(self, schedule_id: str) -> Visit:
        body = await self._request("GET", f"{SCHEDULE_PATH}/{schedule_id}", schedule_id=schedule_id)
        record = unwrap_record(body)
        if record is None:
            raise NotFoundError(f"Visit {schedule_id} not found", schedule_id)
        return self._parse_visit(record)

    async def create(self, visit: Visit) -> Visit:
        payload = visit.to_payload()
        payload.pop("ScheduleID", None)
        body = await self._request("POST", SCHEDULE_PATH, json=payload)
        record = unwrap_record(body)
        if record is None or not _has_id(record):
            raise ResponseFormatError("Create response carried no visit id", body=body)
        created = self._parse_visit(record)
        logger.info(
            "Visit created",
            schedule_id=created.schedule_id,
            advisor_id=mask_employee_id(created.advisor_id),
        )
        return created

    async def update(self, schedule_id: str, patch: dict[str, Any]) -> Visit:
        payload = _patch_payload(patch)
        body = await self._request("PATCH", f"{SCHEDULE_PATH}/{schedule_id}", schedule_id=schedule_id, json=payload)
        return await self._visit_from(body, schedule_id)

    async def submit(self, schedule_id: str, approver_id: str) -> Visit:
        body = await self._request(
            "POST",
            f"{SCHEDULE_PATH}/{schedule_id}/submit",
            schedule_id=schedule_id,
            json={"SubmittedBy": approver_id},
        )
        return await self._visit_from(body, schedule_id)

    async def process_approval(self, schedule_id: str, request: ApprovalRequest) -> Visit:
        body = await self._request(
            "POST",
            f"{SCHEDULE_PATH}/{schedule_id}/approval",
            schedule_id=schedule_id,
            json=request.to_payload(),
        )
        return await self._visit_from(body, schedule_id)

    async def start(self, schedule_id: str, started_by: Optional[str], location: Optional[str] = None) -> Visit:
        payload: dict[str, Any] = {"StartedBy": started_by}
        if location:
            payload["Location"] = location
        logger.info("Starting visit", schedule_id=schedule_id, location=mask_location(location))
        body = await self._request(
            "POST", f"{SCHEDULE_PATH}/{schedule_id}/start", schedule_id=schedule_id, json=payload
        )
        return await self._visit_from(body, schedule_id)

    async def fill(self, farm_type: Union[FarmType, str, None], detail: Union[VisitDetail, dict]) -> VisitDetail:
        record = build_detail(farm_type, detail)
        resource = "/layer-farm" if isinstance(record, LayerVisitDetail) else "/dairy-farm"
        payload = record.to_payload()

        if record.detail_id:
            body = await self._request("PUT", f"{resource}/{record.detail_id}", json=payload)
        else:
            body = await self._request("POST", resource, json=payload)

        saved = unwrap_record(body)
        if not saved:
            return record
        merged = {**record.model_dump(exclude_none=True), **saved}
        return type(record).model_validate(merged)

    async def complete(self, schedule_id: str, request: CompleteRequest) -> Visit:
        body = await self._request(
            "POST",
            f"{SCHEDULE_PATH}/{schedule_id}/complete",
            schedule_id=schedule_id,
            json=request.to_payload(),
        )
        return await self._visit_from(body, schedule_id)

    async def delete(self, schedule_id: str) -> None:
        await self._request("POST", f"{SCHEDULE_PATH}/{schedule_id}/delete", schedule_id=schedule_id)
        logger.info("Visit deleted", schedule_id=schedule_id)

    async def get_filled_form(self, schedule_id: str) -> FilledForm:
        body = await self._request("GET", f"{SCHEDULE_PATH}/{schedule_id}/filled-form", schedule_id=schedule_id)
        payload = unwrap_payload(body)
        if not isinstance(payload, dict):
            return FilledForm()
        try:
            return FilledForm.model_validate(payload)
        except PydanticValidationError as e:
            raise ResponseFormatError(f"Filled form does not match the schema: {e}", body=payload) from e


def _has_id(record: dict) -> bool:
    return any(normalize_key(key) in ("scheduleid", "id") and value for key, value in record.items())


def _patch_payload(patch: dict[str, Any]) -> dict[str, Any]:
    """Translate a canonical or wire-named patch into wire names."""
    parsed = Visit.model_validate(patch)
    fields = parsed.model_fields_set & set(Visit.model_fields)
    return parsed.model_dump(mode="json", by_alias=True, include=fields)
