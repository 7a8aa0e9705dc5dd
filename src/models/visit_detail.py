"""Farm-type visit detail models - observation data attached to a visit once filled."""

from typing import Any, Optional
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic import ValidationError as PydanticValidationError

from src.models.visit import FarmType, Visit, build_alias_index, canonicalize
from src.utils.errors import ValidationError


class VisitDetail(BaseModel):
    """Fields shared by every farm-type visit form."""
    model_config = ConfigDict(populate_by_name=True, extra="allow")

    detail_id: Optional[str] = Field(None, alias="id", description="Detail record ID, absent until first fill")
    schedule_id: Optional[str] = Field(None, alias="ScheduleID", description="Parent visit")
    farm_id: Optional[str] = Field(None, alias="FarmID")
    location: Optional[str] = Field(None, alias="Location", description="Farm location as 'lat,long'")
    recommendation_advice: Optional[str] = Field(None, alias="RecommendationAdvice")
    feed_back_on_akf: Optional[str] = Field(None, alias="FeedBackOnAKF")
    sample_taken: Optional[bool] = Field(None, alias="SampleTaken")
    created_by: Optional[str] = Field(None, alias="CreatedBy")
    updated_by: Optional[str] = Field(None, alias="UpdatedBy")

    @model_validator(mode="before")
    @classmethod
    def _normalize_aliases(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        return canonicalize(data, build_alias_index(cls, cls.detail_synonyms()))

    @classmethod
    def detail_synonyms(cls) -> dict[str, tuple[str, ...]]:
        return {"schedule_id": ("schedule_id",)}

    @field_validator("detail_id", "schedule_id", "farm_id", "created_by", "updated_by", mode="before")
    @classmethod
    def _coerce_id(cls, value: Any) -> Optional[str]:
        if value is None:
            return None
        value = str(value).strip()
        return value or None

    @field_validator("location", mode="before")
    @classmethod
    def _blank_location(cls, value: Any) -> Optional[str]:
        if value is None:
            return None
        value = str(value).strip()
        return value or None

    def to_payload(self) -> dict:
        """Serialize with the service's wire names, keeping extra observation fields."""
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)

    def to_row(self) -> dict:
        return self.model_dump(mode="json", exclude_none=True)


class LayerVisitDetail(VisitDetail):
    """Layer (egg-laying flock) visit observations."""
    detail_id: Optional[str] = Field(None, alias="LayerFarmVisitId")
    batch_number: Optional[str] = Field(None, alias="BatchNumber")
    breed: Optional[str] = Field(None, alias="Breed")
    flock_size: Optional[int] = Field(None, ge=0, alias="FlockSize")
    age_in_weeks: Optional[float] = Field(None, ge=0, alias="AgeInWeeks")
    mortality_total: Optional[int] = Field(None, ge=0, alias="MortalityTotal")
    curr_egg_prod_in_percent: Optional[float] = Field(None, ge=0, le=100, alias="CurrEggProdinPercent")
    feed_intake_per_chicken_gm: Optional[float] = Field(None, ge=0, alias="FeedIntakePerChickenGm")
    average_body_weight_kg: Optional[float] = Field(None, ge=0, alias="AverageBodyWeightKG")

    @classmethod
    def detail_synonyms(cls) -> dict[str, tuple[str, ...]]:
        return {"detail_id": ("id", "LayerVisitId")}


class DairyVisitDetail(VisitDetail):
    """Dairy herd visit observations."""
    detail_id: Optional[str] = Field(None, alias="DairyFarmVisitId")
    lactation_cows: Optional[int] = Field(None, ge=0, alias="LactationCows")
    dry_cows: Optional[int] = Field(None, ge=0, alias="DryCows")
    heifers: Optional[int] = Field(None, ge=0, alias="Heifers")
    calves: Optional[int] = Field(None, ge=0, alias="Calves")
    total_milk_per_day: Optional[float] = Field(None, ge=0, alias="TotalMilkPerDay")
    avg_milk_production_per_day_per_cow: Optional[float] = Field(
        None, ge=0, alias="AvgMilkProductionPerDayPerCow"
    )
    feeding_system: Optional[str] = Field(None, alias="FeedingSystem")
    farm_advisor_conclusion: Optional[str] = Field(None, alias="FarmAdvisorConclusion")

    @classmethod
    def detail_synonyms(cls) -> dict[str, tuple[str, ...]]:
        return {"detail_id": ("id", "DairyVisitId")}


DETAIL_MODELS: dict[FarmType, type[VisitDetail]] = {
    FarmType.LAYER: LayerVisitDetail,
    FarmType.DAIRY: DairyVisitDetail,
}


def detail_model_for(farm_type: Optional[FarmType]) -> Optional[type[VisitDetail]]:
    """Return the detail model for a farm type, or None when it has no visit form."""
    if farm_type is None:
        return None
    return DETAIL_MODELS.get(farm_type)


def build_detail(farm_type: Any, detail: Any) -> VisitDetail:
    """Validate fill data into the detail model for the visit's farm type."""
    try:
        parsed_type = FarmType.parse(farm_type)
    except ValueError:
        parsed_type = None
    model = detail_model_for(parsed_type)
    if model is None:
        raise ValidationError(
            f"No visit form exists for farm type {farm_type!r}",
            {"FarmType": "Unsupported farm type"},
        )
    if isinstance(detail, model):
        return detail
    if isinstance(detail, VisitDetail):
        detail = detail.model_dump(exclude_none=True)
    try:
        return model.model_validate(detail or {})
    except PydanticValidationError as exc:
        raise ValidationError.from_pydantic(exc, "Visit form has invalid values") from exc


class FilledForm(BaseModel):
    """Read-only view of a visit together with its filled detail form."""
    model_config = ConfigDict(populate_by_name=True)

    schedule: Optional[Visit] = None
    form: dict[str, Any] = Field(default_factory=dict)
    status_history: list[dict[str, Any]] = Field(default_factory=list, alias="statusHistory")

    @field_validator("form", mode="before")
    @classmethod
    def _form_or_empty(cls, value: Any) -> dict:
        if isinstance(value, list):
            value = value[0] if value else {}
        return value if isinstance(value, dict) else {}

    @field_validator("status_history", mode="before")
    @classmethod
    def _history_or_empty(cls, value: Any) -> list:
        return value if isinstance(value, list) else []

    @field_validator("schedule", mode="before")
    @classmethod
    def _schedule_or_none(cls, value: Any) -> Any:
        if isinstance(value, list):
            value = value[0] if value else None
        if isinstance(value, dict) and not value:
            return None
        return value

    @property
    def is_present(self) -> bool:
        """True once the service shows evidence of the filled form."""
        return bool(self.form) or self.schedule is not None

    @property
    def saved_location(self) -> Optional[str]:
        for key in ("Location", "location"):
            value = self.form.get(key)
            if value and str(value).strip():
                return str(value).strip()
        return None
