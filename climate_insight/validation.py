from __future__ import annotations

from dataclasses import dataclass
from typing import Annotated, Any, ClassVar, Dict, Generic, List, Mapping, Optional, Tuple, Type, TypeVar

from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic import ValidationError as ModelValidationError

from climate_insight.errors import FieldError, ValidationError
from climate_insight.indicators import Indicator, TimeRange

T = TypeVar("T", bound=BaseModel)

REGION_MIN_LENGTH = 2
REGION_MAX_LENGTH = 100
PROMPT_MIN_LENGTH = 10
PROMPT_MAX_LENGTH = 4000
MAX_COLUMNS = 20

ColumnName = Annotated[str, Field(min_length=1)]


class _Request(BaseModel):
    model_config = ConfigDict(frozen=True, str_strip_whitespace=True, populate_by_name=True)

    # reported field name -> (message when missing, message when invalid)
    messages: ClassVar[Dict[str, Tuple[str, str]]] = {}

    @model_validator(mode="before")
    @classmethod
    def drop_blank(cls, data: Any) -> Any:
        # Blank strings count as absent so they report as missing fields.
        if not isinstance(data, Mapping):
            return data
        return {
            key: value
            for key, value in data.items()
            if value is not None and not (isinstance(value, str) and not value.strip())
        }


_INDICATOR_MESSAGES = ("Climate indicator is required", "Invalid climate indicator")
_REGION_MESSAGES = (
    "Region is required",
    f"Region must be a string of {REGION_MIN_LENGTH}-{REGION_MAX_LENGTH} characters",
)


class ForecastRequest(_Request):
    indicator: Indicator
    region: str = Field(min_length=REGION_MIN_LENGTH, max_length=REGION_MAX_LENGTH)
    time_range: TimeRange = Field(alias="timeRange")

    messages: ClassVar[Dict[str, Tuple[str, str]]] = {
        "indicator": _INDICATOR_MESSAGES,
        "region": _REGION_MESSAGES,
        "timeRange": ("Time range is required", "Invalid time range"),
    }


class InsightRequest(_Request):
    indicator: Indicator
    region: str = Field(min_length=REGION_MIN_LENGTH, max_length=REGION_MAX_LENGTH)

    messages: ClassVar[Dict[str, Tuple[str, str]]] = {
        "indicator": _INDICATOR_MESSAGES,
        "region": _REGION_MESSAGES,
    }


class TableRequest(_Request):
    prompt: str = Field(min_length=PROMPT_MIN_LENGTH, max_length=PROMPT_MAX_LENGTH)
    columns: Tuple[ColumnName, ...] = Field(default=(), min_length=1, max_length=MAX_COLUMNS)

    messages: ClassVar[Dict[str, Tuple[str, str]]] = {
        "prompt": (
            "Prompt is required",
            f"Prompt must be a string of {PROMPT_MIN_LENGTH}-{PROMPT_MAX_LENGTH} characters",
        ),
        "columns": ("", f"Columns must be a list of 1-{MAX_COLUMNS} non-empty names"),
    }


@dataclass(frozen=True)
class ValidationResult(Generic[T]):
    request: Optional[T]
    errors: Tuple[FieldError, ...] = ()

    @property
    def is_valid(self) -> bool:
        return not self.errors


def _field_errors(model: Type[_Request], exc: ModelValidationError) -> List[FieldError]:
    errors: List[FieldError] = []
    seen = set()
    for detail in exc.errors():
        field = str(detail["loc"][0]) if detail["loc"] else "request"
        if field in seen:
            continue
        seen.add(field)
        missing, invalid = model.messages.get(field, (detail["msg"], detail["msg"]))
        errors.append(FieldError(field, missing if detail["type"] == "missing" else invalid))
    return errors


class ValidationGate:
    """Checks request parameters before any remote call is attempted."""

    def check(self, model: Type[T], data: Mapping[str, Any]) -> ValidationResult[T]:
        try:
            request = model.model_validate(dict(data))
        except ModelValidationError as exc:
            return ValidationResult(None, tuple(_field_errors(model, exc)))
        return ValidationResult(request)

    def validate_forecast(self, data: Mapping[str, Any]) -> ValidationResult[ForecastRequest]:
        return self.check(ForecastRequest, data)

    def validate_insight(self, data: Mapping[str, Any]) -> ValidationResult[InsightRequest]:
        return self.check(InsightRequest, data)

    def validate_table(self, data: Mapping[str, Any]) -> ValidationResult[TableRequest]:
        return self.check(TableRequest, data)


def ensure_valid(result: ValidationResult[T], **context: Any) -> T:
    if not result.is_valid or result.request is None:
        raise ValidationError(result.errors, context=context)
    return result.request
