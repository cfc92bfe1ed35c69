from __future__ import annotations

import math
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Type, TypeVar

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic import ValidationError as PydanticValidationError

from decisionflow.logging import get_logger
from decisionflow.service.errors import BadRequestError, ConflictError, NotFoundError
from decisionflow.service.expressions import extract_param_codes
from decisionflow.storage.errors import ConstraintViolation
from decisionflow.storage.models import (
    ParameterChangeLog,
    ParameterItem,
    ParameterSet,
    new_id,
    utcnow,
)

logger = get_logger(__name__)


class ParameterType(str, Enum):
    NUMBER = "number"
    STRING = "string"
    BOOLEAN = "boolean"
    ENUM = "enum"
    JSON = "json"
    EXPRESSION = "expression"


class ScopeLevel(str, Enum):
    PUBLIC_TEMPLATE = "PUBLIC_TEMPLATE"
    USER_TEMPLATE = "USER_TEMPLATE"
    GLOBAL = "GLOBAL"
    COMMODITY = "COMMODITY"
    REGION = "REGION"
    ROUTE = "ROUTE"
    STRATEGY = "STRATEGY"
    SESSION = "SESSION"


# lowest priority first; later scopes overwrite earlier ones
SCOPE_PRIORITY = tuple(level.value for level in ScopeLevel)

_ALWAYS_MATCHING_SCOPES = frozenset({"PUBLIC_TEMPLATE", "USER_TEMPLATE", "GLOBAL"})
_CONTEXT_SCOPES = {
    "COMMODITY": "commodity",
    "REGION": "region",
    "ROUTE": "route",
    "STRATEGY": "strategy",
}
MAX_UNIT_LENGTH = 20
_REQUIRED_ITEM_FIELDS = frozenset({"param_code", "param_name", "param_type", "scope_level", "is_active"})


def _aware(value: Optional[datetime]) -> Optional[datetime]:
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def scope_priority(scope_level: str) -> int:
    try:
        return SCOPE_PRIORITY.index(scope_level)
    except ValueError:
        return len(SCOPE_PRIORITY)


@dataclass
class ResolveContext:
    commodity: Optional[str] = None
    region: Optional[str] = None
    route: Optional[str] = None
    strategy: Optional[str] = None
    session_overrides: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, payload: Optional[Mapping[str, Any]]) -> "ResolveContext":
        payload = payload or {}
        return cls(
            commodity=payload.get("commodity"),
            region=payload.get("region"),
            route=payload.get("route"),
            strategy=payload.get("strategy"),
            session_overrides=dict(payload.get("sessionOverrides") or {}),
        )


@dataclass(frozen=True)
class ResolvedParameter:
    param_code: str
    value: Any
    source_scope: str

    def to_dict(self) -> Dict[str, Any]:
        return {"paramCode": self.param_code, "value": self.value, "sourceScope": self.source_scope}


@dataclass
class ResolutionResult:
    parameter_set_id: str
    resolved: List[ResolvedParameter]

    def as_snapshot(self) -> Dict[str, Any]:
        return {entry.param_code: entry.value for entry in self.resolved}

    def to_dict(self) -> Dict[str, Any]:
        return {
            "parameterSetId": self.parameter_set_id,
            "resolved": [entry.to_dict() for entry in self.resolved],
        }


class ParameterResolver:
    """Resolve layered parameter items into one value per code.

    Matching items are applied from the broadest scope to the narrowest
    (template, global, then commodity/region/route/strategy); items in the
    same scope apply in order of last update. Session overrides always win.
    """

    def __init__(self, clock: Callable[[], datetime] = utcnow) -> None:
        self._clock = clock

    @staticmethod
    def matches_scope(item: ParameterItem, context: ResolveContext) -> bool:
        if item.scope_level in _ALWAYS_MATCHING_SCOPES:
            return True
        attribute = _CONTEXT_SCOPES.get(item.scope_level)
        if attribute is None:
            # stored SESSION items never match; overrides come from the context
            return False
        expected = getattr(context, attribute)
        return bool(expected) and item.scope_value == expected

    @staticmethod
    def is_effective(item: ParameterItem, now: datetime) -> bool:
        start, end = _aware(item.effective_from), _aware(item.effective_to)
        if start is not None and now < start:
            return False
        if end is not None and now > end:
            return False
        return True

    def resolve(
        self,
        items: Iterable[ParameterItem],
        context: Optional[ResolveContext] = None,
        *,
        now: Optional[datetime] = None,
    ) -> List[ResolvedParameter]:
        context = context or ResolveContext()
        now = _aware(now) or self._clock()
        candidates = [
            item
            for item in items
            if item.is_active
            and self.matches_scope(item, context)
            and self.is_effective(item, now)
        ]
        candidates.sort(key=lambda item: (scope_priority(item.scope_level), _aware(item.updated_at)))

        resolved: Dict[str, ResolvedParameter] = {}
        for item in candidates:
            resolved[item.param_code] = ResolvedParameter(
                param_code=item.param_code,
                value=item.effective_value,
                source_scope=item.scope_level,
            )
        for code, value in context.session_overrides.items():
            resolved[code] = ResolvedParameter(
                param_code=code, value=value, source_scope=ScopeLevel.SESSION.value
            )
        return list(resolved.values())

    def resolve_snapshot(
        self,
        items: Iterable[ParameterItem],
        context: Optional[ResolveContext] = None,
        *,
        now: Optional[datetime] = None,
    ) -> Dict[str, Any]:
        """Code -> value mapping handed to node executors as ``param_snapshot``."""
        return {entry.param_code: entry.value for entry in self.resolve(items, context, now=now)}


# -- write side ---------------------------------------------------------------


class _ParameterItemFields(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="forbid", use_enum_values=True)

    unit: Optional[str] = None
    value: Any = None
    default_value: Any = Field(None, alias="defaultValue")
    min_value: Any = Field(None, alias="minValue")
    max_value: Any = Field(None, alias="maxValue")
    scope_value: Optional[str] = Field(None, alias="scopeValue", max_length=120)
    source: Optional[str] = Field(None, max_length=120)
    change_reason: Optional[str] = Field(None, alias="changeReason", max_length=500)
    effective_from: Optional[datetime] = Field(None, alias="effectiveFrom")
    effective_to: Optional[datetime] = Field(None, alias="effectiveTo")

    @field_validator("effective_from", "effective_to")
    @classmethod
    def _utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        return _aware(value)


class ParameterItemInput(_ParameterItemFields):
    param_code: str = Field(..., alias="paramCode", pattern=r"^[a-zA-Z0-9_.-]{2,120}$")
    param_name: str = Field(..., alias="paramName", min_length=1, max_length=120)
    param_type: ParameterType = Field(..., alias="paramType")
    scope_level: ScopeLevel = Field(ScopeLevel.GLOBAL, alias="scopeLevel", validate_default=True)


class ParameterItemPatch(_ParameterItemFields):
    param_code: Optional[str] = Field(None, alias="paramCode", pattern=r"^[a-zA-Z0-9_.-]{2,120}$")
    param_name: Optional[str] = Field(None, alias="paramName", min_length=1, max_length=120)
    param_type: Optional[ParameterType] = Field(None, alias="paramType")
    scope_level: Optional[ScopeLevel] = Field(None, alias="scopeLevel")
    is_active: Optional[bool] = Field(None, alias="isActive")


class ParameterSetInput(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="forbid")

    set_code: str = Field(..., alias="setCode", pattern=r"^[A-Z0-9_]{3,100}$")
    name: str = Field(..., min_length=1, max_length=120)
    description: Optional[str] = Field(None, max_length=1000)
    template_source: str = Field("PRIVATE", alias="templateSource", pattern="^(PRIVATE|PUBLIC)$")


def _to_number(value: Any) -> Optional[float]:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        number = float(value)
    elif isinstance(value, str) and value.strip():
        try:
            number = float(value.strip())
        except ValueError:
            return None
    else:
        return None
    return number if math.isfinite(number) else None


def validate_parameter_item(item: ParameterItem) -> List[str]:
    """Type, range, unit and time-window problems of one item (empty when valid)."""
    errors: List[str] = []
    checked = {
        "value": item.value,
        "defaultValue": item.default_value,
    }

    if item.param_type == ParameterType.NUMBER.value:
        bounds = {"minValue": item.min_value, "maxValue": item.max_value}
        numbers: Dict[str, Optional[float]] = {}
        for name, raw in {**checked, **bounds}.items():
            if raw is None:
                continue
            numbers[name] = _to_number(raw)
            if numbers[name] is None:
                errors.append(f"{name} must be a finite number")
        low, high = numbers.get("minValue"), numbers.get("maxValue")
        if low is not None and high is not None:
            if low > high:
                errors.append("minValue must not exceed maxValue")
            value = numbers.get("value")
            if value is not None and not low <= value <= high:
                errors.append(f"value {value:g} is outside [{low:g}, {high:g}]")
        if item.unit and len(item.unit) > MAX_UNIT_LENGTH:
            errors.append(f"unit must be at most {MAX_UNIT_LENGTH} characters")
    else:
        if item.unit:
            errors.append("unit is only allowed for number parameters")
        if item.param_type == ParameterType.BOOLEAN.value:
            for name, raw in checked.items():
                if raw is not None and not isinstance(raw, bool):
                    errors.append(f"{name} must be a boolean")
        elif item.param_type in (
            ParameterType.STRING.value,
            ParameterType.ENUM.value,
            ParameterType.EXPRESSION.value,
        ):
            for name, raw in checked.items():
                if raw is not None and not isinstance(raw, str):
                    errors.append(f"{name} must be a string")

    start, end = _aware(item.effective_from), _aware(item.effective_to)
    if start is not None and end is not None and start > end:
        errors.append("effectiveFrom must not be later than effectiveTo")
    return errors


def _code_known(reference: str, codes: Iterable[str]) -> bool:
    known = set(codes)
    segments = reference.split(".")
    return any(".".join(segments[:n]) in known for n in range(len(segments), 0, -1))


M = TypeVar("M", bound=BaseModel)


def _parse(model: Type[M], payload: Any) -> M:
    if isinstance(payload, model):
        return payload
    try:
        return model.model_validate(payload)
    except PydanticValidationError as exc:
        errors = [
            f"{'.'.join(str(part) for part in err['loc']) or 'payload'}: {err['msg']}"
            for err in exc.errors()
        ]
        raise BadRequestError("invalid parameter payload", detail={"errors": errors}) from exc


class ParameterCenterService:
    """Write and read access to parameter sets and their items.

    Every item write runs the domain checks of ``validate_parameter_item``,
    expression reference checks and the active-scope uniqueness rule, and
    appends an audit entry. Items are never hard deleted.
    """

    def __init__(self, store, resolver: Optional[ParameterResolver] = None) -> None:
        self.store = store
        self.resolver = resolver or ParameterResolver()

    # sets -----------------------------------------------------------------

    def create_set(self, owner_user_id: str, payload: Any) -> ParameterSet:
        data = _parse(ParameterSetInput, payload)
        parameter_set = ParameterSet(
            id=new_id(),
            set_code=data.set_code,
            name=data.name,
            owner_user_id=owner_user_id,
            template_source=data.template_source,
            description=data.description,
        )
        try:
            self.store.create_parameter_set(parameter_set)
        except ConstraintViolation as exc:
            raise ConflictError(exc.message, detail=exc.detail) from exc
        logger.info("parameter_set_created", set_id=parameter_set.id, set_code=data.set_code)
        return parameter_set

    def get_set(self, owner_user_id: str, set_id: str) -> ParameterSet:
        parameter_set = self.store.get_parameter_set(set_id)
        if parameter_set is None or (
            parameter_set.owner_user_id != owner_user_id
            and parameter_set.template_source != "PUBLIC"
        ):
            raise NotFoundError("parameter set not found", detail={"set_id": set_id})
        return parameter_set

    def _get_owned_set(self, owner_user_id: str, set_id: str) -> ParameterSet:
        parameter_set = self.store.get_parameter_set(set_id)
        if parameter_set is None or parameter_set.owner_user_id != owner_user_id:
            raise NotFoundError(
                "parameter set not found or not editable", detail={"set_id": set_id}
            )
        return parameter_set

    def update_set(
        self,
        owner_user_id: str,
        set_id: str,
        *,
        name: Optional[str] = None,
        description: Optional[str] = None,
        is_active: Optional[bool] = None,
    ) -> ParameterSet:
        parameter_set = self._get_owned_set(owner_user_id, set_id)
        if name is not None:
            if not name.strip() or len(name) > 120:
                raise BadRequestError("name must be 1-120 characters")
            parameter_set.name = name
        if description is not None:
            parameter_set.description = description
        if is_active is not None:
            parameter_set.is_active = is_active
        parameter_set.version += 1
        return self.store.save_parameter_set(parameter_set)

    def deactivate_set(self, owner_user_id: str, set_id: str) -> ParameterSet:
        return self.update_set(owner_user_id, set_id, is_active=False)

    # items ----------------------------------------------------------------

    def list_items(self, set_id: str, *, include_inactive: bool = False) -> List[ParameterItem]:
        return self.store.list_parameter_items(set_id, include_inactive=include_inactive)

    def add_item(
        self,
        owner_user_id: str,
        set_id: str,
        payload: Any,
        *,
        changed_by: Optional[str] = None,
    ) -> ParameterItem:
        parameter_set = self._get_owned_set(owner_user_id, set_id)
        data = _parse(ParameterItemInput, payload)
        item = ParameterItem(id=new_id(), parameter_set_id=parameter_set.id, **data.model_dump())
        self._validate(item)
        self._persist(item, create=True)
        self._log_change(item, "CREATE", None, item.snapshot(), changed_by or owner_user_id, item.change_reason)
        logger.info(
            "parameter_item_created",
            set_id=set_id,
            param_code=item.param_code,
            scope_level=item.scope_level,
        )
        return item

    def update_item(
        self,
        owner_user_id: str,
        set_id: str,
        item_id: str,
        patch: Any,
        *,
        changed_by: Optional[str] = None,
    ) -> ParameterItem:
        self._get_owned_set(owner_user_id, set_id)
        existing = self._get_item(set_id, item_id)
        changes = {
            key: value
            for key, value in _parse(ParameterItemPatch, patch).model_dump(exclude_unset=True).items()
            if value is not None or key not in _REQUIRED_ITEM_FIELDS
        }
        updated = replace(existing, **changes)
        self._validate(updated)
        before = existing.snapshot()
        self._persist(updated, create=False)
        self._log_change(
            updated,
            "UPDATE",
            before,
            updated.snapshot(),
            changed_by or owner_user_id,
            changes.get("change_reason"),
        )
        logger.info("parameter_item_updated", set_id=set_id, param_code=updated.param_code)
        return updated

    def deactivate_item(
        self,
        owner_user_id: str,
        set_id: str,
        item_id: str,
        *,
        reason: Optional[str] = None,
    ) -> ParameterItem:
        self._get_owned_set(owner_user_id, set_id)
        existing = self._get_item(set_id, item_id)
        before = existing.snapshot()
        updated = replace(existing, is_active=False)
        self._persist(updated, create=False)
        self._log_change(updated, "DEACTIVATE", before, updated.snapshot(), owner_user_id, reason)
        logger.info("parameter_item_deactivated", set_id=set_id, param_code=updated.param_code)
        return updated

    def list_change_logs(self, owner_user_id: str, set_id: str) -> List[ParameterChangeLog]:
        self.get_set(owner_user_id, set_id)
        return self.store.list_parameter_change_logs(set_id)

    # resolution -----------------------------------------------------------

    def resolve(
        self,
        owner_user_id: str,
        set_id: str,
        context: ResolveContext | Mapping[str, Any] | None = None,
        *,
        now: Optional[datetime] = None,
    ) -> ResolutionResult:
        parameter_set = self.get_set(owner_user_id, set_id)
        if not isinstance(context, ResolveContext):
            context = ResolveContext.from_dict(context)
        items = self.store.list_parameter_items(parameter_set.id)
        resolved = self.resolver.resolve(items, context, now=now)
        logger.debug("parameters_resolved", set_id=set_id, count=len(resolved))
        return ResolutionResult(parameter_set_id=parameter_set.id, resolved=resolved)

    # helpers --------------------------------------------------------------

    def _get_item(self, set_id: str, item_id: str) -> ParameterItem:
        item = self.store.get_parameter_item(item_id)
        if item is None or item.parameter_set_id != set_id:
            raise NotFoundError("parameter item not found", detail={"item_id": item_id})
        return item

    def _validate(self, item: ParameterItem) -> None:
        errors = validate_parameter_item(item)
        if errors:
            raise BadRequestError(
                f"invalid parameter {item.param_code}: {'; '.join(errors)}",
                detail={"param_code": item.param_code, "errors": errors},
            )
        if item.param_type != ParameterType.EXPRESSION.value or not isinstance(item.value, str):
            return
        references = extract_param_codes(item.value) - {item.param_code}
        if not references:
            return
        active_codes = {
            other.param_code
            for other in self.store.list_parameter_items(item.parameter_set_id)
            if other.id != item.id
        }
        missing = sorted(ref for ref in references if not _code_known(ref, active_codes))
        if missing:
            raise BadRequestError(
                f"expression references unknown parameters: {', '.join(missing)}",
                detail={"param_code": item.param_code, "missing": missing},
            )

    def _persist(self, item: ParameterItem, *, create: bool) -> None:
        try:
            if create:
                self.store.add_parameter_item(item)
            else:
                self.store.update_parameter_item(item)
        except ConstraintViolation as exc:
            raise ConflictError(exc.message, detail=exc.detail) from exc

    def _log_change(
        self,
        item: ParameterItem,
        action: str,
        before: Optional[Dict[str, Any]],
        after: Optional[Dict[str, Any]],
        changed_by: Optional[str],
        reason: Optional[str],
    ) -> None:
        self.store.append_parameter_change_log(
            ParameterChangeLog(
                id=new_id(),
                parameter_set_id=item.parameter_set_id,
                parameter_item_id=item.id,
                action=action,
                before=before,
                after=after,
                changed_by=changed_by,
                reason=reason,
            )
        )
