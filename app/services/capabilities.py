from __future__ import annotations

from dataclasses import dataclass
import json
from typing import Any, Iterable, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from app.services.llm import ToolCallRequest


MAX_SEARCH_LIMIT = 15

ProductCategory = Literal[
    "cleanser",
    "moisturizer",
    "serum",
    "sunscreen",
    "treatment",
    "toner",
    "mask",
    "exfoliant",
    "eye",
    "face",
]
TargetSkinType = Literal["oily", "dry", "combination", "sensitive", "normal", "acne-prone"]


class _Arguments(BaseModel):
    model_config = ConfigDict(extra="forbid")


class NoArguments(_Arguments):
    pass


class SearchProductsArgs(_Arguments):
    query: str = Field(
        min_length=1,
        description='Natural language search query, e.g. "gentle cleanser for oily acne-prone skin"',
    )
    category: Optional[ProductCategory] = Field(default=None, description="Optional product category filter")
    skin_type: Optional[TargetSkinType] = Field(default=None, description="Filter by target skin type")
    concerns: list[str] = Field(default_factory=list, description='Target concerns, e.g. ["acne", "dark spots"]')
    max_price: Optional[float] = Field(default=None, gt=0, description="Maximum price in USD")
    limit: int = Field(default=6, ge=1, description="Max number of products to return (default 6, max 15)")

    @field_validator("limit")
    @classmethod
    def _clamp_limit(cls, value: int) -> int:
        return min(value, MAX_SEARCH_LIMIT)


class ProductDetailsArgs(_Arguments):
    product_id: Optional[str] = Field(default=None, description="The product id, if known")
    product_name: Optional[str] = Field(default=None, description="Product name to look up (partial match OK)")

    @model_validator(mode="after")
    def _require_reference(self) -> "ProductDetailsArgs":
        if not (self.product_id or "").strip() and not (self.product_name or "").strip():
            raise ValueError("product_id or product_name is required")
        return self


class CompareProductsArgs(_Arguments):
    product_names: list[str] = Field(min_length=1, max_length=5, description="Names of the products to compare")


class AddToCartArgs(_Arguments):
    product_id: str = Field(min_length=1, description="The product id to add")
    quantity: int = Field(default=1, ge=1, le=20, description="Quantity to add (default 1)")


class RemoveFromCartArgs(_Arguments):
    product_id: str = Field(min_length=1, description="The product id to remove")


class RoutineStepArgs(_Arguments):
    step: int = Field(ge=1)
    name: str = Field(min_length=1)
    instructions: str = ""
    frequency: str = "daily"
    product_id: Optional[str] = Field(default=None, description="Product id from search_products or get_product_details")
    product_name: Optional[str] = None


class RoutinePlanArgs(_Arguments):
    morning: list[RoutineStepArgs]
    evening: list[RoutineStepArgs]
    weekly: list[RoutineStepArgs] = Field(default_factory=list)


class UpdateRoutineArgs(_Arguments):
    routine: RoutinePlanArgs
    summary: Optional[str] = None


@dataclass(frozen=True)
class CapabilityDef:
    name: str
    description: str
    arguments: type[BaseModel]
    mutating: bool = False
    requires_user: bool = False

    def tool(self) -> dict[str, Any]:
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": _parameters_schema(self.arguments),
            },
        }


@dataclass(frozen=True)
class CapabilityCall:
    id: str
    name: str
    arguments: BaseModel

    def arguments_json(self) -> str:
        return self.arguments.model_dump_json(exclude_none=True)


@dataclass(frozen=True)
class RejectedCall:
    id: str
    name: str
    reason: str
    raw_arguments: str = ""

    def arguments_json(self) -> str:
        return self.raw_arguments or "{}"


ResolvedCall = Union[CapabilityCall, RejectedCall]


def _inline_refs(node: Any, defs: dict[str, Any]) -> Any:
    if isinstance(node, dict):
        ref = node.get("$ref")
        if isinstance(ref, str) and ref.startswith("#/$defs/"):
            return _inline_refs(defs.get(ref.split("/")[-1], {}), defs)
        return {k: _inline_refs(v, defs) for k, v in node.items() if k not in {"$defs", "title"}}
    if isinstance(node, list):
        return [_inline_refs(v, defs) for v in node]
    return node


def _parameters_schema(model: type[BaseModel]) -> dict[str, Any]:
    schema = model.model_json_schema()
    inlined = _inline_refs(schema, schema.get("$defs") or {})
    inlined.setdefault("properties", {})
    inlined.setdefault("required", [])
    return inlined


def _format_validation_error(exc: ValidationError) -> str:
    parts: list[str] = []
    for err in exc.errors()[:5]:
        loc = ".".join(str(x) for x in err.get("loc") or ()) or "arguments"
        parts.append(f"{loc}: {err.get('msg')}")
    return "; ".join(parts)


class CapabilityMenu:
    """Closed set of capabilities the model may request."""

    def __init__(self, entries: Iterable[CapabilityDef]) -> None:
        self._entries: dict[str, CapabilityDef] = {}
        for entry in entries:
            if entry.name in self._entries:
                raise ValueError(f"duplicate capability: {entry.name}")
            self._entries[entry.name] = entry

    def __contains__(self, name: object) -> bool:
        return name in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    @property
    def names(self) -> list[str]:
        return list(self._entries)

    def get(self, name: str) -> Optional[CapabilityDef]:
        return self._entries.get(name)

    def tools(self) -> list[dict[str, Any]]:
        return [entry.tool() for entry in self._entries.values()]

    def parse(self, raw: ToolCallRequest) -> ResolvedCall:
        raw_text = raw.arguments if isinstance(raw.arguments, str) else json.dumps(raw.arguments, ensure_ascii=False)
        entry = self._entries.get(raw.name)
        if entry is None:
            return RejectedCall(id=raw.id, name=raw.name, reason=f"unknown capability: {raw.name or '<empty>'}", raw_arguments=raw_text)

        payload: Any = raw.arguments
        if isinstance(payload, str):
            if not payload.strip():
                payload = {}
            else:
                try:
                    payload = json.loads(payload)
                except json.JSONDecodeError:
                    return RejectedCall(id=raw.id, name=raw.name, reason="arguments are not valid JSON", raw_arguments=raw_text)
        if not isinstance(payload, dict):
            return RejectedCall(id=raw.id, name=raw.name, reason="arguments must be a JSON object", raw_arguments=raw_text)

        try:
            arguments = entry.arguments.model_validate(payload)
        except ValidationError as exc:
            return RejectedCall(
                id=raw.id,
                name=raw.name,
                reason=f"invalid arguments: {_format_validation_error(exc)}",
                raw_arguments=raw_text,
            )
        return CapabilityCall(id=raw.id, name=entry.name, arguments=arguments)


DEFAULT_MENU = CapabilityMenu(
    [
        CapabilityDef(
            name="get_user_skin_profile",
            description=(
                "Fetch the signed-in user's skin profile: skin type, tone, goals, concerns, hair info, "
                "sunscreen usage, budget, fragrance preference and photo analysis results. "
                "Call this before giving personalized advice."
            ),
            arguments=NoArguments,
            requires_user=True,
        ),
        CapabilityDef(
            name="get_user_routine",
            description="Fetch the user's current skincare routine (morning, evening and weekly steps).",
            arguments=NoArguments,
            requires_user=True,
        ),
        CapabilityDef(
            name="search_products",
            description=(
                "Search the product catalog using semantic similarity plus keyword matching. "
                "Call this for recommendations, alternatives, or to find specific products."
            ),
            arguments=SearchProductsArgs,
        ),
        CapabilityDef(
            name="get_product_details",
            description="Get full details for one product by id or name: ingredients, attributes, price, rating.",
            arguments=ProductDetailsArgs,
        ),
        CapabilityDef(
            name="compare_products",
            description="Compare two or more products side by side by name.",
            arguments=CompareProductsArgs,
        ),
        CapabilityDef(
            name="add_to_cart",
            description="Add a product to the user's cart by product_id.",
            arguments=AddToCartArgs,
            mutating=True,
            requires_user=True,
        ),
        CapabilityDef(
            name="remove_from_cart",
            description="Remove a product from the user's cart by product_id.",
            arguments=RemoveFromCartArgs,
            mutating=True,
            requires_user=True,
        ),
        CapabilityDef(
            name="update_user_routine",
            description=(
                "Replace the user's routine with a new morning/evening/weekly plan. "
                "Include product_id from tool results for each step that uses a product."
            ),
            arguments=UpdateRoutineArgs,
            mutating=True,
            requires_user=True,
        ),
    ]
)
