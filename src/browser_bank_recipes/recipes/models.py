"""Data models for recipes, interaction steps and extracted rows.

Steps and target descriptors are tagged unions: pydantic picks the concrete
class from the ``kind`` / ``strategy`` field when a recipe is loaded, so
playback code can rely on ``isinstance`` checks instead of inspecting optional
fields.
"""

import uuid
from datetime import UTC, datetime
from decimal import Decimal, InvalidOperation
from typing import Annotated, Literal, Optional, Union

from pydantic import BaseModel, Field

MASK = "••••"
# Stored instead of a sensitive value when secrets are not kept on disk
REDACTED = "[REDACTED]"

# --- Target descriptors ---


class SemanticDescriptor(BaseModel):
    """Form control located by a stable attribute or its label text."""

    strategy: Literal["semantic"] = "semantic"
    attribute: Literal["name", "placeholder", "aria-label", "label"]
    value: str
    tag: str = "input"

    def key(self) -> str:
        return f"{self.attribute}:{self.value}"


class TextDescriptor(BaseModel):
    """Clickable located by its visible text, optionally narrowed by a class name."""

    strategy: Literal["text"] = "text"
    text: str = Field(max_length=100)
    class_name: Optional[str] = None
    tag: str = "button"

    def key(self) -> str:
        return f"text:{self.class_name or self.tag}:{self.text}"


class PathSegment(BaseModel):
    tag: str
    id: Optional[str] = None
    class_name: Optional[str] = None

    @property
    def css(self) -> str:
        if self.id:
            return f"{self.tag}#{self.id}"
        if self.class_name:
            return f"{self.tag}.{self.class_name}"
        return self.tag


class StructuralDescriptor(BaseModel):
    """Element located by a short ancestor path (outermost segment first)."""

    strategy: Literal["structural"] = "structural"
    path: list[PathSegment] = Field(min_length=1, max_length=3)

    @property
    def selector(self) -> str:
        return " > ".join(segment.css for segment in self.path)

    def key(self) -> str:
        return self.selector


class CoordinateDescriptor(BaseModel):
    """No usable identity; the step's recorded coordinates are the only locator."""

    strategy: Literal["coordinates"] = "coordinates"

    def key(self) -> str:
        return "coordinates"


TargetDescriptor = Annotated[
    Union[SemanticDescriptor, TextDescriptor, StructuralDescriptor, CoordinateDescriptor],
    Field(discriminator="strategy"),
]

# --- Coordinates ---


class Point(BaseModel):
    x: float
    y: float


class ViewportSnapshot(BaseModel):
    width: float
    height: float
    scroll_x: float = 0.0
    scroll_y: float = 0.0


class CapturedCoordinates(BaseModel):
    """Viewport-relative interaction point and element center at capture time."""

    point: Point
    element_center: Point
    viewport: ViewportSnapshot

    def scroll_compensated(self, current: ViewportSnapshot) -> Point:
        """Map the recorded point into the current viewport by undoing the scroll difference."""
        return Point(
            x=self.point.x + (self.viewport.scroll_x - current.scroll_x),
            y=self.point.y + (self.viewport.scroll_y - current.scroll_y),
        )


# --- Interaction steps ---


class _StepBase(BaseModel):
    target: TargetDescriptor
    coordinates: Optional[CapturedCoordinates] = None
    field_label: Optional[str] = None
    captured_at: float = 0.0  # epoch milliseconds, debounce only

    @property
    def label(self) -> str:
        if self.field_label:
            return self.field_label
        target = self.target
        if isinstance(target, TextDescriptor):
            return target.text
        if isinstance(target, SemanticDescriptor):
            return target.value
        if isinstance(target, StructuralDescriptor):
            return target.selector
        return "element"


class ClickStep(_StepBase):
    kind: Literal["click"] = "click"

    def describe(self) -> str:
        return f"Click '{self.label}'"


class InputStep(_StepBase):
    kind: Literal["input"] = "input"
    value: str
    is_sensitive: bool = False

    @property
    def value_withheld(self) -> bool:
        """True when the value was not stored and must be supplied at playback."""
        return self.value == REDACTED

    @property
    def display_value(self) -> str:
        return MASK if self.is_sensitive or self.value_withheld else self.value

    def describe(self) -> str:
        return f"Type '{self.display_value}' into {self.label}"


class SelectStep(_StepBase):
    kind: Literal["select"] = "select"
    value: str
    is_sensitive: bool = False

    @property
    def value_withheld(self) -> bool:
        """True when the value was not stored and must be supplied at playback."""
        return self.value == REDACTED

    @property
    def display_value(self) -> str:
        return MASK if self.is_sensitive or self.value_withheld else self.value

    def describe(self) -> str:
        return f"Select '{self.display_value}' in {self.label}"


InteractionStep = Annotated[Union[ClickStep, InputStep, SelectStep], Field(discriminator="kind")]


def _new_recipe_id() -> str:
    return uuid.uuid4().hex[:12]


def _utcnow() -> datetime:
    return datetime.now(UTC)


class Recipe(BaseModel):
    """A named, ordered, replayable list of interaction steps for one site."""

    id: str = Field(default_factory=_new_recipe_id)
    name: str = Field(min_length=1)
    target_url: str
    institution: Optional[str] = None
    linked_account_id: Optional[str] = None
    steps: list[InteractionStep] = Field(min_length=1)

    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)
    last_run_at: Optional[datetime] = None
    last_extraction_method: Optional[str] = None

    def to_dict(self) -> dict:
        return self.model_dump(mode="json")

    @classmethod
    def from_dict(cls, data: dict) -> "Recipe":
        return cls.model_validate(data)


# --- Extraction output ---


class ExtractedRow(BaseModel):
    """One transaction-shaped row mined from the final page."""

    date: str = ""
    description: str = ""
    amount: str = ""
    balance: Optional[str] = None
    category: Optional[str] = None
    confidence_score: float = 0.0

    @property
    def amount_value(self) -> Decimal | None:
        try:
            return Decimal(self.amount)
        except (InvalidOperation, ValueError):
            return None

    def dedupe_key(self) -> tuple[str, str, str]:
        return (self.date, self.description, self.amount)
