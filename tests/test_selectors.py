"""Tests for target description and coordinate-first resolution."""

import pytest

from browser_bank_recipes.exceptions import PageError
from browser_bank_recipes.recipes.models import (
    CapturedCoordinates,
    ClickStep,
    CoordinateDescriptor,
    InputStep,
    Point,
    SemanticDescriptor,
    StructuralDescriptor,
    TextDescriptor,
    ViewportSnapshot,
)
from browser_bank_recipes.recipes.selectors import (
    FIND_BY_DESCRIPTOR_JS,
    HIT_AT_POINT_JS,
    VIEWPORT_JS,
    NotFound,
    Resolved,
    ResolutionStrategy,
    SelectorResolver,
    capture_coordinates,
    describe,
    is_dynamic_id,
)


def _facts(**overrides):
    facts = {
        "tag": "div",
        "id": None,
        "name": None,
        "nameUnique": False,
        "type": None,
        "placeholder": None,
        "ariaLabel": None,
        "classes": [],
        "uniqueClass": None,
        "labelFor": None,
        "nearbyLabel": None,
        "clickable": None,
        "ancestors": [],
        "point": {"x": 10, "y": 20},
        "center": {"x": 15, "y": 25},
        "viewport": {"width": 1280, "height": 800, "scrollX": 0, "scrollY": 40},
    }
    facts.update(overrides)
    return facts


class TestDescribeFormControls:
    def test_unique_name_wins(self):
        descriptor = describe(_facts(tag="input", name="username", nameUnique=True, placeholder="User ID"))
        assert descriptor == SemanticDescriptor(attribute="name", value="username", tag="input")

    def test_non_unique_name_falls_back_to_placeholder(self):
        descriptor = describe(_facts(tag="input", name="field", nameUnique=False, placeholder="User ID", ariaLabel="Username"))
        assert descriptor == SemanticDescriptor(attribute="placeholder", value="User ID", tag="input")

    def test_aria_label_before_label(self):
        descriptor = describe(_facts(tag="input", ariaLabel="Password", labelFor="Your password"))
        assert isinstance(descriptor, SemanticDescriptor)
        assert descriptor.attribute == "aria-label"

    def test_associated_label(self):
        descriptor = describe(_facts(tag="select", labelFor="  Account\n type "))
        assert descriptor == SemanticDescriptor(attribute="label", value="Account type", tag="select")

    def test_nearby_label(self):
        descriptor = describe(_facts(tag="input", nearbyLabel="Member number"))
        assert descriptor == SemanticDescriptor(attribute="label", value="Member number", tag="input")


class TestDescribeClickables:
    def test_text_with_meaningful_class(self):
        clickable = {"tag": "a", "classes": ["rds-link", "nav-link-primary"], "text": "  Checking  ", "descendantClasses": []}
        descriptor = describe(_facts(tag="span", clickable=clickable))
        assert descriptor == TextDescriptor(text="Checking", class_name="nav-link-primary", tag="a")

    def test_noise_classes_are_excluded(self):
        clickable = {"tag": "button", "classes": ["rds-button", "grid-layout", "card-wrapper"], "text": "Continue", "descendantClasses": ["product-name"]}
        descriptor = describe(_facts(tag="button", clickable=clickable))
        assert descriptor.class_name == "product-name"

    def test_text_is_capped(self):
        clickable = {"tag": "button", "classes": [], "text": "x" * 300, "descendantClasses": []}
        descriptor = describe(_facts(tag="button", clickable=clickable))
        assert isinstance(descriptor, TextDescriptor)
        assert len(descriptor.text) == 100
        assert descriptor.class_name is None

    def test_form_control_takes_priority_over_clickable(self):
        clickable = {"tag": "input", "classes": [], "text": "Log in", "descendantClasses": []}
        descriptor = describe(_facts(tag="input", type="submit", name="login", nameUnique=True, clickable=clickable))
        assert isinstance(descriptor, SemanticDescriptor)


class TestDescribeFallbacks:
    def test_structural_path_skips_dynamic_ids(self):
        ancestors = [
            {"tag": "span", "id": "a3f9c2d4e5b6a7c8d9e0f1", "classes": ["amount"]},
            {"tag": "div", "id": None, "classes": ["rds-layout", "summary"]},
            {"tag": "section", "id": "balances", "classes": []},
        ]
        descriptor = describe(_facts(tag="span", ancestors=ancestors))
        assert isinstance(descriptor, StructuralDescriptor)
        assert descriptor.selector == "section#balances > div.summary > span.amount"

    def test_unique_class(self):
        descriptor = describe(_facts(tag="div", uniqueClass="balance-total", ancestors=[{"tag": "div", "classes": ["balance-total"]}]))
        assert isinstance(descriptor, StructuralDescriptor)
        assert descriptor.selector == "div.balance-total"

    def test_coordinate_only(self):
        descriptor = describe(_facts(tag="div", ancestors=[{"tag": "div", "classes": []}, {"tag": "body", "classes": []}]))
        assert isinstance(descriptor, CoordinateDescriptor)

    @pytest.mark.parametrize(
        "value,expected",
        [
            ("a3f9c2d4e5b6a7c8d9e0f1", True),
            ("123e4567-e89b-12d3-a456-426614174000", True),
            ("1700000000123", True),
            ("login-form", False),
            ("", False),
            (None, False),
        ],
    )
    def test_is_dynamic_id(self, value, expected):
        assert is_dynamic_id(value) is expected

    def test_capture_coordinates(self):
        coords = capture_coordinates(_facts())
        assert coords.point == Point(x=10, y=20)
        assert coords.element_center == Point(x=15, y=25)
        assert coords.viewport.scroll_y == 40

    def test_capture_coordinates_missing(self):
        assert capture_coordinates({"tag": "div"}) is None


def _click_step(recorded_scroll_y: float = 0.0) -> ClickStep:
    return ClickStep(
        target=TextDescriptor(text="Checking", class_name="product-name"),
        coordinates=CapturedCoordinates(
            point=Point(x=100, y=100),
            element_center=Point(x=140, y=110),
            viewport=ViewportSnapshot(width=1280, height=800, scroll_x=0, scroll_y=recorded_scroll_y),
        ),
    )


@pytest.fixture
def viewport_page(fake_page):
    fake_page.handlers[VIEWPORT_JS] = lambda arg: {"width": 1280, "height": 800, "scrollX": 0, "scrollY": 0}
    return fake_page


class TestResolve:
    async def test_exact_point_first(self, viewport_page):
        viewport_page.handlers[HIT_AT_POINT_JS] = lambda arg: {"found": True, "tag": "a"}

        result = await SelectorResolver().resolve(viewport_page, _click_step())

        assert isinstance(result, Resolved)
        assert result.strategy == ResolutionStrategy.EXACT_POINT
        assert len(viewport_page.calls_to(HIT_AT_POINT_JS)) == 1

    async def test_element_center_when_exact_point_misses(self, viewport_page):
        viewport_page.handlers[HIT_AT_POINT_JS] = lambda arg: (
            {"found": True, "tag": "a"} if (arg["x"], arg["y"]) == (140, 110) else {"found": False, "reason": "moved"}
        )

        result = await SelectorResolver().resolve(viewport_page, _click_step())

        assert isinstance(result, Resolved)
        assert result.strategy == ResolutionStrategy.ELEMENT_CENTER
        hits = viewport_page.calls_to(HIT_AT_POINT_JS)
        assert [(p["x"], p["y"]) for p in hits] == [(100, 100), (140, 110)]
        assert all(p["kind"] == "click" and p["token"] == result.token for p in hits)

    async def test_scroll_compensated_point(self, viewport_page):
        viewport_page.handlers[HIT_AT_POINT_JS] = lambda arg: {"found": arg["y"] == 400, "reason": "miss"}

        result = await SelectorResolver().resolve(viewport_page, _click_step(recorded_scroll_y=300))

        assert isinstance(result, Resolved)
        assert result.strategy == ResolutionStrategy.SCROLL_COMPENSATED

    async def test_descriptor_after_all_points_fail(self, viewport_page):
        viewport_page.handlers[HIT_AT_POINT_JS] = lambda arg: {"found": False, "reason": "miss"}
        viewport_page.handlers[FIND_BY_DESCRIPTOR_JS] = lambda arg: {"found": True, "tag": "a"}

        result = await SelectorResolver().resolve(viewport_page, _click_step())

        assert isinstance(result, Resolved)
        assert result.strategy == ResolutionStrategy.DESCRIPTOR
        descriptor_arg = viewport_page.calls_to(FIND_BY_DESCRIPTOR_JS)[0]["descriptor"]
        assert descriptor_arg == {"strategy": "text", "text": "Checking", "class_name": "product-name", "tag": "button"}

    async def test_not_found_is_returned_not_raised(self, viewport_page):
        viewport_page.handlers[HIT_AT_POINT_JS] = lambda arg: PageError("context destroyed")
        viewport_page.handlers[FIND_BY_DESCRIPTOR_JS] = lambda arg: {"found": False, "reason": "no element"}

        result = await SelectorResolver().resolve(viewport_page, _click_step())

        assert isinstance(result, NotFound)
        assert "context destroyed" in result.reason
        assert "descriptor: no element" in result.reason

    async def test_step_without_coordinates_uses_descriptor(self, fake_page):
        fake_page.handlers[FIND_BY_DESCRIPTOR_JS] = lambda arg: {"found": True, "tag": "input"}
        step = InputStep(target=SemanticDescriptor(attribute="name", value="username"), value="jdoe")

        result = await SelectorResolver().resolve(fake_page, step)

        assert isinstance(result, Resolved)
        assert result.strategy == ResolutionStrategy.DESCRIPTOR
        assert fake_page.calls_to(HIT_AT_POINT_JS) == []
        assert fake_page.calls_to(FIND_BY_DESCRIPTOR_JS)[0]["kind"] == "input"

    async def test_coordinate_only_step_skips_descriptor(self, viewport_page):
        viewport_page.handlers[HIT_AT_POINT_JS] = lambda arg: {"found": False, "reason": "miss"}
        step = ClickStep(target=CoordinateDescriptor(), coordinates=_click_step().coordinates)

        result = await SelectorResolver().resolve(viewport_page, step)

        assert isinstance(result, NotFound)
        assert viewport_page.calls_to(FIND_BY_DESCRIPTOR_JS) == []
